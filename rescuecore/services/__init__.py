"""rescuecore services.

- incident_manager: sole writer of incident state, state machine, HTTP surface
- routing_engine: candidate filtering and ranking
- alert_service: prioritized multi-channel alert delivery with retry
- deletion_service: post-closure privacy deletion and anonymized retention
- audit_service: hash-chained audit trail with 90-day retention
"""
