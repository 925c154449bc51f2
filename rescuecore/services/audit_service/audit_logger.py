"""Audit logger - append-only, hash-chained mirror of incident timelines.

Every IncidentEvent is mirrored here, along with security-relevant
rejections (unauthorized closes) and deletion escalations. Entries are
retained for 90 days and then purged.
"""
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from rescuecore.shared.models import EventType, IncidentEvent, utcnow

logger = logging.getLogger(__name__)

AUDIT_RETENTION = timedelta(days=90)
GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Incident timeline mirrors
    INCIDENT_CREATED = "created"
    INCIDENT_STATUS_CHANGED = "status_changed"
    INCIDENT_RECLASSIFIED = "reclassified"
    INCIDENT_CLOSED = "closed"
    ROUTING_COMPLETED = "routing_completed"
    NO_SERVICE_AVAILABLE = "no_service_available"
    ALERT_FAILED = "alert_failed"
    DATA_DELETED = "data_deleted"

    # Security and operations
    UNAUTHORIZED_ATTEMPT = "unauthorized_attempt"
    DELETION_SCHEDULED = "deletion_scheduled"
    DELETION_ESCALATED = "deletion_escalated"

    @classmethod
    def from_event_type(cls, event_type: EventType) -> "AuditAction":
        return cls(event_type.value)


class AuditEntity(Enum):
    """Entity types for audit logging."""
    INCIDENT = "incident"
    DELETION_JOB = "deletion_job"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of entry for verification.

        Returns:
            Hex-encoded hash string
        """
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()


class AuditLogger:
    """Logs audit entries to append-only storage.

    Maintains a hash chain for verification. Purging expired entries
    moves the chain anchor forward instead of breaking it.
    """

    def __init__(self, retention: timedelta = AUDIT_RETENTION):
        self.retention = retention
        self._entries: List[AuditEntry] = []  # In-memory for dev; WORM table in prod
        self._last_hash: str = GENESIS_HASH
        self._anchor_hash: str = GENESIS_HASH
        self._lock = threading.Lock()

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """Log an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity
            actor_id: User or service performing action
            details: Additional context
            timestamp: Event time (defaults to now)

        Returns:
            Created AuditEntry
        """
        with self._lock:
            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=timestamp or utcnow(),
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                details=dict(details or {}),
                previous_hash=self._last_hash,
            )
            entry = replace(entry, entry_hash=entry.compute_hash())

            self._entries.append(entry)
            self._last_hash = entry.entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "entry_hash": entry.entry_hash[:16],
            }
        )

        return entry

    def log_incident_event(self, incident_id: str, event: IncidentEvent) -> AuditEntry:
        """Mirror an incident timeline event."""
        return self.log(
            action=AuditAction.from_event_type(event.event_type),
            entity_type=AuditEntity.INCIDENT,
            entity_id=incident_id,
            actor_id=event.actor_id,
            details={"description": event.description, **event.metadata},
            timestamp=event.timestamp,
        )

    def verify_chain(self) -> bool:
        """Verify integrity of the retained audit chain.

        Returns:
            True if chain is valid, False if tampered
        """
        with self._lock:
            entries = list(self._entries)
            expected_prev = self._anchor_hash

        for entry in entries:
            if entry.previous_hash != expected_prev:
                logger.critical(
                    "AUDIT_CHAIN_VERIFICATION_FAILED",
                    extra={
                        "entry_id": entry.entry_id,
                        "expected_prev": expected_prev[:16],
                        "actual_prev": entry.previous_hash[:16],
                    }
                )
                return False

            computed = entry.compute_hash()
            if computed != entry.entry_hash:
                logger.critical(
                    "AUDIT_ENTRY_HASH_MISMATCH",
                    extra={
                        "entry_id": entry.entry_id,
                        "computed": computed[:16],
                        "stored": entry.entry_hash[:16],
                    }
                )
                return False

            expected_prev = entry.entry_hash

        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop entries older than the retention window.

        Returns:
            Number of entries purged
        """
        cutoff = (now or utcnow()) - self.retention
        with self._lock:
            # Only a leading run is dropped so the chain stays contiguous
            keep_from = 0
            while keep_from < len(self._entries) and self._entries[keep_from].timestamp < cutoff:
                keep_from += 1
            if keep_from == 0:
                return 0
            expired = self._entries[:keep_from]
            self._entries = self._entries[keep_from:]
            self._anchor_hash = (
                self._entries[0].previous_hash if self._entries else self._last_hash
            )

        logger.info(
            "AUDIT_ENTRIES_PURGED",
            extra={"purged": len(expired), "cutoff": cutoff.isoformat()}
        )
        return len(expired)

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        """Query audit entries.

        Returns:
            List of matching AuditEntry objects, oldest first
        """
        with self._lock:
            results = list(self._entries)

        if entity_type:
            results = [e for e in results if e.entity_type == entity_type]
        if entity_id:
            results = [e for e in results if e.entity_id == entity_id]
        if action:
            results = [e for e in results if e.action == action]
        if start_date:
            results = [e for e in results if e.timestamp >= start_date]
        if end_date:
            results = [e for e in results if e.timestamp <= end_date]

        return results
