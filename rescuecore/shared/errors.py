"""Error taxonomy for the incident orchestration core.

State-machine errors are raised synchronously to callers. Routing and
delivery errors are absorbed into fallback paths. Deletion errors are
retried and escalated by the deletion scheduler.
"""
from typing import Optional


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""
    pass


class InvalidTransitionError(OrchestrationError):
    """Requested status change is not an edge of the transition graph."""

    def __init__(self, incident_id: str, current: str, requested: str, reason: str = ""):
        self.incident_id = incident_id
        self.current = current
        self.requested = requested
        message = f"Incident {incident_id}: cannot transition {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class UnauthorizedError(OrchestrationError):
    """Actor lacks the capability required for the operation."""
    pass


class DuplicateIncidentError(OrchestrationError):
    """Generated incident id collides with an active incident."""
    pass


class IncidentNotFoundError(OrchestrationError):
    """Incident id is not present in the store."""
    pass


class NoServiceAvailable(OrchestrationError):
    """Routing found no candidate even at the maximum search radius.

    Non-fatal: carries the empty RoutingResult so callers can continue
    with contact-only alerting and manual fallback guidance.
    """

    def __init__(self, message: str, routing_result=None):
        self.routing_result = routing_result
        super().__init__(message)


class DeliveryFailed(OrchestrationError):
    """A notification could not be delivered on a channel."""

    def __init__(self, message: str, channel: Optional[str] = None):
        self.channel = channel
        super().__init__(message)


class DeletionFailed(OrchestrationError):
    """Data deletion did not complete; nothing was applied."""
    pass
