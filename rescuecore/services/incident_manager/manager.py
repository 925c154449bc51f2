"""Incident Manager - sole writer of incident state.

Every mutation runs under a per-incident lock on a fresh copy loaded from
the store and is persisted with a compare-and-set on the incident version.
A status write and its timeline event are committed together or not at
all; a stale writer is rejected with InvalidTransitionError.
"""
import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from rescuecore.shared.database import DuplicateError
from rescuecore.shared.errors import (
    DuplicateIncidentError,
    IncidentNotFoundError,
    InvalidTransitionError,
    UnauthorizedError,
)
from rescuecore.shared.models import (
    REDACTED,
    SYSTEM_ACTOR,
    Actor,
    AlertResult,
    Classification,
    EmergencySignal,
    EventType,
    GPSLocation,
    Incident,
    IncidentEvent,
    IncidentStatus,
    PersonalDataCategory,
    RoutingResult,
    utcnow,
)
from rescuecore.shared.utils import hash_pii
from rescuecore.services.audit_service import AuditAction, AuditEntity, AuditLogger
from .state_machine import (
    RESPONDER_TARGETS,
    validate_reclassification,
    validate_transition,
)
from .store import IncidentStore

logger = logging.getLogger(__name__)

CONFIDENCE_OVERRIDE_THRESHOLD = 0.70

# Statuses reachable only through their dedicated operation
DEDICATED_TARGETS = {
    IncidentStatus.CLASSIFIED: "use classify_incident or reclassify_incident",
    IncidentStatus.CLOSED: "use close_incident",
}

# (incident snapshot, previous status, new status, actor)
StatusListener = Callable[[Incident, IncidentStatus, IncidentStatus, Actor], None]


def _new_incident_id() -> str:
    return f"inc_{uuid.uuid4().hex[:16]}"


class IncidentManager:
    """Owns the Incident entity and its state machine.

    Other components receive copies from `get_incident` and write only
    through the narrow methods below.
    """

    def __init__(
        self,
        store: IncidentStore,
        audit_logger: Optional[AuditLogger] = None,
        id_factory: Callable[[], str] = _new_incident_id,
        confidence_threshold: float = CONFIDENCE_OVERRIDE_THRESHOLD,
    ):
        """Initialize manager with dependencies.

        Args:
            store: Active-incident store
            audit_logger: Audit trail mirror for timeline events
            id_factory: Incident id generator
            confidence_threshold: Classifier confidence below which
                priority is forced to High
        """
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self.id_factory = id_factory
        self.confidence_threshold = confidence_threshold
        self.deletion_scheduler = None
        self._listeners: List[StatusListener] = []
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._create_lock = threading.Lock()

        logger.info("INCIDENT_MANAGER_INITIALIZED")

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach_deletion_scheduler(self, scheduler) -> None:
        """Set the scheduler that receives closed incidents."""
        self.deletion_scheduler = scheduler

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_incident(
        self,
        signal: EmergencySignal,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Incident:
        """Create an incident in `triggered` from a device signal.

        Raises:
            DuplicateIncidentError: If the generated id is already held
        """
        now = utcnow()
        with self._create_lock:
            incident_id = self.id_factory()
            if self.store.exists(incident_id):
                logger.critical(
                    "INCIDENT_ID_COLLISION",
                    extra={"incident_id": incident_id, "signal_id": signal.signal_id}
                )
                raise DuplicateIncidentError(f"Incident id {incident_id} already exists")

            event = IncidentEvent(
                timestamp=now,
                event_type=EventType.CREATED,
                description=f"Incident created from {signal.trigger_type} signal",
                actor_id=actor.actor_id,
                metadata={
                    "to_status": IncidentStatus.TRIGGERED.value,
                    "signal_id": signal.signal_id,
                },
            )
            incident = Incident(
                incident_id=incident_id,
                user_id=signal.user_id,
                status=IncidentStatus.TRIGGERED,
                signal_id=signal.signal_id,
                created_at=now,
                updated_at=now,
                current_location=signal.location,
                location_history=[signal.location],
                timeline=[event],
            )
            try:
                self.store.insert(incident)
            except DuplicateError as e:
                raise DuplicateIncidentError(str(e)) from e

        logger.info(
            "INCIDENT_CREATED",
            extra={
                "incident_id": incident_id,
                "user_id_hash": hash_pii(signal.user_id),
                "signal_id": signal.signal_id,
                "trigger_type": signal.trigger_type,
            }
        )
        self.audit_logger.log_incident_event(incident_id, event)
        return copy.deepcopy(incident)

    def get_incident(self, incident_id: str) -> Incident:
        """Read-only snapshot of an incident.

        Raises:
            IncidentNotFoundError: If the id is unknown
        """
        incident = self.store.get(incident_id)
        if incident is None:
            raise IncidentNotFoundError(f"Incident {incident_id} not found")
        return incident

    def list_active_incidents(self) -> List[Incident]:
        return self.store.list_active()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def classify_incident(
        self,
        incident_id: str,
        classification: Classification,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Incident:
        """Attach the classifier output and move triggered -> classified.

        Priority is forced to High when confidence is below threshold.
        """
        effective = classification.with_confidence_override(self.confidence_threshold)

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            validate_transition(incident_id, incident.status, IncidentStatus.CLASSIFIED)
            previous = incident.status
            incident.classification = effective
            incident.status = IncidentStatus.CLASSIFIED
            return [self._status_event(
                now, EventType.STATUS_CHANGED, previous, IncidentStatus.CLASSIFIED, actor,
                f"Classified as {effective.emergency_type.value} "
                f"({effective.priority.value}, confidence {effective.confidence:.2f})",
            )]

        return self._apply(incident_id, mutation, actor)

    def reclassify_incident(
        self,
        incident_id: str,
        classification: Classification,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Incident:
        """Re-enter `classified` with a new classification.

        The attached RoutingResult is discarded so routing runs again
        and produces a new one.
        """
        effective = classification.with_confidence_override(self.confidence_threshold)

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            validate_reclassification(incident_id, incident.status)
            previous = incident.status
            old = incident.classification
            incident.classification = effective
            incident.routing_result = None
            incident.status = IncidentStatus.CLASSIFIED
            return [self._status_event(
                now, EventType.RECLASSIFIED, previous, IncidentStatus.CLASSIFIED, actor,
                f"Reclassified as {effective.emergency_type.value} ({effective.priority.value})",
                previous_type=old.emergency_type.value if old else None,
                previous_priority=old.priority.value if old else None,
            )]

        return self._apply(incident_id, mutation, actor)

    def attach_routing_result(
        self,
        incident_id: str,
        routing_result: RoutingResult,
        actor: Actor = SYSTEM_ACTOR,
        no_service: bool = False,
    ) -> Incident:
        """Attach routing output and move classified -> routed."""

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            validate_transition(incident_id, incident.status, IncidentStatus.ROUTED)
            previous = incident.status
            incident.routing_result = routing_result
            incident.status = IncidentStatus.ROUTED
            info_type = (
                EventType.NO_SERVICE_AVAILABLE if no_service else EventType.ROUTING_COMPLETED
            )
            return [
                self._status_event(
                    now, EventType.STATUS_CHANGED, previous, IncidentStatus.ROUTED, actor,
                    "Routing completed",
                ),
                IncidentEvent(
                    timestamp=now,
                    event_type=info_type,
                    description=routing_result.reasoning,
                    actor_id=actor.actor_id,
                    metadata={
                        "primary": [s.service_id for s in routing_result.primary_services],
                        "backup": [s.service_id for s in routing_result.backup_services],
                        "search_radius_km": routing_result.search_radius_km,
                    },
                ),
            ]

        return self._apply(incident_id, mutation, actor)

    def update_status(
        self,
        incident_id: str,
        new_status: IncidentStatus,
        actor: Actor,
    ) -> Incident:
        """Advance an incident to the next status in the chain.

        A request for the status the incident already holds is a no-op,
        so concurrent acknowledgements serialize without a second event.

        Raises:
            InvalidTransitionError: If `new_status` is not the successor
            UnauthorizedError: If a responder-only status is requested by
                a non-responder
        """
        if new_status in RESPONDER_TARGETS and not actor.is_responder:
            self._reject_unauthorized(incident_id, actor, new_status.value)

        def mutation(incident: Incident, now: datetime) -> Optional[List[IncidentEvent]]:
            if new_status in DEDICATED_TARGETS:
                raise InvalidTransitionError(
                    incident_id, incident.status.value, new_status.value,
                    reason=DEDICATED_TARGETS[new_status],
                )
            if incident.status == new_status:
                return None
            validate_transition(incident_id, incident.status, new_status)
            previous = incident.status
            incident.status = new_status
            return [self._status_event(
                now, EventType.STATUS_CHANGED, previous, new_status, actor,
                f"Status changed to {new_status.value}",
            )]

        return self._apply(incident_id, mutation, actor)

    def close_incident(
        self,
        incident_id: str,
        actor: Actor,
        resolution: str,
    ) -> Incident:
        """Close a resolved incident and schedule its data deletion.

        Raises:
            UnauthorizedError: If actor is not an Emergency_Responder
            InvalidTransitionError: If the incident is not resolved
        """
        if not actor.is_responder:
            self._reject_unauthorized(incident_id, actor, IncidentStatus.CLOSED.value)

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            validate_transition(incident_id, incident.status, IncidentStatus.CLOSED)
            previous = incident.status
            incident.status = IncidentStatus.CLOSED
            incident.resolution = resolution
            incident.closed_at = now
            return [self._status_event(
                now, EventType.CLOSED, previous, IncidentStatus.CLOSED, actor,
                "Incident closed",
            )]

        closed = self._apply(incident_id, mutation, actor)

        logger.info(
            "INCIDENT_CLOSED",
            extra={
                "incident_id": incident_id,
                "closed_by": actor.actor_id,
                "time_to_close_seconds": (
                    closed.closed_at - closed.created_at
                ).total_seconds(),
            }
        )

        if self.deletion_scheduler is None:
            logger.critical(
                "DELETION_SCHEDULER_NOT_ATTACHED",
                extra={"incident_id": incident_id, "action": "MANUAL_DELETION_REQUIRED"}
            )
        else:
            try:
                self.deletion_scheduler.schedule_data_deletion(
                    incident_id, closed.user_id, closed.closed_at
                )
            except Exception as e:
                logger.critical(
                    "DELETION_SCHEDULE_FAILED",
                    extra={
                        "incident_id": incident_id,
                        "error": str(e),
                        "action": "MANUAL_DELETION_REQUIRED",
                    }
                )
                raise

        return closed

    # ------------------------------------------------------------------
    # Non-status writes
    # ------------------------------------------------------------------

    def update_location(self, incident_id: str, location: GPSLocation) -> Incident:
        """Record a GPS fix from the device stream."""

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            if incident.is_closed:
                raise InvalidTransitionError(
                    incident_id, incident.status.value, "location_update",
                    reason="incident is closed",
                )
            incident.current_location = location
            incident.location_history.append(location)
            return []

        return self._apply(incident_id, mutation, SYSTEM_ACTOR)

    def record_alert_result(self, incident_id: str, alert: AlertResult) -> Incident:
        """Insert or replace an AlertResult by alert id. Alerts are never removed.

        Once the incident's personal data is deleted, the stored recipient
        stays redacted whatever the writer passes in.
        """

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            stored = copy.deepcopy(alert)
            if incident.personal_data_redacted:
                stored.recipient_id = REDACTED
            for index, existing in enumerate(incident.alerts):
                if existing.alert_id == stored.alert_id:
                    incident.alerts[index] = stored
                    break
            else:
                incident.alerts.append(stored)
            return []

        return self._apply(incident_id, mutation, SYSTEM_ACTOR)

    def append_timeline_event(
        self,
        incident_id: str,
        event_type: EventType,
        description: str,
        actor: Actor = SYSTEM_ACTOR,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Incident:
        """Append an informational (non-status) event to the timeline."""
        if event_type.is_status_event:
            raise ValueError(f"{event_type.value} events are written by status transitions")

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            return [IncidentEvent(
                timestamp=now,
                event_type=event_type,
                description=description,
                actor_id=actor.actor_id,
                metadata=dict(metadata or {}),
            )]

        return self._apply(incident_id, mutation, actor)

    def redact_personal_data(self, incident_id: str) -> Tuple[Dict[str, int], Incident]:
        """Strip location history and identifiers from a closed incident.

        Returns:
            (deleted counts per category, pre-redaction snapshot). The
            snapshot can be handed to `restore_incident` to undo.
        """
        counts: Dict[str, int] = {}
        snapshots: List[Incident] = []

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            if not incident.is_closed:
                raise InvalidTransitionError(
                    incident_id, incident.status.value, "redact",
                    reason="only closed incidents can be redacted",
                )
            snapshots.append(copy.deepcopy(incident))
            locations = len(incident.location_history)
            if incident.current_location is not None and not incident.location_history:
                locations = 1
            identifiers = sum(1 for value in (
                incident.user_id, incident.signal_id, incident.assistance_session_id,
            ) if value and value != REDACTED)
            identifiers += sum(1 for a in incident.alerts if a.recipient_id != REDACTED)

            incident.location_history = []
            incident.current_location = None
            incident.user_id = REDACTED
            incident.signal_id = REDACTED
            incident.assistance_session_id = None
            for alert in incident.alerts:
                alert.recipient_id = REDACTED
            incident.personal_data_redacted = True

            counts[PersonalDataCategory.LOCATION_HISTORY.value] = locations
            counts[PersonalDataCategory.PERSONAL_IDENTIFIERS.value] = identifiers
            return [IncidentEvent(
                timestamp=now,
                event_type=EventType.DATA_DELETED,
                description="Personal data deleted",
                actor_id=SYSTEM_ACTOR.actor_id,
                metadata=dict(counts),
            )]

        self._apply(incident_id, mutation, SYSTEM_ACTOR)
        return counts, snapshots[0]

    def restore_incident(self, snapshot: Incident) -> Incident:
        """Write back a snapshot taken by `redact_personal_data`."""

        def mutation(incident: Incident, now: datetime) -> List[IncidentEvent]:
            restored = copy.deepcopy(snapshot)
            for f in fields(restored):
                if f.name != "version":
                    setattr(incident, f.name, getattr(restored, f.name))
            return []

        restored = self._apply(snapshot.incident_id, mutation, SYSTEM_ACTOR)
        logger.warning(
            "INCIDENT_RESTORED_FROM_SNAPSHOT",
            extra={"incident_id": snapshot.incident_id}
        )
        return restored

    def prune_locks(self) -> int:
        """Drop idle per-incident locks of incidents that are no longer active.

        Returns:
            Number of locks dropped
        """
        active = {incident.incident_id for incident in self.store.list_active()}
        with self._locks_guard:
            idle = [
                incident_id for incident_id, lock in self._locks.items()
                if incident_id not in active and not lock.locked()
            ]
            for incident_id in idle:
                del self._locks[incident_id]

        if idle:
            logger.info("INCIDENT_LOCKS_PRUNED", extra={"count": len(idle)})
        return len(idle)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, incident_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(incident_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[incident_id] = lock
            return lock

    @contextmanager
    def _locked(self, incident_id: str):
        """Hold the incident's lock; retries if `prune_locks` replaced it."""
        while True:
            lock = self._lock_for(incident_id)
            lock.acquire()
            with self._locks_guard:
                if self._locks.get(incident_id) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _apply(
        self,
        incident_id: str,
        mutation: Callable[[Incident, datetime], Optional[List[IncidentEvent]]],
        actor: Actor,
    ) -> Incident:
        """Run `mutation` on a fresh copy and commit it atomically.

        `mutation` returns the events to append, or None for a no-op.
        Any exception leaves the stored incident untouched.
        """
        with self._locked(incident_id):
            incident = self.get_incident(incident_id)
            previous_status = incident.status
            expected_version = incident.version
            now = utcnow()

            events = mutation(incident, now)
            if events is None:
                logger.info(
                    "INCIDENT_UPDATE_NOOP",
                    extra={"incident_id": incident_id, "status": incident.status.value}
                )
                return incident

            incident.timeline.extend(events)
            incident.updated_at = now
            incident.version = expected_version + 1

            if not self.store.compare_and_set(incident, expected_version):
                raise InvalidTransitionError(
                    incident_id,
                    previous_status.value,
                    incident.status.value,
                    reason="stale write rejected",
                )

        for event in events:
            self.audit_logger.log_incident_event(incident_id, event)

        if incident.status != previous_status:
            logger.info(
                "INCIDENT_STATUS_CHANGED",
                extra={
                    "incident_id": incident_id,
                    "from_status": previous_status.value,
                    "to_status": incident.status.value,
                    "actor_id": actor.actor_id,
                    "version": incident.version,
                }
            )
            self._notify_listeners(incident, previous_status, actor)

        return copy.deepcopy(incident)

    def _notify_listeners(
        self,
        incident: Incident,
        previous_status: IncidentStatus,
        actor: Actor,
    ) -> None:
        for listener in self._listeners:
            try:
                listener(copy.deepcopy(incident), previous_status, incident.status, actor)
            except Exception as e:
                logger.error(
                    "STATUS_LISTENER_FAILED",
                    extra={
                        "incident_id": incident.incident_id,
                        "listener": getattr(listener, "__name__", repr(listener)),
                        "error": str(e),
                    }
                )

    def _reject_unauthorized(self, incident_id: str, actor: Actor, target: str) -> None:
        logger.warning(
            "INCIDENT_UNAUTHORIZED_TRANSITION",
            extra={
                "incident_id": incident_id,
                "actor_id": actor.actor_id,
                "actor_role": actor.role.value,
                "target_status": target,
            }
        )
        self.audit_logger.log(
            action=AuditAction.UNAUTHORIZED_ATTEMPT,
            entity_type=AuditEntity.INCIDENT,
            entity_id=incident_id,
            actor_id=actor.actor_id,
            details={"target_status": target, "actor_role": actor.role.value},
        )
        raise UnauthorizedError(
            f"Actor {actor.actor_id} ({actor.role.value}) may not move "
            f"incident {incident_id} to {target}"
        )

    @staticmethod
    def _status_event(
        now: datetime,
        event_type: EventType,
        previous: IncidentStatus,
        new: IncidentStatus,
        actor: Actor,
        description: str,
        **extra: Any,
    ) -> IncidentEvent:
        metadata = {"from_status": previous.value, "to_status": new.value}
        metadata.update({k: v for k, v in extra.items() if v is not None})
        return IncidentEvent(
            timestamp=now,
            event_type=event_type,
            description=description,
            actor_id=actor.actor_id,
            metadata=metadata,
        )
