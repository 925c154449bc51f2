"""Incident domain models.

This file defines the Incident entity, its audit timeline and the
classification/location values it is built from. The Incident Manager is
the only writer of Incident state; every other component receives a copy.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .alert import AlertResult
from .location import GPSLocation, format_dt as _iso, parse_dt as _dt, utcnow
from .service import RoutingResult


class IncidentStatus(Enum):
    """Incident lifecycle states, in required order."""
    TRIGGERED = "triggered"
    CLASSIFIED = "classified"
    ROUTED = "routed"
    DISPATCHED = "dispatched"
    ACKNOWLEDGED = "acknowledged"
    RESPONDING = "responding"
    ON_SCENE = "on_scene"
    RESOLVED = "resolved"
    CLOSED = "closed"


class EmergencyType(Enum):
    MEDICAL = "Medical"
    ACCIDENT = "Accident"
    SAFETY = "Safety"


class PriorityLevel(Enum):
    """Priority of an incident. `rank` orders dispatch queues."""
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return {"High": 0, "Medium": 1, "Low": 2}[self.value]


class EventType(Enum):
    """Timeline event types.

    Status events move the state machine; the rest are informational
    entries added by routing, alerting and deletion.
    """
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    RECLASSIFIED = "reclassified"
    CLOSED = "closed"
    ROUTING_COMPLETED = "routing_completed"
    NO_SERVICE_AVAILABLE = "no_service_available"
    ALERT_FAILED = "alert_failed"
    DATA_DELETED = "data_deleted"

    @property
    def is_status_event(self) -> bool:
        return self in STATUS_EVENT_TYPES


STATUS_EVENT_TYPES = frozenset({
    EventType.CREATED,
    EventType.STATUS_CHANGED,
    EventType.RECLASSIFIED,
    EventType.CLOSED,
})


class ActorRole(Enum):
    USER = "user"
    EMERGENCY_RESPONDER = "emergency_responder"
    SYSTEM = "system"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Actor:
    """Identity performing an incident operation (user or service)."""
    actor_id: str
    role: ActorRole

    @property
    def is_responder(self) -> bool:
        return self.role == ActorRole.EMERGENCY_RESPONDER


SYSTEM_ACTOR = Actor(actor_id="rescuecore", role=ActorRole.SYSTEM)

# Replaces personal identifiers once an incident's data has been deleted
REDACTED = "redacted"


@dataclass(frozen=True)
class EmergencySignal:
    """A trigger from the device layer (button, voice or sensor)."""
    signal_id: str
    user_id: str
    location: GPSLocation
    trigger_type: str = "button"
    triggered_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Classification:
    """Output of the external classifier.

    Frozen. Use `with_confidence_override` before attaching
    it to an incident.
    """
    emergency_type: EmergencyType
    priority: PriorityLevel
    confidence: float
    reasoning: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    def with_confidence_override(self, threshold: float = 0.70) -> "Classification":
        """Force High priority when the classifier is unsure."""
        if self.confidence < threshold and self.priority != PriorityLevel.HIGH:
            return replace(
                self,
                priority=PriorityLevel.HIGH,
                reasoning=(
                    f"{self.reasoning} [priority forced to High: confidence "
                    f"{self.confidence:.2f} below {threshold:.2f}]"
                ).strip(),
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emergency_type": self.emergency_type.value,
            "priority": self.priority.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Classification":
        return cls(
            emergency_type=EmergencyType(data["emergency_type"]),
            priority=PriorityLevel(data["priority"]),
            confidence=float(data["confidence"]),
            reasoning=data.get("reasoning", ""),
            timestamp=_dt(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class IncidentEvent:
    """Immutable audit record on the incident timeline."""
    timestamp: datetime
    event_type: EventType
    description: str
    actor_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "event_type": self.event_type.value,
            "description": self.description,
            "actor_id": self.actor_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncidentEvent":
        return cls(
            timestamp=_dt(data["timestamp"]),
            event_type=EventType(data["event_type"]),
            description=data["description"],
            actor_id=data["actor_id"],
            metadata=data.get("metadata") or {},
        )


@dataclass
class Incident:
    """Mutable record tracking one emergency from trigger to deletion.

    `version` increments on every write and backs the optimistic
    compare-and-set in persistent stores.
    """
    incident_id: str
    user_id: str
    status: IncidentStatus
    signal_id: str
    created_at: datetime
    updated_at: datetime
    classification: Optional[Classification] = None
    current_location: Optional[GPSLocation] = None
    location_history: List[GPSLocation] = field(default_factory=list)
    routing_result: Optional[RoutingResult] = None
    alerts: List[AlertResult] = field(default_factory=list)
    assistance_session_id: Optional[str] = None
    timeline: List[IncidentEvent] = field(default_factory=list)
    closed_at: Optional[datetime] = None
    resolution: Optional[str] = None
    version: int = 0
    personal_data_redacted: bool = False

    @property
    def is_closed(self) -> bool:
        return self.status == IncidentStatus.CLOSED

    @property
    def status_events(self) -> List[IncidentEvent]:
        return [e for e in self.timeline if e.event_type.is_status_event]

    def first_event_at(self, status: IncidentStatus) -> Optional[datetime]:
        """Timestamp of the first transition into `status`, if any."""
        for event in self.timeline:
            if (
                event.event_type.is_status_event
                and event.metadata.get("to_status") == status.value
            ):
                return event.timestamp
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "signal_id": self.signal_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "classification": (
                self.classification.to_dict() if self.classification else None
            ),
            "current_location": (
                self.current_location.to_dict() if self.current_location else None
            ),
            "location_history": [loc.to_dict() for loc in self.location_history],
            "routing_result": (
                self.routing_result.to_dict() if self.routing_result else None
            ),
            "alerts": [a.to_dict() for a in self.alerts],
            "assistance_session_id": self.assistance_session_id,
            "timeline": [e.to_dict() for e in self.timeline],
            "closed_at": _iso(self.closed_at),
            "resolution": self.resolution,
            "version": self.version,
            "personal_data_redacted": self.personal_data_redacted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Incident":
        classification = data.get("classification")
        location = data.get("current_location")
        routing = data.get("routing_result")
        return cls(
            incident_id=data["incident_id"],
            user_id=data["user_id"],
            status=IncidentStatus(data["status"]),
            signal_id=data["signal_id"],
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            classification=Classification.from_dict(classification) if classification else None,
            current_location=GPSLocation.from_dict(location) if location else None,
            location_history=[GPSLocation.from_dict(l) for l in data.get("location_history", [])],
            routing_result=RoutingResult.from_dict(routing) if routing else None,
            alerts=[AlertResult.from_dict(a) for a in data.get("alerts", [])],
            assistance_session_id=data.get("assistance_session_id"),
            timeline=[IncidentEvent.from_dict(e) for e in data.get("timeline", [])],
            closed_at=_dt(data.get("closed_at")),
            resolution=data.get("resolution"),
            version=int(data.get("version", 0)),
            personal_data_redacted=bool(data.get("personal_data_redacted", False)),
        )
