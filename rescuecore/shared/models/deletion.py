"""Privacy deletion job and anonymized retention models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .location import format_dt, parse_dt


class DeletionJobStatus(Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PersonalDataCategory(Enum):
    """Personal data purged when the deletion window expires."""
    LOCATION_HISTORY = "location_history"
    VOICE_RECORDINGS = "voice_recordings"
    SENSOR_DATA = "sensor_data"
    PERSONAL_IDENTIFIERS = "personal_identifiers"


@dataclass
class DeletionJob:
    """Scheduled erasure of one closed incident's personal data.

    `status_history` records settled outcomes only (scheduled, failed,
    completed); `in_progress` is transient and exists so a crashed run
    can be picked up again after restart.
    """
    job_id: str
    incident_id: str
    user_id: str
    scheduled_for: datetime
    status: DeletionJobStatus = DeletionJobStatus.SCHEDULED
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    escalated: bool = False
    confirmation_sent: bool = False
    deleted_counts: Dict[str, int] = field(default_factory=dict)
    status_history: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.next_attempt_at is None and self.status == DeletionJobStatus.SCHEDULED:
            self.next_attempt_at = self.scheduled_for
        if not self.status_history:
            self.status_history.append(self.status.value)

    @property
    def is_terminal(self) -> bool:
        if self.status == DeletionJobStatus.COMPLETED:
            return True
        return self.status == DeletionJobStatus.FAILED and self.escalated

    def is_due(self, now: datetime) -> bool:
        if self.is_terminal:
            return False
        if self.status == DeletionJobStatus.IN_PROGRESS:
            # Interrupted run; resume.
            return True
        return self.next_attempt_at is not None and self.next_attempt_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "incident_id": self.incident_id,
            "user_id": self.user_id,
            "scheduled_for": format_dt(self.scheduled_for),
            "status": self.status.value,
            "attempts": self.attempts,
            "next_attempt_at": format_dt(self.next_attempt_at),
            "last_error": self.last_error,
            "completed_at": format_dt(self.completed_at),
            "escalated": self.escalated,
            "confirmation_sent": self.confirmation_sent,
            "deleted_counts": dict(self.deleted_counts),
            "status_history": list(self.status_history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeletionJob":
        return cls(
            job_id=data["job_id"],
            incident_id=data["incident_id"],
            user_id=data["user_id"],
            scheduled_for=parse_dt(data["scheduled_for"]),
            status=DeletionJobStatus(data["status"]),
            attempts=int(data.get("attempts", 0)),
            next_attempt_at=parse_dt(data.get("next_attempt_at")),
            last_error=data.get("last_error"),
            completed_at=parse_dt(data.get("completed_at")),
            escalated=bool(data.get("escalated", False)),
            confirmation_sent=bool(data.get("confirmation_sent", False)),
            deleted_counts=dict(data.get("deleted_counts", {})),
            status_history=list(data.get("status_history", [])),
        )


@dataclass(frozen=True)
class AnonymizedIncident:
    """Retained statistical record with no personal data.

    `record_id` is a salted hash of the incident id so that a retried
    deletion overwrites rather than duplicates the record.
    """
    record_id: str
    emergency_type: Optional[str]
    priority: Optional[str]
    response_time_minutes: Optional[float]
    resolution_time_minutes: Optional[float]
    region: Optional[str]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "emergency_type": self.emergency_type,
            "priority": self.priority,
            "response_time_minutes": self.response_time_minutes,
            "resolution_time_minutes": self.resolution_time_minutes,
            "region": self.region,
            "timestamp": format_dt(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnonymizedIncident":
        return cls(
            record_id=data["record_id"],
            emergency_type=data.get("emergency_type"),
            priority=data.get("priority"),
            response_time_minutes=data.get("response_time_minutes"),
            resolution_time_minutes=data.get("resolution_time_minutes"),
            region=data.get("region"),
            timestamp=parse_dt(data["timestamp"]),
        )
