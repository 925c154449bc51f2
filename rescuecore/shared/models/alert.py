"""Alert delivery models and the user-profile view consumed by alerting."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .location import format_dt, parse_dt, utcnow


class Channel(Enum):
    """Delivery channels understood by the notification gateway."""
    SMS = "sms"
    CALL = "call"
    PUSH = "push"
    DISPATCH_API = "dispatch_api"


class ContactPreference(Enum):
    SMS = "sms"
    CALL = "call"
    BOTH = "both"

    @property
    def channels(self) -> List[Channel]:
        if self == ContactPreference.BOTH:
            return [Channel.SMS, Channel.CALL]
        return [Channel(self.value)]


class DeliveryStatus(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class RecipientKind(Enum):
    RESPONDER = "responder"
    CONTACT = "contact"


@dataclass(frozen=True)
class TrustedContact:
    contact_id: str
    name: str
    phone: str
    preference: ContactPreference = ContactPreference.SMS


@dataclass(frozen=True)
class UserProfile:
    """Narrow view of the external user profile.

    The profile-management layer enforces the five-contact limit.
    """
    user_id: str
    display_name: str
    trusted_contacts: List[TrustedContact] = field(default_factory=list)
    medical_summary: str = ""
    phone: Optional[str] = None
    push_token: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        """Profile summary carried in every alert payload."""
        return {
            "display_name": self.display_name,
            "medical_summary": self.medical_summary,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=data["user_id"],
            display_name=data.get("display_name", ""),
            trusted_contacts=[
                TrustedContact(
                    contact_id=c["contact_id"],
                    name=c.get("name", ""),
                    phone=c["phone"],
                    preference=ContactPreference(c.get("preference", "sms")),
                )
                for c in data.get("trusted_contacts", [])
            ],
            medical_summary=data.get("medical_summary", ""),
            phone=data.get("phone"),
            push_token=data.get("push_token"),
        )


@dataclass
class AlertResult:
    """Delivery state for one recipient of one incident.

    Mutated only by the alert service. `retry_count` counts failed
    attempts and never exceeds the configured attempt cap.
    """
    alert_id: str
    incident_id: str
    recipient_id: str
    recipient_kind: RecipientKind
    channels: List[Channel]
    status: DeliveryStatus = DeliveryStatus.PENDING
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None
    exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "incident_id": self.incident_id,
            "recipient_id": self.recipient_id,
            "recipient_kind": self.recipient_kind.value,
            "channels": [c.value for c in self.channels],
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": format_dt(self.created_at),
            "delivered_at": format_dt(self.delivered_at),
            "error": self.error,
            "exhausted": self.exhausted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertResult":
        return cls(
            alert_id=data["alert_id"],
            incident_id=data["incident_id"],
            recipient_id=data["recipient_id"],
            recipient_kind=RecipientKind(data["recipient_kind"]),
            channels=[Channel(c) for c in data.get("channels", [])],
            status=DeliveryStatus(data["status"]),
            retry_count=int(data.get("retry_count", 0)),
            created_at=parse_dt(data.get("created_at")) or utcnow(),
            delivered_at=parse_dt(data.get("delivered_at")),
            error=data.get("error"),
            exhausted=bool(data.get("exhausted", False)),
        )
