"""Alert payloads.

Every alert carries the incident id, emergency type, priority, current
location and the user profile summary. Contact alerts also carry a live
location-sharing link.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from rescuecore.shared.models import Incident, RecipientKind, UserProfile, utcnow
from rescuecore.shared.utils import share_token


@dataclass(frozen=True)
class AlertPayload:
    """Immutable alert body handed to the notification gateway."""
    incident_id: str
    emergency_type: str
    priority: str
    latitude: Optional[float]
    longitude: Optional[float]
    profile_summary: Dict[str, Any]
    recipient_kind: RecipientKind
    location_share_link: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "emergency_type": self.emergency_type,
            "priority": self.priority,
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "profile": dict(self.profile_summary),
            "recipient_kind": self.recipient_kind.value,
            "location_share_link": self.location_share_link,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_text(self) -> str:
        """Short human-readable form for SMS and voice."""
        name = self.profile_summary.get("display_name") or "A user"
        parts = [
            f"EMERGENCY ({self.priority}) {self.emergency_type}",
            f"{name} needs help",
        ]
        if self.latitude is not None and self.longitude is not None:
            parts.append(f"Location: {self.latitude:.5f},{self.longitude:.5f}")
        if self.status:
            parts.append(f"Status: {self.status}")
        if self.location_share_link:
            parts.append(f"Live location: {self.location_share_link}")
        parts.append(f"Ref {self.incident_id}")
        return " | ".join(parts)


def build_payload(
    incident: Incident,
    profile: Optional[UserProfile],
    recipient_kind: RecipientKind,
    share_base_url: str,
    status: Optional[str] = None,
) -> AlertPayload:
    """Assemble the payload for one recipient class."""
    classification = incident.classification
    location = incident.current_location
    link = None
    if recipient_kind == RecipientKind.CONTACT:
        link = f"{share_base_url.rstrip('/')}/{incident.incident_id}?t={share_token(incident.incident_id)}"

    return AlertPayload(
        incident_id=incident.incident_id,
        emergency_type=classification.emergency_type.value if classification else "Unknown",
        priority=classification.priority.value if classification else "High",
        latitude=location.latitude if location else None,
        longitude=location.longitude if location else None,
        profile_summary=profile.summary() if profile else {"display_name": None},
        recipient_kind=recipient_kind,
        location_share_link=link,
        status=status,
    )
