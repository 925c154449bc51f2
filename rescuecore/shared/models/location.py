"""Location value types and timestamp helpers shared by all models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class GPSLocation:
    latitude: float
    longitude: float
    accuracy_m: Optional[float] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude must be -90..90, got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude must be -180..180, got {self.longitude}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_m": self.accuracy_m,
            "recorded_at": format_dt(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GPSLocation":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy_m=data.get("accuracy_m"),
            recorded_at=parse_dt(data.get("recorded_at")) or utcnow(),
        )
