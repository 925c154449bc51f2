"""Emergency service reference data and routing output."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .alert import Channel
from .location import GPSLocation


class ServiceType(Enum):
    HOSPITAL = "hospital"
    AMBULANCE = "ambulance"
    POLICE = "police"
    FIRE = "fire"
    RESCUE = "rescue"


class Availability(Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class EmergencyService:
    """Read-only registry entry for a responding service."""
    service_id: str
    name: str
    service_type: ServiceType
    location: GPSLocation
    capabilities: Tuple[str, ...] = ()
    availability: Availability = Availability.AVAILABLE
    avg_response_minutes: float = 15.0
    performance_score: float = 0.5
    dispatch_channel: Channel = Channel.DISPATCH_API
    dispatch_address: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.performance_score <= 1.0:
            raise ValueError(
                f"Performance score must be 0.0-1.0, got {self.performance_score}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "name": self.name,
            "service_type": self.service_type.value,
            "location": self.location.to_dict(),
            "capabilities": list(self.capabilities),
            "availability": self.availability.value,
            "avg_response_minutes": self.avg_response_minutes,
            "performance_score": self.performance_score,
            "dispatch_channel": self.dispatch_channel.value,
            "dispatch_address": self.dispatch_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyService":
        return cls(
            service_id=data["service_id"],
            name=data["name"],
            service_type=ServiceType(data["service_type"]),
            location=GPSLocation.from_dict(data["location"]),
            capabilities=tuple(data.get("capabilities", ())),
            availability=Availability(data.get("availability", "available")),
            avg_response_minutes=float(data.get("avg_response_minutes", 15.0)),
            performance_score=float(data.get("performance_score", 0.5)),
            dispatch_channel=Channel(data.get("dispatch_channel", "dispatch_api")),
            dispatch_address=data.get("dispatch_address"),
        )


@dataclass(frozen=True)
class RoutingResult:
    """Ranked services for one classified, located incident.

    Immutable once attached. A reclassification produces a new result.
    """
    primary_services: Tuple[EmergencyService, ...] = ()
    backup_services: Tuple[EmergencyService, ...] = ()
    estimated_response_minutes: Dict[str, float] = field(default_factory=dict)
    distances_km: Dict[str, float] = field(default_factory=dict)
    reasoning: str = ""
    search_radius_km: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.primary_services and not self.backup_services

    @property
    def ranked_services(self) -> List[EmergencyService]:
        return list(self.primary_services) + list(self.backup_services)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_services": [s.to_dict() for s in self.primary_services],
            "backup_services": [s.to_dict() for s in self.backup_services],
            "estimated_response_minutes": dict(self.estimated_response_minutes),
            "distances_km": dict(self.distances_km),
            "reasoning": self.reasoning,
            "search_radius_km": self.search_radius_km,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingResult":
        return cls(
            primary_services=tuple(
                EmergencyService.from_dict(s) for s in data.get("primary_services", [])
            ),
            backup_services=tuple(
                EmergencyService.from_dict(s) for s in data.get("backup_services", [])
            ),
            estimated_response_minutes=dict(data.get("estimated_response_minutes", {})),
            distances_km=dict(data.get("distances_km", {})),
            reasoning=data.get("reasoning", ""),
            search_radius_km=float(data.get("search_radius_km", 0.0)),
        )
