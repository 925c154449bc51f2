"""Routing configuration and the emergency-type capability mapping."""
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet

from rescuecore.shared.models import EmergencyType, ServiceType


# Service types allowed to respond to each emergency type
CAPABILITY_MAP: Dict[EmergencyType, FrozenSet[ServiceType]] = {
    EmergencyType.MEDICAL: frozenset({ServiceType.HOSPITAL, ServiceType.AMBULANCE}),
    EmergencyType.ACCIDENT: frozenset({
        ServiceType.AMBULANCE,
        ServiceType.POLICE,
        ServiceType.FIRE,
        ServiceType.RESCUE,
    }),
    EmergencyType.SAFETY: frozenset({ServiceType.POLICE}),
}


@dataclass(frozen=True)
class RoutingConfig:
    """Ranking and search-radius parameters."""

    # Size of the primary list; the backup list holds the next K
    primary_count: int = 3

    # Search radius schedule (kilometers)
    initial_radius_km: float = 10.0
    radius_increment_km: float = 50.0
    max_radius_km: float = 500.0

    # Completion budget for a routing call (seconds)
    budget_seconds: float = 5.0

    # Threads used for external candidate lookups
    lookup_workers: int = 2

    @classmethod
    def from_env(cls) -> "RoutingConfig":
        """Create config from environment variables.

        Environment variables:
            RESCUE_ROUTING_PRIMARY_COUNT: K (default 3)
            RESCUE_ROUTING_INITIAL_RADIUS_KM: First search radius (default 10)
            RESCUE_ROUTING_RADIUS_INCREMENT_KM: Expansion step (default 50)
            RESCUE_ROUTING_MAX_RADIUS_KM: Expansion ceiling (default 500)
            RESCUE_ROUTING_BUDGET_SECONDS: Completion budget (default 5)
        """
        return cls(
            primary_count=int(os.getenv("RESCUE_ROUTING_PRIMARY_COUNT", "3")),
            initial_radius_km=float(os.getenv("RESCUE_ROUTING_INITIAL_RADIUS_KM", "10")),
            radius_increment_km=float(os.getenv("RESCUE_ROUTING_RADIUS_INCREMENT_KM", "50")),
            max_radius_km=float(os.getenv("RESCUE_ROUTING_MAX_RADIUS_KM", "500")),
            budget_seconds=float(os.getenv("RESCUE_ROUTING_BUDGET_SECONDS", "5")),
        )
