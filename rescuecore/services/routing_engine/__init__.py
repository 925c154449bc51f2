"""Routing Engine: select and rank emergency services for an incident.

Filters the registry snapshot by emergency-type capability and
availability, ranks by distance, and widens the search radius when
nothing qualifies. Routing failure is never fatal to an incident.
"""

from .config import CAPABILITY_MAP, RoutingConfig
from .engine import RoutingEngine, rank_services
from .registry import ServiceRegistry

__all__ = [
    "CAPABILITY_MAP",
    "RoutingConfig",
    "RoutingEngine",
    "rank_services",
    "ServiceRegistry",
]
