"""Routing & ranking engine.

Selects and ranks candidate services for a classified, located incident:

1. Keep candidates whose type serves the emergency type and that are
   not `unavailable`.
2. Sort by great-circle distance, then performance score (descending),
   then average response time (ascending).
3. The first K become primary services, the next K backups.
4. With no candidate, widen the search radius step by step up to the
   maximum. Each step is a fresh filter and sort.

The engine consumes the classification's priority as given; the
confidence override is applied upstream by the Incident Manager.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict, Iterable, List, Optional

from rescuecore.shared.errors import NoServiceAvailable
from rescuecore.shared.models import (
    Availability,
    Classification,
    EmergencyService,
    GPSLocation,
    RoutingResult,
)
from rescuecore.shared.utils import distance_km
from .config import CAPABILITY_MAP, RoutingConfig
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)


def rank_services(
    classification: Classification,
    location: GPSLocation,
    candidates: Iterable[EmergencyService],
    radius_km: float,
    primary_count: int = 3,
    traffic_factors: Optional[Dict[str, float]] = None,
) -> RoutingResult:
    """One filter-and-sort pass over a candidate snapshot.

    Args:
        classification: Incident classification (priority already final)
        location: Incident location
        candidates: Service snapshot to rank
        radius_km: Services farther than this are dropped
        primary_count: K, the size of the primary and backup lists
        traffic_factors: Optional service id -> response-time multiplier

    Returns:
        RoutingResult, empty if nothing qualifies
    """
    allowed = CAPABILITY_MAP[classification.emergency_type]

    seen = set()
    scored = []
    for service in candidates:
        if service.service_id in seen:
            continue
        seen.add(service.service_id)
        if service.service_type not in allowed:
            continue
        if service.availability == Availability.UNAVAILABLE:
            continue
        distance = distance_km(service.location, location)
        if distance > radius_km:
            continue
        scored.append((distance, service))

    scored.sort(key=lambda item: (
        item[0],
        -item[1].performance_score,
        item[1].avg_response_minutes,
    ))

    primary = tuple(s for _, s in scored[:primary_count])
    backup = tuple(s for _, s in scored[primary_count:2 * primary_count])
    distances = {s.service_id: round(d, 3) for d, s in scored[:2 * primary_count]}

    estimates = {}
    for service in primary + backup:
        factor = (traffic_factors or {}).get(service.service_id, 1.0)
        estimates[service.service_id] = round(service.avg_response_minutes * factor, 1)

    if primary:
        nearest = primary[0]
        reasoning = (
            f"{len(scored)} {classification.emergency_type.value} capable service(s) "
            f"within {radius_km:g} km; nearest {nearest.name} at "
            f"{distances[nearest.service_id]:.1f} km"
        )
        if traffic_factors:
            reasoning += "; response estimates adjusted for traffic"
    else:
        reasoning = (
            f"No {classification.emergency_type.value} capable service "
            f"available within {radius_km:g} km"
        )

    return RoutingResult(
        primary_services=primary,
        backup_services=backup,
        estimated_response_minutes=estimates,
        distances_km=distances,
        reasoning=reasoning,
        search_radius_km=radius_km,
    )


class RoutingEngine:
    """Runs ranking passes against the service registry under a time budget.

    External lookups that outlive the budget are abandoned and the pass
    uses the registry's local snapshot instead.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        config: Optional[RoutingConfig] = None,
    ):
        self.registry = registry
        self.config = config or RoutingConfig()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.lookup_workers,
            thread_name_prefix="routing-lookup",
        )

        logger.info(
            "ROUTING_ENGINE_INITIALIZED",
            extra={
                "primary_count": self.config.primary_count,
                "initial_radius_km": self.config.initial_radius_km,
                "max_radius_km": self.config.max_radius_km,
                "budget_seconds": self.config.budget_seconds,
            }
        )

    def route_emergency(
        self,
        classification: Classification,
        location: GPSLocation,
        traffic_factors: Optional[Dict[str, float]] = None,
    ) -> RoutingResult:
        """Rank services for an incident.

        Raises:
            NoServiceAvailable: Nothing found at the maximum radius. The
                exception carries the empty RoutingResult.
        """
        started = time.monotonic()
        deadline = started + self.config.budget_seconds
        radius = self.config.initial_radius_km
        passes = 0

        while True:
            passes += 1
            candidates = self._candidates(location, radius, deadline)
            result = rank_services(
                classification,
                location,
                candidates,
                radius,
                primary_count=self.config.primary_count,
                traffic_factors=traffic_factors,
            )
            if not result.is_empty:
                logger.info(
                    "ROUTING_COMPLETED",
                    extra={
                        "emergency_type": classification.emergency_type.value,
                        "priority": classification.priority.value,
                        "radius_km": radius,
                        "passes": passes,
                        "primary_count": len(result.primary_services),
                        "backup_count": len(result.backup_services),
                        "elapsed_ms": round((time.monotonic() - started) * 1000, 1),
                    }
                )
                return result

            if radius >= self.config.max_radius_km:
                break
            radius = min(radius + self.config.radius_increment_km, self.config.max_radius_km)
            logger.info(
                "ROUTING_RADIUS_EXPANDED",
                extra={"radius_km": radius, "passes": passes}
            )

        logger.critical(
            "ROUTING_NO_SERVICE_AVAILABLE",
            extra={
                "emergency_type": classification.emergency_type.value,
                "max_radius_km": radius,
                "passes": passes,
                "action": "CONTACT_ONLY_FALLBACK",
            }
        )
        raise NoServiceAvailable(
            f"No service within {radius:g} km",
            routing_result=result,
        )

    def check_availability(self, service_ids: List[str]) -> Dict[str, Availability]:
        """Reconciliation poll; real-time pushes take precedence."""
        return self.registry.check_availability(service_ids)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _candidates(
        self,
        location: GPSLocation,
        radius_km: float,
        deadline: float,
    ) -> List[EmergencyService]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return self.registry.cached_candidates(location, radius_km)

        future = self._executor.submit(self.registry.lookup, location, radius_km)
        try:
            return future.result(timeout=remaining)
        except FutureTimeout:
            future.cancel()
            logger.warning(
                "ROUTING_LOOKUP_TIMEOUT",
                extra={"radius_km": radius_km, "action": "using_cached_snapshot"}
            )
        except Exception as e:
            logger.warning(
                "ROUTING_LOOKUP_FAILED",
                extra={"radius_km": radius_km, "error": str(e), "action": "using_cached_snapshot"}
            )
        return self.registry.cached_candidates(location, radius_km)
