"""Emergency service registry snapshot.

Loaded at process start and refreshed when the external registry
publishes an update. The core never mutates the services themselves;
availability observations are kept beside them and overlaid on read.

Availability precedence: a push update received within `push_ttl` is
authoritative. Otherwise the most recent of push and poll wins, and the
registry's own value is the last resort.
"""
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from rescuecore.shared.models import Availability, EmergencyService, GPSLocation, utcnow
from rescuecore.shared.utils import distance_km

logger = logging.getLogger(__name__)

# (incident location, radius km) -> candidate services from the external registry
CandidateSource = Callable[[GPSLocation, float], List[EmergencyService]]
# service ids -> availability reported by the external registry
AvailabilitySource = Callable[[List[str]], Dict[str, Availability]]


@dataclass(frozen=True)
class AvailabilityObservation:
    availability: Availability
    observed_at: datetime
    source: str


class ServiceRegistry:
    """Read-only service snapshot with availability overlays."""

    def __init__(
        self,
        services: Iterable[EmergencyService] = (),
        candidate_source: Optional[CandidateSource] = None,
        availability_source: Optional[AvailabilitySource] = None,
        push_ttl: timedelta = timedelta(minutes=5),
    ):
        self.candidate_source = candidate_source
        self.availability_source = availability_source
        self.push_ttl = push_ttl
        self._services: Dict[str, EmergencyService] = {}
        self._pushed: Dict[str, AvailabilityObservation] = {}
        self._polled: Dict[str, AvailabilityObservation] = {}
        self._lock = threading.Lock()
        self.refresh(services)

    def refresh(self, services: Iterable[EmergencyService]) -> None:
        """Replace the snapshot with a fresh registry export."""
        with self._lock:
            self._services = {s.service_id: s for s in services}
            count = len(self._services)

        logger.info("SERVICE_REGISTRY_REFRESHED", extra={"service_count": count})

    def apply_status_update(
        self,
        service_id: str,
        availability: Availability,
        observed_at: Optional[datetime] = None,
    ) -> None:
        """Record a real-time status push from a service."""
        observation = AvailabilityObservation(availability, observed_at or utcnow(), "push")
        with self._lock:
            self._pushed[service_id] = observation

        logger.info(
            "SERVICE_STATUS_PUSHED",
            extra={"service_id": service_id, "availability": availability.value}
        )

    def check_availability(
        self,
        service_ids: List[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Availability]:
        """Poll availability, deferring to fresh pushes.

        Only services without a push inside `push_ttl` are polled.
        """
        now = now or utcnow()
        with self._lock:
            stale = [sid for sid in service_ids if not self._fresh_push(sid, now)]

        if stale and self.availability_source is not None:
            try:
                polled = self.availability_source(stale)
            except Exception as e:
                logger.warning(
                    "SERVICE_AVAILABILITY_POLL_FAILED",
                    extra={"service_count": len(stale), "error": str(e)}
                )
                polled = {}
            with self._lock:
                for sid, availability in polled.items():
                    self._polled[sid] = AvailabilityObservation(availability, now, "poll")

        with self._lock:
            return {
                sid: self._effective_availability(sid, now)
                for sid in service_ids
                if sid in self._services or sid in self._pushed or sid in self._polled
            }

    def get(self, service_id: str) -> Optional[EmergencyService]:
        with self._lock:
            service = self._services.get(service_id)
            return self._overlay(service, utcnow()) if service else None

    def snapshot(self) -> List[EmergencyService]:
        """All known services with current availability applied."""
        now = utcnow()
        with self._lock:
            return [self._overlay(s, now) for s in self._services.values()]

    def cached_candidates(self, location: GPSLocation, radius_km: float) -> List[EmergencyService]:
        """Services from the local snapshot within `radius_km`."""
        return [
            s for s in self.snapshot()
            if distance_km(s.location, location) <= radius_km
        ]

    def lookup(self, location: GPSLocation, radius_km: float) -> List[EmergencyService]:
        """Query the external registry by region, falling back to the snapshot.

        May block; callers enforce their own deadline.
        """
        if self.candidate_source is None:
            return self.cached_candidates(location, radius_km)

        fetched = self.candidate_source(location, radius_km)
        now = utcnow()
        with self._lock:
            return [self._overlay(s, now) for s in fetched]

    def _fresh_push(self, service_id: str, now: datetime) -> bool:
        pushed = self._pushed.get(service_id)
        return pushed is not None and now - pushed.observed_at <= self.push_ttl

    def _effective_availability(
        self,
        service_id: str,
        now: datetime,
        default: Availability = Availability.UNAVAILABLE,
    ) -> Availability:
        if self._fresh_push(service_id, now):
            return self._pushed[service_id].availability
        observations = [
            o for o in (self._pushed.get(service_id), self._polled.get(service_id)) if o
        ]
        if observations:
            return max(observations, key=lambda o: o.observed_at).availability
        service = self._services.get(service_id)
        return service.availability if service else default

    def _overlay(self, service: EmergencyService, now: datetime) -> EmergencyService:
        if service.service_id not in self._pushed and service.service_id not in self._polled:
            return service
        availability = self._effective_availability(
            service.service_id, now, default=service.availability
        )
        if availability == service.availability:
            return service
        return replace(service, availability=availability)
