"""Incident orchestration pipeline.

    signal -> create -> classify -> alert contacts -> route
           -> alert responders -> dispatched

Routing failure is never fatal: with no service in range the incident
stays `routed` with an empty RoutingResult, trusted contacts are still
alerted and the caller receives manual fallback numbers.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from rescuecore.shared.errors import NoServiceAvailable
from rescuecore.shared.models import (
    SYSTEM_ACTOR,
    Actor,
    AlertResult,
    Classification,
    EmergencySignal,
    Incident,
    IncidentStatus,
    RoutingResult,
)
from rescuecore.shared.utils import hash_pii
from .manager import IncidentManager

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_NUMBERS = ("112", "911")


def fallback_numbers_from_env() -> Tuple[str, ...]:
    raw = os.getenv("RESCUE_FALLBACK_NUMBERS", ",".join(DEFAULT_FALLBACK_NUMBERS))
    return tuple(n.strip() for n in raw.split(",") if n.strip())


@dataclass
class DispatchOutcome:
    """What the caller learns from one pass of the pipeline."""
    incident: Incident
    alerts: List[AlertResult] = field(default_factory=list)
    no_service_available: bool = False
    fallback_numbers: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        routing = self.incident.routing_result
        return {
            "incident_id": self.incident.incident_id,
            "status": self.incident.status.value,
            "priority": (
                self.incident.classification.priority.value
                if self.incident.classification else None
            ),
            "primary_services": (
                [s.service_id for s in routing.primary_services] if routing else []
            ),
            "alerts": [a.to_dict() for a in self.alerts],
            "no_service_available": self.no_service_available,
            "fallback_numbers": list(self.fallback_numbers),
        }


class IncidentOrchestrator:
    """Wires the incident manager, routing engine, dispatcher and scheduler."""

    def __init__(
        self,
        incident_manager: IncidentManager,
        routing_engine,
        alert_dispatcher,
        deletion_scheduler=None,
        fallback_numbers: Tuple[str, ...] = DEFAULT_FALLBACK_NUMBERS,
    ):
        self.incident_manager = incident_manager
        self.routing_engine = routing_engine
        self.alert_dispatcher = alert_dispatcher
        self.deletion_scheduler = deletion_scheduler
        self.fallback_numbers = tuple(fallback_numbers)

        incident_manager.add_status_listener(alert_dispatcher.broadcast_status_change)
        if deletion_scheduler is not None:
            incident_manager.attach_deletion_scheduler(deletion_scheduler)

    def handle_signal(
        self,
        signal: EmergencySignal,
        classification: Classification,
        actor: Actor = SYSTEM_ACTOR,
        traffic_factors: Optional[Dict[str, float]] = None,
    ) -> DispatchOutcome:
        """Run the full pipeline for a classified emergency signal.

        Alert delivery is enqueued, not awaited; delivery state shows up
        on the incident's AlertResults.
        """
        incident = self.incident_manager.create_incident(signal, actor)
        incident_id = incident.incident_id
        incident = self.incident_manager.classify_incident(incident_id, classification, actor)

        logger.info(
            "INCIDENT_PIPELINE_STARTED",
            extra={
                "incident_id": incident_id,
                "user_id_hash": hash_pii(signal.user_id),
                "emergency_type": incident.classification.emergency_type.value,
                "priority": incident.classification.priority.value,
            }
        )

        # Contact alerts do not depend on routing
        alerts = list(self.alert_dispatcher.alert_contacts(incident_id))
        return self._route_and_dispatch(incident, alerts, actor, traffic_factors)

    def reclassify(
        self,
        incident_id: str,
        classification: Classification,
        actor: Actor = SYSTEM_ACTOR,
        traffic_factors: Optional[Dict[str, float]] = None,
    ) -> DispatchOutcome:
        """Reclassify and re-route; newly selected services are alerted."""
        incident = self.incident_manager.reclassify_incident(incident_id, classification, actor)
        return self._route_and_dispatch(incident, [], actor, traffic_factors)

    def recover(self) -> int:
        """Requeue unfinished alerts of every active incident after a restart."""
        requeued = 0
        for incident in self.incident_manager.list_active_incidents():
            requeued += len(self.alert_dispatcher.retry_failed_alerts(incident.incident_id))
        logger.info("ORCHESTRATOR_RECOVERED", extra={"alerts_requeued": requeued})
        return requeued

    def _route_and_dispatch(
        self,
        incident: Incident,
        alerts: List[AlertResult],
        actor: Actor,
        traffic_factors: Optional[Dict[str, float]],
    ) -> DispatchOutcome:
        incident_id = incident.incident_id
        try:
            result = self.routing_engine.route_emergency(
                incident.classification, incident.current_location, traffic_factors
            )
        except NoServiceAvailable as e:
            return self._no_service(incident_id, e.routing_result, alerts, actor)
        except Exception as e:
            logger.error(
                "ROUTING_FAILED",
                extra={"incident_id": incident_id, "error": str(e)}
            )
            return self._no_service(incident_id, None, alerts, actor)

        self.incident_manager.attach_routing_result(incident_id, result, actor)
        alerts.extend(self.alert_dispatcher.alert_responders(incident_id))
        incident = self.incident_manager.update_status(
            incident_id, IncidentStatus.DISPATCHED, actor
        )

        logger.info(
            "INCIDENT_DISPATCHED",
            extra={
                "incident_id": incident_id,
                "primary_services": [s.service_id for s in result.primary_services],
                "alerts_enqueued": len(alerts),
            }
        )
        return DispatchOutcome(incident=incident, alerts=alerts)

    def _no_service(
        self,
        incident_id: str,
        empty_result: Optional[RoutingResult],
        alerts: List[AlertResult],
        actor: Actor,
    ) -> DispatchOutcome:
        result = empty_result or RoutingResult(reasoning="Routing unavailable")
        incident = self.incident_manager.attach_routing_result(
            incident_id, result, actor, no_service=True
        )
        logger.critical(
            "INCIDENT_NO_SERVICE_FALLBACK",
            extra={
                "incident_id": incident_id,
                "contact_alerts": len(alerts),
                "fallback_numbers": list(self.fallback_numbers),
                "action": "MANUAL_FALLBACK_GUIDANCE",
            }
        )
        return DispatchOutcome(
            incident=incident,
            alerts=alerts,
            no_service_available=True,
            fallback_numbers=self.fallback_numbers,
        )
