"""Incident Manager HTTP handler - incident lifecycle endpoints.

Endpoints:
- POST /incidents - Classified emergency signal; runs the full pipeline
- GET /incidents/<id> - Read-only incident snapshot
- POST /incidents/<id>/status - Responder status update
- POST /incidents/<id>/location - GPS fix from the device stream
- POST /incidents/<id>/close - Close a resolved incident
- PUT /services - Replace the emergency service registry snapshot
- POST /services/<id>/status - Real-time availability push
- GET /deletion/jobs/failed - Escalated deletion jobs (operator view)

Error mapping: invalid transition 409, unauthorized 403, duplicate 409,
unknown incident 404, malformed request 400.
"""
import logging
import os
import uuid

from flask import Flask, jsonify, request

from rescuecore.shared.database import get_connection_manager
from rescuecore.shared.errors import (
    DuplicateIncidentError,
    IncidentNotFoundError,
    InvalidTransitionError,
    OrchestrationError,
    UnauthorizedError,
)
from rescuecore.shared.models import (
    Actor,
    ActorRole,
    Availability,
    Classification,
    EmergencyService,
    EmergencySignal,
    GPSLocation,
    IncidentStatus,
    UserProfile,
)
from rescuecore.shared.utils import configure_pii_salt, hash_pii
from rescuecore.services.alert_service import AlertConfig, AlertDispatcher, SnsNotificationGateway
from rescuecore.services.audit_service import AuditLogger
from rescuecore.services.deletion_service import (
    DeletionConfig,
    DeletionNotifier,
    DeletionScheduler,
    InMemoryDeletionJobStore,
    InMemoryPersonalDataStore,
    PostgresDeletionJobStore,
    PostgresPersonalDataStore,
)
from rescuecore.services.routing_engine import RoutingConfig, RoutingEngine, ServiceRegistry
from .manager import IncidentManager
from .orchestrator import IncidentOrchestrator, fallback_numbers_from_env
from .profiles import InMemoryProfileDirectory
from .store import InMemoryIncidentStore, PostgresIncidentStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

# Stores: in-memory for local dev, Postgres when configured
if os.getenv("RESCUE_STORE_BACKEND", "memory") == "postgres":
    connection_manager = get_connection_manager()
    incident_store = PostgresIncidentStore(connection_manager)
    job_store = PostgresDeletionJobStore(connection_manager)
    personal_data_store = PostgresPersonalDataStore(connection_manager)
else:
    incident_store = InMemoryIncidentStore()
    job_store = InMemoryDeletionJobStore()
    personal_data_store = InMemoryPersonalDataStore()

audit_logger = AuditLogger()
profile_directory = InMemoryProfileDirectory()
service_registry = ServiceRegistry()
incident_manager = IncidentManager(incident_store, audit_logger)

alert_config = AlertConfig.from_env()
alert_dispatcher = AlertDispatcher(
    incident_manager,
    SnsNotificationGateway(alert_config),
    profile_lookup=profile_directory.get,
    config=alert_config,
    service_directory=service_registry.get,
)

deletion_config = DeletionConfig.from_env()
deletion_scheduler = DeletionScheduler(
    incident_manager,
    job_store,
    personal_data_store,
    notifier=DeletionNotifier(deletion_config, profile_lookup=profile_directory.get),
    audit_logger=audit_logger,
    config=deletion_config,
)

orchestrator = IncidentOrchestrator(
    incident_manager,
    RoutingEngine(service_registry, RoutingConfig.from_env()),
    alert_dispatcher,
    deletion_scheduler=deletion_scheduler,
    fallback_numbers=fallback_numbers_from_env(),
)


def start_background_workers() -> int:
    """Requeue alerts left unfinished by a previous process, then start workers.

    Returns:
        Number of alerts requeued
    """
    requeued = orchestrator.recover()
    alert_dispatcher.start()
    deletion_scheduler.start()
    return requeued


if os.getenv("RESCUE_BACKGROUND_WORKERS", "true").lower() != "false":
    start_background_workers()


def _actor_from(data: dict) -> Actor:
    return Actor(
        actor_id=data["actor_id"],
        role=ActorRole(data.get("actor_role", ActorRole.USER.value)),
    )


def _error_response(e: OrchestrationError):
    if isinstance(e, UnauthorizedError):
        status = 403
    elif isinstance(e, IncidentNotFoundError):
        status = 404
    elif isinstance(e, (InvalidTransitionError, DuplicateIncidentError)):
        status = 409
    else:
        status = 500
    return jsonify({"error": str(e), "type": type(e).__name__}), status


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "incident-manager",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    if orchestrator is None:
        return jsonify({"status": "not_ready"}), 503
    return jsonify({
        "status": "ready",
        "active_incidents": len(incident_manager.list_active_incidents()),
        "alert_queue": alert_dispatcher.queue.counts(),
    }), 200


@app.route("/incidents", methods=["POST"])
def create_incident():
    """Accept a classified emergency signal.

    Request Body:
        {
            "user_id": "user_123",
            "signal_id": "sig_abc",
            "trigger_type": "button",
            "location": {"latitude": 52.52, "longitude": 13.40},
            "classification": {
                "emergency_type": "Medical",
                "priority": "Medium",
                "confidence": 0.82
            },
            "profile": {"user_id": "user_123", "trusted_contacts": [...]}
        }

    Response:
        {
            "incident_id": "inc_...",
            "status": "dispatched",
            "primary_services": ["svc_1"],
            "no_service_available": false,
            "fallback_numbers": []
        }
    """
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Request body required"}), 400

        user_id = data.get("user_id")
        if not user_id or "location" not in data or "classification" not in data:
            return jsonify({"error": "Missing user_id, location or classification"}), 400

        if data.get("profile"):
            profile_directory.put(UserProfile.from_dict({"user_id": user_id, **data["profile"]}))

        signal = EmergencySignal(
            signal_id=data.get("signal_id") or f"sig_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            location=GPSLocation.from_dict(data["location"]),
            trigger_type=data.get("trigger_type", "button"),
        )
        classification = Classification.from_dict(data["classification"])

        logger.info(
            "INCIDENT_SIGNAL_RECEIVED",
            extra={
                "user_id_hash": hash_pii(user_id),
                "signal_id": signal.signal_id,
                "emergency_type": classification.emergency_type.value,
            }
        )

        outcome = orchestrator.handle_signal(signal, classification)
        return jsonify(outcome.to_dict()), 201

    except OrchestrationError as e:
        return _error_response(e)
    except (KeyError, ValueError) as e:
        return jsonify({"error": f"Invalid request: {e}"}), 400
    except Exception as e:
        logger.error("INCIDENT_CREATE_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to process signal"}), 500


@app.route("/incidents/<incident_id>", methods=["GET"])
def get_incident(incident_id: str):
    """Read-only incident snapshot."""
    try:
        incident = incident_manager.get_incident(incident_id)
        return jsonify(incident.to_dict()), 200
    except OrchestrationError as e:
        return _error_response(e)


@app.route("/incidents/<incident_id>/status", methods=["POST"])
def update_status(incident_id: str):
    """Advance an incident along the status chain.

    Request Body:
        {
            "status": "acknowledged",
            "actor_id": "responder_7",
            "actor_role": "emergency_responder"
        }
    """
    try:
        data = request.get_json(silent=True)
        if not data or "status" not in data or "actor_id" not in data:
            return jsonify({"error": "Missing status or actor_id"}), 400

        incident = incident_manager.update_status(
            incident_id, IncidentStatus(data["status"]), _actor_from(data)
        )
        return jsonify({
            "incident_id": incident.incident_id,
            "status": incident.status.value,
            "updated_at": incident.updated_at.isoformat(),
        }), 200

    except OrchestrationError as e:
        return _error_response(e)
    except (KeyError, ValueError) as e:
        return jsonify({"error": f"Invalid request: {e}"}), 400


@app.route("/incidents/<incident_id>/location", methods=["POST"])
def update_location(incident_id: str):
    """Record a GPS fix for an active incident."""
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Request body required"}), 400

        incident = incident_manager.update_location(incident_id, GPSLocation.from_dict(data))
        return jsonify({
            "incident_id": incident.incident_id,
            "location_count": len(incident.location_history),
        }), 200

    except OrchestrationError as e:
        return _error_response(e)
    except (KeyError, ValueError) as e:
        return jsonify({"error": f"Invalid request: {e}"}), 400


@app.route("/incidents/<incident_id>/close", methods=["POST"])
def close_incident(incident_id: str):
    """Close a resolved incident; schedules personal-data deletion.

    Request Body:
        {
            "actor_id": "responder_7",
            "actor_role": "emergency_responder",
            "resolution": "Patient transported"
        }
    """
    try:
        data = request.get_json(silent=True)
        if not data or "actor_id" not in data:
            return jsonify({"error": "Missing actor_id"}), 400

        incident = incident_manager.close_incident(
            incident_id, _actor_from(data), data.get("resolution", "")
        )
        job = deletion_scheduler.get_job(incident_id)
        return jsonify({
            "incident_id": incident.incident_id,
            "status": incident.status.value,
            "closed_at": incident.closed_at.isoformat(),
            "deletion_scheduled_for": job.scheduled_for.isoformat() if job else None,
        }), 200

    except OrchestrationError as e:
        return _error_response(e)
    except (KeyError, ValueError) as e:
        return jsonify({"error": f"Invalid request: {e}"}), 400


@app.route("/services", methods=["PUT"])
def refresh_services():
    """Replace the service registry snapshot.

    Request Body:
        {"services": [{"service_id": "svc_1", "name": "...", ...}]}
    """
    try:
        data = request.get_json(silent=True)
        if not data or "services" not in data:
            return jsonify({"error": "Missing services"}), 400

        services = [EmergencyService.from_dict(s) for s in data["services"]]
        service_registry.refresh(services)
        return jsonify({"service_count": len(services)}), 200

    except (KeyError, ValueError) as e:
        return jsonify({"error": f"Invalid request: {e}"}), 400


@app.route("/services/<service_id>/status", methods=["POST"])
def push_service_status(service_id: str):
    """Real-time availability push from a service.

    Request Body:
        {"availability": "busy"}
    """
    try:
        data = request.get_json(silent=True)
        if not data or "availability" not in data:
            return jsonify({"error": "Missing availability"}), 400

        availability = Availability(data["availability"])
        service_registry.apply_status_update(service_id, availability)
        return jsonify({
            "service_id": service_id,
            "availability": availability.value,
        }), 200

    except ValueError as e:
        return jsonify({"error": f"Invalid request: {e}"}), 400


@app.route("/deletion/jobs/failed", methods=["GET"])
def failed_deletion_jobs():
    """Escalated deletion jobs that need manual intervention."""
    jobs = deletion_scheduler.list_failed_jobs()
    return jsonify({
        "count": len(jobs),
        "jobs": [
            {
                "job_id": job.job_id,
                "incident_id": job.incident_id,
                "scheduled_for": job.scheduled_for.isoformat(),
                "attempts": job.attempts,
                "last_error": job.last_error,
                "status_history": job.status_history,
            }
            for job in jobs
        ],
    }), 200


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
