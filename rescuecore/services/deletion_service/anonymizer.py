"""Anonymized retention record for a closed incident."""
from datetime import datetime
from typing import Optional

from rescuecore.shared.models import AnonymizedIncident, Incident, IncidentStatus
from rescuecore.shared.utils import generalize_region, hash_pii


def _minutes_between(start: datetime, end: Optional[datetime]) -> Optional[float]:
    if end is None:
        return None
    return round((end - start).total_seconds() / 60.0, 1)


def anonymize_incident_data(incident: Incident) -> AnonymizedIncident:
    """Build the statistical record kept after personal data is purged.

    Response time runs from creation to the first acknowledgement;
    resolution time from creation to resolution (or closure). The
    location is reduced to a coarse grid cell and the timestamp to the
    hour.
    """
    classification = incident.classification

    location = incident.current_location
    if location is None and incident.location_history:
        location = incident.location_history[-1]

    resolved_at = incident.first_event_at(IncidentStatus.RESOLVED) or incident.closed_at

    return AnonymizedIncident(
        record_id=hash_pii(incident.incident_id),
        emergency_type=classification.emergency_type.value if classification else None,
        priority=classification.priority.value if classification else None,
        response_time_minutes=_minutes_between(
            incident.created_at, incident.first_event_at(IncidentStatus.ACKNOWLEDGED)
        ),
        resolution_time_minutes=_minutes_between(incident.created_at, resolved_at),
        region=generalize_region(location) if location else None,
        timestamp=incident.created_at.replace(minute=0, second=0, microsecond=0),
    )
