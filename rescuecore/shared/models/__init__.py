"""Shared domain models for the rescuecore platform."""
from .location import GPSLocation, utcnow
from .alert import (
    AlertResult,
    Channel,
    ContactPreference,
    DeliveryStatus,
    RecipientKind,
    TrustedContact,
    UserProfile,
)
from .service import (
    Availability,
    EmergencyService,
    RoutingResult,
    ServiceType,
)
from .incident import (
    REDACTED,
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    Classification,
    EmergencySignal,
    EmergencyType,
    EventType,
    Incident,
    IncidentEvent,
    IncidentStatus,
    PriorityLevel,
)
from .deletion import (
    AnonymizedIncident,
    DeletionJob,
    DeletionJobStatus,
    PersonalDataCategory,
)

__all__ = [
    "GPSLocation",
    "utcnow",
    "AlertResult",
    "Channel",
    "ContactPreference",
    "DeliveryStatus",
    "RecipientKind",
    "TrustedContact",
    "UserProfile",
    "Availability",
    "EmergencyService",
    "RoutingResult",
    "ServiceType",
    "REDACTED",
    "SYSTEM_ACTOR",
    "Actor",
    "ActorRole",
    "Classification",
    "EmergencySignal",
    "EmergencyType",
    "EventType",
    "Incident",
    "IncidentEvent",
    "IncidentStatus",
    "PriorityLevel",
    "AnonymizedIncident",
    "DeletionJob",
    "DeletionJobStatus",
    "PersonalDataCategory",
]
