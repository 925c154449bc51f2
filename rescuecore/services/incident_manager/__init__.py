"""Incident Manager: sole owner of incident state.

Creates incidents from device signals, enforces the status chain
(triggered -> classified -> routed -> dispatched -> acknowledged ->
responding -> on_scene -> resolved -> closed), serializes concurrent
writers, and hands closed incidents to the deletion scheduler.
"""

from .manager import IncidentManager, StatusListener
from .orchestrator import DispatchOutcome, IncidentOrchestrator
from .profiles import InMemoryProfileDirectory
from .state_machine import (
    RESPONDER_TARGETS,
    TRANSITIONS,
    is_valid_transition,
    successor,
    validate_transition,
)
from .store import IncidentStore, InMemoryIncidentStore, PostgresIncidentStore

__all__ = [
    "IncidentManager",
    "StatusListener",
    "DispatchOutcome",
    "IncidentOrchestrator",
    "InMemoryProfileDirectory",
    "RESPONDER_TARGETS",
    "TRANSITIONS",
    "is_valid_transition",
    "successor",
    "validate_transition",
    "IncidentStore",
    "InMemoryIncidentStore",
    "PostgresIncidentStore",
]
