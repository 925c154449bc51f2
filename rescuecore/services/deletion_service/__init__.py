"""Deletion Service - time-bound purge of personal data after closure."""
from .anonymizer import anonymize_incident_data
from .config import DeletionConfig
from .job_store import DeletionJobStore, InMemoryDeletionJobStore, PostgresDeletionJobStore
from .notifier import DeletionNotifier
from .personal_data import (
    InMemoryPersonalDataStore,
    PersonalDataStore,
    PostgresPersonalDataStore,
)
from .scheduler import DeletionScheduler

__all__ = [
    "anonymize_incident_data",
    "DeletionConfig",
    "DeletionJobStore",
    "InMemoryDeletionJobStore",
    "PostgresDeletionJobStore",
    "DeletionNotifier",
    "InMemoryPersonalDataStore",
    "PersonalDataStore",
    "PostgresPersonalDataStore",
    "DeletionScheduler",
]
