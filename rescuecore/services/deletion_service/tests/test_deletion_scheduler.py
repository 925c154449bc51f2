"""Tests for DeletionScheduler scheduling, retry, escalation and atomicity."""
import pytest
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import MagicMock

from rescuecore.shared.errors import DeletionFailed
from rescuecore.shared.models import (
    REDACTED,
    Actor,
    ActorRole,
    Classification,
    DeletionJobStatus,
    EmergencySignal,
    EmergencyType,
    GPSLocation,
    IncidentStatus,
    PersonalDataCategory,
    PriorityLevel,
    RoutingResult,
)
from rescuecore.shared.utils import configure_pii_salt, hash_pii
from rescuecore.services.audit_service import AuditAction, AuditEntity
from rescuecore.services.deletion_service import (
    DeletionConfig,
    DeletionNotifier,
    DeletionScheduler,
    InMemoryDeletionJobStore,
    InMemoryPersonalDataStore,
)
from rescuecore.services.incident_manager import IncidentManager, InMemoryIncidentStore

RESPONDER = Actor("medic_7", ActorRole.EMERGENCY_RESPONDER)
VOICE = PersonalDataCategory.VOICE_RECORDINGS
SENSOR = PersonalDataCategory.SENSOR_DATA


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class FlakyPersonalDataStore(InMemoryPersonalDataStore):
    """Fails `save_anonymized` a fixed number of times."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def save_anonymized(self, record):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("anonymized store unreachable")
        super().save_anonymized(record)


class CommitFailingStore(InMemoryPersonalDataStore):
    """Runs the whole body, then fails as the transaction closes."""

    @contextmanager
    def transaction(self):
        with super().transaction():
            yield self
            raise ConnectionError("commit failed")


@pytest.fixture
def manager():
    return IncidentManager(InMemoryIncidentStore())


@pytest.fixture
def notifier():
    notifier = MagicMock(spec=DeletionNotifier)
    notifier.send_confirmation.return_value = True
    notifier.alert_operator.return_value = True
    return notifier


def make_scheduler(manager, notifier, data_store=None):
    scheduler = DeletionScheduler(
        manager,
        InMemoryDeletionJobStore(),
        data_store or InMemoryPersonalDataStore(),
        notifier=notifier,
        config=DeletionConfig(notifications_enabled=False),
    )
    manager.attach_deletion_scheduler(scheduler)
    return scheduler


def close_incident(manager, data_store):
    incident = manager.create_incident(
        EmergencySignal("sig_1", "user_1", GPSLocation(52.52, 13.40))
    )
    incident_id = incident.incident_id
    manager.update_location(incident_id, GPSLocation(52.53, 13.41))
    manager.classify_incident(
        incident_id, Classification(EmergencyType.ACCIDENT, PriorityLevel.MEDIUM, 0.88)
    )
    manager.attach_routing_result(incident_id, RoutingResult(reasoning="test"))
    for status in (
        IncidentStatus.DISPATCHED,
        IncidentStatus.ACKNOWLEDGED,
        IncidentStatus.RESPONDING,
        IncidentStatus.ON_SCENE,
        IncidentStatus.RESOLVED,
    ):
        manager.update_status(incident_id, status, RESPONDER)

    data_store.add(incident_id, VOICE, {"clip": "a.wav"})
    data_store.add(incident_id, VOICE, {"clip": "b.wav"})
    for reading in range(3):
        data_store.add(incident_id, SENSOR, {"g": reading})

    return manager.close_incident(incident_id, RESPONDER, "patient transported")


class TestScheduling:

    def test_close_schedules_one_job(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)

        closed = close_incident(manager, data_store)

        job = scheduler.get_job(closed.incident_id)
        assert job.status == DeletionJobStatus.SCHEDULED
        assert job.scheduled_for == closed.closed_at + timedelta(hours=24)

    def test_schedule_is_idempotent(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        first = scheduler.get_job(closed.incident_id)

        again = scheduler.schedule_data_deletion(
            closed.incident_id, closed.user_id, closed.closed_at
        )

        assert again.job_id == first.job_id
        scheduled = manager.audit_logger.query(action=AuditAction.DELETION_SCHEDULED)
        assert len(scheduled) == 1

    def test_not_due_before_delay(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)

        assert scheduler.run_due_jobs(closed.closed_at + timedelta(hours=23)) == []


class TestExecution:

    def test_successful_run(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)

        [job] = scheduler.run_due_jobs(closed.closed_at + timedelta(hours=24))

        assert job.status == DeletionJobStatus.COMPLETED
        assert job.deleted_counts[VOICE.value] == 2
        assert job.deleted_counts[SENSOR.value] == 3
        assert job.deleted_counts[PersonalDataCategory.LOCATION_HISTORY.value] == 2
        assert job.deleted_counts[PersonalDataCategory.PERSONAL_IDENTIFIERS.value] >= 2

        incident = manager.get_incident(closed.incident_id)
        assert incident.personal_data_redacted
        assert incident.location_history == []
        assert incident.current_location is None
        assert data_store.count(closed.incident_id, VOICE) == 0

        [record] = data_store.anonymized_records()
        assert record.record_id == hash_pii(closed.incident_id)
        assert record.emergency_type == "Accident"
        assert record.region == "grid:+52.5:+13.0"
        notifier.send_confirmation.assert_called_once()

    def test_retries_hourly_then_completes(self, manager, notifier):
        data_store = FlakyPersonalDataStore(failures=2)
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        due = closed.closed_at + timedelta(hours=24)

        scheduler.run_due_jobs(due)
        scheduler.run_due_jobs(due + timedelta(minutes=30))
        scheduler.run_due_jobs(due + timedelta(hours=1))
        scheduler.run_due_jobs(due + timedelta(hours=2))
        scheduler.run_due_jobs(due + timedelta(hours=3))

        job = scheduler.get_job(closed.incident_id)
        assert job.status == DeletionJobStatus.COMPLETED
        assert job.attempts == 3
        assert job.completed_at == due + timedelta(hours=2)
        assert job.status_history == ["scheduled", "failed", "failed", "completed"]
        assert len(data_store.anonymized_records()) == 1
        notifier.send_confirmation.assert_called_once()

    def test_anonymize_without_deleting(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)

        record = scheduler.anonymize_incident_data(closed.incident_id)

        assert record.priority == "Medium"
        assert record.response_time_minutes is not None
        assert data_store.anonymized_records() == []
        assert data_store.count(closed.incident_id, VOICE) == 2

    def test_failed_run_applies_nothing(self, manager, notifier):
        data_store = FlakyPersonalDataStore(failures=1)
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)

        with pytest.raises(DeletionFailed):
            scheduler.execute_data_deletion(closed.incident_id)

        assert data_store.count(closed.incident_id, VOICE) == 2
        assert data_store.count(closed.incident_id, SENSOR) == 3
        assert data_store.anonymized_records() == []
        assert not manager.get_incident(closed.incident_id).personal_data_redacted

    def test_late_failure_restores_incident(self, manager, notifier):
        data_store = CommitFailingStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)

        with pytest.raises(DeletionFailed):
            scheduler.execute_data_deletion(closed.incident_id)

        incident = manager.get_incident(closed.incident_id)
        assert not incident.personal_data_redacted
        assert incident.user_id == "user_1"
        assert len(incident.location_history) == 2
        assert data_store.count(closed.incident_id, SENSOR) == 3
        assert data_store.anonymized_records() == []

    def test_confirmation_retried_when_first_send_fails(self, manager, notifier):
        notifier.send_confirmation.side_effect = [False, True]
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        due = closed.closed_at + timedelta(hours=24)

        scheduler.run_due_jobs(due)
        job = scheduler.get_job(closed.incident_id)
        assert not job.confirmation_sent
        assert job.user_id == "user_1"

        scheduler.run_due_jobs(due + timedelta(hours=1))

        job = scheduler.get_job(closed.incident_id)
        assert job.confirmation_sent
        assert job.user_id == REDACTED
        assert notifier.send_confirmation.call_count == 2

    def test_user_id_dropped_from_job_once_confirmed(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)

        scheduler.run_due_jobs(closed.closed_at + timedelta(hours=24))

        job = scheduler.get_job(closed.incident_id)
        assert job.status == DeletionJobStatus.COMPLETED
        assert job.user_id == REDACTED
        assert "user_1" not in str(job.to_dict())


class TestEscalation:

    def test_escalates_after_window(self, manager, notifier):
        data_store = FlakyPersonalDataStore(failures=1000)
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        job = scheduler.get_job(closed.incident_id)

        for _ in range(100):
            if job.escalated:
                break
            scheduler.run_due_jobs(job.next_attempt_at)
            job = scheduler.get_job(closed.incident_id)

        assert job.escalated
        assert job.status == DeletionJobStatus.FAILED
        assert job.attempts == 49
        notifier.alert_operator.assert_called_once()

        escalations = manager.audit_logger.query(
            entity_type=AuditEntity.DELETION_JOB, action=AuditAction.DELETION_ESCALATED
        )
        assert len(escalations) == 1
        assert [j.job_id for j in scheduler.list_failed_jobs()] == [job.job_id]

    def test_escalated_job_not_retried(self, manager, notifier):
        data_store = FlakyPersonalDataStore(failures=1000)
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        due = closed.closed_at + timedelta(hours=24)

        scheduler.run_due_jobs(due)
        scheduler.run_due_jobs(due + timedelta(hours=48))
        assert scheduler.get_job(closed.incident_id).escalated

        assert scheduler.run_due_jobs(due + timedelta(hours=100)) == []


class TestMaintenance:

    def test_recent_audit_entries_kept(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        entries = len(manager.audit_logger.query())

        result = scheduler.run_maintenance(closed.closed_at + timedelta(days=30))

        assert result["audit_entries_purged"] == 0
        assert len(manager.audit_logger.query()) == entries

    def test_expired_audit_entries_and_closed_locks_released(self, manager, notifier):
        data_store = InMemoryPersonalDataStore()
        scheduler = make_scheduler(manager, notifier, data_store)
        closed = close_incident(manager, data_store)
        entries = len(manager.audit_logger.query())

        result = scheduler.run_maintenance(closed.closed_at + timedelta(days=91))

        assert result == {"audit_entries_purged": entries, "incident_locks_pruned": 1}
        assert manager.audit_logger.query() == []
        assert manager.audit_logger.verify_chain()
