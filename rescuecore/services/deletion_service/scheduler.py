"""Privacy Deletion Scheduler.

Closing an incident schedules exactly one DeletionJob for closure + 24h.
When due, the job purges the incident's personal data and stores its
anonymized record as one unit. A failed run is retried hourly; once the
48-hour window is spent the job is left `failed`, escalated to an
operator and excluded from further automatic runs.
"""
import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from rescuecore.shared.database import DuplicateError
from rescuecore.shared.errors import DeletionFailed
from rescuecore.shared.models import (
    REDACTED,
    DeletionJob,
    DeletionJobStatus,
    PersonalDataCategory,
    utcnow,
)
from rescuecore.shared.utils import hash_pii
from rescuecore.services.audit_service import AuditAction, AuditEntity, AuditLogger
from .anonymizer import anonymize_incident_data
from .config import DeletionConfig
from .job_store import DeletionJobStore
from .notifier import DeletionNotifier
from .personal_data import PersonalDataStore

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "deletion_scheduler"


def _new_job_id() -> str:
    return f"del_{uuid.uuid4().hex[:16]}"


class DeletionScheduler:
    """Owns DeletionJob state from scheduling to a terminal status."""

    def __init__(
        self,
        incident_manager,
        job_store: DeletionJobStore,
        personal_data_store: PersonalDataStore,
        notifier: Optional[DeletionNotifier] = None,
        audit_logger: Optional[AuditLogger] = None,
        config: Optional[DeletionConfig] = None,
        id_factory: Callable[[], str] = _new_job_id,
    ):
        self.incident_manager = incident_manager
        self.job_store = job_store
        self.personal_data_store = personal_data_store
        self.config = config or DeletionConfig()
        self.notifier = notifier or DeletionNotifier(self.config)
        self.audit_logger = audit_logger or incident_manager.audit_logger
        self.id_factory = id_factory

        self._schedule_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            "DELETION_SCHEDULER_INITIALIZED",
            extra={
                "deletion_delay_hours": self.config.deletion_delay.total_seconds() / 3600,
                "escalation_window_hours": self.config.escalation_window.total_seconds() / 3600,
            }
        )

    def schedule_data_deletion(
        self,
        incident_id: str,
        user_id: str,
        closed_at: datetime,
    ) -> DeletionJob:
        """Create the incident's deletion job for `closed_at` + delay.

        Idempotent: a second call returns the existing job unchanged.
        """
        with self._schedule_lock:
            existing = self.job_store.get_by_incident(incident_id)
            if existing is not None:
                logger.info(
                    "DELETION_ALREADY_SCHEDULED",
                    extra={"incident_id": incident_id, "job_id": existing.job_id}
                )
                return existing

            job = DeletionJob(
                job_id=self.id_factory(),
                incident_id=incident_id,
                user_id=user_id,
                scheduled_for=closed_at + self.config.deletion_delay,
            )
            try:
                self.job_store.insert(job)
            except DuplicateError:
                return self.job_store.get_by_incident(incident_id)

        self.audit_logger.log(
            action=AuditAction.DELETION_SCHEDULED,
            entity_type=AuditEntity.DELETION_JOB,
            entity_id=job.job_id,
            actor_id=SCHEDULER_ACTOR,
            details={"incident_id": incident_id, "scheduled_for": job.scheduled_for.isoformat()},
        )
        logger.info(
            "DELETION_SCHEDULED",
            extra={
                "incident_id": incident_id,
                "job_id": job.job_id,
                "user_id_hash": hash_pii(user_id),
                "scheduled_for": job.scheduled_for.isoformat(),
            }
        )
        return job

    def execute_data_deletion(self, incident_id: str) -> Dict[str, int]:
        """Purge personal data and persist the anonymized record atomically.

        Returns:
            Deleted item count per personal data category

        Raises:
            DeletionFailed: Nothing was applied
        """
        snapshot = None
        try:
            incident = self.incident_manager.get_incident(incident_id)
            record = anonymize_incident_data(incident)
            if incident.personal_data_redacted:
                # Resumed run; keep the record computed before redaction.
                record = self.personal_data_store.get_anonymized(record.record_id) or record

            with self.personal_data_store.transaction():
                counts = {
                    category.value: self.personal_data_store.purge(incident_id, category)
                    for category in (
                        PersonalDataCategory.VOICE_RECORDINGS,
                        PersonalDataCategory.SENSOR_DATA,
                    )
                }
                self.personal_data_store.save_anonymized(record)
                redacted, snapshot = self.incident_manager.redact_personal_data(incident_id)
                counts.update(redacted)
        except Exception as e:
            if snapshot is not None:
                self.incident_manager.restore_incident(snapshot)
            logger.error(
                "DATA_DELETION_FAILED",
                extra={"incident_id": incident_id, "error": str(e)}
            )
            raise DeletionFailed(f"Deletion for incident {incident_id} failed: {e}") from e

        logger.info(
            "DATA_DELETION_EXECUTED",
            extra={"incident_id": incident_id, "deleted_counts": counts}
        )
        return counts

    def anonymize_incident_data(self, incident_id: str):
        """Anonymized record for an incident, without deleting anything."""
        return anonymize_incident_data(self.incident_manager.get_incident(incident_id))

    def run_due_jobs(self, now: Optional[datetime] = None) -> List[DeletionJob]:
        """Run every job due at `now`.

        Confirmations that failed on an earlier pass are retried; a job
        completed in this pass gets its next confirmation try on the
        following pass.

        Returns:
            The jobs as they stand after this pass
        """
        now = now or utcnow()
        with self._run_lock:
            processed = [self._run_job(job, now) for job in self.job_store.list_due(now)]
            ran_this_pass = {job.job_id for job in processed}
            for job in self.job_store.list_unconfirmed():
                if job.job_id not in ran_this_pass:
                    self._confirm(job)
        return processed

    def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Enforce audit retention and release locks of closed incidents."""
        now = now or utcnow()
        return {
            "audit_entries_purged": self.audit_logger.purge_expired(now),
            "incident_locks_pruned": self.incident_manager.prune_locks(),
        }

    def list_failed_jobs(self) -> List[DeletionJob]:
        """Escalated jobs awaiting an operator."""
        return self.job_store.list_failed()

    def get_job(self, incident_id: str) -> Optional[DeletionJob]:
        return self.job_store.get_by_incident(incident_id)

    def start(self) -> None:
        """Run `run_due_jobs` on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="deletion-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("DELETION_SCHEDULER_STARTED")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("DELETION_SCHEDULER_STOPPED")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_due_jobs()
                self.run_maintenance()
            except Exception as e:
                logger.error("DELETION_RUN_FAILED", extra={"error": str(e)})
            self._stop_event.wait(self.config.poll_interval_seconds)

    def _run_job(self, job: DeletionJob, now: datetime) -> DeletionJob:
        job.status = DeletionJobStatus.IN_PROGRESS
        job.attempts += 1
        self.job_store.save(job)

        try:
            counts = self.execute_data_deletion(job.incident_id)
        except DeletionFailed as e:
            return self._record_failure(job, now, str(e))

        job.deleted_counts = counts
        job.status = DeletionJobStatus.COMPLETED
        job.completed_at = now
        job.next_attempt_at = None
        job.last_error = None
        job.status_history.append(DeletionJobStatus.COMPLETED.value)
        self.job_store.save(job)

        logger.info(
            "DELETION_JOB_COMPLETED",
            extra={
                "job_id": job.job_id,
                "incident_id": job.incident_id,
                "attempts": job.attempts,
                "deleted_counts": counts,
            }
        )
        return self._confirm(job)

    def _record_failure(self, job: DeletionJob, now: datetime, error: str) -> DeletionJob:
        job.status = DeletionJobStatus.FAILED
        job.last_error = error
        job.status_history.append(DeletionJobStatus.FAILED.value)

        deadline = job.scheduled_for + self.config.escalation_window
        next_attempt = now + self.config.retry_interval
        if next_attempt <= deadline:
            job.next_attempt_at = next_attempt
            self.job_store.save(job)
            logger.warning(
                "DELETION_JOB_RETRY_SCHEDULED",
                extra={
                    "job_id": job.job_id,
                    "incident_id": job.incident_id,
                    "attempts": job.attempts,
                    "next_attempt_at": next_attempt.isoformat(),
                    "error": error,
                }
            )
            return job

        job.escalated = True
        job.next_attempt_at = None
        self.job_store.save(job)

        self.audit_logger.log(
            action=AuditAction.DELETION_ESCALATED,
            entity_type=AuditEntity.DELETION_JOB,
            entity_id=job.job_id,
            actor_id=SCHEDULER_ACTOR,
            details={
                "incident_id": job.incident_id,
                "attempts": job.attempts,
                "last_error": error,
            },
        )
        logger.critical(
            "DELETION_JOB_ESCALATED",
            extra={
                "job_id": job.job_id,
                "incident_id": job.incident_id,
                "attempts": job.attempts,
                "error": error,
                "action": "MANUAL_DELETION_REQUIRED",
            }
        )
        self.notifier.alert_operator(job)
        return job

    def _confirm(self, job: DeletionJob) -> DeletionJob:
        if job.confirmation_sent:
            return job
        if self.notifier.send_confirmation(job):
            job.confirmation_sent = True
            job.user_id = REDACTED
            self.job_store.save(job)
        return job
