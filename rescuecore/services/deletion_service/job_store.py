"""DeletionJob persistence.

Jobs must survive a restart: a scheduled deletion is never lost and an
interrupted run (status `in_progress`) is picked up again.
"""
import copy
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from rescuecore.shared.database import BaseRepository, ConnectionManager, DuplicateError
from rescuecore.shared.models import DeletionJob, DeletionJobStatus


class DeletionJobStore(ABC):
    """Read/write contract for the deletion job queue."""

    @abstractmethod
    def insert(self, job: DeletionJob) -> None:
        """Insert a new job. Raises DuplicateError if the incident already has one."""

    @abstractmethod
    def save(self, job: DeletionJob) -> None:
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[DeletionJob]:
        pass

    @abstractmethod
    def get_by_incident(self, incident_id: str) -> Optional[DeletionJob]:
        pass

    @abstractmethod
    def list_due(self, now: datetime) -> List[DeletionJob]:
        """Non-terminal jobs whose next attempt is at or before `now`."""

    @abstractmethod
    def list_failed(self) -> List[DeletionJob]:
        """Escalated jobs awaiting manual intervention."""

    @abstractmethod
    def list_unconfirmed(self) -> List[DeletionJob]:
        """Completed jobs whose user confirmation has not gone out."""


class InMemoryDeletionJobStore(DeletionJobStore):
    """Dict-backed job store for development and tests."""

    def __init__(self):
        self._jobs: Dict[str, DeletionJob] = {}
        self._lock = threading.Lock()

    def insert(self, job: DeletionJob) -> None:
        with self._lock:
            if any(j.incident_id == job.incident_id for j in self._jobs.values()):
                raise DuplicateError(f"Incident {job.incident_id} already has a deletion job")
            self._jobs[job.job_id] = copy.deepcopy(job)

    def save(self, job: DeletionJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = copy.deepcopy(job)

    def get(self, job_id: str) -> Optional[DeletionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def get_by_incident(self, incident_id: str) -> Optional[DeletionJob]:
        with self._lock:
            for job in self._jobs.values():
                if job.incident_id == incident_id:
                    return copy.deepcopy(job)
            return None

    def list_due(self, now: datetime) -> List[DeletionJob]:
        with self._lock:
            due = [copy.deepcopy(j) for j in self._jobs.values() if j.is_due(now)]
        return sorted(due, key=lambda j: j.next_attempt_at or j.scheduled_for)

    def list_failed(self) -> List[DeletionJob]:
        with self._lock:
            return [
                copy.deepcopy(j) for j in self._jobs.values()
                if j.status == DeletionJobStatus.FAILED and j.escalated
            ]

    def list_unconfirmed(self) -> List[DeletionJob]:
        with self._lock:
            return [
                copy.deepcopy(j) for j in self._jobs.values()
                if j.status == DeletionJobStatus.COMPLETED and not j.confirmation_sent
            ]


class PostgresDeletionJobStore(BaseRepository[DeletionJob], DeletionJobStore):
    """Durable job store.

    Table layout:
        deletion_jobs(id TEXT PRIMARY KEY, incident_id TEXT UNIQUE,
                      status TEXT, escalated BOOLEAN,
                      confirmation_sent BOOLEAN,
                      next_attempt_at TIMESTAMPTZ, document JSONB,
                      created_at TIMESTAMPTZ)
    """

    select_columns = "document"

    def __init__(self, connection_manager: ConnectionManager, table_name: str = "deletion_jobs"):
        super().__init__(connection_manager, table_name)

    def _row_to_entity(self, row: tuple) -> DeletionJob:
        document = row[0]
        if isinstance(document, str):
            document = json.loads(document)
        return DeletionJob.from_dict(document)

    def _entity_to_params(self, entity: DeletionJob) -> Dict[str, Any]:
        return {
            "id": entity.job_id,
            "incident_id": entity.incident_id,
            "status": entity.status.value,
            "escalated": entity.escalated,
            "confirmation_sent": entity.confirmation_sent,
            "next_attempt_at": entity.next_attempt_at,
            "document": json.dumps(entity.to_dict()),
            "created_at": entity.scheduled_for,
        }

    def insert(self, job: DeletionJob) -> None:
        if self.get_by_incident(job.incident_id) is not None:
            raise DuplicateError(f"Incident {job.incident_id} already has a deletion job")
        super().insert(job)

    def get(self, job_id: str) -> Optional[DeletionJob]:
        return self.find_by_id(job_id)

    def get_by_incident(self, incident_id: str) -> Optional[DeletionJob]:
        rows = self.find_where("incident_id = %s", (incident_id,), limit=1)
        return rows[0] if rows else None

    def list_due(self, now: datetime) -> List[DeletionJob]:
        return self.find_where(
            "(status = %s OR (status IN (%s, %s) AND NOT escalated AND next_attempt_at <= %s))",
            (
                DeletionJobStatus.IN_PROGRESS.value,
                DeletionJobStatus.SCHEDULED.value,
                DeletionJobStatus.FAILED.value,
                now,
            ),
            order_by="next_attempt_at",
        )

    def list_failed(self) -> List[DeletionJob]:
        return self.find_where(
            "status = %s AND escalated", (DeletionJobStatus.FAILED.value,)
        )

    def list_unconfirmed(self) -> List[DeletionJob]:
        return self.find_where(
            "status = %s AND NOT confirmation_sent", (DeletionJobStatus.COMPLETED.value,)
        )
