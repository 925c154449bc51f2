"""Incident stores.

The store is the active-incident registry. It is injected into the
IncidentManager; nothing else writes to it. Reads always return copies.
"""
import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from rescuecore.shared.database import (
    BaseRepository,
    ConnectionManager,
    DuplicateError,
)
from rescuecore.shared.models import Incident, IncidentStatus
from rescuecore.shared.utils import hash_pii

logger = logging.getLogger(__name__)


class IncidentStore(ABC):
    """Read/write contract for incident persistence."""

    @abstractmethod
    def insert(self, incident: Incident) -> None:
        """Insert a new incident. Raises DuplicateError on id collision."""

    @abstractmethod
    def get(self, incident_id: str) -> Optional[Incident]:
        """Return a copy of the incident, or None."""

    @abstractmethod
    def exists(self, incident_id: str) -> bool:
        pass

    @abstractmethod
    def compare_and_set(self, incident: Incident, expected_version: int) -> bool:
        """Persist `incident` only if the stored version is `expected_version`."""

    @abstractmethod
    def list_active(self) -> List[Incident]:
        """All incidents that are not closed."""


class InMemoryIncidentStore(IncidentStore):
    """Thread-safe dict-backed store for development and tests."""

    def __init__(self):
        self._incidents: Dict[str, Incident] = {}
        self._lock = threading.Lock()

    def insert(self, incident: Incident) -> None:
        with self._lock:
            if incident.incident_id in self._incidents:
                raise DuplicateError(f"Incident {incident.incident_id} already exists")
            self._incidents[incident.incident_id] = copy.deepcopy(incident)

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            stored = self._incidents.get(incident_id)
            return copy.deepcopy(stored) if stored else None

    def exists(self, incident_id: str) -> bool:
        with self._lock:
            return incident_id in self._incidents

    def compare_and_set(self, incident: Incident, expected_version: int) -> bool:
        with self._lock:
            stored = self._incidents.get(incident.incident_id)
            if stored is None or stored.version != expected_version:
                return False
            self._incidents[incident.incident_id] = copy.deepcopy(incident)
            return True

    def list_active(self) -> List[Incident]:
        with self._lock:
            return [
                copy.deepcopy(i) for i in self._incidents.values()
                if i.status != IncidentStatus.CLOSED
            ]


class PostgresIncidentStore(BaseRepository[Incident], IncidentStore):
    """Durable incident store.

    Table layout:
        incidents(id TEXT PRIMARY KEY, user_id_hash TEXT, status TEXT,
                  version INTEGER, document JSONB,
                  created_at TIMESTAMPTZ, updated_at TIMESTAMPTZ)
    """

    select_columns = "document"

    def __init__(self, connection_manager: ConnectionManager, table_name: str = "incidents"):
        super().__init__(connection_manager, table_name)

    def _row_to_entity(self, row: tuple) -> Incident:
        document = row[0]
        if isinstance(document, str):
            document = json.loads(document)
        return Incident.from_dict(document)

    def _entity_to_params(self, entity: Incident) -> Dict[str, Any]:
        return {
            "id": entity.incident_id,
            "user_id_hash": hash_pii(entity.user_id),
            "status": entity.status.value,
            "version": entity.version,
            "document": json.dumps(entity.to_dict()),
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }

    def get(self, incident_id: str) -> Optional[Incident]:
        return self.find_by_id(incident_id)

    def exists(self, incident_id: str) -> bool:
        return self.find_by_id(incident_id) is not None

    def compare_and_set(self, incident: Incident, expected_version: int) -> bool:
        params = self._entity_to_params(incident)
        query = (
            f"UPDATE {self.table_name} SET status = %s, version = %s, "
            f"document = %s, updated_at = %s, user_id_hash = %s "
            f"WHERE id = %s AND version = %s"
        )
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (
                    params["status"],
                    params["version"],
                    params["document"],
                    params["updated_at"],
                    params["user_id_hash"],
                    params["id"],
                    expected_version,
                ))
                updated = cur.rowcount == 1

        if not updated:
            logger.warning(
                "INCIDENT_STALE_WRITE_REJECTED",
                extra={
                    "incident_id": incident.incident_id,
                    "expected_version": expected_version,
                }
            )
        return updated

    def list_active(self) -> List[Incident]:
        return self.find_where("status <> %s", (IncidentStatus.CLOSED.value,))
