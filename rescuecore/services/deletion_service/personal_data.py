"""Personal data held outside the incident document.

Voice recordings and raw sensor readings are keyed by incident id and
purged by the deletion scheduler. The anonymized-incident table lives
here too so the purge and the retained record commit together.
"""
import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from rescuecore.shared.database import ConnectionManager
from rescuecore.shared.models import AnonymizedIncident, PersonalDataCategory

logger = logging.getLogger(__name__)

# Categories stored in this store; the rest live on the Incident
STORED_CATEGORIES = (
    PersonalDataCategory.VOICE_RECORDINGS,
    PersonalDataCategory.SENSOR_DATA,
)


class PersonalDataStore(ABC):
    """Purge and anonymized-retention contract."""

    @abstractmethod
    def add(self, incident_id: str, category: PersonalDataCategory, item: Any) -> None:
        pass

    @abstractmethod
    def count(self, incident_id: str, category: PersonalDataCategory) -> int:
        pass

    @abstractmethod
    def purge(self, incident_id: str, category: PersonalDataCategory) -> int:
        """Delete all items of `category` for the incident. Returns the count."""

    @abstractmethod
    def save_anonymized(self, record: AnonymizedIncident) -> None:
        """Insert or replace by record id."""

    @abstractmethod
    def get_anonymized(self, record_id: str) -> Optional[AnonymizedIncident]:
        pass

    @abstractmethod
    def transaction(self):
        """Context manager: everything inside commits or nothing does."""


def _check_category(category: PersonalDataCategory) -> None:
    if category not in STORED_CATEGORIES:
        raise ValueError(f"{category.value} is not held by the personal data store")


class InMemoryPersonalDataStore(PersonalDataStore):
    """Dict-backed store; `transaction` restores a snapshot on error."""

    def __init__(self):
        self._items: Dict[PersonalDataCategory, Dict[str, List[Any]]] = {
            category: {} for category in STORED_CATEGORIES
        }
        self._anonymized: Dict[str, AnonymizedIncident] = {}
        self._lock = threading.RLock()

    def add(self, incident_id: str, category: PersonalDataCategory, item: Any) -> None:
        _check_category(category)
        with self._lock:
            self._items[category].setdefault(incident_id, []).append(item)

    def count(self, incident_id: str, category: PersonalDataCategory) -> int:
        _check_category(category)
        with self._lock:
            return len(self._items[category].get(incident_id, []))

    def purge(self, incident_id: str, category: PersonalDataCategory) -> int:
        _check_category(category)
        with self._lock:
            return len(self._items[category].pop(incident_id, []))

    def save_anonymized(self, record: AnonymizedIncident) -> None:
        with self._lock:
            self._anonymized[record.record_id] = record

    def get_anonymized(self, record_id: str) -> Optional[AnonymizedIncident]:
        with self._lock:
            return self._anonymized.get(record_id)

    def anonymized_records(self) -> List[AnonymizedIncident]:
        with self._lock:
            return list(self._anonymized.values())

    @contextmanager
    def transaction(self):
        with self._lock:
            items = copy.deepcopy(self._items)
            anonymized = dict(self._anonymized)
            try:
                yield self
            except Exception:
                self._items = items
                self._anonymized = anonymized
                logger.warning("PERSONAL_DATA_TRANSACTION_ROLLED_BACK")
                raise


class PostgresPersonalDataStore(PersonalDataStore):
    """Postgres-backed store.

    Table layout:
        voice_recordings(id SERIAL, incident_id TEXT, payload JSONB, created_at TIMESTAMPTZ)
        sensor_readings(id SERIAL, incident_id TEXT, payload JSONB, created_at TIMESTAMPTZ)
        anonymized_incidents(id TEXT PRIMARY KEY, document JSONB, created_at TIMESTAMPTZ)

    Calls made inside `transaction()` on the same thread share one
    connection and commit together.
    """

    TABLES = {
        PersonalDataCategory.VOICE_RECORDINGS: "voice_recordings",
        PersonalDataCategory.SENSOR_DATA: "sensor_readings",
    }
    ANONYMIZED_TABLE = "anonymized_incidents"

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager
        self._local = threading.local()

    @contextmanager
    def transaction(self):
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        with self.connection_manager.transaction() as conn:
            self._local.conn = conn
            try:
                yield self
            finally:
                self._local.conn = None

    @contextmanager
    def _cursor(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with conn.cursor() as cur:
                yield cur
            return
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                yield cur

    def add(self, incident_id: str, category: PersonalDataCategory, item: Any) -> None:
        _check_category(category)
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO {self.TABLES[category]} (incident_id, payload, created_at) "
                f"VALUES (%s, %s, now())",
                (incident_id, json.dumps(item)),
            )

    def count(self, incident_id: str, category: PersonalDataCategory) -> int:
        _check_category(category)
        with self._cursor() as cur:
            cur.execute(
                f"SELECT COUNT(*) FROM {self.TABLES[category]} WHERE incident_id = %s",
                (incident_id,),
            )
            row = cur.fetchone()
            return row[0] if row else 0

    def purge(self, incident_id: str, category: PersonalDataCategory) -> int:
        _check_category(category)
        with self._cursor() as cur:
            cur.execute(
                f"DELETE FROM {self.TABLES[category]} WHERE incident_id = %s",
                (incident_id,),
            )
            return cur.rowcount

    def save_anonymized(self, record: AnonymizedIncident) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO {self.ANONYMIZED_TABLE} (id, document, created_at) "
                f"VALUES (%s, %s, %s) "
                f"ON CONFLICT (id) DO UPDATE SET document = EXCLUDED.document",
                (record.record_id, json.dumps(record.to_dict()), record.timestamp),
            )

    def get_anonymized(self, record_id: str) -> Optional[AnonymizedIncident]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT document FROM {self.ANONYMIZED_TABLE} WHERE id = %s",
                (record_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        document = row[0]
        if isinstance(document, str):
            document = json.loads(document)
        return AnonymizedIncident.from_dict(document)
