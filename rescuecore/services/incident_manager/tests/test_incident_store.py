"""Tests for the Postgres incident store."""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from rescuecore.shared.models import GPSLocation, Incident, IncidentStatus
from rescuecore.shared.utils import configure_pii_salt, hash_pii
from rescuecore.services.incident_manager import PostgresIncidentStore

NOW = datetime(2026, 4, 2, 11, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def incident():
    location = GPSLocation(35.68, 139.69, recorded_at=NOW)
    return Incident(
        incident_id="inc_pg",
        user_id="user_9",
        status=IncidentStatus.ROUTED,
        signal_id="sig_9",
        created_at=NOW,
        updated_at=NOW,
        current_location=location,
        location_history=[location],
        version=3,
    )


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def store(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    manager = MagicMock()
    manager.get_connection.return_value.__enter__.return_value = conn
    manager.transaction.return_value.__enter__.return_value = conn
    return PostgresIncidentStore(manager)


class TestPostgresIncidentStore:

    def test_get_parses_document(self, store, cursor, incident):
        cursor.fetchall.return_value = [(json.dumps(incident.to_dict()),)]

        loaded = store.get("inc_pg")

        assert loaded.to_dict() == incident.to_dict()
        assert cursor.execute.call_args[0][1] == ("inc_pg", 1)

    def test_get_missing(self, store, cursor):
        cursor.fetchall.return_value = []

        assert store.get("inc_none") is None
        assert store.exists("inc_none") is False

    def test_user_id_is_hashed(self, store, incident):
        params = store._entity_to_params(incident)

        assert params["user_id_hash"] == hash_pii("user_9")
        assert "user_9" not in params.values()

    def test_compare_and_set_guards_version(self, store, cursor, incident):
        cursor.rowcount = 1
        incident.version = 4

        assert store.compare_and_set(incident, 3) is True

        query, params = cursor.execute.call_args[0]
        assert query.endswith("WHERE id = %s AND version = %s")
        assert params[-2:] == ("inc_pg", 3)
        assert params[1] == 4

    def test_compare_and_set_stale(self, store, cursor, incident):
        cursor.rowcount = 0

        assert store.compare_and_set(incident, 2) is False

    def test_list_active_excludes_closed(self, store, cursor):
        cursor.fetchall.return_value = []

        store.list_active()

        query, params = cursor.execute.call_args[0]
        assert "status <> %s" in query
        assert params[0] == "closed"
