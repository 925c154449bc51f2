"""Tests for base repository pattern."""
import pytest
from unittest.mock import MagicMock
from dataclasses import dataclass
from typing import Any, Dict

from rescuecore.shared.utils import configure_pii_salt
from rescuecore.shared.database.connection import ConnectionManager, DatabaseConfig
from rescuecore.shared.database.repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@dataclass
class Unit:
    id: str
    name: str
    value: int


class UnitRepository(BaseRepository[Unit]):
    select_columns = "id, name, value"

    def _row_to_entity(self, row: tuple) -> Unit:
        return Unit(id=row[0], name=row[1], value=row[2])

    def _entity_to_params(self, entity: Unit) -> Dict[str, Any]:
        return {"id": entity.id, "name": entity.name, "value": entity.value}


@pytest.fixture
def manager():
    manager = ConnectionManager(DatabaseConfig(host="localhost"))
    manager._pool = MagicMock()
    manager._initialized = True
    return manager


@pytest.fixture
def cursor(manager):
    conn = manager._pool.getconn.return_value
    return conn.cursor.return_value.__enter__.return_value


@pytest.fixture
def repository(manager):
    return UnitRepository(manager, "units")


class TestRepositoryExceptions:

    def test_not_found_error(self):
        assert isinstance(NotFoundError("missing"), RepositoryError)

    def test_duplicate_error(self):
        assert isinstance(DuplicateError("dup"), RepositoryError)


class TestBaseRepository:

    def test_find_by_id(self, repository, cursor):
        cursor.fetchall.return_value = [("u1", "alpha", 3)]

        unit = repository.find_by_id("u1")

        assert unit == Unit("u1", "alpha", 3)
        query, params = cursor.execute.call_args.args
        assert "SELECT id, name, value FROM units" in query
        assert "WHERE id = %s" in query
        assert params == ("u1", 1)

    def test_find_by_id_missing(self, repository, cursor):
        cursor.fetchall.return_value = []
        assert repository.find_by_id("nope") is None

    def test_find_where_orders_and_limits(self, repository, cursor):
        cursor.fetchall.return_value = [("u1", "a", 1), ("u2", "b", 2)]

        units = repository.find_where("value > %s", (0,), order_by="value", limit=5)

        assert [u.id for u in units] == ["u1", "u2"]
        query, params = cursor.execute.call_args.args
        assert "ORDER BY value LIMIT %s" in query
        assert params == (0, 5)

    def test_insert(self, repository, cursor, manager):
        cursor.rowcount = 1

        repository.insert(Unit("u1", "alpha", 3))

        query = cursor.execute.call_args.args[0]
        assert "ON CONFLICT (id) DO NOTHING" in query
        manager._pool.getconn.return_value.commit.assert_called_once()

    def test_insert_duplicate_raises_and_rolls_back(self, repository, cursor, manager):
        cursor.rowcount = 0

        with pytest.raises(DuplicateError):
            repository.insert(Unit("u1", "alpha", 3))

        manager._pool.getconn.return_value.rollback.assert_called_once()

    def test_save_upserts(self, repository, cursor):
        repository.save(Unit("u1", "alpha", 4))

        query, values = cursor.execute.call_args.args
        assert "ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name" in query
        assert values == ["u1", "alpha", 4]

    def test_delete(self, repository, cursor):
        cursor.rowcount = 1
        assert repository.delete("u1") is True

        cursor.rowcount = 0
        assert repository.delete("u1") is False

    def test_count(self, repository, cursor):
        cursor.fetchone.return_value = (12,)
        assert repository.count() == 12
