"""Base repository pattern for database operations.

Provides common CRUD operations for the durable stores (incidents and
deletion jobs). Entities are stored as a JSON document next to a few
indexed columns.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement entity-specific conversion while inheriting:
    - Connection management
    - Error handling
    - Logging patterns
    """

    # Column list used by every SELECT; _row_to_entity relies on its order
    select_columns: str = "*"

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
        """
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity."""
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to a column name -> value mapping."""
        pass

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID.

        Args:
            entity_id: Entity identifier

        Returns:
            Entity if found, None otherwise
        """
        rows = self.find_where("id = %s", (entity_id,), limit=1)
        return rows[0] if rows else None

    def find_where(
        self,
        clause: str,
        params: Sequence[Any] = (),
        order_by: str = "created_at",
        limit: int = 1000,
    ) -> List[T]:
        """Find entities matching a SQL WHERE clause.

        Args:
            clause: WHERE clause with %s placeholders
            params: Placeholder values
            order_by: ORDER BY expression
            limit: Maximum entities to return

        Returns:
            List of entities
        """
        query = (
            f"SELECT {self.select_columns} FROM {self.table_name} "
            f"WHERE {clause} ORDER BY {order_by} LIMIT %s"
        )
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (*params, limit))
                rows = cur.fetchall()

                return [self._row_to_entity(row) for row in rows]

    def insert(self, entity: T) -> T:
        """Insert a new entity.

        Raises:
            DuplicateError: If an entity with the same id exists
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))

        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) ON CONFLICT (id) DO NOTHING"
        )

        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, list(params.values()))
                if cur.rowcount == 0:
                    logger.warning(
                        "REPOSITORY_DUPLICATE_INSERT",
                        extra={"table_name": self.table_name, "id": params.get("id")}
                    )
                    raise DuplicateError(
                        f"{self.table_name} already contains id {params.get('id')}"
                    )

        return entity

    def save(self, entity: T) -> T:
        """Save entity (insert or update).

        Args:
            entity: Entity to save

        Returns:
            Saved entity
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        values = list(params.values())
        placeholders = ["%s"] * len(values)

        update_clause = ", ".join(f"{col} = EXCLUDED.{col}" for col in columns if col != "id")

        query = f"""
            INSERT INTO {self.table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT (id) DO UPDATE SET {update_clause}
        """

        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, values)

        return entity

    def delete(self, entity_id: str) -> bool:
        """Delete entity by ID.

        Returns:
            True if deleted, False if not found
        """
        with self.connection_manager.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table_name} WHERE id = %s",
                    (entity_id,)
                )
                return cur.rowcount > 0

    def count(self) -> int:
        """Count total entities."""
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.table_name}")
                row = cur.fetchone()

                return row[0] if row else 0
