"""PostgreSQL connection pooling for the durable stores.

The incident store, the deletion job queue and the personal-data store
share one threaded pool. Writes go through `transaction()`, which
commits on a clean exit and rolls back on any exception. A statement
timeout keeps a slow database from stalling the alert and routing paths.
"""
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from psycopg2 import pool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Pool and credential settings.

    Production credentials come from Secrets Manager; local runs read
    DB_* environment variables.
    """
    host: str
    port: int = 5432
    database: str = "rescuecore"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    statement_timeout_ms: int = 2000
    ssl_mode: str = "require"
    application_name: str = "rescuecore"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Environment variables:
            DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD
            DB_MIN_CONN / DB_MAX_CONN: Pool bounds (default 2 / 10)
            DB_STATEMENT_TIMEOUT_MS: Per-statement limit (default 2000)
            DB_SSL_MODE: libpq sslmode (default require)
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "rescuecore"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "2000")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Build config from a Secrets Manager JSON secret.

        Keys: host, port, dbname, username, password. Missing host,
        port and dbname fall back to the DB_* environment.
        """
        try:
            client = boto3.client("secretsmanager", region_name=region)
            secret = json.loads(client.get_secret_value(SecretId=secret_arn)["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        return cls(
            host=secret.get("host", os.getenv("DB_HOST", "localhost")),
            port=int(secret.get("port", os.getenv("DB_PORT", "5432"))),
            database=secret.get("dbname", os.getenv("DB_NAME", "rescuecore")),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
        )

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2.connect."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


class ConnectionManager:
    """Lazily created ThreadedConnectionPool.

    Background workers (alert dispatch, deletion runs) and request
    threads borrow from the same pool.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._initialized = False

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "max_connections": config.max_connections,
            }
        )

    def initialize(self) -> None:
        """Open the pool. Safe to call more than once."""
        if self._initialized:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                **self.config.connect_kwargs(),
            )
        except Exception as e:
            logger.error("CONNECTION_POOL_INIT_FAILED", extra={"error": str(e)})
            raise

        self._initialized = True
        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={"host": self.config.host, "database": self.config.database}
        )

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection; it is returned on exit."""
        if not self._initialized:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """Borrowed connection whose work commits or rolls back as a unit."""
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def health_check(self) -> Dict[str, Any]:
        """Readiness check result."""
        if not self._initialized:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error("DATABASE_HEALTH_CHECK_FAILED", extra={"error": str(e)})
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "host": self.config.host,
            "database": self.config.database,
        }

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            logger.info("CONNECTION_POOL_CLOSED")
        self._initialized = False


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager built from DB_* environment variables."""
    global _connection_manager

    if _connection_manager is None:
        _connection_manager = ConnectionManager(DatabaseConfig.from_env())

    return _connection_manager
