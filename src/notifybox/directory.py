#!/usr/bin/env python3
"""User directory: Postgres-backed document store of user projections."""

import asyncio
from typing import Any, Dict, Optional

from loguru import logger
import psycopg2
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from notifybox.config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_POOL_MAX_SIZE,
    DEFAULT_POOL_MIN_SIZE,
    DEFAULT_QUERY_TIMEOUT,
)
from notifybox.errors import StoreError
from notifybox.models import USER_FIELDS, User


class UserDirectory:
    """Repository for user documents keyed by their external identifier."""

    # SQL queries as class constants
    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS user_directory (
            external_id TEXT PRIMARY KEY,
            doc JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """

    FIND_BY_EXTERNAL_ID_SQL = """
        SELECT external_id, doc
        FROM user_directory
        WHERE external_id = %s;
    """

    # Merging with || overwrites only the keys present in the incoming document
    UPSERT_SQL = """
        INSERT INTO user_directory (external_id, doc)
        VALUES (%s, %s)
        ON CONFLICT (external_id) DO UPDATE
        SET doc = user_directory.doc || EXCLUDED.doc,
            updated_at = now();
    """

    CHECK_CONNECTION_SQL = "SELECT 1;"

    SET_TIMEOUT_SQL = "SET statement_timeout = %s;"

    def _validate_dsn(self, dsn: str) -> None:
        """
        Validate DSN is not empty.

        Args:
            dsn: PostgreSQL connection string

        Raises:
            ValueError: If DSN is empty or whitespace only
        """
        if not dsn or not dsn.strip():
            raise ValueError("DSN cannot be empty")

    def _validate_parameters(
        self,
        connect_timeout: int,
        query_timeout: int,
        min_size: int,
        max_size: int,
    ) -> None:
        """
        Validate all initialization parameters.

        Raises:
            ValueError: If any parameter is invalid
        """
        if connect_timeout < 0:
            raise ValueError("connect_timeout must be non-negative")
        if query_timeout < 0:
            raise ValueError("query_timeout must be non-negative")
        if min_size < 1:
            raise ValueError("min_size must be at least 1")
        if max_size < min_size:
            raise ValueError("max_size must be greater than or equal to min_size")

    def _add_connect_timeout_to_dsn(self, dsn: str, timeout: int) -> str:
        """
        Add connect_timeout to DSN if not present.

        Args:
            dsn: PostgreSQL connection string
            timeout: Connection timeout in seconds

        Returns:
            DSN with connect_timeout parameter added if needed
        """
        if "connect_timeout" not in dsn:
            separator = "&" if "?" in dsn else " "
            return f"{dsn}{separator}connect_timeout={timeout}"
        return dsn

    def __init__(
        self,
        dsn: str,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
        query_timeout: int = DEFAULT_QUERY_TIMEOUT,
        min_size: int = DEFAULT_POOL_MIN_SIZE,
        max_size: int = DEFAULT_POOL_MAX_SIZE,
    ) -> None:
        """
        Initialize UserDirectory.

        Args:
            dsn: PostgreSQL connection string
            connect_timeout: Connection timeout in seconds (default: 10)
            query_timeout: Query timeout in seconds (default: 30)
            min_size: Minimum pooled connections (default: 1)
            max_size: Maximum pooled connections (default: 10)

        Raises:
            ValueError: If DSN or any parameter is invalid
            StoreError: If the connection pool cannot be established
        """
        self._validate_dsn(dsn)
        self._validate_parameters(connect_timeout, query_timeout, min_size, max_size)

        self.dsn: str = dsn.strip()
        self.query_timeout: int = query_timeout

        dsn_with_timeout = self._add_connect_timeout_to_dsn(self.dsn, connect_timeout)
        try:
            self.pool: Any = ThreadedConnectionPool(min_size, max_size, dsn_with_timeout)
        except psycopg2.Error as e:
            logger.error("Failed to connect to user directory: {}", e)
            raise StoreError(f"Failed to connect to user directory: {e}") from e

    def _set_query_timeout(self, cur: Any) -> None:
        """
        Set query timeout for current cursor.

        Args:
            cur: Database cursor
        """
        timeout_ms = self.query_timeout * 1000  # Convert to milliseconds
        cur.execute(self.SET_TIMEOUT_SQL, (timeout_ms,))

    def _run(self, operation: Any) -> Any:
        """
        Run operation(conn) on a pooled connection inside one transaction.

        Broken connections are discarded from the pool instead of being reused.

        Raises:
            StoreError: On any psycopg2 error
        """
        try:
            conn = self.pool.getconn()
        except psycopg2.Error as e:
            # PoolError when exhausted, OperationalError when a new connection fails
            raise StoreError(f"Failed to get directory connection: {e}") from e

        broken = False
        try:
            result = operation(conn)
            conn.commit()
            return result
        except psycopg2.Error as e:
            broken = isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError))
            if not broken:
                conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            self.pool.putconn(conn, close=broken)

    def ensure_schema(self) -> None:
        """Create the user_directory table if it does not exist."""

        def _create(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(self.CREATE_TABLE_SQL)

        self._run(_create)
        logger.info("User directory schema ready")

    def is_connected(self) -> bool:
        """
        Check if the directory is reachable.

        Returns:
            True if a trivial query succeeds, False otherwise
        """

        def _ping(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(self.CHECK_CONNECTION_SQL)

        try:
            self._run(_ping)
            return True
        except StoreError:
            return False

    def find_by_external_id(self, external_id: str) -> Optional[User]:
        """
        Fetch a user by external identifier.

        Args:
            external_id: Stable external user identifier

        Returns:
            User if found, None otherwise

        Raises:
            StoreError: If the read fails
        """

        def _find(conn: Any) -> Optional[User]:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._set_query_timeout(cur)
                cur.execute(self.FIND_BY_EXTERNAL_ID_SQL, (external_id,))
                row = cur.fetchone()
            if row:
                return User.from_document(row["external_id"], row["doc"] or {})
            return None

        return self._run(_find)

    def upsert_by_external_id(self, external_id: str, fields: Dict[str, Any]) -> None:
        """
        Insert the user if absent, else overwrite only the given fields.

        Args:
            external_id: Stable external user identifier
            fields: Subset of username, email and role

        Raises:
            ValueError: If external_id is empty or fields has unknown keys
            StoreError: If the upsert fails
        """
        if not external_id:
            raise ValueError("external_id cannot be empty")
        unknown = set(fields) - set(USER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)}")

        def _upsert(conn: Any) -> None:
            with conn.cursor() as cur:
                self._set_query_timeout(cur)
                cur.execute(self.UPSERT_SQL, (external_id, Json(fields)))

        self._run(_upsert)

    def close(self) -> None:
        """Close all pooled connections."""
        if self.pool:
            self.pool.closeall()

    def __enter__(self) -> "UserDirectory":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()


async def fetch_user(directory: UserDirectory, user_id: str) -> Optional[User]:
    """
    Look up a user with a fresh directory read.

    A miss and a store failure both yield None so that callers skip the
    recipient instead of failing the whole event.

    Args:
        directory: User directory to read from
        user_id: External user identifier

    Returns:
        User if found, None otherwise
    """
    try:
        user = await asyncio.to_thread(directory.find_by_external_id, user_id)
    except StoreError as e:
        logger.error("Failed to fetch user {}: {}", user_id, e)
        return None

    if user is None:
        logger.warning("User {} not found in directory", user_id)
    return user


async def upsert_user(directory: UserDirectory, external_id: str, fields: Dict[str, Any]) -> None:
    """Upsert a user projection without blocking the event loop."""
    await asyncio.to_thread(directory.upsert_by_external_id, external_id, fields)
