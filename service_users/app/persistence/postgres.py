"""
PostgreSQL persistence layer for the Users Service.

Every query that reads or changes users filters on ``is_active = TRUE``;
inactive rows are kept for history and are invisible to the service.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, TypeVar
from uuid import UUID

import asyncpg

from shared.deadline import with_budget
from shared.errors import ConflictError, UpstreamUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..models import User

T = TypeVar("T")

USER_COLUMNS = "id, email, username, first_name, last_name, is_active, created_at, updated_at"


class UserStore:
    """asyncpg-backed store for user records."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 5,
        max_size: int = 10,
        timeout: float = 5.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("users.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Create the connection pool and bootstrap the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=max(self.min_size, self.max_size),
                command_timeout=self.timeout,
                max_inactive_connection_lifetime=1800,
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started", min_size=self.min_size, max_size=self.max_size)

        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise UpstreamUnavailableError("postgres", str(e))

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id UUID PRIMARY KEY,
                    email VARCHAR(255) NOT NULL,
                    username VARCHAR(50) NOT NULL,
                    first_name VARCHAR(100) NOT NULL,
                    last_name VARCHAR(100) NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

            # Email is unique among active rows only
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email_active ON users(email) WHERE is_active;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at DESC) WHERE is_active;
            """)

    @asynccontextmanager
    async def _operation(self, operation: str):
        """Translate driver failures into service errors and time the call."""
        if self.pool is None:
            raise UpstreamUnavailableError("postgres", "connection pool is not started")
        try:
            if self.metrics:
                with self.metrics.time_operation("store_operation_duration_seconds", operation=operation):
                    yield
            else:
                yield
        except asyncpg.UniqueViolationError as e:
            raise ConflictError("User with this email already exists", {"constraint": e.constraint_name})
        except asyncio.TimeoutError:
            self.logger.error("Store operation timed out", operation=operation)
            raise UpstreamUnavailableError("postgres", f"{operation} timed out")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.error("Store operation failed", operation=operation, error=str(e))
            raise UpstreamUnavailableError("postgres", f"{operation} failed")

    async def _run(self, operation: str, call: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        async def acquire_and_call() -> T:
            async with self.pool.acquire() as conn:
                return await call(conn)

        async with self._operation(operation):
            return await with_budget(acquire_and_call(), self.timeout)

    async def insert(self, user: User) -> None:
        """Insert a new record."""
        await self._run("insert", lambda conn: conn.execute(
            f"""
            INSERT INTO users ({USER_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            user.id, user.email, user.username, user.first_name, user.last_name,
            user.is_active, user.created_at, user.updated_at
        ))

    async def get_active_by_id(self, user_id: UUID) -> Optional[User]:
        row = await self._run("select_active_by_id", lambda conn: conn.fetchrow(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = $1 AND is_active = TRUE",
            user_id
        ))
        return User.from_record(row) if row else None

    async def get_active_by_email(self, email: str) -> Optional[User]:
        row = await self._run("select_active_by_email", lambda conn: conn.fetchrow(
            f"SELECT {USER_COLUMNS} FROM users WHERE email = $1 AND is_active = TRUE",
            email
        ))
        return User.from_record(row) if row else None

    async def list_active(self, limit: int, offset: int) -> List[User]:
        """Active users, newest first."""
        rows = await self._run("select_active_page", lambda conn: conn.fetch(
            f"""
            SELECT {USER_COLUMNS} FROM users
            WHERE is_active = TRUE
            ORDER BY created_at DESC
            LIMIT $1 OFFSET $2
            """,
            limit, offset
        ))
        return [User.from_record(row) for row in rows]

    async def update_active(self, user_id: UUID, fields: Mapping[str, Any]) -> bool:
        """Apply ``fields`` (column -> value) to an active row.

        Column names are interpolated into the statement; callers must only
        pass whitelisted columns. Returns False when no active row matched.
        """
        if not fields:
            raise ValueError("no fields to update")

        set_parts = []
        args: List[Any] = []
        for index, (column, value) in enumerate(fields.items(), start=1):
            set_parts.append(f"{column} = ${index}")
            args.append(value)

        args.append(datetime.now(timezone.utc))
        set_parts.append(f"updated_at = ${len(args)}")
        args.append(user_id)

        set_clause = ", ".join(set_parts)
        query = f"""
            UPDATE users
            SET {set_clause}
            WHERE id = ${len(args)} AND is_active = TRUE
        """
        status = await self._run("update_active", lambda conn: conn.execute(query, *args))
        return _rows_affected(status) > 0

    async def soft_delete(self, user_id: UUID) -> bool:
        """Mark an active row inactive. Returns False when no active row matched."""
        status = await self._run("soft_delete", lambda conn: conn.execute(
            """
            UPDATE users
            SET is_active = FALSE, updated_at = $1
            WHERE id = $2 AND is_active = TRUE
            """,
            datetime.now(timezone.utc), user_id
        ))
        return _rows_affected(status) > 0

    async def count_active(self) -> int:
        count = await self._run("count_active", lambda conn: conn.fetchval(
            "SELECT COUNT(*) FROM users WHERE is_active = TRUE"
        ))
        return count or 0

    async def ping(self) -> None:
        """Raise UpstreamUnavailableError unless the database answers."""
        await self._run("ping", lambda conn: conn.fetchval("SELECT 1"))


def _rows_affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
