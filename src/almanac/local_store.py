"""Local event persistence backed by the ``events`` table.

Every query is scoped by ``user_id``; lookups, updates and deletes use a
compound ``id AND user_id`` predicate so one user can never observe or touch
another user's rows.  A row owned by someone else is reported exactly like a
missing row (:class:`~almanac.errors.NotFoundError`).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from almanac.config import DEFAULT_DB_COMMAND_TIMEOUT_SECONDS
from almanac.errors import NotFoundError, UserNotFoundError
from almanac.models import (
    EventCreate,
    EventFilters,
    EventUpdate,
    LocalEvent,
    LocalEventStatistics,
    Recurrence,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_USERS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id           TEXT PRIMARY KEY,
    email        TEXT UNIQUE,
    display_name TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_RECURRENCE_VALUES = ", ".join(f"'{value}'" for value in Recurrence)

_EVENTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS events (
    id          BIGSERIAL PRIMARY KEY,
    user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    title       TEXT NOT NULL,
    description TEXT,
    location    TEXT,
    start_time  TIMESTAMPTZ NOT NULL,
    end_time    TIMESTAMPTZ NOT NULL,
    is_all_day  BOOLEAN NOT NULL DEFAULT false,
    recurrence  TEXT NOT NULL DEFAULT 'none'
                CHECK (recurrence IN ({_RECURRENCE_VALUES})),
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_EVENTS_USER_START_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS ix_events_user_start
ON events (user_id, start_time)
"""

_COLUMNS = (
    "id, user_id, title, description, location, start_time, end_time, "
    "is_all_day, recurrence, created_at, updated_at"
)

# Columns an update may touch; anything else is rejected before SQL is built.
_UPDATABLE_COLUMNS = (
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "is_all_day",
    "recurrence",
)

DEFAULT_UPCOMING_DAYS = 7


async def ensure_events_schema(
    pool: asyncpg.Pool, *, timeout: float = DEFAULT_DB_COMMAND_TIMEOUT_SECONDS
) -> None:
    """Ensure ``users`` and ``events`` exist on the target database."""
    for ddl in (_USERS_TABLE_DDL, _EVENTS_TABLE_DDL, _EVENTS_USER_START_INDEX_DDL):
        await pool.execute(ddl, timeout=timeout)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_event(row: Any) -> LocalEvent:
    return LocalEvent.model_validate(dict(row))


class _WhereBuilder:
    """Accumulates ``AND``-joined predicates with positional parameters."""

    def __init__(self, user_id: str) -> None:
        self.clauses: list[str] = ["user_id = $1"]
        self.args: list[Any] = [user_id]

    def add(self, template: str, value: Any) -> None:
        self.args.append(value)
        self.clauses.append(template.format(p=f"${len(self.args)}"))

    def apply_filters(self, filters: EventFilters | None) -> None:
        if filters is None:
            return
        if filters.start_date is not None:
            self.add("start_time >= {p}", filters.start_date)
        if filters.end_date is not None:
            self.add("end_time <= {p}", filters.end_date)

    def sql(self) -> str:
        return " AND ".join(self.clauses)


class LocalEventStore:
    """User-scoped CRUD and derived queries over the ``events`` table.

    Parameters
    ----------
    pool:
        asyncpg pool holding the ``users`` and ``events`` tables.
    timezone:
        IANA zone that defines calendar-day boundaries for :meth:`today`.
    clock:
        Returns the current UTC time; injectable for tests.
    command_timeout:
        Per-query timeout in seconds, independent of any provider timeout.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
        command_timeout: float = DEFAULT_DB_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._pool = pool
        self._tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._timeout = command_timeout

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def list(self, user_id: str, filters: EventFilters | None = None) -> list[LocalEvent]:
        """List a user's events ordered by start time.

        ``start_date`` keeps events starting at or after it, ``end_date`` keeps
        events ending at or before it; ``limit``/``offset`` page the result.
        """
        where = _WhereBuilder(user_id)
        where.apply_filters(filters)
        query = f"SELECT {_COLUMNS} FROM events WHERE {where.sql()} ORDER BY start_time ASC, id ASC"
        args = list(where.args)
        if filters is not None and filters.limit is not None:
            args.append(filters.limit)
            query += f" LIMIT ${len(args)}"
        if filters is not None and filters.offset:
            args.append(filters.offset)
            query += f" OFFSET ${len(args)}"
        rows = await self._pool.fetch(query, *args, timeout=self._timeout)
        return [_row_to_event(row) for row in rows]

    async def get_by_id(self, event_id: int, user_id: str) -> LocalEvent:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM events WHERE id = $1 AND user_id = $2",
            event_id,
            user_id,
            timeout=self._timeout,
        )
        if row is None:
            raise NotFoundError()
        return _row_to_event(row)

    async def create(self, user_id: str, data: EventCreate) -> LocalEvent:
        """Insert a new event for an existing user.

        Raises
        ------
        UserNotFoundError
            If no ``users`` row exists for *user_id*.
        """
        user_exists = await self._pool.fetchval(
            "SELECT EXISTS(SELECT 1 FROM users WHERE id = $1)",
            user_id,
            timeout=self._timeout,
        )
        if not user_exists:
            raise UserNotFoundError(user_id)

        row = await self._pool.fetchrow(
            f"""
            INSERT INTO events
                (user_id, title, description, location, start_time, end_time,
                 is_all_day, recurrence)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING {_COLUMNS}
            """,
            user_id,
            data.title,
            data.description,
            data.location,
            data.start_time,
            data.end_time,
            data.is_all_day,
            str(data.recurrence),
            timeout=self._timeout,
        )
        event = _row_to_event(row)
        logger.info("Created local event", extra={"user_id": user_id, "event_id": event.id})
        return event

    async def update(self, event_id: int, user_id: str, data: EventUpdate) -> LocalEvent:
        """Apply only the explicitly-set fields of *data*; bumps ``updated_at``."""
        changes = data.changes()
        if not changes:
            return await self.get_by_id(event_id, user_id)

        assignments: list[str] = []
        args: list[Any] = [event_id, user_id]
        for column in _UPDATABLE_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if isinstance(value, Recurrence):
                value = str(value)
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")
        assignments.append("updated_at = now()")

        row = await self._pool.fetchrow(
            f"""
            UPDATE events SET {", ".join(assignments)}
            WHERE id = $1 AND user_id = $2
            RETURNING {_COLUMNS}
            """,
            *args,
            timeout=self._timeout,
        )
        if row is None:
            raise NotFoundError()
        return _row_to_event(row)

    async def delete(self, event_id: int, user_id: str) -> LocalEvent:
        """Delete an event and return the removed row."""
        row = await self._pool.fetchrow(
            f"DELETE FROM events WHERE id = $1 AND user_id = $2 RETURNING {_COLUMNS}",
            event_id,
            user_id,
            timeout=self._timeout,
        )
        if row is None:
            raise NotFoundError()
        logger.info("Deleted local event", extra={"user_id": user_id, "event_id": event_id})
        return _row_to_event(row)

    # ------------------------------------------------------------------
    # Derived reads
    # ------------------------------------------------------------------

    async def in_range(self, user_id: str, start: datetime, end: datetime) -> list[LocalEvent]:
        return await self.list(user_id, EventFilters(start_date=start, end_date=end))

    async def today(self, user_id: str) -> list[LocalEvent]:
        day_start, day_end = self.day_bounds()
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM events
            WHERE user_id = $1 AND start_time >= $2 AND start_time < $3
            ORDER BY start_time ASC, id ASC
            """,
            user_id,
            day_start,
            day_end,
            timeout=self._timeout,
        )
        return [_row_to_event(row) for row in rows]

    async def upcoming(
        self,
        user_id: str,
        days: int = DEFAULT_UPCOMING_DAYS,
        limit: int | None = None,
    ) -> list[LocalEvent]:
        """Events starting between now and now + *days*."""
        now = self._clock()
        args: list[Any] = [user_id, now, now + timedelta(days=days)]
        query = f"""
            SELECT {_COLUMNS} FROM events
            WHERE user_id = $1 AND start_time >= $2 AND start_time <= $3
            ORDER BY start_time ASC, id ASC
        """
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        rows = await self._pool.fetch(query, *args, timeout=self._timeout)
        return [_row_to_event(row) for row in rows]

    async def search(
        self,
        user_id: str,
        term: str,
        filters: EventFilters | None = None,
    ) -> list[LocalEvent]:
        """Case-insensitive substring match on title, description and location."""
        where = _WhereBuilder(user_id)
        where.add(
            "(title ILIKE {p} OR description ILIKE {p} OR location ILIKE {p})",
            f"%{_escape_like(term.strip())}%",
        )
        where.apply_filters(filters)
        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM events WHERE {where.sql()} ORDER BY start_time ASC, id ASC",
            *where.args,
            timeout=self._timeout,
        )
        return [_row_to_event(row) for row in rows]

    async def statistics(self, user_id: str) -> LocalEventStatistics:
        day_start, day_end = self.day_bounds()
        now = self._clock()
        row = await self._pool.fetchrow(
            """
            SELECT
                count(*) AS total,
                count(*) FILTER (WHERE start_time >= $2 AND start_time < $3) AS today,
                count(*) FILTER (WHERE start_time >= $4 AND start_time <= $5) AS upcoming,
                count(*) FILTER (WHERE is_all_day) AS all_day,
                count(*) FILTER (WHERE recurrence <> 'none') AS recurring
            FROM events
            WHERE user_id = $1
            """,
            user_id,
            day_start,
            day_end,
            now,
            now + timedelta(days=DEFAULT_UPCOMING_DAYS),
            timeout=self._timeout,
        )
        if row is None:
            return LocalEventStatistics()
        return LocalEventStatistics.model_validate(dict(row))

    async def has_any(self, user_id: str) -> bool:
        return bool(
            await self._pool.fetchval(
                "SELECT EXISTS(SELECT 1 FROM events WHERE user_id = $1)",
                user_id,
                timeout=self._timeout,
            )
        )

    async def count(self, user_id: str, filters: EventFilters | None = None) -> int:
        where = _WhereBuilder(user_id)
        where.apply_filters(filters)
        value = await self._pool.fetchval(
            f"SELECT count(*) FROM events WHERE {where.sql()}",
            *where.args,
            timeout=self._timeout,
        )
        return int(value or 0)

    def day_bounds(self) -> tuple[datetime, datetime]:
        """Return [start, end) of the current calendar day in the store timezone."""
        local_now = self._clock().astimezone(self._tz)
        day_start = datetime.combine(local_now.date(), time.min, tzinfo=self._tz)
        return day_start, day_start + timedelta(days=1)
