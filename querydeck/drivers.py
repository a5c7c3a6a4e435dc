"""Driver handles wrapping the database transport."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

import asyncpg
from asyncpg import exceptions as pg_exceptions

from .errors import NoResultSetError, QueryExecutionError
from .models import ConnectionRecord

LOG = logging.getLogger(__name__)

TRANSPORT_OPEN = "open"
TRANSPORT_CLOSED = "closed"

# Server-reported errors that describe the session rather than the statement.
_SESSION_ERRORS: tuple[type[BaseException], ...] = (
    pg_exceptions.PostgresConnectionError,
    pg_exceptions.OperatorInterventionError,
    pg_exceptions.TooManyConnectionsError,
)


@runtime_checkable
class DatabaseDriver(Protocol):
    """Open logical connection bound to one connection record."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def query(self, sql: str) -> Any:
        """Result-returning call path."""

    async def execute(self, sql: str) -> Any:
        """No-result call path."""

    def transport_state(self) -> str | None:
        """``"open"``, another state name, or ``None`` when not observable."""

    def in_use(self) -> bool:
        """Whether an operation currently holds the handle."""


DriverFactory = Callable[[ConnectionRecord], DatabaseDriver]


@dataclass(frozen=True, slots=True)
class RecordSet:
    """Typed result object returned by `AsyncpgDriver.query`."""

    columns: tuple[dict[str, Any], ...]
    rows: tuple[tuple[Any, ...], ...]

    def get_columns(self) -> tuple[dict[str, Any], ...]:
        return self.columns

    def get_rows(self) -> tuple[tuple[Any, ...], ...]:
        return self.rows


class AsyncpgDriver:
    """Runs SQL statements against PostgreSQL via asyncpg."""

    def __init__(self, record: ConnectionRecord, *, connect_timeout: float = 5.0, close_timeout: float = 2.0) -> None:
        self._record = record
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._conn: asyncpg.Connection | None = None
        # asyncpg runs one operation per connection at a time.
        self._lock = asyncio.Lock()

    @property
    def record(self) -> ConnectionRecord:
        return self._record

    async def connect(self) -> None:
        self._conn = await asyncpg.connect(**self._connect_kwargs())

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None or conn.is_closed():
            return
        try:
            await asyncio.wait_for(conn.close(), timeout=self._close_timeout)
        except (asyncio.TimeoutError, OSError, pg_exceptions.InterfaceError):
            conn.terminate()

    async def query(self, sql: str) -> RecordSet:
        async with self._lock:
            conn = self._require_connection()
            try:
                statement = await conn.prepare(sql)
                attributes = statement.get_attributes()
                if not attributes:
                    raise NoResultSetError(f"Statement returns no result set: {sql[:80]}")
                records = await statement.fetch()
            except _SESSION_ERRORS:
                raise
            except pg_exceptions.PostgresError as exc:
                raise QueryExecutionError(str(exc)) from exc
        columns = tuple(
            {"name": attribute.name, "dataType": {"type": attribute.type.name.upper()}}
            for attribute in attributes
        )
        return RecordSet(columns=columns, rows=tuple(tuple(record.values()) for record in records))

    async def execute(self, sql: str) -> dict[str, Any]:
        async with self._lock:
            conn = self._require_connection()
            try:
                status = await conn.execute(sql)
            except _SESSION_ERRORS:
                raise
            except pg_exceptions.PostgresError as exc:
                raise QueryExecutionError(str(exc)) from exc
        return {
            "status": "ok",
            "responseData": {
                "numResults": 1,
                "results": [
                    {"resultType": "rowCount", "rowCount": rows_from_status(status), "status": status},
                ],
            },
        }

    def transport_state(self) -> str | None:
        if self._conn is None or self._conn.is_closed():
            return TRANSPORT_CLOSED
        return TRANSPORT_OPEN

    def in_use(self) -> bool:
        return self._lock.locked()

    def _require_connection(self) -> asyncpg.Connection:
        if self._conn is None or self._conn.is_closed():
            raise pg_exceptions.ConnectionDoesNotExistError("connection closed")
        return self._conn

    def _connect_kwargs(self) -> dict[str, object]:
        record = self._record
        kwargs: dict[str, object] = {
            "host": record.host or "localhost",
            "port": record.port,
            "timeout": self._connect_timeout,
        }
        if record.user:
            kwargs["user"] = record.user
        if record.password:
            kwargs["password"] = record.password
        if record.database:
            kwargs["database"] = record.database
        if record.schema:
            kwargs["server_settings"] = {"search_path": record.schema}
        return kwargs


def asyncpg_driver_factory(*, connect_timeout: float = 5.0) -> DriverFactory:
    """Return a factory producing unconnected `AsyncpgDriver` handles."""

    def _factory(record: ConnectionRecord) -> DatabaseDriver:
        return AsyncpgDriver(record, connect_timeout=connect_timeout)

    return _factory


def rows_from_status(status: str | None) -> int:
    """Affected rows from a command tag such as ``INSERT 0 3`` or ``UPDATE 2``."""

    parts: Sequence[str] = (status or "").split()
    if len(parts) >= 2 and parts[-1].isdigit():
        return int(parts[-1])
    return 0


__all__ = [
    "AsyncpgDriver",
    "DatabaseDriver",
    "DriverFactory",
    "RecordSet",
    "TRANSPORT_CLOSED",
    "TRANSPORT_OPEN",
    "asyncpg_driver_factory",
    "rows_from_status",
]
