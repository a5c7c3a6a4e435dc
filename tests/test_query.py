"""Tests for query execution helpers."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Callable

import pytest
from asyncpg import exceptions as pg_exceptions

from querydeck.config import AppConfig
from querydeck.connections import ConnectionRegistry
from querydeck.drivers import RecordSet, asyncpg_driver_factory
from querydeck.errors import (
    CancellationError,
    ConfigurationError,
    NoResultSetError,
    QueryExecutionError,
)
from querydeck.models import ConnectionRecord, ConnectionSpec
from querydeck.query import CancellationToken, QueryExecutor
from querydeck.stores import InMemoryCredentialStore, InMemoryMetadataStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


ROWS = RecordSet(
    columns=({"name": "id", "dataType": {"type": "INT4"}}, {"name": "email", "dataType": {"type": "TEXT"}}),
    rows=((1, "alice@example.com"), (2, "bob@example.com"), (3, "cara@example.com")),
)


class _FakeDriver:
    def __init__(self, record: ConnectionRecord) -> None:
        self.record = record
        self.query_calls: list[str] = []
        self.execute_calls: list[str] = []
        self.query_result: Any = ROWS
        self.execute_result: Any = {
            "status": "ok",
            "responseData": {"numResults": 1, "results": [{"resultType": "rowCount", "rowCount": 3}]},
        }
        self.query_errors: list[Exception] = []
        self.on_query: Callable[[], None] | None = None
        self.closed = False

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True

    async def query(self, sql: str) -> Any:
        self.query_calls.append(sql)
        if self.on_query:
            self.on_query()
        if self.query_errors:
            raise self.query_errors.pop(0)
        return self.query_result

    async def execute(self, sql: str) -> Any:
        self.execute_calls.append(sql)
        return self.execute_result

    def transport_state(self) -> str | None:
        return "open"


class _DriverFactory:
    def __init__(self) -> None:
        self.created: list[_FakeDriver] = []
        self.configure: Callable[[_FakeDriver], None] | None = None

    def __call__(self, record: ConnectionRecord) -> _FakeDriver:
        driver = _FakeDriver(record)
        if self.configure:
            self.configure(driver)
        self.created.append(driver)
        return driver

    @property
    def live(self) -> _FakeDriver:
        return self.created[-1]


class _SerialConnection:
    """Behaves like an asyncpg connection: one operation at a time."""

    def __init__(self) -> None:
        self.busy = False
        self.closed = False
        self.statements: list[str] = []

    async def _operation(self) -> None:
        if self.closed:
            raise pg_exceptions.ConnectionDoesNotExistError("connection was closed in the middle of operation")
        if self.busy:
            raise pg_exceptions.InterfaceError("cannot perform operation: another operation is in progress")
        self.busy = True
        try:
            for _ in range(3):
                await asyncio.sleep(0)
        finally:
            self.busy = False
        if self.closed:
            raise pg_exceptions.ConnectionDoesNotExistError("connection was closed in the middle of operation")

    async def prepare(self, sql: str) -> _SerialStatement:
        self.statements.append(sql)
        await self._operation()
        return _SerialStatement(self)

    async def execute(self, sql: str) -> str:
        self.statements.append(sql)
        await self._operation()
        return "UPDATE 1"

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True

    def terminate(self) -> None:
        self.closed = True


class _SerialStatement:
    def __init__(self, conn: _SerialConnection) -> None:
        self._conn = conn

    def get_attributes(self) -> tuple[Any, ...]:
        return (SimpleNamespace(name="x", type=SimpleNamespace(name="int4")),)

    async def fetch(self) -> list[dict[str, Any]]:
        await self._conn._operation()
        return [{"x": 1}]


async def _executor(config: AppConfig | None = None, *, activate: bool = True):  # type: ignore[no-untyped-def]
    factory = _DriverFactory()
    registry = ConnectionRegistry(
        InMemoryCredentialStore(),
        InMemoryMetadataStore(),
        factory,
        config=config or AppConfig(validate_with_round_trip=False),
        retry_delay=0,
    )
    connection_id = await registry.add_connection(
        ConnectionSpec(name="Local", host="localhost", user="postgres", password="postgres")
    )
    if activate:
        registry.set_active_connection(connection_id)
    return QueryExecutor(registry), registry, factory


@pytest.mark.anyio
async def test_execute_appends_default_row_ceiling() -> None:
    executor, _, factory = await _executor()

    result = await executor.execute("SELECT * FROM T")

    assert factory.live.query_calls == ["SELECT * FROM T LIMIT 10000"]
    assert result.columns == ("id", "email")
    assert result.rows[0] == {"id": 1, "email": "alice@example.com"}
    assert result.row_count == 3
    assert result.column_metadata[0].type == "INT4"
    assert result.execution_time_ms >= 0


@pytest.mark.anyio
async def test_execute_keeps_explicit_limit_and_strips_terminator() -> None:
    executor, _, factory = await _executor()

    await executor.execute("SELECT * FROM T LIMIT 5;\n")

    assert factory.live.query_calls == ["SELECT * FROM T LIMIT 5"]


@pytest.mark.anyio
async def test_execute_applies_ceiling_after_trailing_comment() -> None:
    executor, _, factory = await _executor()

    await executor.execute("SELECT * FROM t; -- done\n")

    assert factory.live.query_calls == ["SELECT * FROM t LIMIT 10000"]


@pytest.mark.anyio
async def test_execute_uses_configured_ceiling() -> None:
    executor, _, factory = await _executor(AppConfig(max_result_rows=50, validate_with_round_trip=False))

    await executor.execute("select id from accounts")

    assert factory.live.query_calls == ["select id from accounts LIMIT 50"]


@pytest.mark.anyio
async def test_execute_without_active_connection_never_touches_driver() -> None:
    executor, _, factory = await _executor(activate=False)
    created = len(factory.created)

    with pytest.raises(ConfigurationError):
        await executor.execute("SELECT 1")

    assert len(factory.created) == created


@pytest.mark.anyio
async def test_execute_rejects_empty_sql() -> None:
    executor, _, _ = await _executor()

    with pytest.raises(QueryExecutionError):
        await executor.execute("  ;  ")


@pytest.mark.anyio
async def test_side_effecting_statement_uses_command_path() -> None:
    executor, _, factory = await _executor()

    result = await executor.execute("-- backfill\nUPDATE accounts SET status = 'active';")

    driver = factory.live
    assert driver.query_calls == []
    assert driver.execute_calls == ["-- backfill\nUPDATE accounts SET status = 'active'"]
    assert result.columns == ()
    assert result.rows == ()
    assert result.row_count == 3


@pytest.mark.anyio
async def test_side_effecting_row_count_defaults_to_zero() -> None:
    executor, _, factory = await _executor()
    factory.configure = lambda driver: setattr(
        driver, "execute_result", {"status": "ok", "responseData": {"results": [{"resultType": "rowCount"}]}}
    )

    result = await executor.execute("CREATE TABLE t (id INT)")

    assert result.row_count == 0


@pytest.mark.anyio
async def test_select_into_is_not_rewritten() -> None:
    executor, _, factory = await _executor()

    await executor.execute("SELECT a INTO new_t FROM b")

    assert factory.live.execute_calls == ["SELECT a INTO new_t FROM b"]


@pytest.mark.anyio
async def test_projecting_statement_without_result_set_falls_back() -> None:
    executor, _, factory = await _executor()
    factory.configure = lambda driver: driver.query_errors.append(NoResultSetError("no result set"))

    result = await executor.execute("CALL refresh_stats()")

    driver = factory.live
    assert driver.query_calls == ["CALL refresh_stats()"]
    assert driver.execute_calls == ["CALL refresh_stats()"]
    assert result.row_count == 3


@pytest.mark.anyio
async def test_cancel_before_dispatch_skips_driver_call() -> None:
    executor, _, factory = await _executor()
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancellationError):
        await executor.execute("SELECT 1", token)

    assert all(not driver.query_calls and not driver.execute_calls for driver in factory.created)


@pytest.mark.anyio
async def test_cancel_after_return_discards_result() -> None:
    executor, _, factory = await _executor()
    token = CancellationToken()
    factory.configure = lambda driver: setattr(driver, "on_query", token.cancel)

    with pytest.raises(CancellationError):
        await executor.execute("SELECT 1", token)

    assert factory.live.query_calls == ["SELECT 1 LIMIT 10000"]


@pytest.mark.anyio
async def test_cancel_current_query_signals_in_flight_token() -> None:
    executor, _, factory = await _executor()
    factory.configure = lambda driver: setattr(driver, "on_query", executor.cancel_current_query)

    with pytest.raises(CancellationError):
        await executor.execute("SELECT 1")


@pytest.mark.anyio
async def test_cancel_current_query_without_query_is_noop() -> None:
    executor, _, _ = await _executor()
    token = CancellationToken()

    executor.cancel_current_query()

    assert token.cancelled is False
    token.cancel()
    assert token.cancelled is True


@pytest.mark.anyio
async def test_transient_failure_is_retried_on_fresh_handle() -> None:
    executor, _, factory = await _executor()

    def _fail_once(driver: _FakeDriver) -> None:
        driver.query_errors.append(ConnectionResetError("read ECONNRESET"))
        factory.configure = None

    factory.configure = _fail_once

    result = await executor.execute("SELECT 1")

    failed, recovered = factory.created[-2:]
    assert failed.closed is True
    assert recovered.query_calls == ["SELECT 1 LIMIT 10000"]
    assert result.row_count == 3


@pytest.mark.anyio
async def test_semantic_failure_is_not_retried() -> None:
    executor, _, factory = await _executor()
    factory.configure = lambda driver: driver.query_errors.append(QueryExecutionError('relation "t" does not exist'))
    created = len(factory.created)

    with pytest.raises(QueryExecutionError, match="does not exist"):
        await executor.execute("SELECT * FROM t")

    assert len(factory.created) == created + 1
    assert len(factory.live.query_calls) == 1


@pytest.mark.anyio
async def test_execute_and_fetch_caps_rows_without_rewriting() -> None:
    executor, _, factory = await _executor()

    result = await executor.execute_and_fetch("SELECT * FROM accounts;", limit=2)

    assert factory.live.query_calls == ["SELECT * FROM accounts"]
    assert result.row_count == 2
    assert [row["id"] for row in result.rows] == [1, 2]


@pytest.mark.anyio
async def test_execute_and_fetch_requires_active_connection() -> None:
    executor, _, _ = await _executor(activate=False)

    with pytest.raises(ConfigurationError):
        await executor.execute_and_fetch("SELECT 1")


@pytest.mark.anyio
async def test_query_timeout_is_exposed() -> None:
    executor, _, _ = await _executor(AppConfig(query_timeout=42))

    assert executor.query_timeout == 42


@pytest.mark.anyio
async def test_concurrent_queries_share_one_asyncpg_handle(monkeypatch: pytest.MonkeyPatch) -> None:
    opened: list[_SerialConnection] = []

    async def _connect(**_kwargs: Any) -> _SerialConnection:
        conn = _SerialConnection()
        opened.append(conn)
        return conn

    monkeypatch.setattr("querydeck.drivers.asyncpg.connect", _connect)
    registry = ConnectionRegistry(
        InMemoryCredentialStore(),
        InMemoryMetadataStore(),
        asyncpg_driver_factory(),
        config=AppConfig(),
        retry_delay=0,
    )
    connection_id = await registry.add_connection(
        ConnectionSpec(name="Local", host="localhost", user="postgres", password="postgres")
    )
    registry.set_active_connection(connection_id)
    executor = QueryExecutor(registry)
    await executor.execute("SELECT x FROM warmup")

    first, second = await asyncio.gather(
        executor.execute("SELECT x FROM a"),
        executor.execute("SELECT x FROM b"),
    )

    assert first.rows == ({"x": 1},)
    assert second.rows == ({"x": 1},)
    # One connectivity test plus the shared session.
    assert len(opened) == 2
    live = opened[-1]
    assert live.closed is False
    assert "SELECT x FROM a LIMIT 10000" in live.statements
    assert "SELECT x FROM b LIMIT 10000" in live.statements
