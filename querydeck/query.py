"""Query execution on top of the connection registry."""

from __future__ import annotations

import logging
import time
from typing import Any

from .classifier import StatementKind, apply_row_ceiling, classify_statement, normalize_statement
from .config import AppConfig
from .connections import ConnectionRegistry
from .drivers import DatabaseDriver
from .errors import CancellationError, ConfigurationError, NoResultSetError, QueryExecutionError
from .models import QueryResult
from .results import NormalizedResult, affected_row_count, normalize_result

LOG = logging.getLogger(__name__)


class CancellationToken:
    """Caller-owned flag polled cooperatively by the executor."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError("Query execution was cancelled")


class QueryExecutor:
    """Runs one statement at a time against the active connection.

    Statements are classified to pick the driver's result or no-result call
    path, projecting queries get a row ceiling appended, and every driver call
    goes through `ConnectionRegistry.execute_with_retry`.
    """

    def __init__(self, registry: ConnectionRegistry, *, config: AppConfig | None = None) -> None:
        self._registry = registry
        self._config = config or registry.config
        self._current_token: CancellationToken | None = None

    @property
    def query_timeout(self) -> float:
        """Advisory upper bound (seconds) callers may apply to a query."""

        return self._config.query_timeout

    async def execute(self, sql: str, token: CancellationToken | None = None) -> QueryResult:
        active = self._registry.get_active_connection()
        if active is None:
            raise ConfigurationError("No active connection. Please add a connection first.")
        statement = normalize_statement(sql)
        if not statement:
            raise QueryExecutionError("Provide SQL to execute.")
        kind = classify_statement(statement)
        if kind is StatementKind.PROJECTING:
            statement = apply_row_ceiling(statement, self._config.max_result_rows)

        token = token or CancellationToken()
        self._current_token = token
        started = time.perf_counter()

        async def _attempt() -> tuple[NormalizedResult, int]:
            driver = await self._registry.get_driver(active.id)
            token.raise_if_cancelled()
            raw = await self._dispatch(driver, statement, kind)
            token.raise_if_cancelled()
            normalized = normalize_result(raw)
            if normalized.rows or normalized.columns:
                return normalized, len(normalized.rows)
            return normalized, affected_row_count(raw)

        try:
            normalized, row_count = await self._registry.execute_with_retry(_attempt, active.id)
        finally:
            if self._current_token is token:
                self._current_token = None
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        LOG.debug(
            "Query finished",
            extra={"connection": active.name, "kind": kind.value, "rows": row_count, "elapsed_ms": elapsed_ms},
        )
        return _to_result(normalized, row_count, elapsed_ms)

    async def execute_and_fetch(self, sql: str, limit: int | None = None) -> QueryResult:
        """Run a read-only query, keeping at most ``limit`` rows."""

        active = self._registry.get_active_connection()
        if active is None:
            raise ConfigurationError("No active connection. Please add a connection first.")
        statement = normalize_statement(sql)
        if not statement:
            raise QueryExecutionError("Provide SQL to execute.")
        max_rows = limit or self._config.max_result_rows
        started = time.perf_counter()

        async def _attempt() -> NormalizedResult:
            driver = await self._registry.get_driver(active.id)
            return normalize_result(await driver.query(statement))

        normalized = await self._registry.execute_with_retry(_attempt, active.id)
        rows = normalized.rows[:max_rows]
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return QueryResult(
            columns=normalized.columns,
            column_metadata=normalized.column_metadata,
            rows=rows,
            row_count=len(rows),
            execution_time_ms=elapsed_ms,
        )

    def cancel_current_query(self) -> None:
        """Signal the token of the in-flight query, if any."""

        token, self._current_token = self._current_token, None
        if token is not None:
            token.cancel()

    async def _dispatch(self, driver: DatabaseDriver, statement: str, kind: StatementKind) -> Any:
        if kind is StatementKind.SIDE_EFFECTING:
            return await driver.execute(statement)
        try:
            return await driver.query(statement)
        except NoResultSetError:
            LOG.debug("No result set returned, re-running on the command path")
            return await driver.execute(statement)


def _to_result(normalized: NormalizedResult, row_count: int, elapsed_ms: int) -> QueryResult:
    return QueryResult(
        columns=normalized.columns,
        column_metadata=normalized.column_metadata,
        rows=normalized.rows,
        row_count=row_count,
        execution_time_ms=elapsed_ms,
    )


__all__ = ["CancellationToken", "QueryExecutor"]
