"""Connection registry: records, the active pointer and driver handle health."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import socket
from typing import Awaitable, Callable, TypeVar
import uuid

from asyncpg import exceptions as pg_exceptions

from .config import AppConfig
from .drivers import TRANSPORT_OPEN, DatabaseDriver, DriverFactory
from .errors import (
    CancellationError,
    ConfigurationError,
    ConnectionTestError,
    QueryExecutionError,
    TransientConnectionError,
)
from .models import ConnectionRecord, ConnectionSpec
from .stores import CredentialStore, MetadataStore, password_key

LOG = logging.getLogger(__name__)

T = TypeVar("T")

ConnectionsListener = Callable[[], None]
ActiveConnectionListener = Callable[[ConnectionRecord | None], None]

CONNECTIONS_KEY = "connections"
RETRY_DELAY = 0.1


@dataclass(frozen=True, slots=True)
class TransientRule:
    """One entry of the transient-connection error table."""

    name: str
    matches: Callable[[BaseException], bool]


def _kind(*types: type[BaseException]) -> Callable[[BaseException], bool]:
    return lambda exc: isinstance(exc, types)


def _text(*needles: str) -> Callable[[BaseException], bool]:
    lowered = tuple(needle.lower() for needle in needles)
    return lambda exc: any(needle in str(exc).lower() for needle in lowered)


def _either(*checks: Callable[[BaseException], bool]) -> Callable[[BaseException], bool]:
    return lambda exc: any(check(exc) for check in checks)


TRANSIENT_RULES: tuple[TransientRule, ...] = (
    TransientRule("driver_reported", _kind(TransientConnectionError)),
    TransientRule(
        "transport_reset",
        _either(_kind(ConnectionResetError), _text("ECONNRESET", "connection reset")),
    ),
    TransientRule("broken_pipe", _either(_kind(BrokenPipeError), _text("EPIPE", "broken pipe"))),
    TransientRule("operation_timeout", _either(_kind(TimeoutError, asyncio.TimeoutError), _text("ETIMEDOUT"))),
    TransientRule(
        "host_unreachable",
        _either(
            _kind(socket.gaierror),
            _text("ENOTFOUND", "EHOSTUNREACH", "host unreachable", "no route to host", "name or service not known"),
        ),
    ),
    TransientRule(
        "connection_refused",
        _either(_kind(ConnectionRefusedError), _text("ECONNREFUSED", "connection refused")),
    ),
    TransientRule(
        "connection_closed",
        _either(
            _kind(pg_exceptions.ConnectionDoesNotExistError, pg_exceptions.PostgresConnectionError),
            _text("connection closed", "connection was closed", "connection is closed"),
        ),
    ),
    TransientRule("transport_error", _either(_kind(ConnectionAbortedError), _text("transport", "websocket"))),
    TransientRule("socket_hang_up", _text("socket hang up")),
    TransientRule(
        "pool_exhausted",
        _either(_kind(pg_exceptions.TooManyConnectionsError), _text("pool reached its limit", "too many connections")),
    ),
    TransientRule("timeout", _text("timeout")),
)

# Categories resolved by the caller, never by a reconnect.
_NEVER_TRANSIENT = (QueryExecutionError, ConfigurationError, ConnectionTestError, CancellationError)


def transient_rule_for(exc: BaseException, rules: tuple[TransientRule, ...] = TRANSIENT_RULES) -> TransientRule | None:
    """Return the first rule classifying ``exc`` as transient, if any."""

    if isinstance(exc, _NEVER_TRANSIENT):
        return None
    for rule in rules:
        if rule.matches(exc):
            return rule
    return None


def is_transient_error(exc: BaseException) -> bool:
    return transient_rule_for(exc) is not None


@dataclass(frozen=True, slots=True)
class _Connecting:
    """Handle slot while a connect is in flight; waiters share the task."""

    task: asyncio.Task[DatabaseDriver]


@dataclass(frozen=True, slots=True)
class _Live:
    driver: DatabaseDriver


class ConnectionRegistry:
    """Single source of truth for connection records, the active pointer and handles.

    Handles are created lazily by `get_driver` and revalidated on every reuse:
    first by inspecting the transport state, then by a bounded round-trip
    probe. Every driver-touching operation goes through `execute_with_retry`,
    which resets the handle and retries once for transient connection errors.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        metadata: MetadataStore,
        driver_factory: DriverFactory,
        *,
        config: AppConfig | None = None,
        retry_delay: float = RETRY_DELAY,
        transient_rules: tuple[TransientRule, ...] = TRANSIENT_RULES,
    ) -> None:
        self._credentials = credentials
        self._metadata = metadata
        self._driver_factory = driver_factory
        self._config = config or AppConfig()
        self._retry_delay = retry_delay
        self._transient_rules = transient_rules
        self._records: dict[str, ConnectionRecord] = {}
        self._active_id: str | None = None
        self._handles: dict[str, _Connecting | _Live] = {}
        self._connections_listeners: set[ConnectionsListener] = set()
        self._active_listeners: set[ActiveConnectionListener] = set()
        self._load()

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def metadata(self) -> MetadataStore:
        return self._metadata

    # Records -----------------------------------------------------------------

    def get_connections(self) -> tuple[ConnectionRecord, ...]:
        return tuple(self._records.values())

    def get_connection(self, connection_id: str) -> ConnectionRecord | None:
        return self._records.get(connection_id)

    def get_active_connection(self) -> ConnectionRecord | None:
        if self._active_id is None:
            return None
        return self._records.get(self._active_id)

    def set_active_connection(self, connection_id: str) -> None:
        self._require(connection_id)
        self._active_id = connection_id
        self._notify_active()

    async def add_connection(self, spec: ConnectionSpec) -> str:
        """Test, then persist a new connection; returns its id."""

        connection_id = uuid.uuid4().hex
        record = ConnectionRecord.from_spec(connection_id, spec, password=spec.password or "")
        await self._test_connection(record)
        self._records[connection_id] = record
        self._credentials.store(password_key(connection_id), record.password or "")
        self._persist()
        LOG.info("Connection added", extra={"connection": record.name, "connection_id": connection_id})
        self._notify_connections()
        return connection_id

    async def update_connection(self, connection_id: str, spec: ConnectionSpec) -> str:
        """Replace a connection's settings; an omitted password keeps the stored one."""

        existing = self._require(connection_id)
        password = spec.password or existing.password or ""
        updated = ConnectionRecord.from_spec(connection_id, spec, password=password)
        await self._test_connection(updated)
        await self.reset_driver(connection_id)
        self._records[connection_id] = updated
        self._credentials.store(password_key(connection_id), password)
        self._persist()
        self._notify_connections()
        if self._active_id == connection_id:
            self._notify_active()
        return connection_id

    async def rename_connection(self, connection_id: str, name: str) -> None:
        existing = self._require(connection_id)
        await self.reset_driver(connection_id)
        self._records[connection_id] = existing.renamed(name)
        self._persist()
        self._notify_connections()
        if self._active_id == connection_id:
            self._notify_active()

    async def remove_connection(self, connection_id: str) -> None:
        """Delete a connection, its secret, session state and live handle."""

        self._require(connection_id)
        del self._records[connection_id]
        self._credentials.delete(password_key(connection_id))
        for key in tuple(self._metadata.keys()):
            if key.startswith(f"session.{connection_id}."):
                self._metadata.update(key, None)
        await self.reset_driver(connection_id)
        was_active = self._active_id == connection_id
        if was_active:
            self._active_id = next(iter(self._records), None)
        self._persist()
        self._notify_connections()
        if was_active:
            self._notify_active()

    # Handles -----------------------------------------------------------------

    async def get_driver(self, connection_id: str | None = None) -> DatabaseDriver:
        """Return a validated handle, reconnecting when the cached one is stale."""

        record = self._resolve(connection_id)
        while True:
            slot = self._handles.get(record.id)
            if slot is None:
                slot = self._begin_connect(record)
            if isinstance(slot, _Connecting):
                driver = await self._await_connect(record.id, slot)
                if driver is not None:
                    return driver
                continue
            if await self._validate(slot.driver, record):
                if self._handles.get(record.id) is slot:
                    return slot.driver
                continue
            if self._handles.get(record.id) is slot:
                LOG.warning("Connection appears stale, reconnecting", extra={"connection": record.name})
                del self._handles[record.id]
                await self._close_quietly(slot.driver)

    async def reset_driver(self, connection_id: str | None = None) -> None:
        """Close (best effort) and evict the cached handle."""

        target = connection_id or self._active_id
        if target is None:
            return
        slot = self._handles.pop(target, None)
        if isinstance(slot, _Live):
            await self._close_quietly(slot.driver)

    async def execute_with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        connection_id: str | None = None,
    ) -> T:
        """Run ``fn``; on a transient connection error reset the handle and run it once more."""

        try:
            return await fn()
        except Exception as exc:
            rule = transient_rule_for(exc, self._transient_rules)
            target = connection_id or self._active_id
            if rule is None or target is None:
                raise
            LOG.warning(
                "Connection error detected, resetting driver and retrying",
                extra={"connection_id": target, "rule": rule.name, "error": str(exc)},
            )
        await self.reset_driver(target)
        await asyncio.sleep(self._retry_delay)
        return await fn()

    async def close_all(self) -> None:
        handles, self._handles = self._handles, {}
        for slot in handles.values():
            if isinstance(slot, _Live):
                await self._close_quietly(slot.driver)

    # Notifications -----------------------------------------------------------

    def on_connections_changed(self, listener: ConnectionsListener) -> Callable[[], None]:
        """Subscribe to connection-set changes; returns an unsubscribe handle."""

        self._connections_listeners.add(listener)

        def _unsubscribe() -> None:
            self._connections_listeners.discard(listener)

        return _unsubscribe

    def on_active_connection_changed(self, listener: ActiveConnectionListener) -> Callable[[], None]:
        """Subscribe to active-connection changes; returns an unsubscribe handle."""

        self._active_listeners.add(listener)

        def _unsubscribe() -> None:
            self._active_listeners.discard(listener)

        return _unsubscribe

    # Internals ---------------------------------------------------------------

    def _begin_connect(self, record: ConnectionRecord) -> _Connecting:
        # The task cannot run before the slot is installed below.
        slot = _Connecting(asyncio.get_running_loop().create_task(self._connect_into(record)))
        self._handles[record.id] = slot
        return slot

    async def _connect_into(self, record: ConnectionRecord) -> DatabaseDriver:
        driver = self._driver_factory(record)
        try:
            await driver.connect()
        except BaseException:
            if self._owns_slot(record.id):
                del self._handles[record.id]
            raise
        if self._owns_slot(record.id):
            self._handles[record.id] = _Live(driver)
            LOG.debug("Driver connected", extra={"connection": record.name})
        else:
            # Reset while connecting; this handle must not outlive the reset.
            await self._close_quietly(driver)
        return driver

    def _owns_slot(self, connection_id: str) -> bool:
        slot = self._handles.get(connection_id)
        return isinstance(slot, _Connecting) and slot.task is asyncio.current_task()

    async def _await_connect(self, connection_id: str, slot: _Connecting) -> DatabaseDriver | None:
        driver = await asyncio.shield(slot.task)
        current = self._handles.get(connection_id)
        if isinstance(current, _Live) and current.driver is driver:
            return driver
        return None

    async def _validate(self, driver: DatabaseDriver, record: ConnectionRecord) -> bool:
        state = _transport_state(driver)
        if state is not None and state != TRANSPORT_OPEN:
            LOG.info("Transport is %s, handle is stale", state, extra={"connection": record.name})
            return False
        if not self._config.validate_with_round_trip:
            return True
        if _in_use(driver):
            # The operation holding the handle surfaces transport failures.
            return True
        try:
            await asyncio.wait_for(
                driver.query(self._config.validation_query),
                timeout=self._config.connection_validation_timeout,
            )
        except Exception as exc:
            LOG.warning("Connection validation failed", extra={"connection": record.name, "error": repr(exc)})
            return False
        return True

    async def _test_connection(self, record: ConnectionRecord) -> None:
        LOG.info(
            "Testing connection",
            extra={"connection": record.name, "host": record.host, "port": record.port, "user": record.user},
        )
        driver = self._driver_factory(record)
        try:
            await driver.connect()
        except Exception as exc:
            LOG.warning("Connection test failed", extra={"connection": record.name, "error": str(exc)})
            raise ConnectionTestError(f"Connection test failed: {exc}") from exc
        await self._close_quietly(driver)

    async def _close_quietly(self, driver: DatabaseDriver) -> None:
        try:
            await driver.close()
        except Exception as exc:
            LOG.debug("Ignoring error while closing driver", extra={"error": repr(exc)})

    def _resolve(self, connection_id: str | None) -> ConnectionRecord:
        target = connection_id or self._active_id
        if target is None:
            raise ConfigurationError("No active connection")
        return self._require(target)

    def _require(self, connection_id: str) -> ConnectionRecord:
        record = self._records.get(connection_id)
        if record is None:
            raise ConfigurationError(f"Connection {connection_id} not found")
        return record

    def _load(self) -> None:
        stored = self._metadata.get(CONNECTIONS_KEY, [])
        if not isinstance(stored, list):
            return
        for entry in stored:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            password = self._credentials.get(password_key(str(entry["id"])))
            if password is None:
                LOG.warning("Skipping connection without stored password", extra={"connection_id": entry["id"]})
                continue
            record = ConnectionRecord.from_public_fields(entry, password=password)
            self._records[record.id] = record

    def _persist(self) -> None:
        self._metadata.update(CONNECTIONS_KEY, [record.public_fields() for record in self._records.values()])

    def _notify_connections(self) -> None:
        for listener in tuple(self._connections_listeners):
            listener()

    def _notify_active(self) -> None:
        active = self.get_active_connection()
        for listener in tuple(self._active_listeners):
            listener(active)


def _transport_state(driver: DatabaseDriver) -> str | None:
    probe = getattr(driver, "transport_state", None)
    if not callable(probe):
        return None
    try:
        return probe()
    except Exception:
        return None


def _in_use(driver: DatabaseDriver) -> bool:
    probe = getattr(driver, "in_use", None)
    return bool(probe()) if callable(probe) else False


__all__ = [
    "ActiveConnectionListener",
    "ConnectionRegistry",
    "ConnectionsListener",
    "TRANSIENT_RULES",
    "TransientRule",
    "is_transient_error",
    "transient_rule_for",
]
