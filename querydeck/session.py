"""Session state (current schema) for the active connection."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable

from sqlglot import exp

from .classifier import DIALECT
from .connections import ConnectionRegistry
from .errors import ConfigurationError
from .models import ConnectionRecord
from .results import normalize_result

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]

CURRENT_SCHEMA_QUERY = "SELECT current_schema() AS current_schema"


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot (active connection + schema)."""

    connection: ConnectionRecord | None
    schema: str | None


class SessionManager:
    """Tracks the working schema of the active connection.

    The schema is remembered per connection id in the metadata store and
    reloaded whenever the registry's active connection changes.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._schema: str | None = None
        self._listeners: set[SessionListener] = set()
        self._unsubscribe_active = registry.on_active_connection_changed(self._handle_active_changed)
        self._load()

    @property
    def current_schema(self) -> str | None:
        return self._schema

    @property
    def state(self) -> SessionState:
        return SessionState(connection=self._registry.get_active_connection(), schema=self._schema)

    async def set_schema(self, schema: str) -> None:
        """Switch the active connection to ``schema`` and remember it."""

        active = self._require_active()
        statement = f"SET search_path TO {exp.to_identifier(schema).sql(dialect=DIALECT)}"

        async def _apply() -> None:
            driver = await self._registry.get_driver(active.id)
            await driver.execute(statement)

        await self._registry.execute_with_retry(_apply, active.id)
        self._schema = schema
        self._save(active)
        LOG.info("Schema set", extra={"connection": active.name, "schema": schema})
        self._notify()

    async def refresh_session(self) -> None:
        """Read the server's current schema for the active connection."""

        active = self._registry.get_active_connection()
        if active is None:
            self._schema = None
            return

        async def _read() -> str | None:
            driver = await self._registry.get_driver(active.id)
            result = normalize_result(await driver.query(CURRENT_SCHEMA_QUERY))
            if not result.rows:
                return None
            return result.rows[0].get("current_schema")

        schema = await self._registry.execute_with_retry(_read, active.id)
        if schema:
            self._schema = schema
            self._save(active)
            self._notify()

    def clear_session(self) -> None:
        self._schema = None
        active = self._registry.get_active_connection()
        if active is not None:
            self._registry.metadata.update(_schema_key(active.id), None)
        self._notify()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self.state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def close(self) -> None:
        self._unsubscribe_active()
        self._listeners.clear()

    def _require_active(self) -> ConnectionRecord:
        active = self._registry.get_active_connection()
        if active is None:
            raise ConfigurationError("No active connection")
        return active

    def _handle_active_changed(self, _active: ConnectionRecord | None) -> None:
        self._load()
        self._notify()

    def _load(self) -> None:
        active = self._registry.get_active_connection()
        if active is None:
            self._schema = None
            return
        stored = self._registry.metadata.get(_schema_key(active.id))
        self._schema = stored if isinstance(stored, str) else None

    def _save(self, active: ConnectionRecord) -> None:
        if self._schema:
            self._registry.metadata.update(_schema_key(active.id), self._schema)

    def _notify(self) -> None:
        state = self.state
        for listener in tuple(self._listeners):
            listener(state)


def _schema_key(connection_id: str) -> str:
    return f"session.{connection_id}.schema"


__all__ = ["SessionManager", "SessionState"]
