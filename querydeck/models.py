"""Shared dataclasses used across connection/query modules."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

DEFAULT_PORT = 5432
DEFAULT_COLUMN_TYPE = "VARCHAR"


@dataclass(frozen=True, slots=True)
class ConnectionSpec:
    """User-supplied connection settings for add/update operations."""

    name: str
    host: str
    user: str
    password: str | None = field(default=None, repr=False)
    port: int | None = None
    database: str | None = None
    schema: str | None = None

    def address(self) -> tuple[str, int]:
        """Return ``(host, port)``, accepting ``host:port`` in the host field."""

        return split_host(self.host, self.port)


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    """Stored connection; the password only lives in memory."""

    id: str
    name: str
    host: str
    user: str
    port: int = DEFAULT_PORT
    password: str | None = field(default=None, repr=False, compare=False)
    database: str | None = None
    schema: str | None = None

    @classmethod
    def from_spec(cls, connection_id: str, spec: ConnectionSpec, *, password: str | None) -> ConnectionRecord:
        host, port = spec.address()
        return cls(
            id=connection_id,
            name=spec.name,
            host=host,
            port=port,
            user=spec.user,
            password=password,
            database=spec.database,
            schema=spec.schema,
        )

    @classmethod
    def from_public_fields(cls, data: Mapping[str, Any], *, password: str | None) -> ConnectionRecord:
        port = data.get("port")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            host=str(data.get("host") or "localhost"),
            port=int(port) if isinstance(port, int) else DEFAULT_PORT,
            user=str(data.get("user") or ""),
            password=password,
            database=data.get("database") or None,
            schema=data.get("schema") or None,
        )

    def public_fields(self) -> dict[str, Any]:
        """Non-secret fields, safe for the metadata store."""

        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "database": self.database,
            "schema": self.schema,
        }

    def renamed(self, name: str) -> ConnectionRecord:
        return replace(self, name=name)


@dataclass(frozen=True, slots=True)
class ColumnMetadata:
    """Column description surfaced alongside result rows."""

    name: str
    type: str = DEFAULT_COLUMN_TYPE
    precision: int | None = None
    scale: int | None = None
    size: int | None = None


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized query output returned to callers."""

    columns: tuple[str, ...]
    column_metadata: tuple[ColumnMetadata, ...]
    rows: tuple[dict[str, Any], ...]
    row_count: int
    execution_time_ms: int


def split_host(host: str, port: int | None = None) -> tuple[str, int]:
    """Split ``host:port`` strings; an explicit ``port`` wins."""

    value = host.strip()
    parsed_port: int | None = None
    if value.count(":") == 1:
        name, _, raw_port = value.partition(":")
        if raw_port.isdigit():
            value, parsed_port = name, int(raw_port)
    return value or "localhost", port or parsed_port or DEFAULT_PORT


__all__ = [
    "ColumnMetadata",
    "ConnectionRecord",
    "ConnectionSpec",
    "DEFAULT_COLUMN_TYPE",
    "DEFAULT_PORT",
    "QueryResult",
    "split_host",
]
