"""Secret and non-secret persistence used by the connection registry."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

import keyring
from keyring.errors import PasswordDeleteError

LOG = logging.getLogger(__name__)

KEYRING_SERVICE = "querydeck"


@runtime_checkable
class CredentialStore(Protocol):
    """Secret storage keyed by connection-scoped names."""

    def store(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> None: ...


@runtime_checkable
class MetadataStore(Protocol):
    """Key-value persistence for non-secret settings and session state."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def update(self, key: str, value: Any) -> None:
        """Set ``key``; ``None`` removes it."""

    def keys(self) -> Iterable[str]: ...


class KeyringCredentialStore:
    """Credential store backed by the operating system keyring."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service

    def store(self, key: str, value: str) -> None:
        keyring.set_password(self._service, key, value)

    def get(self, key: str) -> str | None:
        return keyring.get_password(self._service, key)

    def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self._service, key)
        except PasswordDeleteError:
            LOG.debug("No secret stored", extra={"key": key})


class InMemoryCredentialStore:
    """Process-local credential store (tests, ephemeral sessions)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(initial or {})

    def store(self, key: str, value: str) -> None:
        self._secrets[key] = value

    def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    def delete(self, key: str) -> None:
        self._secrets.pop(key, None)


class InMemoryMetadataStore:
    """Dictionary-backed metadata store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def update(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def keys(self) -> Iterable[str]:
        return tuple(self._data)


class JsonFileMetadataStore(InMemoryMetadataStore):
    """Metadata store persisted as a single JSON document."""

    def __init__(self, path: Path) -> None:
        super().__init__(_read_json(path))
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def update(self, key: str, value: Any) -> None:
        super().update(key, value)
        self._flush()

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(self._path.suffix + ".tmp")
        staging.write_text(json.dumps(self._data, indent=2, sort_keys=True))
        staging.replace(self._path)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError):
        LOG.warning("Ignoring unreadable metadata store", extra={"path": str(path)})
        return {}
    return raw if isinstance(raw, dict) else {}


def password_key(connection_id: str) -> str:
    return f"password.{connection_id}"


__all__ = [
    "CredentialStore",
    "InMemoryCredentialStore",
    "InMemoryMetadataStore",
    "JsonFileMetadataStore",
    "KEYRING_SERVICE",
    "KeyringCredentialStore",
    "MetadataStore",
    "password_key",
]
