"""Tests for credential and metadata stores."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from keyring.errors import PasswordDeleteError

from querydeck import stores as stores_module
from querydeck.stores import (
    InMemoryCredentialStore,
    InMemoryMetadataStore,
    JsonFileMetadataStore,
    KeyringCredentialStore,
    password_key,
)


class _FakeKeyring:
    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], str] = {}

    def set_password(self, service: str, key: str, value: str) -> None:
        self.secrets[(service, key)] = value

    def get_password(self, service: str, key: str) -> str | None:
        return self.secrets.get((service, key))

    def delete_password(self, service: str, key: str) -> None:
        if (service, key) not in self.secrets:
            raise PasswordDeleteError("not found")
        del self.secrets[(service, key)]


@pytest.fixture
def fake_keyring(monkeypatch: pytest.MonkeyPatch) -> _FakeKeyring:
    backend = _FakeKeyring()
    monkeypatch.setattr(stores_module.keyring, "set_password", backend.set_password)
    monkeypatch.setattr(stores_module.keyring, "get_password", backend.get_password)
    monkeypatch.setattr(stores_module.keyring, "delete_password", backend.delete_password)
    return backend


def test_keyring_store_scopes_secrets_by_service(fake_keyring: _FakeKeyring) -> None:
    store = KeyringCredentialStore()

    store.store(password_key("abc"), "s3cret")

    assert fake_keyring.secrets == {("querydeck", "password.abc"): "s3cret"}
    assert store.get("password.abc") == "s3cret"


def test_keyring_store_delete_tolerates_missing_secret(fake_keyring: _FakeKeyring) -> None:
    store = KeyringCredentialStore(service="custom")
    store.store("password.abc", "s3cret")

    store.delete("password.abc")
    store.delete("password.abc")

    assert store.get("password.abc") is None


def test_in_memory_credential_store() -> None:
    store = InMemoryCredentialStore({"password.a": "x"})

    store.store("password.b", "")
    store.delete("password.a")
    store.delete("password.missing")

    assert store.get("password.a") is None
    assert store.get("password.b") == ""


def test_in_memory_metadata_store_removes_on_none() -> None:
    store = InMemoryMetadataStore({"keep": 1, "drop": 2})

    store.update("drop", None)
    store.update("added", [1, 2])

    assert store.get("drop") is None
    assert store.get("missing", "fallback") == "fallback"
    assert set(store.keys()) == {"keep", "added"}


def test_json_store_persists_updates(tmp_path: Path) -> None:
    path = tmp_path / "state" / "state.json"
    store = JsonFileMetadataStore(path)

    store.update("connections", [{"id": "abc", "name": "Local"}])
    store.update("session.abc.schema", "sales")
    store.update("session.abc.schema", None)

    assert json.loads(path.read_text()) == {"connections": [{"id": "abc", "name": "Local"}]}
    assert JsonFileMetadataStore(path).get("connections") == [{"id": "abc", "name": "Local"}]
    assert not path.with_suffix(".json.tmp").exists()


def test_json_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json")

    store = JsonFileMetadataStore(path)

    assert tuple(store.keys()) == ()
    store.update("history", [])
    assert json.loads(path.read_text()) == {"history": []}


def test_json_store_ignores_non_object_document(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("[1, 2, 3]")

    assert JsonFileMetadataStore(path).get("connections") is None
