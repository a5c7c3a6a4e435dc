"""App configuration loading helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import tomllib

from pydantic import BaseModel, Field, ValidationError

CONFIG_DIR = Path.home() / ".config" / "querydeck"
CONFIG_FILE = CONFIG_DIR / "config.toml"
STATE_FILE = CONFIG_DIR / "state.json"


class AppConfig(BaseModel):
    """Shape of the configuration file."""

    max_result_rows: int = Field(default=10000, ge=1)
    query_timeout: float = Field(default=300, gt=0)
    connection_validation_timeout: float = Field(default=1.0, gt=0)
    max_query_history_size: int = Field(default=1000, ge=0)
    validate_with_round_trip: bool = True
    validation_query: str = "SELECT 1"
    connect_timeout: float = Field(default=5.0, gt=0)
    credential_backend: Literal["keyring", "memory"] = "keyring"

    def with_updates(self, **updates: object) -> AppConfig:
        """Return a validated copy with the given options changed."""

        return AppConfig(**{**self.model_dump(), **updates})


_INT_OPTIONS = ("max_result_rows", "max_query_history_size")
_FLOAT_OPTIONS = ("query_timeout", "connection_validation_timeout", "connect_timeout")
_STR_OPTIONS = ("validation_query", "credential_backend")


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    try:
        return AppConfig(**data)
    except ValidationError:
        return AppConfig()


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"max_result_rows = {config.max_result_rows}",
        f"query_timeout = {config.query_timeout}",
        f"connection_validation_timeout = {config.connection_validation_timeout}",
        f"max_query_history_size = {config.max_query_history_size}",
        f"validate_with_round_trip = {str(config.validate_with_round_trip).lower()}",
        f'validation_query = "{_escape(config.validation_query)}"',
        f"connect_timeout = {config.connect_timeout}",
        f'credential_backend = "{config.credential_backend}"',
    ]
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in _INT_OPTIONS:
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            data[key] = value
    for key in _FLOAT_OPTIONS:
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = float(value)
    for key in _STR_OPTIONS:
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    round_trip = raw.get("validate_with_round_trip")
    if isinstance(round_trip, bool):
        data["validate_with_round_trip"] = round_trip
    return data


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


__all__ = ["AppConfig", "CONFIG_FILE", "STATE_FILE", "load_config", "save_config"]
