"""App configuration loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, field_validator

from .models import Operation

CONFIG_FILE = Path.home() / ".config" / "docproxy" / "config.toml"

DEFAULT_DENIED_KEYWORDS: tuple[str, ...] = (
    "dropDatabase",
    "drop",
    "eval",
    "runCommand",
    "adminCommand",
    "$where",
    "$function",
    "$accumulator",
    "mapReduce",
    "shutdown",
    "createUser",
    "dropUser",
    "grantRolesToUser",
)

_FLOAT_KEYS = (
    "idle_timeout_seconds",
    "scan_interval_seconds",
    "connect_timeout",
    "status_log_interval_seconds",
)
_INT_KEYS = ("max_argument_depth", "pool_max_size", "port")
_STR_KEYS = ("root_prefix", "host", "session_cookie")


class AppConfig(BaseModel):
    """Shape of the proxy configuration file."""

    idle_timeout_seconds: float = Field(default=600.0, gt=0)
    scan_interval_seconds: float = Field(default=60.0, gt=0)
    allowed_operations: tuple[str, ...] = Operation.names()
    denied_keywords: tuple[str, ...] = DEFAULT_DENIED_KEYWORDS
    root_prefix: str = "db"
    max_argument_depth: int = Field(default=32, gt=0)
    connect_timeout: float = Field(default=5.0, gt=0)
    pool_max_size: int = Field(default=4, gt=0)
    host: str = "127.0.0.1"
    port: int = Field(default=5000, gt=0, lt=65536)
    session_cookie: str = "docproxy_session"
    status_log_interval_seconds: float = Field(default=10.0, gt=0)

    @field_validator("allowed_operations")
    @classmethod
    def _known_operations(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        known = set(Operation.names())
        unknown = [name for name in value if name not in known]
        if unknown:
            raise ValueError(f"Unknown operations in allow-list: {', '.join(unknown)}")
        return value

    @field_validator("root_prefix")
    @classmethod
    def _non_empty_prefix(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("root_prefix must not be empty")
        return value.strip()

    def allowed(self) -> frozenset[Operation]:
        """Allow-list as enum members."""

        return frozenset(Operation(name) for name in self.allowed_operations)

    def with_overrides(self, **updates: object) -> AppConfig:
        """Return a validated copy with the given fields replaced."""

        return AppConfig.model_validate({**self.model_dump(), **updates})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    return AppConfig(**data)


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in _FLOAT_KEYS:
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            data[key] = float(value)
    for key in _INT_KEYS:
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            if key == "port" and value >= 65536:
                continue
            data[key] = value
    for key in _STR_KEYS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            data[key] = value
    operations = raw.get("allowed_operations")
    if isinstance(operations, list):
        known = set(Operation.names())
        data["allowed_operations"] = tuple(str(name) for name in operations if name in known)
    keywords = raw.get("denied_keywords")
    if isinstance(keywords, list):
        data["denied_keywords"] = tuple(str(word) for word in keywords if isinstance(word, str) and word)
    return data


__all__ = ["AppConfig", "CONFIG_FILE", "DEFAULT_DENIED_KEYWORDS", "load_config"]
