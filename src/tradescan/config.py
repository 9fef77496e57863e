"""Service configuration for tradescan."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from tradescan._constants import (
    DEFAULT_DB_FILE,
    DEFAULT_MAX_BODY_BYTES,
    DEFAULT_MIN_MOD_VERSION,
    DEFAULT_PORT,
)
from tradescan.exceptions import ConfigError

_JOURNAL_MODES = frozenset({"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class ScanServiceConfig:
    """Service configuration.

    Parameters
    ----------
    db_file : str
        Path of the SQLite database file. ``":memory:"`` keeps everything
        in process memory (useful for tests).
    host : str
        Interface the HTTP adapter binds to.
    port : int
        TCP port the HTTP adapter listens on.
    maintenance_mode : bool
        When enabled every endpoint except ``/healthz`` answers 503.
    min_mod_version : str
        Minimum client mod version advertised on ``/v1/mod-version``.
    repair_on_startup : bool
        Recompute every nearest-waystone annotation before serving.
    max_body_bytes : int
        Maximum accepted request body size.
    journal_mode : str
        SQLite journal mode applied when the store is opened.
    """

    db_file: str = DEFAULT_DB_FILE
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    maintenance_mode: bool = False
    min_mod_version: str = DEFAULT_MIN_MOD_VERSION
    repair_on_startup: bool = True
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    journal_mode: str = "WAL"

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"port must be between 1 and 65535, got {self.port}")
        if self.max_body_bytes <= 0:
            raise ConfigError("max_body_bytes must be positive")
        if self.journal_mode.upper() not in _JOURNAL_MODES:
            raise ConfigError(f"unsupported journal_mode: {self.journal_mode}")
        if not self.db_file:
            raise ConfigError("db_file must be non-empty")

    @classmethod
    def from_env(cls, **overrides: Any) -> ScanServiceConfig:
        """Create configuration from environment variables.

        Reads ``TRADESCAN_DB_FILE``, ``TRADESCAN_HOST``, ``TRADESCAN_PORT``,
        ``TRADESCAN_MAINTENANCE_MODE``, ``TRADESCAN_MIN_MOD_VERSION``,
        ``TRADESCAN_REPAIR_ON_STARTUP``, ``TRADESCAN_MAX_BODY_BYTES`` and
        ``TRADESCAN_JOURNAL_MODE``. Explicit keyword arguments override
        environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "TRADESCAN_DB_FILE": "db_file",
            "TRADESCAN_HOST": "host",
            "TRADESCAN_MIN_MOD_VERSION": "min_mod_version",
            "TRADESCAN_JOURNAL_MODE": "journal_mode",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip():
                config_kwargs[field_name] = val.strip()

        port_env = env.get("TRADESCAN_PORT")
        if port_env is not None and "port" not in overrides:
            config_kwargs["port"] = _env_int("TRADESCAN_PORT", port_env)

        body_env = env.get("TRADESCAN_MAX_BODY_BYTES")
        if body_env is not None and "max_body_bytes" not in overrides:
            config_kwargs["max_body_bytes"] = _env_int("TRADESCAN_MAX_BODY_BYTES", body_env)

        if "maintenance_mode" not in overrides:
            config_kwargs["maintenance_mode"] = _env_bool(env.get("TRADESCAN_MAINTENANCE_MODE"), False)

        if "repair_on_startup" not in overrides:
            config_kwargs["repair_on_startup"] = _env_bool(env.get("TRADESCAN_REPAIR_ON_STARTUP"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
