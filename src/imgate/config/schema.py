"""Config schema and accessor."""

from __future__ import annotations

import os
from typing import Any

from loguru import logger

from imgate.core.constants import (
    DEFAULT_COMMAND_CODE,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_IDENTITY_PREFIX,
    DEFAULT_READY_TIMEOUT,
)
from imgate.core.errors import GatewayConfigurationError

# Env keys that override config (loaded once per reload)
_ENV_OVERRIDE_KEYS = (
    "IMGATE_HOST",
    "IMGATE_PORT",
    "IMGATE_SIGNING_BASE_URL",
    "IMGATE_COMMAND_FALLBACK_TARGET",
    "IMGATE_STATE_FILE",
    "IMGATE_TRANSPORT_FACTORY",
)

_POSITIVE_NUMBERS = (
    "signing_timeout_seconds",
    "ready_timeout_seconds",
    "command_timeout_seconds",
    "heartbeat_interval_seconds",
)


def _load_env_overrides() -> dict[str, str]:
    return {k: os.environ.get(k, "") for k in _ENV_OVERRIDE_KEYS}


class Config:
    """Config accessor with attribute-style access for known keys."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}
        self._env: dict[str, str] = _load_env_overrides()

    def reload(self, data: dict[str, Any], *, validate: bool = True) -> None:
        """Replace config data (e.g. on SIGHUP reload). Rejected data leaves the current config in place."""
        if validate:
            Config(data)._validate()
        self._data = data or {}
        self._env = _load_env_overrides()
        logger.debug("Config reloaded: {} keys", len(self._data))

    def _validate(self) -> None:
        """Validate config structure; raise GatewayConfigurationError on failure."""
        for key in _POSITIVE_NUMBERS:
            if key not in self._data:
                continue
            value = self._data[key]
            try:
                ok = float(value) > 0
            except (TypeError, ValueError):
                ok = False
            if not ok:
                raise GatewayConfigurationError(
                    f"{key} must be a positive number",
                    code="invalid_number",
                    details={"key": key, "value": value},
                )
        try:
            port = self.port
        except (TypeError, ValueError) as exc:
            raise GatewayConfigurationError(
                "port must be an integer",
                code="invalid_port",
                original_error=exc,
            ) from exc
        if not 0 < port < 65536:
            raise GatewayConfigurationError(
                "port out of range",
                code="invalid_port",
                details={"port": port},
            )
        factory = self.transport_factory
        if factory != "loopback" and ":" not in factory:
            raise GatewayConfigurationError(
                "transport_factory must be 'loopback' or 'module:attribute'",
                code="invalid_transport_factory",
                details={"value": factory},
            )

    def _env_or(self, env_key: str, key: str, default: Any) -> Any:
        val = self._env.get(env_key, "").strip()
        if val:
            return val
        return self._data.get(key, default)

    @property
    def raw(self) -> dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dot-separated path."""
        parts = key.split(".")
        obj: Any = self._data
        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default
        return obj

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def host(self) -> str:
        return str(self._env_or("IMGATE_HOST", "host", "0.0.0.0"))

    @property
    def port(self) -> int:
        return int(self._env_or("IMGATE_PORT", "port", 3001))

    @property
    def ws_path(self) -> str:
        return str(self._data.get("ws_path", "/ws"))

    @property
    def signing_base_url(self) -> str | None:
        val = self._env_or("IMGATE_SIGNING_BASE_URL", "signing_base_url", None)
        if val and isinstance(val, str) and val.strip():
            return val.strip()
        return None

    @property
    def signing_timeout_seconds(self) -> float:
        return float(self._data.get("signing_timeout_seconds", 10.0))

    @property
    def ready_timeout_seconds(self) -> float:
        return float(self._data.get("ready_timeout_seconds", DEFAULT_READY_TIMEOUT))

    @property
    def identity_prefix(self) -> str:
        return str(self._data.get("identity_prefix", DEFAULT_IDENTITY_PREFIX))

    @property
    def command_fallback_target(self) -> str | None:
        val = self._env_or("IMGATE_COMMAND_FALLBACK_TARGET", "command_fallback_target", None)
        if val is None:
            return None
        return str(val).strip() or None

    @property
    def command_code(self) -> str:
        return str(self._data.get("command_code", DEFAULT_COMMAND_CODE))

    @property
    def command_timeout_seconds(self) -> float:
        return float(self._data.get("command_timeout_seconds", DEFAULT_COMMAND_TIMEOUT))

    @property
    def heartbeat_interval_seconds(self) -> float:
        return float(self._data.get("heartbeat_interval_seconds", DEFAULT_HEARTBEAT_INTERVAL))

    @property
    def transport_factory(self) -> str:
        return str(self._env_or("IMGATE_TRANSPORT_FACTORY", "transport_factory", "loopback"))

    @property
    def admin_state_file(self) -> str:
        return str(self._env_or("IMGATE_STATE_FILE", "admin_state_file", "state.json"))


cfg: Config = Config({})
