"""Runtime configuration.

Values come from ``AGENT_RUNTIME_*`` environment variables; CLI options
override them.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

ENV_PREFIX = "AGENT_RUNTIME_"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4096
DEFAULT_REQUEST_TIMEOUT = 30.0

# Bind-all addresses are reached through the loopback interface
WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::"})


def _split_origins(value: str) -> list[str]:
    return [origin.strip() for origin in value.split(",") if origin.strip()]


@dataclass
class RuntimeConfig:
    """Settings for serving one agent session."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    token: str | None = None
    allowed_origins: list[str] = field(default_factory=list)
    static_dir: str | None = None
    session_factory: str | None = None
    dialog_timeout: float | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    log_level: str = "WARNING"

    @property
    def client_host(self) -> str:
        """The host a local client should dial to reach this server."""
        if self.host in WILDCARD_HOSTS:
            return "localhost"
        return f"[{self.host}]" if ":" in self.host else self.host

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeConfig:
        """Build a config from the environment.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        config = cls()
        if host := get("HOST"):
            config.host = host
        if port := get("PORT"):
            config.port = int(port)
        config.token = get("TOKEN")
        if origins := get("ALLOWED_ORIGINS"):
            config.allowed_origins = _split_origins(origins)
        config.static_dir = get("STATIC_DIR")
        config.session_factory = get("SESSION_FACTORY")
        if dialog_timeout := get("DIALOG_TIMEOUT"):
            config.dialog_timeout = float(dialog_timeout)
        if request_timeout := get("REQUEST_TIMEOUT"):
            config.request_timeout = float(request_timeout)
        if log_level := get("LOG_LEVEL"):
            config.log_level = log_level.upper()
        return config

    def with_overrides(self, **overrides: Any) -> RuntimeConfig:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
