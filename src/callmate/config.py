"""Environment-driven settings."""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping
from typing import Any

from callmate.call.state import CallerType
from callmate.call.timers import CONNECTION_TIMEOUT


class ConfigError(ValueError):
    """Raised when an environment variable has an unusable value."""


@dataclasses.dataclass(frozen=True)
class Settings:
    api_url: str
    signaling_url: str
    user_id: str
    role: CallerType
    access_token: str
    refresh_token: str
    web_host: str = "127.0.0.1"
    web_port: int = 8080
    connection_timeout: float = CONNECTION_TIMEOUT
    log_level: int = logging.INFO

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Read ``CALLMATE_*`` variables (call ``load_dotenv`` first)."""
        if env is None:
            env = os.environ
        api_url = env.get("CALLMATE_API_URL", "http://localhost:3000")
        signaling_url = env.get(
            "CALLMATE_SIGNALING_URL", _default_signaling_url(api_url)
        )

        role_name = env.get("CALLMATE_ROLE", "user")
        try:
            role = CallerType(role_name)
        except ValueError:
            raise ConfigError(
                f"CALLMATE_ROLE must be user or provider, not {role_name!r}"
            ) from None

        port = _parse_number(env, "CALLMATE_WEB_PORT", "8080", int)
        timeout = _parse_number(
            env, "CALLMATE_CONNECTION_TIMEOUT", str(CONNECTION_TIMEOUT), float
        )
        if timeout <= 0:
            raise ConfigError("CALLMATE_CONNECTION_TIMEOUT must be positive")

        level_name = env.get("CALLMATE_LOG_LEVEL", "INFO").upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ConfigError(f"Unknown CALLMATE_LOG_LEVEL {level_name!r}")

        return cls(
            api_url=api_url,
            signaling_url=signaling_url,
            user_id=env.get("CALLMATE_USER_ID", ""),
            role=role,
            access_token=env.get("CALLMATE_ACCESS_TOKEN", ""),
            refresh_token=env.get("CALLMATE_REFRESH_TOKEN", ""),
            web_host=env.get("CALLMATE_WEB_HOST", "127.0.0.1"),
            web_port=port,
            connection_timeout=timeout,
            log_level=level,
        )


def _default_signaling_url(api_url: str) -> str:
    if api_url.startswith("https://"):
        return "wss://" + api_url[len("https://") :].rstrip("/") + "/signaling"
    if api_url.startswith("http://"):
        return "ws://" + api_url[len("http://") :].rstrip("/") + "/signaling"
    return api_url.rstrip("/") + "/signaling"


def _parse_number(
    env: Mapping[str, str], name: str, default: str, kind: type
) -> Any:
    raw = env.get(name, default)
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} is not a valid number: {raw!r}") from None
