from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_ELECTRIC_URL = "http://localhost:5133"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ConfigurationError(RuntimeError):
    pass


@dataclass(frozen=True)
class AppConfig:
    database_url: str
    auth_secret: str
    app_base_url: str = DEFAULT_BASE_URL
    openrouter_api_key: str | None = None
    openrouter_model: str = DEFAULT_MODEL
    openrouter_base_url: str = OPENROUTER_BASE_URL
    electric_url: str = DEFAULT_ELECTRIC_URL
    electric_source_id: str | None = None
    electric_secret: str | None = None
    session_ttl_s: int = 60 * 60 * 24 * 7
    guest_free_requests: int = 1
    guest_window_s: int = 60 * 60 * 24
    log_level: str = "INFO"

    @property
    def llm_enabled(self) -> bool:
        return bool(self.openrouter_api_key)

    @property
    def secure_cookies(self) -> bool:
        return self.app_base_url.startswith("https://")


def _get(env: Mapping[str, str], name: str) -> str | None:
    value = str(env.get(name) or "").strip()
    return value or None


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> AppConfig:
    """Resolve the process configuration once, failing fast on missing secrets."""
    env = os.environ if env is None else env

    database_url = _get(env, "DATABASE_URL")
    if not database_url:
        raise ConfigurationError("DATABASE_URL is not configured")
    auth_secret = _get(env, "AUTH_SECRET")
    if not auth_secret:
        raise ConfigurationError("AUTH_SECRET is not configured")

    return AppConfig(
        database_url=database_url,
        auth_secret=auth_secret,
        app_base_url=(_get(env, "APP_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
        openrouter_api_key=_get(env, "OPENROUTER_API_KEY"),
        openrouter_model=_get(env, "OPENROUTER_MODEL") or DEFAULT_MODEL,
        openrouter_base_url=(_get(env, "OPENROUTER_BASE_URL") or OPENROUTER_BASE_URL).rstrip("/"),
        electric_url=(_get(env, "ELECTRIC_URL") or DEFAULT_ELECTRIC_URL).rstrip("/"),
        electric_source_id=_get(env, "ELECTRIC_SOURCE_ID"),
        electric_secret=_get(env, "ELECTRIC_SECRET"),
        session_ttl_s=_get_int(env, "SESSION_TTL_S", 60 * 60 * 24 * 7),
        guest_free_requests=_get_int(env, "GUEST_FREE_REQUESTS", 1),
        guest_window_s=_get_int(env, "GUEST_WINDOW_S", 60 * 60 * 24),
        log_level=(_get(env, "LOG_LEVEL") or "INFO").upper(),
    )
