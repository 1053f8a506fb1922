"""Application settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from a .env file if present
load_dotenv()


DEFAULT_FRONTEND_ORIGIN = "http://localhost:5173"
DEFAULT_JWT_SECRET = "carebridge-dev-secret"


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _split_origins(raw: Optional[str]) -> List[str]:
    value = raw if raw is not None else DEFAULT_FRONTEND_ORIGIN
    return [origin.strip() for origin in value.split(",") if origin.strip()]


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration for the API and push gateway."""

    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: List[str] = field(default_factory=lambda: [DEFAULT_FRONTEND_ORIGIN])
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    push_heartbeat_seconds: float = 30.0
    push_send_timeout_seconds: float = 5.0
    push_bootstrap_limit: int = 20
    push_require_token: bool = False
    goal_suggestion_model: str = "gpt-4.1-mini"

    @property
    def allow_all_origins(self) -> bool:
        return any(origin in {"*", "wildcard"} for origin in self.allowed_origins)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    return Settings(
        host=os.getenv("CAREBRIDGE_HOST", "0.0.0.0"),
        port=_get_int_env("PORT", 3000),
        environment=os.getenv("ENVIRONMENT", "development").lower(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        allowed_origins=_split_origins(os.getenv("FRONTEND_ORIGIN")),
        jwt_secret=os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET,
        access_token_expire_minutes=_get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
        push_heartbeat_seconds=_get_float_env("PUSH_HEARTBEAT_SECONDS", 30.0),
        push_send_timeout_seconds=_get_float_env("PUSH_SEND_TIMEOUT_SECONDS", 5.0),
        push_bootstrap_limit=max(1, _get_int_env("PUSH_BOOTSTRAP_LIMIT", 20)),
        push_require_token=_env_flag("PUSH_REQUIRE_TOKEN"),
        goal_suggestion_model=os.getenv("GOAL_SUGGESTION_MODEL", "gpt-4.1-mini"),
    )


__all__ = ["Settings", "get_settings"]
