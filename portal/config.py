"""Runtime settings read from the environment."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


def require_session_secret(env: Mapping[str, str] | None = None) -> str:
    """Return SESSION_SECRET or fail startup. There is no fallback secret."""
    env = os.environ if env is None else env
    secret = (env.get("SESSION_SECRET") or "").strip()
    if not secret:
        raise RuntimeError("SESSION_SECRET environment variable is required")
    return secret


@dataclass(frozen=True)
class Settings:
    session_secret: str
    storage_backend: str = "memory"  # memory | sql
    database_url: str | None = None
    seed: bool = True
    cookie_secure: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        database_url = (env.get("DATABASE_URL") or "").strip() or None
        backend = (env.get("PORTAL_STORAGE") or "").strip().lower()
        if not backend:
            backend = "sql" if database_url else "memory"
        if backend not in ("memory", "sql"):
            raise RuntimeError(f"PORTAL_STORAGE must be 'memory' or 'sql', got {backend!r}")
        return cls(
            session_secret=require_session_secret(env),
            storage_backend=backend,
            database_url=database_url,
            seed=_flag(env.get("PORTAL_SEED"), True),
            cookie_secure=_flag(env.get("PORTAL_COOKIE_SECURE"), False),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        )
