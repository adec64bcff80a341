from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from portal.config import Settings
from portal.storage import MemoryStorage, SqlStorage, Storage

log = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"


def default_sqlite_url() -> str:
    return f"sqlite:///{DATA_DIR / 'portal.db'}"


def normalize_database_url(url: str) -> str:
    """Accept Heroku-style ``postgres://`` URLs, which SQLAlchemy rejects."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def create_sql_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory database.
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db_path = Path(url.removeprefix("sqlite:///"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args={"check_same_thread": False})


def build_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "memory":
        log.info("Using in-memory storage")
        return MemoryStorage()
    url = settings.database_url or default_sqlite_url()
    # Credentials sit before the "@"; keep them out of the log.
    log.info("Using SQL storage at %s", url.split("@")[-1])
    return SqlStorage(create_sql_engine(url))
