"""Database engine setup."""
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from contextchat.config import get_settings


def make_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create the SQLModel engine for the configured database.

    SQLite connections are shared across the worker threads the store
    runs its sessions on; an in-memory URL keeps one connection so every
    session sees the same data.
    """
    url = database_url or get_settings().DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    # Imported for table registration on SQLModel.metadata
    from contextchat.models import conversation  # noqa: F401

    SQLModel.metadata.create_all(engine)
