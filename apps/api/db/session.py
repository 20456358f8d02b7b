from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .base import Base


def create_db_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # one shared connection so every session sees the same in-memory db
            return create_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine, create_schema: bool = False) -> sessionmaker[Session]:
    if create_schema:
        from . import models  # noqa: F401  registers tables on Base.metadata

        Base.metadata.create_all(engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def db_session(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Context manager for DB sessions for non-dependency usage.

    Example:
        with db_session(factory) as db:
            ...
    """
    db = factory()
    try:
        yield db
    finally:
        db.close()
