from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import normalize_database_url, settings

logger = logging.getLogger(__name__)


def _make_engine(database_url: str) -> Engine:
    database_url = normalize_database_url(database_url)
    connect_args = {}
    if database_url.startswith("sqlite"):
        # the API serves requests from a thread pool
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        echo=False,              # set True to see the queries
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine: Engine = _make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """ORM base for every model."""
    pass


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def configure(database_url: str) -> Engine:
    """Point the module at another database (tests, CLI --database-url)."""
    global engine
    engine.dispose()
    engine = _make_engine(database_url)
    SessionLocal.configure(bind=engine)
    logger.debug("Database engine bound to %s", engine.url.render_as_string(hide_password=True))
    return engine


def init_db() -> None:
    """Create the tables that do not exist yet."""
    # registers every mapped class on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Context manager around a session:
    - commit when the block succeeds
    - rollback on exceptions
    - always close
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
