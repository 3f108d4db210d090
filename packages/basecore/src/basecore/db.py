"""
Database engine and session helpers.

Engines and sessionmakers are created lazily from DATABASE_URL so importing
a module never opens a connection.
"""

import functools
from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from basecore.settings import get_settings


@functools.lru_cache()
def get_engine() -> Engine:
    """Get the SQLAlchemy engine for DATABASE_URL (cached)."""
    url = get_settings().DATABASE_URL
    if url.startswith("sqlite"):
        # Local runs of the CLI and webhook share one file across threads
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(url, pool_pre_ping=True, echo=False)


@functools.lru_cache()
def get_sessionmaker() -> sessionmaker:
    """Get the sessionmaker bound to ``get_engine()`` (cached)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Iterator[Session]:
    """
    Dependency generator for FastAPI to get database session.

    Yields a database session and ensures it's closed after use.
    """
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()
