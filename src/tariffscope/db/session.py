"""Database engine and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from tariffscope.config import get_settings


def build_engine(url: Optional[str] = None) -> Engine:
    """Create an engine; SQLite URLs get a single shared connection."""

    url = url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """Process-wide session factory bound to ``DATABASE_URL``."""

    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine()
        _session_factory = build_session_factory(_engine)
    return _session_factory


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Context manager for standalone sessions (stores, Celery tasks, scripts).

    Usage:
        with session_scope() as session:
            session.add(row)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables (tests and local development).

    In production, use Alembic migrations:
        alembic upgrade head
    """
    from tariffscope.db.models import Base

    Base.metadata.create_all(bind=engine or _engine or build_engine())


def drop_all(engine: Optional[Engine] = None) -> None:
    from tariffscope.db.models import Base

    Base.metadata.drop_all(bind=engine or _engine or build_engine())
