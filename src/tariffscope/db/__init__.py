"""Relational persistence for jobs and optimization recommendations."""

from tariffscope.db.models import Base
from tariffscope.db.session import build_engine, build_session_factory, init_db, session_scope

__all__ = ["Base", "build_engine", "build_session_factory", "init_db", "session_scope"]
