"""SQLAlchemy engine and session factory.

Tags:
    task-spine, orm, sqlalchemy, session, engine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def create_task_engine(url: str = "sqlite:///taskspine.db", *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    SQLite engines allow cross-thread use (the store runs session work in
    worker threads) and enable WAL; an in-memory SQLite URL shares one
    connection so every session sees the same database.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs.setdefault("poolclass", StaticPool)

        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine

    return _sa_create_engine(url, echo=echo, **kwargs)


class TaskSession(Session):
    """Session with ``expire_on_commit=False``.

    Rows are converted to detached records after commit, so attribute
    expiry would only trigger needless reloads.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def task_session_factory(engine: Engine) -> sessionmaker[TaskSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``TaskSession`` instances."""
    return sessionmaker(bind=engine, class_=TaskSession)
