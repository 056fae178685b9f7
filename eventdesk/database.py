"""Database helpers for EventDesk."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from .config import settings

DATABASE_URL = f"sqlite:///{settings.database_path}"

# Writers wait this long for the SQLite lock before OperationalError surfaces.
SQLITE_BUSY_TIMEOUT_SECONDS = 15


def build_engine(url: str, **kwargs) -> Engine:
    connect_args = kwargs.pop("connect_args", {})
    if url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT_SECONDS)
    return create_engine(url, connect_args=connect_args, future=True, **kwargs)


def build_session_factory(bind: Engine) -> scoped_session:
    return scoped_session(
        sessionmaker(
            bind=bind,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


@contextmanager
def get_session() -> Iterator[Session]:
    """Context manager returning the thread's scoped SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def unit_of_work() -> Iterator[Session]:
    """Yield a fresh session that is not shared with the request scope.

    Registration writes commit or roll back on their own, independent of
    whatever the calling request handler still has pending.
    """
    session = SessionLocal.session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def lock_for_write(session: Session) -> None:
    """Take the database write lock before the first read of a unit of work.

    SQLite only grabs its write lock at the first write, so two writers can
    read the same state and one of them fails later. ``BEGIN IMMEDIATE``
    makes the second writer wait (up to the busy timeout) instead. Other
    backends rely on ``SELECT ... FOR UPDATE`` issued by the caller.
    """
    connection = session.connection()
    if connection.dialect.name != "sqlite":
        return
    if not connection.connection.dbapi_connection.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")
