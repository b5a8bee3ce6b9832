from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_SQLITE_URL = "sqlite:///sgdea.db"


def resolve_database_url(database_url: str | None = None) -> str:
    """Explicit argument, then DATABASE_URL, then the local SQLite file the app also defaults to."""
    return (database_url or os.environ.get("DATABASE_URL") or DEFAULT_SQLITE_URL).strip()


def create_script_engine(db_url: str):
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, future=True)

        @event.listens_for(engine, "connect")
        def _fk_on(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return engine
    return create_engine(db_url, future=True, pool_pre_ping=True, pool_recycle=1800)


@contextmanager
def script_session(database_url: str | None = None):
    """Session for one-off maintenance scripts: commits on success, rolls back on error."""
    engine = create_script_engine(resolve_database_url(database_url))
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
