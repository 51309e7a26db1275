from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def engine_for_url(db_url: str) -> Engine:
    """Engine with the pool settings we run in production; sqlite gets FK enforcement."""
    options: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        options.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    engine = create_engine(db_url, **options)

    if engine.dialect.name == "sqlite":
        # needed for ON DELETE SET NULL on users.picture_id and friends
        @event.listens_for(engine, "connect")
        def _sqlite_fks(dbapi_connection, _record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = engine_for_url(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Session bound to the current request (or CLI app context); closed on teardown.
    """
    s = g.get("db_session")
    if s is None:
        s = (app or current_app).extensions["sqlalchemy_sessionmaker"]()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    try:
        s.close()
    except Exception:
        current_app.logger.exception("Failed to close request DB session")


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """Standalone session for tests and CLI commands; commits on success."""
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
