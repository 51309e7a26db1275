from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.backoffice.db import engine_for_url, make_sessionmaker


@contextmanager
def script_session(db_url: str):
    """Commit-or-rollback session for scripts that run without the Flask app."""
    engine = engine_for_url(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
