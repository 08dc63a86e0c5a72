from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.estimation.db import build_engine, make_sessionmaker  # noqa: E402

DEFAULT_DATABASE_URL = "sqlite:///estimation.db"


def resolve_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL).strip()


def create_script_engine(db_url: str):
    """Same engine setup as the app, so SQLite scripts also enforce foreign keys."""
    return build_engine(db_url)


@contextmanager
def script_session(db_url: str):
    engine = create_script_engine(db_url)
    s = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
