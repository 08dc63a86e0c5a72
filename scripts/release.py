"""
Release-phase helper: migrate the schema to head, then seed roles and the admin user.

Refuses to run against SQLite when ENV is production. Seeding never overwrites an
existing admin password.

Usage:
  DATABASE_URL=postgresql://... python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402

from scripts import init_db  # noqa: E402


def _alembic_config(db_url: str) -> Config:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _release_url(db_url: str | None) -> str:
    url = (db_url or os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    return url


def run_release(db_url: str | None = None, *, seed: bool = True) -> None:
    url = _release_url(db_url)
    print("=== estimation release start ===", flush=True)
    command.upgrade(_alembic_config(url), "head")
    print("Migrations at head.", flush=True)
    if seed:
        init_db.seed_only(database_url=url)
    print("=== estimation release done ===", flush=True)


if __name__ == "__main__":
    run_release()
