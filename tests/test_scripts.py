import pytest
from sqlalchemy import inspect, select

from app.estimation.constants import DEFAULT_ROLES
from app.estimation.models import Base, Role, User
from scripts._db_utils import create_script_engine, script_session
from scripts.init_db import seed_only
from scripts.release import run_release


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path/'seed.db'}"
    engine = create_script_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    monkeypatch.setenv("ADMIN_EMAIL", "Boss@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "s3cret")
    seed_only(database_url=url)
    seed_only(database_url=url)

    with script_session(url) as s:
        assert sorted(r.key for r in s.execute(select(Role)).scalars()) == sorted(DEFAULT_ROLES)
        [admin] = s.execute(select(User)).scalars().all()
        assert admin.email == "boss@example.com"
        assert admin.role_keys == frozenset({"admin"})


def test_release_migrates_and_seeds(tmp_path, monkeypatch):
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    url = f"sqlite:///{tmp_path/'release.db'}"
    run_release(url)

    engine = create_script_engine(url)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert {"base_documents", "amendments", "execution_records", "change_orders", "sequence_counters"} <= tables
    assert "alembic_version" in tables

    with script_session(url) as s:
        [admin] = s.execute(select(User)).scalars().all()
        assert admin.email == "admin@example.com"


def test_release_refuses_sqlite_in_production(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError, match="sqlite"):
        run_release(f"sqlite:///{tmp_path/'prod.db'}")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        run_release()
