import itertools

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.estimation import create_app
from app.estimation.constants import DEFAULT_ROLES
from app.estimation.db import session_scope
from app.estimation.models import Base, Role, User
from app.estimation.modules.lineage import service
from app.estimation.modules.lineage.repository import ParentRef

# email local-part -> (role key, active)
USERS = {
    "admin": ("admin", True),
    "manager": ("manager", True),
    "estimator": ("estimation_engineer", True),
    "estimator2": ("estimation_engineer", True),
    "site": ("site_engineer", True),
    "inactive": ("estimation_engineer", False),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("SEQUENCE_RETRY_LIMIT", "DEFAULT_VAT_RATE", "LOG_LEVEL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        roles = {key: Role(key=key, name=name) for key, name in DEFAULT_ROLES.items()}
        s.add_all(roles.values())
        for local, (role_key, active) in USERS.items():
            u = User(
                email=f"{local}@example.com",
                name=local.capitalize(),
                password_hash=generate_password_hash("password"),
                is_active=active,
            )
            u.roles.append(roles[role_key])
            s.add(u)

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


class LineageBuilder:
    """Shortcuts for building document chains inside one session."""

    def __init__(self) -> None:
        self._n = itertools.count(1)

    def user(self, s, local: str) -> User:
        return s.execute(select(User).where(User.email == f"{local}@example.com")).scalar_one()

    def base(self, s, *, title: str = "Tower A", approved: bool = True, **fields):
        payload = {"customer_name": "Acme Contracting", "project_title": title, **fields}
        doc = service.create_base_document(s, payload, self.user(s, "estimator"))
        if approved:
            self.approve(s, doc)
        return doc

    def approve(self, s, doc):
        service.request_approval(s, doc.kind, doc.id, self.user(s, "estimator"))
        service.decide(s, doc.kind, doc.id, self.user(s, "manager"), "approve")
        return doc

    def amend(self, s, parent, *, approved: bool = False, **fields):
        payload = fields or {"introduction_text": f"Revision note {next(self._n)}"}
        doc = service.create_from_parent(
            s, "amendment", ParentRef(parent.kind, parent.id), payload, self.user(s, "estimator")
        )
        if approved:
            self.approve(s, doc)
        return doc

    def project(self, s, source, **fields):
        return service.create_from_parent(
            s, "execution_record", ParentRef(source.kind, source.id), fields, self.user(s, "manager")
        )

    def variation(self, s, parent, *, approved: bool = False, **fields):
        payload = fields or {"introduction_text": f"Variation note {next(self._n)}"}
        doc = service.create_from_parent(
            s, "change_order", ParentRef(parent.kind, parent.id), payload, self.user(s, "estimator")
        )
        if approved:
            self.approve(s, doc)
        return doc


@pytest.fixture()
def lineage():
    return LineageBuilder()
