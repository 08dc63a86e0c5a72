"""Seed the default roles and an admin user. Safe to re-run."""

import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.estimation.constants import DEFAULT_ROLES, ROLE_ADMIN  # noqa: E402
from app.estimation.models import Role, User  # noqa: E402
from scripts._db_utils import resolve_database_url, script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Create missing roles and the ADMIN_EMAIL user, and grant it the admin role.
    An existing admin keeps its password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()

    with script_session(resolve_database_url(database_url)) as s:
        existing = {r.key: r for r in s.execute(select(Role)).scalars()}
        for key, name in DEFAULT_ROLES.items():
            if key not in existing:
                existing[key] = Role(key=key, name=name)
                s.add(existing[key])

        admin = s.execute(select(User).where(User.email == admin_email)).scalar_one_or_none()
        if admin is None:
            admin = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(os.environ.get("ADMIN_PASSWORD") or "change-me"),
                is_active=True,
            )
            s.add(admin)
        if existing[ROLE_ADMIN] not in admin.roles:
            admin.roles.append(existing[ROLE_ADMIN])

    print(f"Seeded {len(DEFAULT_ROLES)} roles; admin user {admin_email}.")


if __name__ == "__main__":
    seed_only()
