#!/usr/bin/env python3
"""Grant a role to a user (idempotent).

Usage:
  python scripts/assign_role.py --email jane@example.com --role manager
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.estimation.constants import DEFAULT_ROLES  # noqa: E402
from app.estimation.models import Role, User  # noqa: E402
from scripts._db_utils import resolve_database_url, script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, choices=sorted(DEFAULT_ROLES), help="Role key to grant")
    args = parser.parse_args()

    with script_session(resolve_database_url()) as s:
        user = s.query(User).filter(User.email.ilike(args.email)).one_or_none()
        if not user:
            print(f"User not found: {args.email}")
            return
        role = s.query(Role).filter(Role.key == args.role).one_or_none()
        if not role:
            print(f"Role {args.role!r} not found. Run python scripts/init_db.py first.")
            return
        if role in (user.roles or []):
            print(f"User already has role {args.role}: {args.email}")
            return
        user.roles.append(role)
    print(f"Role {args.role} granted to {args.email}")


if __name__ == "__main__":
    main()
