from __future__ import annotations

from collections.abc import Iterable

from app.estimation.constants import (
    ROLE_ADMIN,
    ROLE_ESTIMATION_ENGINEER,
    ROLE_MANAGER,
    ROLE_PROJECT_ENGINEER,
    ROLE_SITE_ENGINEER,
    DocumentKind,
)
from app.estimation.errors import AuthorizationError
from app.estimation.models import User

APPROVER_ROLES = frozenset({ROLE_MANAGER, ROLE_ADMIN})
PREPARER_ROLES = frozenset({ROLE_ESTIMATION_ENGINEER})
RESET_ROLES = frozenset({ROLE_ADMIN})

CREATE_ROLES: dict[DocumentKind, frozenset[str]] = {
    DocumentKind.BASE_DOCUMENT: frozenset({ROLE_ESTIMATION_ENGINEER}),
    DocumentKind.AMENDMENT: frozenset({ROLE_ESTIMATION_ENGINEER}),
    DocumentKind.EXECUTION_RECORD: frozenset({ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}),
    DocumentKind.CHANGE_ORDER: frozenset({ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}),
}

EDIT_ROLES: dict[DocumentKind, frozenset[str]] = {
    DocumentKind.BASE_DOCUMENT: frozenset({ROLE_ESTIMATION_ENGINEER}),
    DocumentKind.AMENDMENT: frozenset({ROLE_ESTIMATION_ENGINEER}),
    DocumentKind.EXECUTION_RECORD: frozenset({ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}),
    DocumentKind.CHANGE_ORDER: frozenset({ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}),
}

# Kinds whose creator may edit regardless of role.
CREATOR_MAY_EDIT = frozenset({DocumentKind.BASE_DOCUMENT, DocumentKind.AMENDMENT})

DELETE_ROLES: dict[DocumentKind, frozenset[str]] = {
    DocumentKind.BASE_DOCUMENT: frozenset({ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}),
    DocumentKind.AMENDMENT: frozenset({ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}),
    DocumentKind.EXECUTION_RECORD: APPROVER_ROLES,
    DocumentKind.CHANGE_ORDER: APPROVER_ROLES,
}

# Pre-award surveys on quotations, progress visits on projects.
SITE_VISIT_ROLES = frozenset(
    {ROLE_SITE_ENGINEER, ROLE_PROJECT_ENGINEER, ROLE_ESTIMATION_ENGINEER, ROLE_MANAGER, ROLE_ADMIN}
)
# Price/management sub-revisions embedded in a project.
SUB_REVISION_ROLES = APPROVER_ROLES


def user_has_role(user: User | None, role_keys: Iterable[str]) -> bool:
    if not user or not user.is_active:
        return False
    wanted = set(role_keys)
    return any(r.key in wanted for r in user.roles)


def is_creator(user: User | None, doc) -> bool:  # type: ignore[no-untyped-def]
    return bool(user and user.is_active and getattr(doc, "created_by_user_id", None) == user.id)


def require_role(user: User | None, role_keys: Iterable[str], *, action: str) -> None:
    """Raise AuthorizationError unless `user` is active and holds one of `role_keys`."""
    if not user_has_role(user, role_keys):
        raise AuthorizationError(f"Not authorized to {action}.")


def require_role_or_creator(user: User | None, doc, role_keys: Iterable[str], *, action: str) -> None:  # type: ignore[no-untyped-def]
    if is_creator(user, doc):
        return
    require_role(user, role_keys, action=action)
