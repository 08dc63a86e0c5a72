"""
Central constants for the estimation lineage core.
"""
from __future__ import annotations

from enum import Enum


class DocumentKind(str, Enum):
    BASE_DOCUMENT = "base_document"
    AMENDMENT = "amendment"
    EXECUTION_RECORD = "execution_record"
    CHANGE_ORDER = "change_order"

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    DocumentKind.BASE_DOCUMENT: "quotation",
    DocumentKind.AMENDMENT: "revision",
    DocumentKind.EXECUTION_RECORD: "project",
    DocumentKind.CHANGE_ORDER: "variation",
}

# Kinds that carry proposal content, a creation-time diff and an approval workflow.
APPROVABLE_KINDS = frozenset({DocumentKind.BASE_DOCUMENT, DocumentKind.AMENDMENT, DocumentKind.CHANGE_ORDER})


class ApprovalStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def status(self) -> ApprovalStatus:
        return ApprovalStatus.APPROVED if self is Decision.APPROVE else ApprovalStatus.REJECTED


# Role keys (user/role directory)
ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_ESTIMATION_ENGINEER = "estimation_engineer"
ROLE_PROJECT_ENGINEER = "project_engineer"
ROLE_SITE_ENGINEER = "site_engineer"

DEFAULT_ROLES = {
    ROLE_ADMIN: "Admin",
    ROLE_MANAGER: "Manager",
    ROLE_ESTIMATION_ENGINEER: "Estimation Engineer",
    ROLE_PROJECT_ENGINEER: "Project Engineer",
    ROLE_SITE_ENGINEER: "Site Engineer",
}

# Execution record operational status
EXECUTION_STATUSES = ("active", "completed", "on_hold")

# Execution sub-revision types
SUB_REVISION_TYPES = ("price", "management")

# Sequence identifier families: {PREFIX}-{FAMILY}-{000}
FAMILY_AMENDMENT = "REV"
FAMILY_CHANGE_ORDER = "VAR"
FAMILY_EXECUTION_RECORD = "PRJ"
DEFAULT_PROJECT_KEY = "PROJ"
PROJECT_KEY_MAX_LEN = 8
