"""
Human-readable sequence identifiers scoped to a parent: {PREFIX}-{FAMILY}-{000}.

count-then-assign is racy under concurrent creation against the same parent. The
uniqueness constraints on (parent, sequence_number) are the real defense; the
repository turns a hit on them into SequenceCollision and the orchestrator retries.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.estimation.constants import DEFAULT_PROJECT_KEY, PROJECT_KEY_MAX_LEN, DocumentKind
from app.estimation.modules.lineage.models import BaseDocument, SequenceCounter


@dataclass(frozen=True)
class SequenceNumber:
    value: int
    label: str


def project_key(base: BaseDocument) -> str:
    """
    Upper-case alphanumeric key from the quotation's project title (or customer name),
    at most 8 characters. e.g. "Tower A - Fit out" -> "TOWERAFI".
    """
    source = base.project_title or base.customer_name or DEFAULT_PROJECT_KEY
    key = re.sub(r"[^A-Z0-9]", "", source.upper())[:PROJECT_KEY_MAX_LEN]
    return key or DEFAULT_PROJECT_KEY


def format_number(prefix: str, family: str, value: int) -> str:
    return f"{prefix}-{family}-{value:03d}"


def next_number(
    s: Session,
    *,
    scope_kind: DocumentKind,
    scope_id: int,
    family: str,
    prefix: str,
    sibling_count: int,
) -> SequenceNumber:
    """
    Next value for (scope, family): max(persisted counter, existing siblings) + 1.
    The counter only moves forward, so a deleted sibling's number is never handed out again.
    """
    counter = s.execute(
        select(SequenceCounter).where(
            SequenceCounter.scope_kind == scope_kind.value,
            SequenceCounter.scope_id == scope_id,
            SequenceCounter.family == family,
        )
    ).scalar_one_or_none()
    if counter is None:
        counter = SequenceCounter(scope_kind=scope_kind.value, scope_id=scope_id, family=family, last_value=0)
        s.add(counter)

    value = max(counter.last_value or 0, sibling_count) + 1
    counter.last_value = value
    counter.updated_at = datetime.utcnow()
    return SequenceNumber(value=value, label=format_number(prefix, family, value))


def count_siblings(s: Session, model, parent_column, parent_id: int) -> int:  # type: ignore[no-untyped-def]
    return int(s.execute(select(func.count()).select_from(model).where(parent_column == parent_id)).scalar_one())
