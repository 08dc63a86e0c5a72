from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import g, has_request_context
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.estimation.errors import AuditWriteFailure, ValidationError
from app.estimation.models import AuditEvent, User
from app.estimation.modules.lineage.models import (
    Amendment,
    BaseDocument,
    ChangeOrder,
    ExecutionRecord,
    LineageDocument,
)

MAX_AUDIT_LIMIT = 1000


def _request_id() -> str | None:
    if not has_request_context():
        return None
    return getattr(g, "request_id", None)


def _root_of(s: Session, doc: LineageDocument) -> BaseDocument | None:
    if isinstance(doc, BaseDocument):
        return doc
    if isinstance(doc, (Amendment, ExecutionRecord)):
        return s.get(BaseDocument, doc.base_document_id)
    er = s.get(ExecutionRecord, doc.execution_record_id)
    return s.get(BaseDocument, er.base_document_id) if er is not None else None


def snapshot_for(s: Session, doc: LineageDocument, *, changes: list[dict] | None = None) -> dict[str, Any]:
    """
    Denormalized, human-readable subset of `doc` for the audit trail. Must render on its
    own after the document (or its relatives) are deleted.
    """
    root = _root_of(s, doc)
    snap: dict[str, Any] = {
        "kind": doc.kind.value,
        "id": doc.id,
        "reference": doc.reference_label,
        "customer_name": root.customer_name if root is not None else None,
        "root_reference": root.reference_label if root is not None else None,
        "created_by_user_id": doc.created_by_user_id,
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
    }
    if isinstance(doc, ExecutionRecord):
        snap.update({"title": doc.name, "status": doc.status, "manpower_count": doc.manpower_count})
    else:
        snap.update(
            {
                "title": doc.project_title,
                "grand_total": doc.grand_total,
                "currency": doc.currency,
                "approval_status": doc.approval_status,
            }
        )
    if isinstance(doc, (Amendment, ChangeOrder)):
        snap["sequence_number"] = doc.sequence_number
        snap["diff_count"] = len(doc.diff_from_parent or [])
    if changes is not None:
        snap["change_count"] = len(changes)
        snap["changed_fields"] = [c["field"] for c in changes]
    return snap


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str,
    entity_id: int | str,
    snapshot: dict[str, Any] | None = None,
    reason: str | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event, written inside its own SAVEPOINT so a failed insert never
    takes the surrounding document mutation down with it.
    """
    ev = AuditEvent(
        request_id=request_id or _request_id(),
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=(reason or "").strip()[:512] or None,
        snapshot_json=json.dumps(snapshot, sort_keys=True, default=str) if snapshot else None,
    )
    try:
        with s.begin_nested():
            s.add(ev)
            s.flush()
    except SQLAlchemyError as e:
        raise AuditWriteFailure(f"Could not record audit event {action} for {entity_type} #{entity_id}: {e}") from e
    return ev


@dataclass(frozen=True)
class AuditFilter:
    action: str | None = None
    entity_type: str | None = None
    entity_id: int | str | None = None
    actor_user_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None  # inclusive
    search: str | None = None
    limit: int = 200


def list_audit_events(s: Session, flt: AuditFilter | None = None) -> list[AuditEvent]:
    flt = flt or AuditFilter()
    if flt.limit < 1:
        raise ValidationError("limit must be positive.", field="limit")
    q = select(AuditEvent)
    if flt.action:
        q = q.where(AuditEvent.action == flt.action)
    if flt.entity_type:
        q = q.where(AuditEvent.entity_type == flt.entity_type)
    if flt.entity_id is not None:
        q = q.where(AuditEvent.entity_id == str(flt.entity_id))
    if flt.actor_user_id is not None:
        q = q.where(AuditEvent.actor_user_id == flt.actor_user_id)
    if flt.date_from:
        q = q.where(AuditEvent.created_at >= datetime.combine(flt.date_from, time.min))
    if flt.date_to:
        q = q.where(AuditEvent.created_at < datetime.combine(flt.date_to + timedelta(days=1), time.min))
    if flt.search and flt.search.strip():
        like = f"%{flt.search.strip()}%"
        q = q.where(or_(AuditEvent.reason.ilike(like), AuditEvent.snapshot_json.ilike(like)))
    q = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(min(flt.limit, MAX_AUDIT_LIMIT))
    return list(s.execute(q).scalars())
