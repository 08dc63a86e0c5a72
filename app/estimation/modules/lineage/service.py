"""
Lineage operations: the only entry points the API layer calls.

Every function takes an explicit Session and actor, validates everything before writing,
flushes, and leaves the commit to the caller (see `session_scope`). Audit events are
best-effort: a failed write is logged for operators and never reaches the caller.
"""
from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from flask import current_app, has_app_context
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.estimation.audit import AuditFilter, record_event, snapshot_for
from app.estimation.audit import list_audit_events as _list_audit_events
from app.estimation.constants import (
    APPROVABLE_KINDS,
    SUB_REVISION_TYPES,
    ApprovalStatus,
    Decision,
    DocumentKind,
)
from app.estimation.errors import (
    AuditWriteFailure,
    ConflictError,
    InvalidStateError,
    NoChangeDetected,
    NotFoundError,
    SequenceCollision,
    ValidationError,
)
from app.estimation.models import AuditEvent, User
from app.estimation.modules.lineage import approval, repository, rules
from app.estimation.modules.lineage.diff import diff
from app.estimation.modules.lineage.fields import (
    ATTACHMENTS_KEY,
    REMOVED_ATTACHMENTS_KEY,
    coerce_payload,
    parse_date_value,
    read_fields,
)
from app.estimation.modules.lineage.models import (
    Amendment,
    BaseDocument,
    ChangeOrder,
    ExecutionRecord,
    ExecutionSubRevision,
    LineageDocument,
    SiteVisit,
)
from app.estimation.modules.lineage.repository import LineageView, ParentRef, as_kind
from app.estimation.rbac import (
    CREATE_ROLES,
    CREATOR_MAY_EDIT,
    DELETE_ROLES,
    EDIT_ROLES,
    RESET_ROLES,
    SITE_VISIT_ROLES,
    SUB_REVISION_ROLES,
    require_role,
    require_role_or_creator,
)
from app.estimation.storage import Storage

logger = logging.getLogger(__name__)

T = TypeVar("T")

SITE_VISIT_REQUIRED = ("visit_at", "site_location", "engineer_name", "work_progress_summary")
SITE_VISIT_OPTIONAL = ("safety_observations", "issues_found", "action_items", "description")
ASSIGNEE_FIELDS = ("assigned_project_engineer_id", "assigned_site_engineer_id")


def _config(name: str, default: Any) -> Any:
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def _vat_rate() -> Decimal | str:
    return _config("DEFAULT_VAT_RATE", "5")


def _retry_limit(override: int | None) -> int:
    return max(1, int(override if override is not None else _config("SEQUENCE_RETRY_LIMIT", 3)))


def _flush(s: Session, doc: LineageDocument) -> None:
    try:
        s.flush()
    except StaleDataError as e:
        raise ConflictError(f"{doc.reference_label} was modified concurrently; reload and retry.") from e


def _audit(
    s: Session,
    *,
    actor: User,
    action: str,
    doc: LineageDocument,
    changes: list[dict] | None = None,
    reason: str | None = None,
    snapshot: dict | None = None,
) -> AuditEvent | None:
    try:
        return record_event(
            s,
            actor=actor,
            action=action,
            entity_type=doc.kind.value,
            entity_id=doc.id,
            snapshot=snapshot if snapshot is not None else snapshot_for(s, doc, changes=changes),
            reason=reason,
        )
    except AuditWriteFailure as e:
        logger.error("AUDIT: write failed action=%s kind=%s id=%s err=%s", action, doc.kind.value, doc.id, e.message)
        return None


def _with_sequence_retry(s: Session, attempt: Callable[[], T], *, limit: int, what: str) -> T:
    """Run `attempt` in a SAVEPOINT, retrying lost sequence races up to `limit` times."""
    for n in range(1, limit + 1):
        try:
            with s.begin_nested():
                return attempt()
        except SequenceCollision:
            if n >= limit:
                logger.error("SEQUENCE: giving up creating %s after %d attempts", what, n)
                raise
            logger.warning("SEQUENCE: collision creating %s (attempt %d/%d); retrying", what, n, limit)
    raise AssertionError("unreachable")  # pragma: no cover


def _check_assignees(s: Session, values: dict[str, Any]) -> None:
    for name in ASSIGNEE_FIELDS:
        user_id = values.get(name)
        if user_id is None:
            continue
        user = s.get(User, user_id)
        if user is None or not user.is_active:
            raise ValidationError(f"{name} must reference an active user (got {user_id}).", field=name)


def _require_store(refs: list[dict[str, Any]], storage: Storage | None) -> None:
    if storage is None and any(ref["content"] is not None for ref in refs):
        raise ValidationError("Inline attachment content needs an attachment store.", field=ATTACHMENTS_KEY)


def _materialize(doc: LineageDocument, refs: list[dict[str, Any]], storage: Storage | None, now: datetime) -> None:
    """Push inline uploads to the attachment store; afterwards every ref has a locator."""
    for ref in refs:
        if ref["content"] is None:
            continue
        ref["locator"] = storage.store_attachment(
            doc.kind.value, doc.id, ref["name"], ref["content"], content_type=ref["mime_type"], now=now
        )
        ref["content"] = None


def _drop_from_store(storage: Storage | None, locators: list[str]) -> None:
    if storage is None:
        return
    for loc in locators:
        try:
            storage.delete(loc)
        except Exception as e:
            logger.warning("STORAGE: could not delete attachment locator=%s err=%s", loc, e)


def _attachment_change(before: list[str] | None, after: list[str] | None) -> dict[str, Any]:
    return {"field": ATTACHMENTS_KEY, "from": before, "to": after}


# --- create --------------------------------------------------------------------------


def create_base_document(
    s: Session,
    payload: dict[str, Any],
    actor: User,
    *,
    storage: Storage | None = None,
    now: datetime | None = None,
) -> BaseDocument:
    require_role(actor, CREATE_ROLES[DocumentKind.BASE_DOCUMENT], action="create a quotation")
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object.")
    customer_name = payload.get("customer_name")
    if not isinstance(customer_name, str) or not customer_name.strip():
        raise ValidationError("customer_name is required.", field="customer_name")
    values = coerce_payload(
        DocumentKind.BASE_DOCUMENT,
        payload,
        default_vat_rate=_vat_rate(),
        extra_keys=frozenset({"customer_name", ATTACHMENTS_KEY}),
    )
    refs = repository.parse_attachment_refs(payload.get(ATTACHMENTS_KEY))
    _require_store(refs, storage)
    now = now or datetime.utcnow()

    doc = repository.insert_base_document(
        s, customer_name=customer_name.strip(), values=values, actor=actor, now=now
    )
    _materialize(doc, refs, storage, now)
    repository.add_attachments(doc, refs, actor, now)
    s.flush()
    logger.info("LINEAGE: created %s id=%s by user=%s", doc.kind.value, doc.id, actor.id)
    _audit(s, actor=actor, action="base_document.create", doc=doc)
    return doc


def _diff_base(s: Session, kind: DocumentKind, parent: LineageDocument) -> LineageDocument:
    """The document a new child's content is copied from and diffed against."""
    if kind is DocumentKind.CHANGE_ORDER and isinstance(parent, ExecutionRecord):
        return rules.upstream_source(s, parent)  # type: ignore[return-value]
    return parent


def create_from_parent(
    s: Session,
    kind: DocumentKind | str,
    parent_ref: ParentRef,
    payload: dict[str, Any],
    actor: User,
    *,
    storage: Storage | None = None,
    now: datetime | None = None,
    retry_limit: int | None = None,
) -> Amendment | ExecutionRecord | ChangeOrder:
    """
    Create an amendment, execution record or change order under `parent_ref`.

    Amendments and change orders start as a copy of the document they derive from, with
    the payload applied on top; the resulting per-field diff is stored once as
    `diff_from_parent`. A payload that changes nothing is rejected.
    """
    kind = as_kind(kind)
    if kind is DocumentKind.BASE_DOCUMENT:
        raise ValidationError("Quotations have no parent; use create_base_document.", field="kind")
    require_role(actor, CREATE_ROLES[kind], action=f"create a {kind.label}")
    parent = repository.get_document(s, parent_ref.kind, parent_ref.id)
    rules.can_create_child(s, kind, parent).enforce()

    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object.")
    values = coerce_payload(kind, payload, default_vat_rate=_vat_rate(), extra_keys=frozenset({ATTACHMENTS_KEY}))
    _check_assignees(s, values)
    refs = repository.parse_attachment_refs(payload.get(ATTACHMENTS_KEY))
    _require_store(refs, storage)
    now = now or datetime.utcnow()

    changes: list[dict[str, Any]] = []
    if kind is not DocumentKind.EXECUTION_RECORD:
        source = _diff_base(s, kind, parent)
        inherited = copy.deepcopy(read_fields(source, kind))
        changes = diff(kind, None, inherited, values)
        if refs:
            changes.append(_attachment_change(None, [r["name"] for r in refs]))
        if not changes:
            raise NoChangeDetected(
                f"The new {kind.label} is identical to {source.reference_label}; nothing to record."
            )
        values = {**inherited, **values}

    def attempt() -> Amendment | ExecutionRecord | ChangeOrder:
        rules.can_create_child(s, kind, parent).enforce()
        if kind is DocumentKind.AMENDMENT:
            return repository.insert_amendment(
                s, parent=parent, values=values, diff_from_parent=changes, actor=actor, now=now
            )
        if kind is DocumentKind.EXECUTION_RECORD:
            return repository.insert_execution_record(s, source=parent, values=values, actor=actor, now=now)
        return repository.insert_change_order(
            s, parent=parent, values=values, diff_from_parent=changes, actor=actor, now=now
        )

    doc = _with_sequence_retry(s, attempt, limit=_retry_limit(retry_limit), what=kind.label)
    if refs:
        _materialize(doc, refs, storage, now)
        repository.add_attachments(doc, refs, actor, now)
        s.flush()
    logger.info(
        "LINEAGE: created %s id=%s (%s) from %s id=%s by user=%s",
        kind.value,
        doc.id,
        doc.reference_label,
        parent.kind.value,
        parent.id,
        actor.id,
    )
    _audit(s, actor=actor, action=f"{kind.value}.create", doc=doc, changes=changes or None)
    return doc


# --- edit ----------------------------------------------------------------------------


def edit(
    s: Session,
    kind: DocumentKind | str,
    doc_id: int,
    patch: dict[str, Any],
    actor: User,
    *,
    expected_version: int | None = None,
    storage: Storage | None = None,
    now: datetime | None = None,
) -> LineageDocument:
    kind = as_kind(kind)
    doc = repository.get_document(s, kind, doc_id)
    repository.check_version(doc, expected_version)
    if kind in CREATOR_MAY_EDIT:
        require_role_or_creator(actor, doc, EDIT_ROLES[kind], action=f"edit this {kind.label}")
    else:
        require_role(actor, EDIT_ROLES[kind], action=f"edit this {kind.label}")
    rules.can_mutate(s, doc).enforce()

    if not isinstance(patch, dict):
        raise ValidationError("Payload must be an object.")
    values = coerce_payload(kind, patch, default_vat_rate=_vat_rate())
    _check_assignees(s, values)
    refs = repository.parse_attachment_refs(patch.get(ATTACHMENTS_KEY))
    _require_store(refs, storage)
    removed = repository.parse_removed_attachments(doc, patch.get(REMOVED_ATTACHMENTS_KEY))
    if kind is DocumentKind.EXECUTION_RECORD:
        for required in ("name", "status"):
            if required in values and values[required] is None:
                raise ValidationError(f"{required} cannot be cleared.", field=required)

    changes = diff(kind, None, read_fields(doc, kind), values)
    if refs or removed:
        before = repository.attachment_names(doc)
        kept = [a.name for a in doc.attachments if a.locator not in set(removed)]
        after = kept + [r["name"] for r in refs]
        changes.append(_attachment_change(before, after or None))
    if not changes:
        raise NoChangeDetected(f"No changes to {doc.reference_label}.")

    now = now or datetime.utcnow()
    changed = {c["field"] for c in changes}
    repository.update(
        s,
        doc,
        values={k: v for k, v in values.items() if k in changed},
        changes=changes,
        actor=actor,
        now=now,
    )
    _materialize(doc, refs, storage, now)
    repository.add_attachments(doc, refs, actor, now)
    repository.remove_attachments(doc, removed)
    _flush(s, doc)
    _drop_from_store(storage, removed)
    logger.info("LINEAGE: edited %s id=%s fields=%s by user=%s", kind.value, doc.id, sorted(changed), actor.id)
    _audit(s, actor=actor, action=f"{kind.value}.edit", doc=doc, changes=changes)
    return doc


# --- approval ------------------------------------------------------------------------


def _approvable(s: Session, kind: DocumentKind | str, doc_id: int) -> Any:
    kind = as_kind(kind)
    if kind not in APPROVABLE_KINDS:
        raise InvalidStateError(f"A {kind.label} has no approval workflow.", code="not_approvable")
    return repository.get_document(s, kind, doc_id)


def request_approval(
    s: Session,
    kind: DocumentKind | str,
    doc_id: int,
    actor: User,
    note: str | None = None,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> BaseDocument | Amendment | ChangeOrder:
    doc = _approvable(s, kind, doc_id)
    repository.check_version(doc, expected_version)
    entry = approval.request_approval(doc, actor, note, now=now)
    _flush(s, doc)
    _audit(s, actor=actor, action=f"{doc.kind.value}.request_approval", doc=doc, reason=entry.note)
    return doc


def decide(
    s: Session,
    kind: DocumentKind | str,
    doc_id: int,
    actor: User,
    decision: Decision | str,
    note: str | None = None,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> BaseDocument | Amendment | ChangeOrder:
    doc = _approvable(s, kind, doc_id)
    repository.check_version(doc, expected_version)
    entry = approval.decide(doc, actor, decision, note, now=now)
    _flush(s, doc)
    verb = "approve" if entry.status == ApprovalStatus.APPROVED.value else "reject"
    logger.info("APPROVAL: %s %s id=%s by user=%s", verb, doc.kind.value, doc.id, actor.id)
    _audit(s, actor=actor, action=f"{doc.kind.value}.{verb}", doc=doc, reason=entry.note)
    return doc


def reset_approval(
    s: Session,
    kind: DocumentKind | str,
    doc_id: int,
    actor: User,
    note: str,
    *,
    now: datetime | None = None,
) -> BaseDocument | Amendment | ChangeOrder:
    """Admin-only way out of `approved`; refused once anything was derived from the document."""
    doc = _approvable(s, kind, doc_id)
    require_role(actor, RESET_ROLES, action="reset an approval")
    rules.can_reset_approval(s, doc).enforce()
    entry = approval.reset(doc, actor, note, now=now)
    _flush(s, doc)
    logger.warning("APPROVAL: reset %s id=%s by user=%s", doc.kind.value, doc.id, actor.id)
    _audit(s, actor=actor, action=f"{doc.kind.value}.approval_reset", doc=doc, reason=entry.note)
    return doc


# --- delete --------------------------------------------------------------------------


def delete(
    s: Session,
    kind: DocumentKind | str,
    doc_id: int,
    actor: User,
    reason: str | None = None,
    *,
    expected_version: int | None = None,
    storage: Storage | None = None,
) -> None:
    kind = as_kind(kind)
    doc = repository.get_document(s, kind, doc_id)
    repository.check_version(doc, expected_version)
    require_role(actor, DELETE_ROLES[kind], action=f"delete this {kind.label}")
    rules.can_delete(s, doc).enforce()

    snapshot = snapshot_for(s, doc)
    entity_id = doc.id
    try:
        locators = repository.delete(s, doc)
    except StaleDataError as e:
        raise ConflictError(f"{doc.reference_label} was modified concurrently; reload and retry.") from e
    logger.info("LINEAGE: deleted %s id=%s by user=%s", kind.value, entity_id, actor.id)
    _audit(s, actor=actor, action=f"{kind.value}.delete", doc=doc, reason=reason, snapshot=snapshot)
    _drop_from_store(storage, locators)


# --- reads ---------------------------------------------------------------------------


def fetch_with_lineage(s: Session, kind: DocumentKind | str, doc_id: int) -> LineageView:
    return repository.fetch_with_lineage(s, kind, doc_id)


def list_documents(
    s: Session,
    kind: DocumentKind | str,
    *,
    parent_ref: ParentRef | None = None,
    approval_status: str | None = None,
    limit: int = 100,
) -> list[LineageDocument]:
    return repository.list_documents(s, kind, parent_ref=parent_ref, approval_status=approval_status, limit=limit)


def list_audit_events(s: Session, flt: AuditFilter | None = None) -> list[AuditEvent]:
    return _list_audit_events(s, flt)


# --- site visits ---------------------------------------------------------------------


def record_site_visit(
    s: Session,
    kind: DocumentKind | str,
    doc_id: int,
    payload: dict[str, Any],
    actor: User,
    *,
    now: datetime | None = None,
) -> SiteVisit:
    """Survey on a quotation or progress visit on a project. Visits block deletion."""
    kind = as_kind(kind)
    if kind not in (DocumentKind.BASE_DOCUMENT, DocumentKind.EXECUTION_RECORD):
        raise ValidationError(f"Site visits cannot be recorded against a {kind.label}.", field="kind")
    require_role(actor, SITE_VISIT_ROLES, action="record a site visit")
    doc = repository.get_document(s, kind, doc_id)

    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object.")
    unknown = sorted(set(payload) - set(SITE_VISIT_REQUIRED) - set(SITE_VISIT_OPTIONAL))
    if unknown:
        raise ValidationError(f"Unknown site visit field(s): {', '.join(unknown)}", field=unknown[0], code="unknown_field")
    clean: dict[str, Any] = {}
    for name in (*SITE_VISIT_REQUIRED[1:], *SITE_VISIT_OPTIONAL):
        value = payload.get(name)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string.", field=name)
        clean[name] = (value or "").strip() or None
    for name in SITE_VISIT_REQUIRED[1:]:
        if clean[name] is None:
            raise ValidationError(f"{name} is required.", field=name)
    visit_at = _parse_visit_at(payload.get("visit_at"))

    now = now or datetime.utcnow()
    visit = SiteVisit(
        base_document_id=doc.id if kind is DocumentKind.BASE_DOCUMENT else None,
        execution_record_id=doc.id if kind is DocumentKind.EXECUTION_RECORD else None,
        visit_at=visit_at,
        created_at=now,
        created_by_user_id=actor.id,
        **clean,
    )
    s.add(visit)
    s.flush()
    snapshot = snapshot_for(s, doc)
    snapshot.update({"visit_at": visit_at.isoformat(), "site_location": visit.site_location, "engineer_name": visit.engineer_name})
    _audit(s, actor=actor, action=f"{kind.value}.site_visit", doc=doc, snapshot=snapshot)
    return visit


def _parse_visit_at(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            d = parse_date_value(raw, field="visit_at")
            if d is not None:
                return datetime(d.year, d.month, d.day)
    raise ValidationError("visit_at is required (ISO date or datetime).", field="visit_at")


# --- execution sub-revisions ---------------------------------------------------------


def add_sub_revision(
    s: Session,
    execution_record_id: int,
    revision_type: str,
    actor: User,
    *,
    description: str | None = None,
    changes: dict[str, Any] | None = None,
    now: datetime | None = None,
    retry_limit: int | None = None,
) -> ExecutionSubRevision:
    require_role(actor, SUB_REVISION_ROLES, action="revise a project")
    er = repository.get_document(s, DocumentKind.EXECUTION_RECORD, execution_record_id)
    rules.can_mutate(s, er).enforce()
    if revision_type not in SUB_REVISION_TYPES:
        raise ValidationError(
            f"revision_type must be one of: {', '.join(SUB_REVISION_TYPES)}", field="revision_type"
        )
    if changes is not None and not isinstance(changes, dict):
        raise ValidationError("changes must be an object.", field="changes")
    if description is not None and not isinstance(description, str):
        raise ValidationError("description must be a string.", field="description")
    now = now or datetime.utcnow()

    def attempt() -> ExecutionSubRevision:
        current = s.execute(
            select(func.max(ExecutionSubRevision.version)).where(
                ExecutionSubRevision.execution_record_id == er.id
            )
        ).scalar_one()
        rev = ExecutionSubRevision(
            execution_record_id=er.id,
            version=(current or 0) + 1,
            revision_type=revision_type,
            description=(description or "").strip() or None,
            changes=changes or None,
            status=ApprovalStatus.PENDING.value,
            created_at=now,
            created_by_user_id=actor.id,
        )
        s.add(rev)
        repository.flush_insert(s, "project sub-revision")
        return rev

    rev = _with_sequence_retry(s, attempt, limit=_retry_limit(retry_limit), what="project sub-revision")
    s.expire(er, ["sub_revisions"])
    snapshot = snapshot_for(s, er)
    snapshot.update({"sub_revision": rev.version, "revision_type": rev.revision_type})
    _audit(s, actor=actor, action="execution_record.sub_revision_add", doc=er, snapshot=snapshot)
    return rev


def decide_sub_revision(
    s: Session,
    execution_record_id: int,
    version: int,
    actor: User,
    decision: Decision | str,
    comments: str | None = None,
    *,
    now: datetime | None = None,
) -> ExecutionSubRevision:
    require_role(actor, SUB_REVISION_ROLES, action="decide a project revision")
    er = repository.get_document(s, DocumentKind.EXECUTION_RECORD, execution_record_id)
    rev = s.execute(
        select(ExecutionSubRevision).where(
            ExecutionSubRevision.execution_record_id == er.id, ExecutionSubRevision.version == version
        )
    ).scalar_one_or_none()
    if rev is None:
        raise NotFoundError(f"Revision {version} of {er.reference_label} not found.")
    try:
        decision = Decision(decision)
    except ValueError:
        raise ValidationError(f"Invalid decision: {decision!r}", field="decision") from None
    if rev.status != ApprovalStatus.PENDING.value:
        raise InvalidStateError(
            f"Revision {version} of {er.reference_label} is already {rev.status}.",
            code=f"illegal_transition_{rev.status}_to_{decision.status.value}",
        )
    rev.status = decision.status.value
    rev.decided_by_user_id = actor.id
    rev.decided_at = now or datetime.utcnow()
    rev.comments = (comments or "").strip()[:1024] or None
    s.flush()
    snapshot = snapshot_for(s, er)
    snapshot.update({"sub_revision": rev.version, "sub_revision_status": rev.status})
    _audit(
        s,
        actor=actor,
        action=f"execution_record.sub_revision_{'approve' if decision is Decision.APPROVE else 'reject'}",
        doc=er,
        reason=rev.comments,
        snapshot=snapshot,
    )
    return rev
