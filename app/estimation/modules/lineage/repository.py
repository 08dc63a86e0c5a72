"""
Per-kind persistence for lineage documents.

Inserts assign the sequence identifier and flush. A hit on one of the sequence or
single-chain unique constraints is reported as SequenceCollision so the orchestrator can
retry inside a fresh SAVEPOINT; any other integrity error propagates unchanged.
Updates and deletes are gated by the lineage rules. Nothing here commits.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import UniqueConstraint, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.estimation.constants import (
    FAMILY_AMENDMENT,
    FAMILY_CHANGE_ORDER,
    FAMILY_EXECUTION_RECORD,
    DocumentKind,
)
from app.estimation.errors import ConflictError, NotFoundError, SequenceCollision, ValidationError
from app.estimation.models import User
from app.estimation.modules.lineage import rules
from app.estimation.modules.lineage.models import (
    Amendment,
    BaseDocument,
    ChangeOrder,
    DocumentAttachment,
    EditRecord,
    ExecutionRecord,
    ExecutionSubRevision,
    LineageDocument,
    SequenceCounter,
)
from app.estimation.modules.lineage.numbering import count_siblings, next_number, project_key
from app.estimation.storage import sanitize_attachment_name

MODELS: dict[DocumentKind, type] = {
    DocumentKind.BASE_DOCUMENT: BaseDocument,
    DocumentKind.AMENDMENT: Amendment,
    DocumentKind.EXECUTION_RECORD: ExecutionRecord,
    DocumentKind.CHANGE_ORDER: ChangeOrder,
}


@dataclass(frozen=True)
class ParentRef:
    kind: DocumentKind
    id: int


def as_kind(kind: DocumentKind | str) -> DocumentKind:
    try:
        return DocumentKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown document kind: {kind!r}", field="kind") from None


def get_document(s: Session, kind: DocumentKind | str, doc_id: int) -> LineageDocument:
    kind = as_kind(kind)
    doc = s.get(MODELS[kind], doc_id)
    if doc is None:
        raise NotFoundError(f"{kind.label.capitalize()} #{doc_id} not found.")
    return doc


def check_version(doc: LineageDocument, expected_version: int | None) -> None:
    if expected_version is not None and doc.version != expected_version:
        raise ConflictError(
            f"{doc.reference_label} was modified by someone else "
            f"(expected version {expected_version}, found {doc.version})."
        )


def root_of(s: Session, doc: LineageDocument) -> BaseDocument:
    if isinstance(doc, BaseDocument):
        return doc
    if isinstance(doc, (Amendment, ExecutionRecord)):
        return get_document(s, DocumentKind.BASE_DOCUMENT, doc.base_document_id)  # type: ignore[return-value]
    er = get_document(s, DocumentKind.EXECUTION_RECORD, doc.execution_record_id)
    return get_document(s, DocumentKind.BASE_DOCUMENT, er.base_document_id)  # type: ignore[return-value]


def _race_constraints() -> dict[str, str]:
    """Constraint name -> SQLite-style column list, e.g. "amendments.base_document_id, ..."."""
    found: dict[str, str] = {}
    for model in (Amendment, ExecutionRecord, ChangeOrder, ExecutionSubRevision, SequenceCounter):
        table = model.__table__
        for c in table.constraints:
            if isinstance(c, UniqueConstraint) and c.name:
                found[str(c.name)] = ", ".join(f"{table.name}.{col.name}" for col in c.columns)
    return found


RACE_CONSTRAINTS = _race_constraints()


def is_sequence_race(e: IntegrityError) -> bool:
    """True when `e` is a lost race for a sequence number or a chain slot."""
    name = getattr(getattr(e.orig, "diag", None), "constraint_name", None)
    if name:
        return name in RACE_CONSTRAINTS
    msg = str(e.orig)
    if any(n in msg for n in RACE_CONSTRAINTS):
        return True
    # SQLite names the columns, not the constraint.
    cols = msg.partition("UNIQUE constraint failed:")[2].strip()
    return bool(cols) and cols in RACE_CONSTRAINTS.values()


def flush_insert(s: Session, what: str) -> None:
    try:
        s.flush()
    except IntegrityError as e:
        if not is_sequence_race(e):
            raise
        raise SequenceCollision(f"Could not allocate a unique {what} number; retry.") from e


def _assign(doc: LineageDocument, values: dict[str, Any]) -> None:
    for name, value in values.items():
        setattr(doc, name, value)


# --- attachments ---------------------------------------------------------------------


def parse_attachment_refs(value: Any) -> list[dict[str, Any]]:
    """
    Validate incoming attachment references: [{name, mime_type?, size?, locator}] or,
    for inline uploads, [{name, mime_type?, content: bytes}].
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("attachments must be a list.", field="attachments")
    refs: list[dict[str, Any]] = []
    for idx, item in enumerate(value):
        if not isinstance(item, dict):
            raise ValidationError(f"attachments[{idx}] must be an object.", field="attachments")
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"attachments[{idx}].name is required.", field="attachments")
        content = item.get("content")
        locator = item.get("locator")
        if content is not None and not isinstance(content, (bytes, bytearray)):
            raise ValidationError(f"attachments[{idx}].content must be bytes.", field="attachments")
        if content is None and (not isinstance(locator, str) or not locator.strip()):
            raise ValidationError(f"attachments[{idx}].locator is required.", field="attachments")
        size = len(content) if content is not None else item.get("size", 0)
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ValidationError(f"attachments[{idx}].size must be a non-negative integer.", field="attachments")
        refs.append(
            {
                "name": sanitize_attachment_name(name),
                "mime_type": (item.get("mime_type") or "application/octet-stream").strip(),
                "size": size,
                "locator": locator.strip() if isinstance(locator, str) else None,
                "content": bytes(content) if content is not None else None,
            }
        )
    return refs


def parse_removed_attachments(doc: LineageDocument | None, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
        raise ValidationError("removed_attachments must be a list of locators.", field="removed_attachments")
    known = {a.locator for a in (doc.attachments if doc is not None else [])}
    missing = [v for v in value if v not in known]
    if missing:
        raise ValidationError(
            f"Unknown attachment locator(s): {', '.join(missing)}",
            field="removed_attachments",
            code="unknown_attachment",
        )
    return list(dict.fromkeys(value))


def attachment_names(doc: LineageDocument) -> list[str] | None:
    names = [a.name for a in doc.attachments]
    return names or None


def add_attachments(doc: LineageDocument, refs: list[dict[str, Any]], actor: User, now: datetime) -> list[DocumentAttachment]:
    """Attach already-stored references (every ref must carry a locator by now)."""
    added = []
    for ref in refs:
        att = DocumentAttachment(
            name=ref["name"],
            mime_type=ref["mime_type"],
            size_bytes=ref["size"],
            locator=ref["locator"],
            uploaded_at=now,
            uploaded_by_user_id=actor.id,
        )
        doc.attachments.append(att)
        added.append(att)
    return added


def remove_attachments(doc: LineageDocument, locators: list[str]) -> list[DocumentAttachment]:
    removed = [a for a in doc.attachments if a.locator in set(locators)]
    for att in removed:
        doc.attachments.remove(att)
    return removed


# --- create --------------------------------------------------------------------------


def insert_base_document(
    s: Session, *, customer_name: str, values: dict[str, Any], actor: User, now: datetime
) -> BaseDocument:
    doc = BaseDocument(customer_name=customer_name, created_by_user_id=actor.id, created_at=now, updated_at=now)
    _assign(doc, values)
    s.add(doc)
    s.flush()
    return doc


def insert_amendment(
    s: Session,
    *,
    parent: BaseDocument | Amendment,
    values: dict[str, Any],
    diff_from_parent: list[dict[str, Any]],
    actor: User,
    now: datetime,
) -> Amendment:
    base = root_of(s, parent)
    seq = next_number(
        s,
        scope_kind=DocumentKind.BASE_DOCUMENT,
        scope_id=base.id,
        family=FAMILY_AMENDMENT,
        prefix=project_key(base),
        sibling_count=count_siblings(s, Amendment, Amendment.base_document_id, base.id),
    )
    doc = Amendment(
        base_document_id=base.id,
        parent_amendment_id=parent.id if isinstance(parent, Amendment) else None,
        sequence_number=seq.value,
        amendment_number=seq.label,
        diff_from_parent=diff_from_parent,
        created_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    _assign(doc, values)
    s.add(doc)
    flush_insert(s, "revision")
    return doc


def insert_execution_record(
    s: Session, *, source: BaseDocument | Amendment, values: dict[str, Any], actor: User, now: datetime
) -> ExecutionRecord:
    base = root_of(s, source)
    seq = next_number(
        s,
        scope_kind=DocumentKind.BASE_DOCUMENT,
        scope_id=base.id,
        family=FAMILY_EXECUTION_RECORD,
        prefix=project_key(base),
        sibling_count=count_siblings(s, ExecutionRecord, ExecutionRecord.base_document_id, base.id),
    )
    doc = ExecutionRecord(
        base_document_id=base.id,
        source_amendment_id=source.id if isinstance(source, Amendment) else None,
        source_base_document_id=source.id if isinstance(source, BaseDocument) else None,
        sequence_number=seq.value,
        record_number=seq.label,
        name=source.project_title or source.reference_label,
        status="active",
        created_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    _assign(doc, {k: v for k, v in values.items() if not (k in ("name", "status") and v is None)})
    s.add(doc)
    flush_insert(s, "project")
    return doc


def insert_change_order(
    s: Session,
    *,
    parent: ExecutionRecord | ChangeOrder,
    values: dict[str, Any],
    diff_from_parent: list[dict[str, Any]],
    actor: User,
    now: datetime,
) -> ChangeOrder:
    er_id = parent.id if isinstance(parent, ExecutionRecord) else parent.execution_record_id
    base = root_of(s, parent)
    seq = next_number(
        s,
        scope_kind=DocumentKind.EXECUTION_RECORD,
        scope_id=er_id,
        family=FAMILY_CHANGE_ORDER,
        prefix=project_key(base),
        sibling_count=count_siblings(s, ChangeOrder, ChangeOrder.execution_record_id, er_id),
    )
    doc = ChangeOrder(
        execution_record_id=er_id,
        parent_change_order_id=parent.id if isinstance(parent, ChangeOrder) else None,
        sequence_number=seq.value,
        change_order_number=seq.label,
        diff_from_parent=diff_from_parent,
        created_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    _assign(doc, values)
    s.add(doc)
    flush_insert(s, "variation")
    return doc


# --- update / delete -----------------------------------------------------------------


def update(
    s: Session,
    doc: LineageDocument,
    *,
    values: dict[str, Any],
    changes: list[dict[str, Any]],
    actor: User,
    now: datetime,
) -> EditRecord:
    """Apply changed field values and append the EditRecord. Gated by `can_mutate`."""
    rules.can_mutate(s, doc).enforce()
    _assign(doc, values)
    doc.updated_at = now
    record = EditRecord(editor_user_id=actor.id, created_at=now, changes=changes)
    doc.edits.append(record)
    return record


def delete(s: Session, doc: LineageDocument) -> list[str]:
    """Delete `doc` (owned logs/edits/attachments cascade). Returns the attachment locators
    the attachment store should drop. Gated by `can_delete`."""
    rules.can_delete(s, doc).enforce()
    locators = [a.locator for a in doc.attachments]
    s.delete(doc)
    s.flush()
    return locators


# --- reads ---------------------------------------------------------------------------


@dataclass
class LineageView:
    document: LineageDocument
    root: BaseDocument
    parent: LineageDocument | None = None
    children: list[LineageDocument] = field(default_factory=list)
    chain: list[LineageDocument] = field(default_factory=list)
    execution_record: ExecutionRecord | None = None
    upstream: BaseDocument | Amendment | None = None

    def as_dict(self) -> dict[str, Any]:
        def ref(d: LineageDocument | None) -> dict[str, Any] | None:
            if d is None:
                return None
            return {"kind": d.kind.value, "id": d.id, "label": d.reference_label}

        return {
            "document": ref(self.document),
            "root": ref(self.root),
            "parent": ref(self.parent),
            "children": [ref(c) for c in self.children],
            "chain": [ref(c) for c in self.chain],
            "execution_record": ref(self.execution_record),
            "upstream": ref(self.upstream),
        }


def fetch_with_lineage(s: Session, kind: DocumentKind | str, doc_id: int) -> LineageView:
    doc = get_document(s, kind, doc_id)
    root = root_of(s, doc)
    child = rules.direct_child(s, doc)
    children = [child] if child is not None else []

    if isinstance(doc, (BaseDocument, Amendment)):
        parent: LineageDocument | None = None
        if isinstance(doc, Amendment):
            parent = s.get(Amendment, doc.parent_amendment_id) if doc.parent_amendment_id else root
        return LineageView(
            document=doc,
            root=root,
            parent=parent,
            children=children,
            chain=[root, *rules.chain_amendments(s, root.id)],
            execution_record=rules.execution_record_for_source(s, doc),
        )

    if isinstance(doc, ExecutionRecord):
        upstream = rules.upstream_source(s, doc)
        return LineageView(
            document=doc,
            root=root,
            parent=upstream,
            children=children,
            chain=list(rules.chain_change_orders(s, doc.id)),
            execution_record=doc,
            upstream=upstream,
        )

    er = s.get(ExecutionRecord, doc.execution_record_id)
    parent = s.get(ChangeOrder, doc.parent_change_order_id) if doc.parent_change_order_id else er
    return LineageView(
        document=doc,
        root=root,
        parent=parent,
        children=children,
        chain=list(rules.chain_change_orders(s, doc.execution_record_id)),
        execution_record=er,
        upstream=rules.upstream_source(s, er) if er is not None else None,
    )


def list_documents(
    s: Session,
    kind: DocumentKind | str,
    *,
    parent_ref: ParentRef | None = None,
    approval_status: str | None = None,
    limit: int = 100,
) -> list[LineageDocument]:
    """Newest first, optionally scoped to a parent document."""
    kind = as_kind(kind)
    model = MODELS[kind]
    q = select(model)
    if parent_ref is not None:
        if kind is DocumentKind.AMENDMENT and parent_ref.kind is DocumentKind.BASE_DOCUMENT:
            q = q.where(Amendment.base_document_id == parent_ref.id)
        elif kind is DocumentKind.EXECUTION_RECORD and parent_ref.kind is DocumentKind.BASE_DOCUMENT:
            q = q.where(ExecutionRecord.base_document_id == parent_ref.id)
        elif kind is DocumentKind.CHANGE_ORDER and parent_ref.kind is DocumentKind.EXECUTION_RECORD:
            q = q.where(ChangeOrder.execution_record_id == parent_ref.id)
        else:
            raise ValidationError(
                f"Cannot list {kind.label}s under a {parent_ref.kind.label}.", field="parent_ref"
            )
    if approval_status:
        if kind is DocumentKind.EXECUTION_RECORD:
            raise ValidationError("Projects have no approval status.", field="approval_status")
        q = q.where(model.approval_status == approval_status)
    q = q.order_by(model.created_at.desc(), model.id.desc()).limit(max(1, limit))
    return list(s.execute(q).scalars())
