"""
Lineage preconditions for creating, mutating and deleting documents.

Each check returns a Verdict instead of raising so callers can surface the reason (and
the blocking entity) however they like; `Verdict.enforce()` raises LineageViolation.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.estimation.constants import DocumentKind
from app.estimation.errors import LineageViolation
from app.estimation.modules.lineage.models import (
    Amendment,
    ApprovableDocument,
    BaseDocument,
    ChangeOrder,
    ExecutionRecord,
    LineageDocument,
    SiteVisit,
)


@dataclass(frozen=True)
class Verdict:
    ok: bool
    code: str | None = None
    reason: str | None = None
    blocking_kind: DocumentKind | None = None
    blocking_id: int | None = None
    blocking_label: str | None = None

    def enforce(self) -> None:
        if self.ok:
            return
        raise LineageViolation(
            self.reason or "Lineage precondition failed.",
            code=self.code,
            blocking_kind=self.blocking_kind.value if self.blocking_kind else None,
            blocking_id=self.blocking_id,
            blocking_label=self.blocking_label,
        )


OK = Verdict(ok=True)


def _reject(code: str, reason: str, blocking: LineageDocument | None = None) -> Verdict:
    if blocking is None:
        return Verdict(ok=False, code=code, reason=reason)
    return Verdict(
        ok=False,
        code=code,
        reason=reason,
        blocking_kind=blocking.kind,
        blocking_id=blocking.id,
        blocking_label=blocking.reference_label,
    )


# --- lineage lookups -----------------------------------------------------------------


def chain_amendments(s: Session, base_document_id: int) -> list[Amendment]:
    return list(
        s.execute(
            select(Amendment)
            .where(Amendment.base_document_id == base_document_id)
            .order_by(Amendment.sequence_number.asc())
        ).scalars()
    )


def chain_change_orders(s: Session, execution_record_id: int) -> list[ChangeOrder]:
    return list(
        s.execute(
            select(ChangeOrder)
            .where(ChangeOrder.execution_record_id == execution_record_id)
            .order_by(ChangeOrder.sequence_number.asc())
        ).scalars()
    )


def direct_child(s: Session, doc: LineageDocument) -> LineageDocument | None:
    """The single child of the same family (amendment/change order chains are linear)."""
    if isinstance(doc, BaseDocument):
        stmt = select(Amendment).where(
            Amendment.base_document_id == doc.id, Amendment.parent_amendment_id.is_(None)
        )
    elif isinstance(doc, Amendment):
        stmt = select(Amendment).where(Amendment.parent_amendment_id == doc.id)
    elif isinstance(doc, ExecutionRecord):
        stmt = select(ChangeOrder).where(
            ChangeOrder.execution_record_id == doc.id, ChangeOrder.parent_change_order_id.is_(None)
        )
    else:
        stmt = select(ChangeOrder).where(ChangeOrder.parent_change_order_id == doc.id)
    return s.execute(stmt.limit(1)).scalars().first()


def family_children_count(s: Session, doc: LineageDocument) -> int:
    """Children of the document's own family: all amendments under a quotation, all change
    orders under a project, the direct child for chain members."""
    if isinstance(doc, BaseDocument):
        stmt = select(func.count()).select_from(Amendment).where(Amendment.base_document_id == doc.id)
    elif isinstance(doc, Amendment):
        stmt = select(func.count()).select_from(Amendment).where(Amendment.parent_amendment_id == doc.id)
    elif isinstance(doc, ExecutionRecord):
        stmt = select(func.count()).select_from(ChangeOrder).where(ChangeOrder.execution_record_id == doc.id)
    else:
        stmt = select(func.count()).select_from(ChangeOrder).where(ChangeOrder.parent_change_order_id == doc.id)
    return int(s.execute(stmt).scalar_one())


def execution_record_for_source(s: Session, source: BaseDocument | Amendment) -> ExecutionRecord | None:
    if isinstance(source, Amendment):
        stmt = select(ExecutionRecord).where(ExecutionRecord.source_amendment_id == source.id)
    else:
        stmt = select(ExecutionRecord).where(ExecutionRecord.source_base_document_id == source.id)
    return s.execute(stmt.limit(1)).scalars().first()


def execution_records_for_base(s: Session, base_document_id: int) -> list[ExecutionRecord]:
    return list(
        s.execute(
            select(ExecutionRecord)
            .where(ExecutionRecord.base_document_id == base_document_id)
            .order_by(ExecutionRecord.sequence_number.asc())
        ).scalars()
    )


def latest_approved_in_chain(s: Session, base_document_id: int) -> BaseDocument | Amendment | None:
    """Furthest-along approved node of a quotation chain (amendments beat the quotation)."""
    approved = [a for a in chain_amendments(s, base_document_id) if a.is_approved]
    if approved:
        return approved[-1]
    base = s.get(BaseDocument, base_document_id)
    if base is not None and base.is_approved:
        return base
    return None


def upstream_source(s: Session, er: ExecutionRecord) -> BaseDocument | Amendment | None:
    """The amendment/quotation whose content fed the project."""
    if er.source_amendment_id is not None:
        return s.get(Amendment, er.source_amendment_id)
    if er.source_base_document_id is not None:
        return s.get(BaseDocument, er.source_base_document_id)
    return None


def site_visit_count(s: Session, doc: LineageDocument) -> int:
    if isinstance(doc, BaseDocument):
        where = SiteVisit.base_document_id == doc.id
    elif isinstance(doc, ExecutionRecord):
        where = SiteVisit.execution_record_id == doc.id
    else:
        return 0
    return int(s.execute(select(func.count()).select_from(SiteVisit).where(where)).scalar_one())


# --- rules ---------------------------------------------------------------------------


def _can_create_amendment(s: Session, parent: LineageDocument) -> Verdict:
    if isinstance(parent, BaseDocument):
        if not parent.is_approved:
            return _reject("parent_not_approved", "Only approved quotations can be revised.")
        existing = direct_child(s, parent) or next(iter(chain_amendments(s, parent.id)), None)
        if existing is not None:
            return _reject(
                "amendment_exists",
                f"A revision ({existing.reference_label}) already exists for this quotation. "
                "Revise the latest revision instead, or delete the revisions first.",
                existing,
            )
        return OK
    if isinstance(parent, Amendment):
        child = direct_child(s, parent)
        if child is not None:
            return _reject(
                "child_exists",
                f"A child revision ({child.reference_label}) already exists for this revision.",
                child,
            )
        return OK
    return _reject("invalid_parent", f"A revision cannot be created from a {parent.kind.label}.")


def _can_create_execution_record(s: Session, source: LineageDocument) -> Verdict:
    if not isinstance(source, (BaseDocument, Amendment)):
        return _reject("invalid_parent", f"A project cannot be created from a {source.kind.label}.")
    if not source.is_approved:
        return _reject("source_not_approved", f"Only approved {source.kind.label}s can be converted to a project.")
    base_id = source.id if isinstance(source, BaseDocument) else source.base_document_id
    latest = latest_approved_in_chain(s, base_id)
    if latest is None or latest.kind is not source.kind or latest.id != source.id:
        label = latest.reference_label if latest is not None else "none"
        return _reject(
            "source_not_latest_approved",
            f"Only the latest approved revision ({label}) can be used to create a project.",
            latest,
        )
    child = direct_child(s, source)
    if child is not None:
        return _reject(
            "source_not_terminal",
            f"A project can only be created from the last revision in the chain; "
            f"{child.reference_label} follows this one.",
            child,
        )
    existing = execution_record_for_source(s, source)
    if existing is not None:
        return _reject(
            "execution_record_exists",
            f"A project ({existing.reference_label}) already exists for this {source.kind.label}.",
            existing,
        )
    return OK


def _can_create_change_order(s: Session, parent: LineageDocument) -> Verdict:
    if isinstance(parent, ExecutionRecord):
        if upstream_source(s, parent) is None:
            return _reject(
                "no_upstream_source",
                "Project has no source quotation or revision to base a variation on.",
            )
        chain = chain_change_orders(s, parent.id)
        if chain:
            terminal = chain[-1]
            return _reject(
                "change_order_chain_exists",
                f"This project already has variations; create the next one from {terminal.reference_label}.",
                terminal,
            )
        return OK
    if isinstance(parent, ChangeOrder):
        child = direct_child(s, parent)
        if child is not None:
            return _reject(
                "child_exists",
                f"A child variation ({child.reference_label}) already exists for this variation.",
                child,
            )
        return OK
    return _reject("invalid_parent", f"A variation cannot be created from a {parent.kind.label}.")


def can_create_child(s: Session, kind: DocumentKind, parent: LineageDocument) -> Verdict:
    if kind is DocumentKind.AMENDMENT:
        return _can_create_amendment(s, parent)
    if kind is DocumentKind.EXECUTION_RECORD:
        return _can_create_execution_record(s, parent)
    if kind is DocumentKind.CHANGE_ORDER:
        return _can_create_change_order(s, parent)
    return _reject("invalid_kind", f"A {kind.label} has no parent document.")


def can_mutate(s: Session, doc: LineageDocument) -> Verdict:
    if getattr(doc, "is_approved", False):
        return _reject("approved_immutable", f"Approved {doc.kind.label}s cannot be modified.")
    if isinstance(doc, ExecutionRecord):
        chain = chain_change_orders(s, doc.id)
        if chain:
            return _reject(
                "change_orders_exist",
                f"Project cannot be modified once variations exist (remove {chain[-1].reference_label} first).",
                chain[-1],
            )
        return OK
    child = direct_child(s, doc)
    if child is not None:
        return _reject(
            "children_exist",
            f"This {doc.kind.label} cannot be modified because {child.reference_label} was derived from it.",
            child,
        )
    if isinstance(doc, (BaseDocument, Amendment)):
        er = execution_record_for_source(s, doc)
        if er is not None:
            return _reject(
                "execution_record_exists",
                f"This {doc.kind.label} feeds project {er.reference_label} and cannot be modified.",
                er,
            )
    return OK


def can_delete(s: Session, doc: LineageDocument) -> Verdict:
    if getattr(doc, "is_approved", False):
        return _reject("approved_immutable", f"Cannot delete: {doc.kind.label} is approved.")
    if family_children_count(s, doc) > 0:
        child = direct_child(s, doc)
        return _reject(
            "children_exist",
            f"Cannot delete: subsequent documents depend on this {doc.kind.label}"
            + (f" (remove {child.reference_label} first)." if child is not None else "."),
            child,
        )
    if isinstance(doc, BaseDocument):
        ers = execution_records_for_base(s, doc.id)
        if ers:
            return _reject(
                "execution_record_exists",
                f"Cannot delete: project {ers[0].reference_label} was created from this quotation.",
                ers[0],
            )
    if isinstance(doc, Amendment):
        er = execution_record_for_source(s, doc)
        if er is not None:
            return _reject(
                "execution_record_exists",
                f"Cannot delete: project {er.reference_label} was created from this revision.",
                er,
            )
    visits = site_visit_count(s, doc)
    if visits:
        return _reject("site_visits_exist", f"Cannot delete: {visits} site visit(s) are recorded against it.")
    return OK


def can_reset_approval(s: Session, doc: ApprovableDocument) -> Verdict:
    """An admin reset must not strand documents derived from the approved state."""
    child = direct_child(s, doc)
    if child is not None:
        return _reject(
            "children_exist",
            f"Cannot reset approval: {child.reference_label} was derived from this {doc.kind.label}.",
            child,
        )
    if isinstance(doc, (BaseDocument, Amendment)):
        er = execution_record_for_source(s, doc)
        if er is not None:
            return _reject(
                "execution_record_exists",
                f"Cannot reset approval: project {er.reference_label} was created from it.",
                er,
            )
    return OK
