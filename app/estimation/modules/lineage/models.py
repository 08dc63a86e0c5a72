from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.estimation.constants import ApprovalStatus, DocumentKind
from app.estimation.models import Base, JSONType


class ProposalContentMixin:
    """
    Proposal content shared by the root quotation, its amendments and change orders.
    Structured content lives in JSON columns (see fields.py for the canonical shapes).
    """

    company_info: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    submitted_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attention: Mapped[str | None] = mapped_column(String(255), nullable=True)
    offer_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    enquiry_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    offer_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    enquiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    project_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    introduction_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope_of_work: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    price_schedule: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    our_viewpoints: Mapped[str | None] = mapped_column(Text, nullable=True)
    exclusions: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    payment_terms: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    delivery_terms: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    @property
    def grand_total(self) -> str | None:
        ps = self.price_schedule or {}
        return ps.get("grand_total")

    @property
    def currency(self) -> str | None:
        ps = self.price_schedule or {}
        return ps.get("currency")


class ApprovalStateMixin:
    """
    Denormalized approval state. Always written from the fold of `approval_logs`
    (see approval.py); never assigned directly.
    """

    approval_status: Mapped[str] = mapped_column(String(16), nullable=False, default=ApprovalStatus.NONE.value)
    approval_requested_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approval_decided_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approval_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approval_comments: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED.value


class BaseDocument(ProposalContentMixin, ApprovalStateMixin, Base):
    """Root proposal (quotation)."""

    __tablename__ = "base_documents"
    kind = DocumentKind.BASE_DOCUMENT

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    approval_logs: Mapped[list["ApprovalLogEntry"]] = relationship(
        "ApprovalLogEntry",
        foreign_keys="ApprovalLogEntry.base_document_id",
        cascade="all, delete-orphan",
        order_by="ApprovalLogEntry.id",
        lazy="selectin",
    )
    edits: Mapped[list["EditRecord"]] = relationship(
        "EditRecord",
        foreign_keys="EditRecord.base_document_id",
        cascade="all, delete-orphan",
        order_by="EditRecord.id",
        lazy="selectin",
    )
    attachments: Mapped[list["DocumentAttachment"]] = relationship(
        "DocumentAttachment",
        foreign_keys="DocumentAttachment.base_document_id",
        cascade="all, delete-orphan",
        order_by="DocumentAttachment.id",
        lazy="selectin",
    )

    @property
    def reference_label(self) -> str:
        return self.offer_reference or f"quotation #{self.id}"


class Amendment(ProposalContentMixin, ApprovalStateMixin, Base):
    """
    Revision of a quotation. Child of the quotation (parent_amendment_id NULL) or of
    exactly one prior amendment; the chain is linear.
    """

    __tablename__ = "amendments"
    __table_args__ = (
        UniqueConstraint("base_document_id", "sequence_number", name="uq_amendment_sequence"),
        UniqueConstraint("parent_amendment_id", name="uq_amendment_single_child"),
        Index("idx_amendments_base_document", "base_document_id"),
    )
    kind = DocumentKind.AMENDMENT

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    base_document_id: Mapped[int] = mapped_column(ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=False)
    parent_amendment_id: Mapped[int | None] = mapped_column(
        ForeignKey("amendments.id", ondelete="RESTRICT"), nullable=True
    )

    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amendment_number: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "TOWERA-REV-002"

    # [{field, from, to}] computed once at creation against the immediate parent.
    diff_from_parent: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    approval_logs: Mapped[list["ApprovalLogEntry"]] = relationship(
        "ApprovalLogEntry",
        foreign_keys="ApprovalLogEntry.amendment_id",
        cascade="all, delete-orphan",
        order_by="ApprovalLogEntry.id",
        lazy="selectin",
    )
    edits: Mapped[list["EditRecord"]] = relationship(
        "EditRecord",
        foreign_keys="EditRecord.amendment_id",
        cascade="all, delete-orphan",
        order_by="EditRecord.id",
        lazy="selectin",
    )
    attachments: Mapped[list["DocumentAttachment"]] = relationship(
        "DocumentAttachment",
        foreign_keys="DocumentAttachment.amendment_id",
        cascade="all, delete-orphan",
        order_by="DocumentAttachment.id",
        lazy="selectin",
    )

    @property
    def reference_label(self) -> str:
        return self.amendment_number


class ExecutionRecord(Base):
    """
    Operational record (project) created from the latest approved, childless node of a
    quotation chain.
    """

    __tablename__ = "execution_records"
    __table_args__ = (
        UniqueConstraint("base_document_id", "sequence_number", name="uq_execution_record_sequence"),
        UniqueConstraint("source_amendment_id", name="uq_execution_record_source_amendment"),
        UniqueConstraint("source_base_document_id", name="uq_execution_record_source_base"),
    )
    kind = DocumentKind.EXECUTION_RECORD

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Root of the chain, always set. Exactly one of the two source columns is set.
    base_document_id: Mapped[int] = mapped_column(ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=False)
    source_amendment_id: Mapped[int | None] = mapped_column(
        ForeignKey("amendments.id", ondelete="RESTRICT"), nullable=True
    )
    source_base_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=True
    )

    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    record_number: Mapped[str] = mapped_column(String(64), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    working_hours: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manpower_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    assigned_project_engineer_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_site_engineer_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    edits: Mapped[list["EditRecord"]] = relationship(
        "EditRecord",
        foreign_keys="EditRecord.execution_record_id",
        cascade="all, delete-orphan",
        order_by="EditRecord.id",
        lazy="selectin",
    )
    attachments: Mapped[list["DocumentAttachment"]] = relationship(
        "DocumentAttachment",
        foreign_keys="DocumentAttachment.execution_record_id",
        cascade="all, delete-orphan",
        order_by="DocumentAttachment.id",
        lazy="selectin",
    )
    sub_revisions: Mapped[list["ExecutionSubRevision"]] = relationship(
        "ExecutionSubRevision",
        back_populates="execution_record",
        cascade="all, delete-orphan",
        order_by="ExecutionSubRevision.version",
        lazy="selectin",
    )

    @property
    def reference_label(self) -> str:
        return self.record_number


class ChangeOrder(ProposalContentMixin, ApprovalStateMixin, Base):
    """
    Variation of an execution record's originating proposal content; its own linear chain.
    """

    __tablename__ = "change_orders"
    __table_args__ = (
        UniqueConstraint("execution_record_id", "sequence_number", name="uq_change_order_sequence"),
        UniqueConstraint("parent_change_order_id", name="uq_change_order_single_child"),
        Index("idx_change_orders_execution_record", "execution_record_id"),
    )
    kind = DocumentKind.CHANGE_ORDER

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    execution_record_id: Mapped[int] = mapped_column(
        ForeignKey("execution_records.id", ondelete="RESTRICT"), nullable=False
    )
    parent_change_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_orders.id", ondelete="RESTRICT"), nullable=True
    )

    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    change_order_number: Mapped[str] = mapped_column(String(64), nullable=False)

    diff_from_parent: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    approval_logs: Mapped[list["ApprovalLogEntry"]] = relationship(
        "ApprovalLogEntry",
        foreign_keys="ApprovalLogEntry.change_order_id",
        cascade="all, delete-orphan",
        order_by="ApprovalLogEntry.id",
        lazy="selectin",
    )
    edits: Mapped[list["EditRecord"]] = relationship(
        "EditRecord",
        foreign_keys="EditRecord.change_order_id",
        cascade="all, delete-orphan",
        order_by="EditRecord.id",
        lazy="selectin",
    )
    attachments: Mapped[list["DocumentAttachment"]] = relationship(
        "DocumentAttachment",
        foreign_keys="DocumentAttachment.change_order_id",
        cascade="all, delete-orphan",
        order_by="DocumentAttachment.id",
        lazy="selectin",
    )

    @property
    def reference_label(self) -> str:
        return self.change_order_number


class ApprovalLogEntry(Base):
    """Append-only approval transition; the authoritative source of approval state."""

    __tablename__ = "approval_log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    base_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("base_documents.id", ondelete="CASCADE"), nullable=True, index=True
    )
    amendment_id: Mapped[int | None] = mapped_column(
        ForeignKey("amendments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    change_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_orders.id", ondelete="CASCADE"), nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    note: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class EditRecord(Base):
    """One authorized post-creation mutation: who, when, and the [{field, from, to}] list."""

    __tablename__ = "edit_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    base_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("base_documents.id", ondelete="CASCADE"), nullable=True, index=True
    )
    amendment_id: Mapped[int | None] = mapped_column(
        ForeignKey("amendments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    execution_record_id: Mapped[int | None] = mapped_column(
        ForeignKey("execution_records.id", ondelete="CASCADE"), nullable=True, index=True
    )
    change_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_orders.id", ondelete="CASCADE"), nullable=True, index=True
    )

    editor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    changes: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)


class DocumentAttachment(Base):
    """Opaque reference to a file held by the attachment store."""

    __tablename__ = "document_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    base_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("base_documents.id", ondelete="CASCADE"), nullable=True, index=True
    )
    amendment_id: Mapped[int | None] = mapped_column(
        ForeignKey("amendments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    execution_record_id: Mapped[int | None] = mapped_column(
        ForeignKey("execution_records.id", ondelete="CASCADE"), nullable=True, index=True
    )
    change_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_orders.id", ondelete="CASCADE"), nullable=True, index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locator: Mapped[str] = mapped_column(String(512), nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def as_ref(self) -> dict[str, Any]:
        return {"name": self.name, "mime_type": self.mime_type, "size": self.size_bytes, "locator": self.locator}


class SiteVisit(Base):
    """
    Recorded visit, either a pre-award survey against a quotation or a progress visit
    against a project. Existing visits block deletion of the document they hang off.
    """

    __tablename__ = "site_visits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    base_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    execution_record_id: Mapped[int | None] = mapped_column(
        ForeignKey("execution_records.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    visit_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    site_location: Mapped[str] = mapped_column(String(255), nullable=False)
    engineer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    work_progress_summary: Mapped[str] = mapped_column(Text, nullable=False)
    safety_observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    issues_found: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_items: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)


class ExecutionSubRevision(Base):
    """Numbered price/management revision embedded in a project."""

    __tablename__ = "execution_sub_revisions"
    __table_args__ = (
        UniqueConstraint("execution_record_id", "version", name="uq_execution_sub_revision_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_record_id: Mapped[int] = mapped_column(
        ForeignKey("execution_records.id", ondelete="CASCADE"), nullable=False
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    revision_type: Mapped[str] = mapped_column(String(16), nullable=False)  # price | management
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    changes: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # pending -> approved | rejected
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ApprovalStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    decided_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    comments: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    execution_record: Mapped[ExecutionRecord] = relationship(
        "ExecutionRecord",
        back_populates="sub_revisions",
        lazy="selectin",
    )


class SequenceCounter(Base):
    """
    Last sequence value handed out per (scope, family). Advanced on every assignment and
    never decremented, so numbers are not reused after a deletion.
    """

    __tablename__ = "sequence_counters"
    __table_args__ = (
        UniqueConstraint("scope_kind", "scope_id", "family", name="uq_sequence_counter_scope"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scope_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    scope_id: Mapped[int] = mapped_column(Integer, nullable=False)
    family: Mapped[str] = mapped_column(String(16), nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


ApprovableDocument = BaseDocument | Amendment | ChangeOrder
LineageDocument = BaseDocument | Amendment | ExecutionRecord | ChangeOrder
