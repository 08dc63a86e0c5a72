"""Initial schema: users/roles, audit trail, proposal lineage tables.

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a0b1c2d3e4f5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _proposal_columns() -> list[sa.Column]:
    return [
        sa.Column("company_info", JSON, nullable=True),
        sa.Column("submitted_to", sa.String(255), nullable=True),
        sa.Column("attention", sa.String(255), nullable=True),
        sa.Column("offer_reference", sa.String(128), nullable=True),
        sa.Column("enquiry_number", sa.String(128), nullable=True),
        sa.Column("offer_date", sa.Date(), nullable=True),
        sa.Column("enquiry_date", sa.Date(), nullable=True),
        sa.Column("project_title", sa.String(255), nullable=True),
        sa.Column("introduction_text", sa.Text(), nullable=True),
        sa.Column("scope_of_work", JSON, nullable=True),
        sa.Column("price_schedule", JSON, nullable=True),
        sa.Column("our_viewpoints", sa.Text(), nullable=True),
        sa.Column("exclusions", JSON, nullable=True),
        sa.Column("payment_terms", JSON, nullable=True),
        sa.Column("delivery_terms", JSON, nullable=True),
    ]


def _approval_columns() -> list[sa.Column]:
    return [
        sa.Column("approval_status", sa.String(16), nullable=False, server_default="none"),
        sa.Column("approval_requested_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("approval_decided_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("approval_decided_at", sa.DateTime(), nullable=True),
        sa.Column("approval_comments", sa.String(1024), nullable=True),
    ]


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    ]


def _owner_columns(kinds: tuple[str, ...]) -> list[sa.Column]:
    tables = {
        "base_document_id": "base_documents",
        "amendment_id": "amendments",
        "execution_record_id": "execution_records",
        "change_order_id": "change_orders",
    }
    return [
        sa.Column(col, sa.Integer(), sa.ForeignKey(f"{tables[col]}.id", ondelete="CASCADE"), nullable=True)
        for col in kinds
    ]


ALL_OWNERS = ("base_document_id", "amendment_id", "execution_record_id", "change_order_id")
APPROVAL_OWNERS = ("base_document_id", "amendment_id", "change_order_id")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("actor_user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("snapshot_json", sa.Text(), nullable=True),
    )
    op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])
    op.create_index("idx_audit_events_action_created", "audit_events", ["action", "created_at"])
    op.create_index("idx_audit_events_actor_created", "audit_events", ["actor_user_id", "created_at"])

    op.create_table(
        "base_documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        *_proposal_columns(),
        *_approval_columns(),
        *_audit_columns(),
    )

    op.create_table(
        "amendments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_document_id", sa.Integer(), sa.ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("parent_amendment_id", sa.Integer(), sa.ForeignKey("amendments.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("amendment_number", sa.String(64), nullable=False),
        sa.Column("diff_from_parent", JSON, nullable=False),
        *_proposal_columns(),
        *_approval_columns(),
        *_audit_columns(),
        sa.UniqueConstraint("base_document_id", "sequence_number", name="uq_amendment_sequence"),
        sa.UniqueConstraint("parent_amendment_id", name="uq_amendment_single_child"),
    )
    op.create_index("idx_amendments_base_document", "amendments", ["base_document_id"])

    op.create_table(
        "execution_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_document_id", sa.Integer(), sa.ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("source_amendment_id", sa.Integer(), sa.ForeignKey("amendments.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("source_base_document_id", sa.Integer(), sa.ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("record_number", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("location_details", sa.Text(), nullable=True),
        sa.Column("working_hours", sa.String(128), nullable=True),
        sa.Column("manpower_count", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("assigned_project_engineer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("assigned_site_engineer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        *_audit_columns(),
        sa.UniqueConstraint("base_document_id", "sequence_number", name="uq_execution_record_sequence"),
        sa.UniqueConstraint("source_amendment_id", name="uq_execution_record_source_amendment"),
        sa.UniqueConstraint("source_base_document_id", name="uq_execution_record_source_base"),
    )

    op.create_table(
        "change_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("execution_record_id", sa.Integer(), sa.ForeignKey("execution_records.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("parent_change_order_id", sa.Integer(), sa.ForeignKey("change_orders.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("change_order_number", sa.String(64), nullable=False),
        sa.Column("diff_from_parent", JSON, nullable=False),
        *_proposal_columns(),
        *_approval_columns(),
        *_audit_columns(),
        sa.UniqueConstraint("execution_record_id", "sequence_number", name="uq_change_order_sequence"),
        sa.UniqueConstraint("parent_change_order_id", name="uq_change_order_single_child"),
    )
    op.create_index("idx_change_orders_execution_record", "change_orders", ["execution_record_id"])

    op.create_table(
        "approval_log_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_owner_columns(APPROVAL_OWNERS),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("note", sa.String(1024), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "edit_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_owner_columns(ALL_OWNERS),
        sa.Column("editor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("changes", JSON, nullable=False),
    )
    op.create_table(
        "document_attachments",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_owner_columns(ALL_OWNERS),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("mime_type", sa.String(128), nullable=False, server_default="application/octet-stream"),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locator", sa.String(512), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        sa.Column("uploaded_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    )
    for table, owners in (
        ("approval_log_entries", APPROVAL_OWNERS),
        ("edit_records", ALL_OWNERS),
        ("document_attachments", ALL_OWNERS),
    ):
        for col in owners:
            op.create_index(f"ix_{table}_{col}", table, [col])

    op.create_table(
        "site_visits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_document_id", sa.Integer(), sa.ForeignKey("base_documents.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("execution_record_id", sa.Integer(), sa.ForeignKey("execution_records.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("visit_at", sa.DateTime(), nullable=False),
        sa.Column("site_location", sa.String(255), nullable=False),
        sa.Column("engineer_name", sa.String(255), nullable=False),
        sa.Column("work_progress_summary", sa.Text(), nullable=False),
        sa.Column("safety_observations", sa.Text(), nullable=True),
        sa.Column("issues_found", sa.Text(), nullable=True),
        sa.Column("action_items", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
    )
    op.create_index("ix_site_visits_base_document_id", "site_visits", ["base_document_id"])
    op.create_index("ix_site_visits_execution_record_id", "site_visits", ["execution_record_id"])

    op.create_table(
        "execution_sub_revisions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("execution_record_id", sa.Integer(), sa.ForeignKey("execution_records.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("revision_type", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("changes", JSON, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("decided_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("comments", sa.String(1024), nullable=True),
        sa.UniqueConstraint("execution_record_id", "version", name="uq_execution_sub_revision_version"),
    )

    op.create_table(
        "sequence_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("scope_kind", sa.String(64), nullable=False),
        sa.Column("scope_id", sa.Integer(), nullable=False),
        sa.Column("family", sa.String(16), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("scope_kind", "scope_id", "family", name="uq_sequence_counter_scope"),
    )


def downgrade() -> None:
    op.drop_table("sequence_counters")
    op.drop_table("execution_sub_revisions")
    op.drop_index("ix_site_visits_execution_record_id", table_name="site_visits")
    op.drop_index("ix_site_visits_base_document_id", table_name="site_visits")
    op.drop_table("site_visits")
    for table, owners in (
        ("document_attachments", ALL_OWNERS),
        ("edit_records", ALL_OWNERS),
        ("approval_log_entries", APPROVAL_OWNERS),
    ):
        for col in owners:
            op.drop_index(f"ix_{table}_{col}", table_name=table)
        op.drop_table(table)
    op.drop_index("idx_change_orders_execution_record", table_name="change_orders")
    op.drop_table("change_orders")
    op.drop_table("execution_records")
    op.drop_index("idx_amendments_base_document", table_name="amendments")
    op.drop_table("amendments")
    op.drop_table("base_documents")
    op.drop_index("idx_audit_events_actor_created", table_name="audit_events")
    op.drop_index("idx_audit_events_action_created", table_name="audit_events")
    op.drop_index("idx_audit_events_entity", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("user_roles")
    op.drop_table("roles")
    op.drop_table("users")
