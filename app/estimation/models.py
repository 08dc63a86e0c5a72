from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Generic JSON everywhere, JSONB when running on Postgres.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )

    @property
    def role_keys(self) -> frozenset[str]:
        return frozenset(r.key for r in self.roles)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "manager"
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # display name
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")


class AuditEvent(Base):
    """
    Append-only audit trail event.

    `snapshot_json` is a denormalized, human-readable subset of the document at the time
    of the action, so history renders without joining to (possibly deleted) documents.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_entity", "entity_type", "entity_id"),
        Index("idx_audit_events_action_created", "action", "created_at"),
        Index("idx_audit_events_actor_created", "actor_user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "amendment.approve"
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # DocumentKind value
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    snapshot_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def snapshot(self) -> dict:
        if not self.snapshot_json:
            return {}
        return json.loads(self.snapshot_json)


@event.listens_for(AuditEvent, "before_update")
def _audit_events_are_immutable(mapper, connection, target: AuditEvent) -> None:  # type: ignore[no-untyped-def]
    raise RuntimeError(f"audit_events are append-only (attempted update of id={target.id})")


@event.listens_for(AuditEvent, "before_delete")
def _audit_events_are_not_deletable(mapper, connection, target: AuditEvent) -> None:  # type: ignore[no-untyped-def]
    raise RuntimeError(f"audit_events are append-only (attempted delete of id={target.id})")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.estimation.modules.lineage.models import (  # noqa: E402,F401
    Amendment,
    ApprovalLogEntry,
    BaseDocument,
    ChangeOrder,
    DocumentAttachment,
    EditRecord,
    ExecutionRecord,
    ExecutionSubRevision,
    SequenceCounter,
    SiteVisit,
)
