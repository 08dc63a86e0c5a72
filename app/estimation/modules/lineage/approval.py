"""
Approval state machine.

    none -----> pending -----> approved   (terminal; only an admin reset leaves it)
                   ^  \\
                   |   '-----> rejected
                   '-------------'

The append-only `approval_logs` rows are authoritative. The denormalized columns on the
document (approval_status, requested/decided by, decided at) are always rewritten from
`fold(logs)` after an entry is appended, never set on their own.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from app.estimation.constants import ApprovalStatus, Decision
from app.estimation.errors import InvalidStateError, ValidationError
from app.estimation.models import User
from app.estimation.modules.lineage.models import ApprovableDocument, ApprovalLogEntry
from app.estimation.rbac import (
    APPROVER_ROLES,
    PREPARER_ROLES,
    RESET_ROLES,
    require_role,
    require_role_or_creator,
)

TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.NONE: frozenset({ApprovalStatus.PENDING}),
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.REJECTED: frozenset({ApprovalStatus.PENDING}),
    ApprovalStatus.APPROVED: frozenset(),
}

MAX_NOTE_LEN = 1024


@dataclass(frozen=True)
class ApprovalState:
    status: ApprovalStatus = ApprovalStatus.NONE
    requested_by_user_id: int | None = None
    decided_by_user_id: int | None = None
    decided_at: datetime | None = None
    comments: str | None = None


def fold(logs: Sequence[ApprovalLogEntry]) -> ApprovalState:
    state = ApprovalState()
    for entry in logs:
        status = ApprovalStatus(entry.status)
        if status is ApprovalStatus.PENDING:
            state = ApprovalState(
                status=status,
                requested_by_user_id=entry.actor_user_id,
                comments=entry.note or state.comments,
            )
        elif status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            state = ApprovalState(
                status=status,
                requested_by_user_id=state.requested_by_user_id,
                decided_by_user_id=entry.actor_user_id,
                decided_at=entry.created_at,
                comments=entry.note or state.comments,
            )
        else:
            state = ApprovalState(comments=entry.note)
    return state


def current_status(doc: ApprovableDocument) -> ApprovalStatus:
    return fold(doc.approval_logs).status


def _apply_fold(doc: ApprovableDocument) -> ApprovalState:
    state = fold(doc.approval_logs)
    doc.approval_status = state.status.value
    doc.approval_requested_by_user_id = state.requested_by_user_id
    doc.approval_decided_by_user_id = state.decided_by_user_id
    doc.approval_decided_at = state.decided_at
    doc.approval_comments = state.comments
    return state


def assert_consistent(doc: ApprovableDocument) -> None:
    """Raise if the denormalized approval columns drifted from the log."""
    state = fold(doc.approval_logs)
    if (
        doc.approval_status != state.status.value
        or doc.approval_requested_by_user_id != state.requested_by_user_id
        or doc.approval_decided_by_user_id != state.decided_by_user_id
    ):
        raise InvalidStateError(
            f"Approval state of {doc.kind.value} #{doc.id} does not match its log.",
            code="approval_state_drift",
        )


def _clean_note(note: str | None) -> str | None:
    if note is None:
        return None
    if not isinstance(note, str):
        raise ValidationError("note must be a string.", field="note")
    note = note.strip()
    if len(note) > MAX_NOTE_LEN:
        raise ValidationError(f"note must be at most {MAX_NOTE_LEN} characters.", field="note")
    return note or None


def _check_transition(doc: ApprovableDocument, target: ApprovalStatus) -> ApprovalStatus:
    current = current_status(doc)
    if target not in TRANSITIONS[current]:
        raise InvalidStateError(
            f"Cannot move {doc.kind.label} from '{current.value}' to '{target.value}'.",
            code=f"illegal_transition_{current.value}_to_{target.value}",
        )
    return current


def _append(doc: ApprovableDocument, status: ApprovalStatus, actor: User, note: str | None, now: datetime) -> ApprovalLogEntry:
    entry = ApprovalLogEntry(status=status.value, actor_user_id=actor.id, note=note, created_at=now)
    doc.approval_logs.append(entry)
    _apply_fold(doc)
    return entry


def request_approval(doc: ApprovableDocument, actor: User, note: str | None = None, *, now: datetime | None = None) -> ApprovalLogEntry:
    """none|rejected -> pending. Creator or preparer role only."""
    require_role_or_creator(actor, doc, PREPARER_ROLES, action="request approval")
    note = _clean_note(note)
    _check_transition(doc, ApprovalStatus.PENDING)
    return _append(doc, ApprovalStatus.PENDING, actor, note, now or datetime.utcnow())


def decide(doc: ApprovableDocument, actor: User, decision: Decision | str, note: str | None = None, *, now: datetime | None = None) -> ApprovalLogEntry:
    """pending -> approved|rejected. Approver role only; requested_by is preserved."""
    require_role(actor, APPROVER_ROLES, action="approve or reject")
    try:
        decision = Decision(decision)
    except ValueError:
        raise ValidationError(f"Invalid decision: {decision!r}", field="decision") from None
    note = _clean_note(note)
    _check_transition(doc, decision.status)
    return _append(doc, decision.status, actor, note, now or datetime.utcnow())


def reset(doc: ApprovableDocument, actor: User, note: str, *, now: datetime | None = None) -> ApprovalLogEntry:
    """Out-of-band admin reset: approved -> none. Requires a note."""
    require_role(actor, RESET_ROLES, action="reset an approval")
    note = _clean_note(note)
    if not note:
        raise ValidationError("Resetting an approval requires a note.", field="note")
    current = current_status(doc)
    if current is not ApprovalStatus.APPROVED:
        raise InvalidStateError(
            f"Only approved documents can be reset (current: '{current.value}').",
            code="reset_requires_approved",
        )
    return _append(doc, ApprovalStatus.NONE, actor, note, now or datetime.utcnow())
