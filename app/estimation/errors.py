"""
Error taxonomy for the estimation lineage core.

Every rejection carries a stable `code` (safe to branch on) and a human message.
"""
from __future__ import annotations


class EstimationError(Exception):
    code = "estimation_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(EstimationError):
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.field = field

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.field:
            out["field"] = self.field
        return out


class AuthorizationError(EstimationError):
    code = "not_authorized"


class InvalidStateError(EstimationError):
    code = "invalid_state"


class NotFoundError(EstimationError):
    code = "not_found"


class LineageViolation(EstimationError):
    """
    A creation/mutation/deletion precondition failed.

    `blocking_kind`/`blocking_id`/`blocking_label` name the entity the caller has to
    deal with first (e.g. the existing amendment, the latest approved node).
    """

    code = "lineage_violation"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        blocking_kind: str | None = None,
        blocking_id: int | None = None,
        blocking_label: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.blocking_kind = blocking_kind
        self.blocking_id = blocking_id
        self.blocking_label = blocking_label

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.blocking_id is not None:
            out["blocking"] = {
                "kind": self.blocking_kind,
                "id": self.blocking_id,
                "label": self.blocking_label,
            }
        return out


class NoChangeDetected(EstimationError):
    code = "no_change_detected"


class SequenceCollision(EstimationError):
    code = "sequence_collision"


class ConflictError(EstimationError):
    code = "version_conflict"


class AuditWriteFailure(EstimationError):
    code = "audit_write_failure"
