import pytest

from app.estimation.db import session_scope
from app.estimation.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    LineageViolation,
    ValidationError,
)
from app.estimation.modules.lineage import approval, service


def test_full_cycle_keeps_log_and_columns_in_step(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        manager = lineage.user(s, "manager")
        doc = lineage.base(s, approved=False)
        assert doc.approval_status == "none"
        assert doc.approval_logs == []

        service.request_approval(s, "base_document", doc.id, estimator, "please review")
        assert doc.approval_status == "pending"
        assert doc.approval_requested_by_user_id == estimator.id
        assert doc.approval_decided_by_user_id is None

        service.decide(s, "base_document", doc.id, manager, "reject", "prices too high")
        assert doc.approval_status == "rejected"
        assert doc.approval_decided_by_user_id == manager.id
        assert doc.approval_requested_by_user_id == estimator.id

        service.request_approval(s, "base_document", doc.id, estimator)
        assert doc.approval_status == "pending"
        assert doc.approval_decided_by_user_id is None
        assert doc.approval_decided_at is None

        service.decide(s, "base_document", doc.id, manager, "approve")
        assert doc.approval_status == "approved"
        assert doc.approval_requested_by_user_id == estimator.id
        assert doc.approval_decided_at is not None

        assert [e.status for e in doc.approval_logs] == ["pending", "rejected", "pending", "approved"]
        assert [e.actor_user_id for e in doc.approval_logs] == [estimator.id, manager.id, estimator.id, manager.id]
        assert doc.approval_logs[1].note == "prices too high"
        approval.assert_consistent(doc)


def test_illegal_transitions_are_rejected_without_mutation(app, lineage):
    with session_scope(app) as s:
        manager = lineage.user(s, "manager")
        doc = lineage.base(s, approved=False)

        with pytest.raises(InvalidStateError) as ei:
            service.decide(s, "base_document", doc.id, manager, "approve")
        assert ei.value.code == "illegal_transition_none_to_approved"
        assert doc.approval_status == "none"
        assert doc.approval_logs == []

        lineage.approve(s, doc)
        with pytest.raises(InvalidStateError) as ei:
            service.request_approval(s, "base_document", doc.id, lineage.user(s, "estimator"))
        assert ei.value.code == "illegal_transition_approved_to_pending"
        with pytest.raises(InvalidStateError):
            service.decide(s, "base_document", doc.id, manager, "reject")
        assert doc.approval_status == "approved"
        assert len(doc.approval_logs) == 2


def test_only_approvers_decide(app, lineage):
    with session_scope(app) as s:
        doc = lineage.base(s, approved=False)
        service.request_approval(s, "base_document", doc.id, lineage.user(s, "estimator"))

        for who in ("estimator", "site", "inactive"):
            with pytest.raises(AuthorizationError):
                service.decide(s, "base_document", doc.id, lineage.user(s, who), "approve")
        assert doc.approval_status == "pending"
        assert len(doc.approval_logs) == 1

        service.decide(s, "base_document", doc.id, lineage.user(s, "admin"), "approve")
        assert doc.approval_status == "approved"


def test_request_needs_creator_or_preparer(app, lineage):
    with session_scope(app) as s:
        doc = lineage.base(s, approved=False)
        with pytest.raises(AuthorizationError):
            service.request_approval(s, "base_document", doc.id, lineage.user(s, "site"))
        with pytest.raises(AuthorizationError):
            service.request_approval(s, "base_document", doc.id, lineage.user(s, "manager"))
        assert doc.approval_status == "none"

        service.request_approval(s, "base_document", doc.id, lineage.user(s, "estimator2"))
        assert doc.approval_status == "pending"


def test_invalid_decision_and_oversized_note(app, lineage):
    with session_scope(app) as s:
        doc = lineage.base(s, approved=False)
        estimator = lineage.user(s, "estimator")
        with pytest.raises(ValidationError):
            service.request_approval(s, "base_document", doc.id, estimator, "x" * 2000)
        service.request_approval(s, "base_document", doc.id, estimator)
        with pytest.raises(ValidationError):
            service.decide(s, "base_document", doc.id, lineage.user(s, "manager"), "maybe")
        assert doc.approval_status == "pending"


def test_stale_version_is_a_conflict(app, lineage):
    with session_scope(app) as s:
        doc = lineage.base(s, approved=False)
        estimator = lineage.user(s, "estimator")
        seen = doc.version
        service.request_approval(s, "base_document", doc.id, estimator, expected_version=seen)
        with pytest.raises(ConflictError):
            service.decide(s, "base_document", doc.id, lineage.user(s, "manager"), "approve", expected_version=seen)
        assert doc.approval_status == "pending"


def test_projects_have_no_approval_workflow(app, lineage):
    with session_scope(app) as s:
        er = lineage.project(s, lineage.base(s))
        with pytest.raises(InvalidStateError) as ei:
            service.request_approval(s, "execution_record", er.id, lineage.user(s, "estimator"))
        assert ei.value.code == "not_approvable"


def test_admin_reset_reopens_an_approved_document(app, lineage):
    with session_scope(app) as s:
        admin = lineage.user(s, "admin")
        doc = lineage.base(s)

        with pytest.raises(AuthorizationError):
            service.reset_approval(s, "base_document", doc.id, lineage.user(s, "manager"), "wrong price")
        with pytest.raises(ValidationError):
            service.reset_approval(s, "base_document", doc.id, admin, "  ")
        assert doc.approval_status == "approved"

        service.reset_approval(s, "base_document", doc.id, admin, "wrong price")
        assert doc.approval_status == "none"
        assert doc.approval_decided_by_user_id is None
        assert doc.approval_logs[-1].status == "none"
        assert doc.approval_logs[-1].note == "wrong price"
        approval.assert_consistent(doc)

        service.edit(s, "base_document", doc.id, {"attention": "Mr. Smith"}, lineage.user(s, "estimator"))
        assert doc.attention == "Mr. Smith"


def test_reset_requires_approved_state_and_no_descendants(app, lineage):
    with session_scope(app) as s:
        admin = lineage.user(s, "admin")
        draft = lineage.base(s, title="Draft", approved=False)
        with pytest.raises(InvalidStateError) as ei:
            service.reset_approval(s, "base_document", draft.id, admin, "note")
        assert ei.value.code == "reset_requires_approved"

        doc = lineage.base(s)
        rev = lineage.amend(s, doc)
        with pytest.raises(LineageViolation) as ei:
            service.reset_approval(s, "base_document", doc.id, admin, "note")
        assert ei.value.code == "children_exist"
        assert ei.value.blocking_id == rev.id
        assert doc.approval_status == "approved"
