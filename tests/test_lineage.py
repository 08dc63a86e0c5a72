import logging
from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.estimation.constants import FAMILY_AMENDMENT, DocumentKind
from app.estimation.db import session_scope
from app.estimation.errors import (
    AuthorizationError,
    LineageViolation,
    NoChangeDetected,
    NotFoundError,
    SequenceCollision,
    ValidationError,
)
from app.estimation.modules.lineage import repository, service
from app.estimation.modules.lineage.models import SequenceCounter, SiteVisit
from app.estimation.modules.lineage.repository import ParentRef


def test_amendment_chain_is_single_and_linear(app, lineage):
    with session_scope(app) as s:
        base = lineage.base(s, introduction_text=None)
        a1 = lineage.amend(s, base, introduction_text="Hello")
        assert a1.amendment_number == "TOWERA-REV-001"
        assert a1.sequence_number == 1
        assert a1.parent_amendment_id is None
        assert a1.base_document_id == base.id
        assert a1.diff_from_parent == [{"field": "introduction_text", "from": None, "to": "Hello"}]
        # content is inherited from the parent
        assert a1.project_title == "Tower A"

        with pytest.raises(LineageViolation) as ei:
            lineage.amend(s, base)
        assert ei.value.code == "amendment_exists"
        assert ei.value.blocking_kind == "amendment"
        assert ei.value.blocking_id == a1.id

        a2 = lineage.amend(s, a1)
        assert a2.amendment_number == "TOWERA-REV-002"
        assert a2.parent_amendment_id == a1.id

        with pytest.raises(LineageViolation) as ei:
            lineage.amend(s, a1)
        assert ei.value.code == "child_exists"
        assert ei.value.blocking_id == a2.id


def test_amendment_needs_approved_quotation(app, lineage):
    with session_scope(app) as s:
        draft = lineage.base(s, approved=False)
        with pytest.raises(LineageViolation) as ei:
            lineage.amend(s, draft)
        assert ei.value.code == "parent_not_approved"


def test_creation_from_wrong_parent_kind_is_rejected(app, lineage):
    with session_scope(app) as s:
        base = lineage.base(s)
        with pytest.raises(LineageViolation) as ei:
            lineage.variation(s, base)
        assert ei.value.code == "invalid_parent"
        with pytest.raises(ValidationError):
            service.create_from_parent(s, "base_document", ParentRef(base.kind, base.id), {}, lineage.user(s, "estimator"))
        with pytest.raises(NotFoundError):
            service.create_from_parent(
                s, "amendment", ParentRef(base.kind, 9999), {"attention": "x"}, lineage.user(s, "estimator")
            )


def test_creation_requires_role(app, lineage):
    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            service.create_base_document(s, {"customer_name": "Acme"}, lineage.user(s, "site"))
        base = lineage.base(s)
        with pytest.raises(AuthorizationError):
            service.create_from_parent(
                s, "amendment", ParentRef(base.kind, base.id), {"attention": "x"}, lineage.user(s, "manager")
            )


def test_create_base_document_validates_payload(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        with pytest.raises(ValidationError) as ei:
            service.create_base_document(s, {"project_title": "No customer"}, estimator)
        assert ei.value.field == "customer_name"
        with pytest.raises(ValidationError):
            service.create_base_document(s, {"customer_name": "Acme", "exclusions": "<p>none</p>"}, estimator)

        doc = service.create_base_document(
            s,
            {
                "customer_name": " Acme ",
                "offer_date": "2026-02-01",
                "price_schedule": {"currency": "AED", "items": [{"description": "Tiles", "quantity": 2, "unit_rate": 50}]},
            },
            estimator,
        )
        assert doc.customer_name == "Acme"
        assert doc.price_schedule["grand_total"] == "105.00"
        assert doc.version == 1


def test_no_change_is_rejected_on_create_and_edit(app, lineage):
    with session_scope(app) as s:
        base = lineage.base(s, submitted_to="Acme")
        with pytest.raises(NoChangeDetected):
            lineage.amend(s, base, submitted_to="Acme")
        with pytest.raises(NoChangeDetected):
            lineage.amend(s, base, introduction_text="")

        draft = lineage.base(s, title="Draft", approved=False, attention="Ms. Lee")
        with pytest.raises(NoChangeDetected):
            service.edit(s, "base_document", draft.id, {"attention": " Ms. Lee "}, lineage.user(s, "estimator"))
        assert draft.edits == []


def test_edit_appends_edit_record_and_bumps_version(app, lineage):
    with session_scope(app) as s:
        draft = lineage.base(s, approved=False, attention="Ms. Lee")
        before = draft.version
        service.edit(
            s,
            "base_document",
            draft.id,
            {"attention": "Mr. Khan", "offer_date": "2026-04-01"},
            lineage.user(s, "estimator2"),
            expected_version=before,
        )
        assert draft.attention == "Mr. Khan"
        assert draft.version == before + 1
        assert len(draft.edits) == 1
        assert draft.edits[0].editor_user_id == lineage.user(s, "estimator2").id
        assert draft.edits[0].changes == [
            {"field": "attention", "from": "Ms. Lee", "to": "Mr. Khan"},
            {"field": "offer_date", "from": None, "to": "2026-04-01"},
        ]


def test_attachment_only_edit_is_a_change(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        draft = lineage.base(s, approved=False)
        ref = {"name": "site plan.pdf", "mime_type": "application/pdf", "size": 10, "locator": "ext/site-plan.pdf"}

        service.edit(s, "base_document", draft.id, {"attachments": [ref]}, estimator)
        assert [a.name for a in draft.attachments] == ["site_plan.pdf"]
        assert draft.edits[-1].changes == [{"field": "attachments", "from": None, "to": ["site_plan.pdf"]}]

        with pytest.raises(ValidationError) as ei:
            service.edit(s, "base_document", draft.id, {"removed_attachments": ["ext/unknown.pdf"]}, estimator)
        assert ei.value.code == "unknown_attachment"

        service.edit(s, "base_document", draft.id, {"removed_attachments": ["ext/site-plan.pdf"]}, estimator)
        assert draft.attachments == []
        assert draft.edits[-1].changes == [{"field": "attachments", "from": ["site_plan.pdf"], "to": None}]
        assert len(draft.edits) == 2


def test_edit_authorization(app, lineage):
    with session_scope(app) as s:
        draft = lineage.base(s, approved=False)
        with pytest.raises(AuthorizationError):
            service.edit(s, "base_document", draft.id, {"attention": "x"}, lineage.user(s, "manager"))
        with pytest.raises(AuthorizationError):
            service.edit(s, "base_document", draft.id, {"attention": "x"}, lineage.user(s, "inactive"))


def test_approved_documents_are_immutable(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        base = lineage.base(s, attention="Ms. Lee")
        with pytest.raises(LineageViolation) as ei:
            service.edit(s, "base_document", base.id, {"attention": "Mr. Khan"}, estimator)
        assert ei.value.code == "approved_immutable"
        with pytest.raises(LineageViolation) as ei:
            service.delete(s, "base_document", base.id, estimator)
        assert ei.value.code == "approved_immutable"
        assert base.attention == "Ms. Lee"
        assert base.edits == []


def test_documents_with_children_cannot_change(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        base = lineage.base(s)
        a1 = lineage.amend(s, base)
        a2 = lineage.amend(s, a1)

        with pytest.raises(LineageViolation) as ei:
            service.edit(s, "amendment", a1.id, {"attention": "x"}, estimator)
        assert ei.value.code == "children_exist"
        assert ei.value.blocking_id == a2.id

        with pytest.raises(LineageViolation) as ei:
            service.delete(s, "amendment", a1.id, estimator)
        assert ei.value.code == "children_exist"

        service.edit(s, "amendment", a2.id, {"attention": "x"}, estimator)
        assert a2.attention == "x"


def test_deletion_guard_and_numbers_are_never_reused(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        base = lineage.base(s)
        a1 = lineage.amend(s, base)
        a1_id = a1.id

        service.delete(s, "amendment", a1_id, estimator, "created by mistake")
        with pytest.raises(NotFoundError):
            service.fetch_with_lineage(s, "amendment", a1_id)

        again = lineage.amend(s, base)
        assert again.amendment_number == "TOWERA-REV-002"
        assert again.sequence_number == 2

        lineage.approve(s, again)
        with pytest.raises(LineageViolation) as ei:
            service.delete(s, "amendment", again.id, estimator)
        assert ei.value.code == "approved_immutable"


def test_execution_record_rules_name_the_blocking_node(app, lineage):
    with session_scope(app) as s:
        estimator = lineage.user(s, "estimator")
        base = lineage.base(s)
        a1 = lineage.amend(s, base, approved=True)
        a2 = lineage.amend(s, a1)

        with pytest.raises(LineageViolation) as ei:
            lineage.project(s, base)
        assert ei.value.code == "source_not_latest_approved"
        assert (ei.value.blocking_kind, ei.value.blocking_id) == ("amendment", a1.id)
        assert "TOWERA-REV-001" in ei.value.message

        with pytest.raises(LineageViolation) as ei:
            lineage.project(s, a1)
        assert ei.value.code == "source_not_terminal"
        assert ei.value.blocking_id == a2.id

        with pytest.raises(LineageViolation) as ei:
            lineage.project(s, a2)
        assert ei.value.code == "source_not_approved"

        service.delete(s, "amendment", a2.id, estimator)
        er = lineage.project(s, a1, manpower_count=8)
        assert er.record_number == "TOWERA-PRJ-001"
        assert er.name == "Tower A"
        assert er.status == "active"
        assert er.manpower_count == 8
        assert er.source_amendment_id == a1.id
        assert er.source_base_document_id is None
        assert er.base_document_id == base.id

        with pytest.raises(LineageViolation) as ei:
            lineage.project(s, a1)
        assert ei.value.code == "execution_record_exists"
        assert ei.value.blocking_id == er.id

        with pytest.raises(LineageViolation) as ei:
            service.edit(s, "amendment", a1.id, {"attention": "x"}, estimator)
        assert ei.value.code == "approved_immutable"


def test_change_order_chain(app, lineage):
    with session_scope(app) as s:
        base = lineage.base(s, introduction_text="Original")
        er = lineage.project(s, base)

        c1 = lineage.variation(s, er, introduction_text="Varied")
        assert c1.change_order_number == "TOWERA-VAR-001"
        assert c1.execution_record_id == er.id
        assert c1.parent_change_order_id is None
        assert c1.diff_from_parent == [{"field": "introduction_text", "from": "Original", "to": "Varied"}]
        assert c1.project_title == "Tower A"

        with pytest.raises(LineageViolation) as ei:
            lineage.variation(s, er)
        assert ei.value.code == "change_order_chain_exists"
        assert ei.value.blocking_id == c1.id

        c2 = lineage.variation(s, c1, introduction_text="Varied again")
        assert c2.change_order_number == "TOWERA-VAR-002"
        assert c2.parent_change_order_id == c1.id
        # diffed against the previous variation, not the quotation
        assert c2.diff_from_parent == [{"field": "introduction_text", "from": "Varied", "to": "Varied again"}]

        with pytest.raises(LineageViolation) as ei:
            lineage.variation(s, c1)
        assert ei.value.code == "child_exists"
        assert ei.value.blocking_id == c2.id

        with pytest.raises(NoChangeDetected):
            lineage.variation(s, c2, introduction_text="Varied again")


def test_sequence_collision_is_retried(app, lineage, monkeypatch, caplog):
    real_insert = repository.insert_amendment
    calls = []

    def flaky_insert(s, **kw):
        calls.append(1)
        if len(calls) == 1:
            raise SequenceCollision("lost the race")
        return real_insert(s, **kw)

    monkeypatch.setattr(repository, "insert_amendment", flaky_insert)
    with session_scope(app) as s:
        base = lineage.base(s)
        with caplog.at_level(logging.WARNING, logger="app.estimation"):
            a1 = lineage.amend(s, base)
        assert len(calls) == 2
        assert a1.amendment_number == "TOWERA-REV-001"
        assert "SEQUENCE: collision" in caplog.text


def test_unique_constraint_race_is_retried_with_the_next_number(app, lineage, monkeypatch, caplog):
    with session_scope(app) as s:
        base = lineage.base(s)
        a1 = lineage.amend(s, base)
        # another writer's view: counter rewound and the sibling count stale
        counter = s.execute(
            select(SequenceCounter).where(
                SequenceCounter.scope_kind == DocumentKind.BASE_DOCUMENT.value,
                SequenceCounter.scope_id == base.id,
                SequenceCounter.family == FAMILY_AMENDMENT,
            )
        ).scalar_one()
        counter.last_value = 0
        s.flush()

        real_count = repository.count_siblings
        calls = []

        def stale_count(*args, **kwargs):
            calls.append(1)
            return 0 if len(calls) == 1 else real_count(*args, **kwargs)

        monkeypatch.setattr(repository, "count_siblings", stale_count)
        with caplog.at_level(logging.WARNING, logger="app.estimation"):
            a2 = lineage.amend(s, a1)

        assert a2.amendment_number == "TOWERA-REV-002"
        assert a2.parent_amendment_id == a1.id
        assert len(calls) == 2
        assert caplog.text.count("SEQUENCE: collision") == 1


def test_other_integrity_errors_are_not_sequence_collisions(app, lineage):
    with session_scope(app) as s:
        site = lineage.user(s, "site")
        visit = SiteVisit(
            execution_record_id=999,
            visit_at=datetime(2026, 5, 4),
            site_location="Tower A",
            engineer_name="R. Patel",
            work_progress_summary="n/a",
            created_by_user_id=site.id,
        )
        with pytest.raises(IntegrityError):
            with s.begin_nested():
                s.add(visit)
                repository.flush_insert(s, "site visit")
        # only the savepoint was lost
        assert lineage.base(s, approved=False).id is not None


def test_sequence_collision_gives_up_after_retry_limit(app, lineage, monkeypatch):
    calls = []

    def always_collide(s, **kw):
        calls.append(1)
        raise SequenceCollision("lost the race")

    monkeypatch.setattr(repository, "insert_amendment", always_collide)
    with session_scope(app) as s:
        base = lineage.base(s)
        with pytest.raises(SequenceCollision):
            service.create_from_parent(
                s,
                "amendment",
                ParentRef(base.kind, base.id),
                {"attention": "x"},
                lineage.user(s, "estimator"),
                retry_limit=2,
            )
        assert len(calls) == 2
        assert service.list_documents(s, "amendment") == []


def test_fetch_with_lineage(app, lineage):
    with session_scope(app) as s:
        base = lineage.base(s)
        a1 = lineage.amend(s, base, approved=True)
        er = lineage.project(s, a1)
        c1 = lineage.variation(s, er)

        view = service.fetch_with_lineage(s, "base_document", base.id)
        assert view.root is base
        assert view.parent is None
        assert view.children == [a1]
        assert view.chain == [base, a1]
        assert view.execution_record is None

        view = service.fetch_with_lineage(s, "amendment", a1.id)
        assert view.parent is base
        assert view.children == []
        assert view.execution_record is er

        view = service.fetch_with_lineage(s, "execution_record", er.id)
        assert view.upstream is a1
        assert view.children == [c1]
        assert view.chain == [c1]

        view = service.fetch_with_lineage(s, "change_order", c1.id)
        assert view.parent is er
        assert view.root is base
        assert view.upstream is a1
        d = view.as_dict()
        assert d["document"] == {"kind": "change_order", "id": c1.id, "label": "TOWERA-VAR-001"}
        assert d["execution_record"]["label"] == "TOWERA-PRJ-001"


def test_list_documents(app, lineage):
    with session_scope(app) as s:
        base = lineage.base(s)
        other = lineage.base(s, title="Mall B")
        a1 = lineage.amend(s, base, approved=True)
        a2 = lineage.amend(s, a1)
        lineage.amend(s, other)

        listed = service.list_documents(s, "amendment", parent_ref=ParentRef(base.kind, base.id))
        assert listed == [a2, a1]
        approved = service.list_documents(
            s, "amendment", parent_ref=ParentRef(base.kind, base.id), approval_status="approved"
        )
        assert approved == [a1]
        assert len(service.list_documents(s, "amendment")) == 3
        assert len(service.list_documents(s, "amendment", limit=1)) == 1

        with pytest.raises(ValidationError):
            service.list_documents(s, "change_order", parent_ref=ParentRef(base.kind, base.id))
        with pytest.raises(ValidationError):
            service.list_documents(s, "execution_record", approval_status="approved")
        with pytest.raises(ValidationError):
            service.list_documents(s, "quotation")
