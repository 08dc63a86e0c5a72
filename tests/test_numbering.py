from app.estimation.constants import DocumentKind
from app.estimation.db import session_scope
from app.estimation.modules.lineage.models import BaseDocument
from app.estimation.modules.lineage.numbering import format_number, next_number, project_key


def test_project_key_from_title_or_customer():
    assert project_key(BaseDocument(project_title="Tower A - Fit out")) == "TOWERAFI"
    assert project_key(BaseDocument(project_title=None, customer_name="Acme & Co")) == "ACMECO"
    assert project_key(BaseDocument(project_title="!!!")) == "PROJ"
    assert project_key(BaseDocument()) == "PROJ"


def test_format_number_pads_to_three_digits():
    assert format_number("TOWERA", "REV", 7) == "TOWERA-REV-007"
    assert format_number("TOWERA", "VAR", 1234) == "TOWERA-VAR-1234"


def test_counter_only_moves_forward(app):
    kw = dict(scope_kind=DocumentKind.BASE_DOCUMENT, scope_id=1, family="REV", prefix="X")
    with session_scope(app) as s:
        assert next_number(s, sibling_count=0, **kw).label == "X-REV-001"
        s.flush()
        assert next_number(s, sibling_count=0, **kw).value == 2
        # siblings ahead of the counter win
        assert next_number(s, sibling_count=5, **kw).value == 6
        # other families and scopes are independent
        assert next_number(s, **{**kw, "family": "PRJ"}, sibling_count=0).value == 1
        assert next_number(s, **{**kw, "scope_id": 2}, sibling_count=0).value == 1

    with session_scope(app) as s:
        assert next_number(s, sibling_count=0, **kw).value == 7
