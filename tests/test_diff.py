from datetime import date

import pytest

from app.estimation.constants import DocumentKind
from app.estimation.errors import ValidationError
from app.estimation.modules.lineage.diff import diff, normalize_text, render_collection
from app.estimation.modules.lineage.fields import (
    coerce_payload,
    coerce_value,
    compute_price_schedule,
    field_spec,
)

BASE = DocumentKind.BASE_DOCUMENT


def _proposal():
    return {
        "submitted_to": "Acme Contracting",
        "offer_reference": "OFR-1",
        "offer_date": date(2026, 3, 1),
        "introduction_text": "Dear Sir,<br>Please find our offer.",
        "scope_of_work": [{"description": "Tiling", "quantity": 10, "unit": "m2"}],
        "exclusions": ["Scaffolding"],
        "company_info": {"name": "Builders LLC", "phone": "123"},
    }


def test_diff_of_identical_field_sets_is_empty():
    doc = _proposal()
    assert diff(BASE, None, doc, doc) == []
    assert diff(BASE, None, doc, dict(doc)) == []


def test_only_changed_fields_are_reported():
    base = {"offer_reference": "OFR-1", "introduction_text": None}
    candidate = {"offer_reference": "OFR-1", "introduction_text": "Hello"}
    assert diff(BASE, None, base, candidate) == [{"field": "introduction_text", "from": None, "to": "Hello"}]


def test_omitted_field_is_not_a_change_but_explicit_empty_clears():
    base = {"submitted_to": "Acme", "exclusions": ["Scaffolding"]}
    assert diff(BASE, None, base, {}) == []
    assert diff(BASE, None, base, {"submitted_to": ""}) == [{"field": "submitted_to", "from": "Acme", "to": None}]
    assert diff(BASE, None, base, {"exclusions": []}) == [{"field": "exclusions", "from": "Scaffolding", "to": None}]


def test_text_normalization_ignores_line_break_flavour_and_padding():
    base = {"introduction_text": "Line 1<br>Line 2"}
    assert diff(BASE, None, base, {"introduction_text": "  Line 1 \r\nLine 2\n"}) == []
    assert diff(BASE, None, {"introduction_text": "   "}, {"introduction_text": None}) == []
    assert normalize_text("a<BR/>b<br >c") == "a\nb\nc"


def test_dates_compare_as_calendar_days():
    base = {"offer_date": date(2026, 3, 1)}
    assert diff(BASE, None, base, {"offer_date": "2026-03-01"}) == []
    assert diff(BASE, None, base, {"offer_date": "2026-03-02T09:00:00"}) == [
        {"field": "offer_date", "from": "2026-03-01", "to": "2026-03-02"}
    ]


def test_dates_with_trailing_text_are_rejected():
    base = {"offer_date": date(2026, 3, 1)}
    for junk in ("2024-01-01garbage", "2024-01-01 and later", "2024-13-01"):
        with pytest.raises(ValidationError) as ei:
            diff(BASE, None, base, {"offer_date": junk})
        assert ei.value.field == "offer_date"
        with pytest.raises(ValidationError):
            coerce_payload(BASE, {"enquiry_date": junk})


def test_collections_diff_as_one_display_string():
    base = {"scope_of_work": [{"description": "Tiling", "quantity": 10, "unit": "m2"}]}
    candidate = {
        "scope_of_work": [
            {"description": "Tiling", "quantity": 12, "unit": "m2"},
            {"description": "Painting<br>two coats"},
        ]
    }
    changes = diff(BASE, None, base, candidate)
    assert changes == [
        {
            "field": "scope_of_work",
            "from": "Tiling (quantity=10, unit=m2)",
            "to": "Tiling (quantity=12, unit=m2)\nPainting\ntwo coats",
        }
    ]


def test_render_collection_handles_text_lists_and_empties():
    assert render_collection(["Scaffolding", {"description": "Permits"}]) == "Scaffolding\nPermits"
    assert render_collection([]) is None
    assert render_collection(None) is None


def test_object_fields_compare_by_canonical_serialization():
    base = {"company_info": {"name": "Builders LLC", "phone": "123"}}
    assert diff(BASE, None, base, {"company_info": {"phone": "123", "name": "Builders LLC", "logo": ""}}) == []
    changes = diff(BASE, None, base, {"company_info": {"name": "Builders LLC", "phone": "456"}})
    assert [c["field"] for c in changes] == ["company_info"]


def test_field_subset_restricts_comparison():
    base = {"submitted_to": "A", "attention": "B"}
    candidate = {"submitted_to": "X", "attention": "Y"}
    assert [c["field"] for c in diff(BASE, ["attention"], base, candidate)] == ["attention"]


def test_unknown_field_is_rejected():
    with pytest.raises(ValidationError) as ei:
        diff(BASE, ["not_a_field"], {}, {})
    assert ei.value.code == "unknown_field"

    with pytest.raises(ValidationError) as ei:
        coerce_payload(BASE, {"not_a_field": 1})
    assert ei.value.code == "unknown_field"


def test_legacy_html_collections_are_rejected():
    with pytest.raises(ValidationError) as ei:
        coerce_value(field_spec(BASE, "scope_of_work"), "<ul><li>Tiling</li></ul>")
    assert ei.value.code == "legacy_shape"

    with pytest.raises(ValidationError) as ei:
        diff(BASE, None, {}, {"price_schedule": "<table></table>"})
    assert ei.value.code == "legacy_shape"
    assert ei.value.field == "price_schedule"


def test_price_schedule_totals_are_computed_server_side():
    schedule = compute_price_schedule(
        {
            "currency": "AED",
            "vat_rate": "15",
            "items": [
                {"description": "Tiles", "quantity": 3, "unit_rate": "2.5", "amount": "999"},
                {"description": "Grout", "amount": "10"},
            ],
            "sub_total": "1",
            "grand_total": "1",
        }
    )
    assert [i["amount"] for i in schedule["items"]] == ["7.50", "10.00"]
    assert schedule["sub_total"] == "17.50"
    assert schedule["vat"] == "2.63"
    assert schedule["grand_total"] == "20.13"
    assert schedule["vat_rate"] == "15"
    assert schedule["currency"] == "AED"


def test_price_schedule_falls_back_to_default_vat_rate():
    schedule = compute_price_schedule({"items": [{"amount": "100"}]}, default_vat_rate="12.5")
    assert schedule["vat_rate"] == "12.5"
    assert schedule["vat"] == "12.50"
    assert schedule["grand_total"] == "112.50"


def test_price_schedule_rejects_non_numeric_amounts():
    with pytest.raises(ValidationError):
        compute_price_schedule({"items": [{"quantity": "three", "unit_rate": "2"}]})


def test_coerce_payload_keeps_field_table_order():
    values = coerce_payload(BASE, {"introduction_text": "Hi", "submitted_to": " Acme ", "offer_date": "2026-01-05"})
    assert list(values) == ["submitted_to", "offer_date", "introduction_text"]
    assert values["submitted_to"] == "Acme"
    assert values["offer_date"] == date(2026, 1, 5)


def test_execution_fields_validate_choices_and_integers():
    er = DocumentKind.EXECUTION_RECORD
    assert coerce_payload(er, {"status": "on_hold", "manpower_count": 12}) == {"manpower_count": 12, "status": "on_hold"}
    with pytest.raises(ValidationError):
        coerce_payload(er, {"status": "archived"})
    with pytest.raises(ValidationError):
        coerce_payload(er, {"manpower_count": True})
    with pytest.raises(ValidationError):
        coerce_payload(er, {"manpower_count": -1})
