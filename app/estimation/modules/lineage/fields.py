"""
Per-kind field tables.

Every editable/diffable field of a document kind is declared here once, keyed by
DocumentKind, with the normalization strategy the diff engine uses and the wire shape
the payload must have. Nothing outside this table is accepted from a payload.

Canonical wire shapes (legacy HTML strings for collections are rejected):
- company_info:    {"name", "address", "phone", "email", "logo"}
- scope_of_work:   [{"description", "quantity", "unit", "location_remarks"}, ...]
- price_schedule:  {"currency", "vat_rate", "items": [{"description", "quantity", "unit", "unit_rate", "amount"}]}
- exclusions:      ["text", ...] or [{"description"}, ...]
- payment_terms:   [{"milestone_description", "amount_percent"}, ...]
- delivery_terms:  {"delivery_timeline", "warranty_period", "offer_validity", "authorized_signatory"}
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from app.estimation.constants import EXECUTION_STATUSES, DocumentKind
from app.estimation.errors import ValidationError


class Strategy(str, Enum):
    DATE = "date"
    TEXT = "text"
    COLLECTION = "collection"
    SCALAR = "scalar"


class Shape(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DATE = "date"
    OBJECT = "object"
    ITEM_LIST = "item_list"
    TEXT_LIST = "text_list"
    PRICE_SCHEDULE = "price_schedule"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    strategy: Strategy
    shape: Shape
    choices: tuple[str, ...] | None = None


PROPOSAL_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("company_info", Strategy.SCALAR, Shape.OBJECT),
    FieldSpec("submitted_to", Strategy.SCALAR, Shape.STRING),
    FieldSpec("attention", Strategy.SCALAR, Shape.STRING),
    FieldSpec("offer_reference", Strategy.SCALAR, Shape.STRING),
    FieldSpec("enquiry_number", Strategy.SCALAR, Shape.STRING),
    FieldSpec("offer_date", Strategy.DATE, Shape.DATE),
    FieldSpec("enquiry_date", Strategy.DATE, Shape.DATE),
    FieldSpec("project_title", Strategy.SCALAR, Shape.STRING),
    FieldSpec("introduction_text", Strategy.TEXT, Shape.STRING),
    FieldSpec("scope_of_work", Strategy.COLLECTION, Shape.ITEM_LIST),
    FieldSpec("price_schedule", Strategy.COLLECTION, Shape.PRICE_SCHEDULE),
    FieldSpec("our_viewpoints", Strategy.TEXT, Shape.STRING),
    FieldSpec("exclusions", Strategy.COLLECTION, Shape.TEXT_LIST),
    FieldSpec("payment_terms", Strategy.COLLECTION, Shape.ITEM_LIST),
    FieldSpec("delivery_terms", Strategy.SCALAR, Shape.OBJECT),
)

EXECUTION_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("name", Strategy.SCALAR, Shape.STRING),
    FieldSpec("location_details", Strategy.TEXT, Shape.STRING),
    FieldSpec("working_hours", Strategy.SCALAR, Shape.STRING),
    FieldSpec("manpower_count", Strategy.SCALAR, Shape.INTEGER),
    FieldSpec("status", Strategy.SCALAR, Shape.STRING, choices=EXECUTION_STATUSES),
    FieldSpec("assigned_project_engineer_id", Strategy.SCALAR, Shape.INTEGER),
    FieldSpec("assigned_site_engineer_id", Strategy.SCALAR, Shape.INTEGER),
)

FIELD_TABLES: dict[DocumentKind, tuple[FieldSpec, ...]] = {
    DocumentKind.BASE_DOCUMENT: PROPOSAL_FIELDS,
    DocumentKind.AMENDMENT: PROPOSAL_FIELDS,
    DocumentKind.CHANGE_ORDER: PROPOSAL_FIELDS,
    DocumentKind.EXECUTION_RECORD: EXECUTION_FIELDS,
}

# Payload keys that are not document fields but are accepted alongside them.
ATTACHMENTS_KEY = "attachments"
REMOVED_ATTACHMENTS_KEY = "removed_attachments"


def field_table(kind: DocumentKind) -> tuple[FieldSpec, ...]:
    return FIELD_TABLES[kind]


def field_names(kind: DocumentKind) -> tuple[str, ...]:
    return tuple(f.name for f in FIELD_TABLES[kind])


def field_spec(kind: DocumentKind, name: str) -> FieldSpec:
    for f in FIELD_TABLES[kind]:
        if f.name == name:
            return f
    raise ValidationError(f"Unknown field for {kind.value}: {name}", field=name, code="unknown_field")


def read_fields(doc: Any, kind: DocumentKind) -> dict[str, Any]:
    """Snapshot a document's field values (as stored) keyed by field name."""
    return {f.name: getattr(doc, f.name) for f in FIELD_TABLES[kind]}


# --- wire validation / coercion ------------------------------------------------------


def _money(v: Decimal) -> str:
    return str(v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _decimal(value: Any, *, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric.", field=field)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be numeric (got {value!r}).", field=field) from None


def parse_iso_date(raw: str) -> date:
    """Whole-string ISO date or datetime; raises ValueError on anything else."""
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return datetime.fromisoformat(raw).date()


def parse_date_value(value: Any, *, field: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return parse_iso_date(raw)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD).", field=field) from None
    raise ValidationError(f"{field} must be an ISO date string.", field=field)


def compute_price_schedule(schedule: dict, *, default_vat_rate: str | Decimal = "5") -> dict:
    """
    Recompute line amounts, subtotal, VAT and grand total server-side.
    Client-supplied totals are ignored.
    """
    items_in = schedule.get("items")
    if items_in is None:
        items_in = []
    if not isinstance(items_in, list):
        raise ValidationError("price_schedule.items must be a list.", field="price_schedule")

    vat_rate = _decimal(
        schedule["vat_rate"] if schedule.get("vat_rate") not in (None, "") else default_vat_rate,
        field="price_schedule.vat_rate",
    )
    items_out: list[dict] = []
    sub_total = Decimal("0")
    for idx, item in enumerate(items_in):
        if not isinstance(item, dict):
            raise ValidationError(f"price_schedule.items[{idx}] must be an object.", field="price_schedule")
        out = {k: v for k, v in item.items() if k not in ("amount",)}
        qty = item.get("quantity")
        rate = item.get("unit_rate")
        if qty not in (None, "") and rate not in (None, ""):
            amount = _decimal(qty, field="price_schedule.quantity") * _decimal(rate, field="price_schedule.unit_rate")
        elif item.get("amount") not in (None, ""):
            amount = _decimal(item["amount"], field="price_schedule.amount")
        else:
            amount = Decimal("0")
        out["amount"] = _money(amount)
        sub_total += amount
        items_out.append(out)

    vat = sub_total * vat_rate / Decimal("100")
    result = {
        k: v
        for k, v in schedule.items()
        if k not in ("items", "sub_total", "vat", "vat_rate", "grand_total")
    }
    result.update(
        {
            "items": items_out,
            "vat_rate": str(int(vat_rate)) if vat_rate == vat_rate.to_integral_value() else str(vat_rate.normalize()),
            "sub_total": _money(sub_total),
            "vat": _money(vat),
            "grand_total": _money(sub_total + vat),
        }
    )
    return result


def coerce_value(spec: FieldSpec, value: Any, *, default_vat_rate: str | Decimal = "5") -> Any:
    """
    Validate a payload value against the field's canonical wire shape and return the
    value to store. Explicit empties (None, "", [], {}) clear the field.
    """
    name = spec.name
    if value is None:
        return None

    if spec.shape is Shape.DATE:
        return parse_date_value(value, field=name)

    if spec.shape is Shape.STRING:
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string.", field=name)
        if not value.strip():
            return None
        if spec.choices and value.strip() not in spec.choices:
            raise ValidationError(f"{name} must be one of: {', '.join(spec.choices)}", field=name)
        return value.strip() if spec.strategy is Strategy.SCALAR else value

    if spec.shape is Shape.INTEGER:
        if value == "":
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer.", field=name)
        if value < 0:
            raise ValidationError(f"{name} must not be negative.", field=name)
        return value

    if spec.shape is Shape.OBJECT:
        if not isinstance(value, dict):
            raise ValidationError(f"{name} must be an object.", field=name)
        return dict(value) or None

    if spec.shape is Shape.PRICE_SCHEDULE:
        if not isinstance(value, dict):
            raise ValidationError(
                f"{name} must be an object with an 'items' list (legacy HTML is not accepted).",
                field=name,
                code="legacy_shape",
            )
        if not value:
            return None
        return compute_price_schedule(value, default_vat_rate=default_vat_rate)

    if spec.shape in (Shape.ITEM_LIST, Shape.TEXT_LIST):
        if not isinstance(value, list):
            raise ValidationError(
                f"{name} must be a list (legacy HTML is not accepted).", field=name, code="legacy_shape"
            )
        out: list = []
        for idx, item in enumerate(value):
            if isinstance(item, dict):
                out.append(dict(item))
            elif spec.shape is Shape.TEXT_LIST and isinstance(item, str):
                if item.strip():
                    out.append(item.strip())
            else:
                raise ValidationError(f"{name}[{idx}] has an unsupported shape.", field=name)
        return out or None

    raise ValidationError(f"Unsupported field shape for {name}.", field=name)  # pragma: no cover


def coerce_payload(
    kind: DocumentKind,
    payload: dict[str, Any],
    *,
    default_vat_rate: str | Decimal = "5",
    extra_keys: frozenset[str] = frozenset({ATTACHMENTS_KEY, REMOVED_ATTACHMENTS_KEY}),
) -> dict[str, Any]:
    """
    Coerce every known field present in `payload`; unknown keys are rejected. Keys in
    `extra_keys` are skipped (the caller handles them). Absent fields stay absent.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object.")
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if key in extra_keys:
            continue
        spec = field_spec(kind, key)
        out[key] = coerce_value(spec, value, default_vat_rate=default_vat_rate)
    # Table order keeps change lists deterministic.
    order = {name: i for i, name in enumerate(field_names(kind))}
    return dict(sorted(out.items(), key=lambda kv: order[kv[0]]))
