"""
Field-level diff between two field-sets of the same document kind.

Both sides are normalized per the field's strategy before comparison:

- DATE:       ISO calendar date string, or None
- TEXT:       trimmed lines joined by "\\n" (<br> counts as a line break), empty -> None
- COLLECTION: one canonical display string for the whole collection (never element-wise)
- SCALAR:     compared by canonical JSON serialization, empty -> None

Pure: no session, no clock, no mutation of the inputs.
"""
from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from app.estimation.constants import DocumentKind
from app.estimation.errors import ValidationError
from app.estimation.modules.lineage.fields import (
    FieldSpec,
    Strategy,
    field_spec,
    field_table,
    parse_iso_date,
)

Change = dict[str, Any]

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_PRIMARY_TEXT_KEYS = ("description", "milestone_description")


def _normalize_date(spec: FieldSpec, value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return parse_iso_date(raw).isoformat()
        except ValueError:
            raise ValidationError(f"{spec.name} must be an ISO date (YYYY-MM-DD).", field=spec.name) from None
    raise ValidationError(f"{spec.name} must be a date.", field=spec.name)


def normalize_text(value: str) -> str | None:
    text = _BR_RE.sub("\n", value).replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.strip() for line in text.split("\n")]
    joined = "\n".join(lines).strip()
    return joined or None


def _normalize_text(spec: FieldSpec, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{spec.name} must be text.", field=spec.name, code="legacy_shape")
    return normalize_text(value)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _render_item(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if not isinstance(item, Mapping):
        return "" if item is None else str(item)
    text = ""
    for key in _PRIMARY_TEXT_KEYS:
        if isinstance(item.get(key), str) and item[key].strip():
            text = normalize_text(item[key]) or ""
            break
    details = [
        f"{k}={item[k]}"
        for k in sorted(item)
        if k not in _PRIMARY_TEXT_KEYS and item[k] not in (None, "")
    ]
    if details:
        return f"{text} ({', '.join(details)})" if text else ", ".join(details)
    return text


def render_collection(value: Any) -> str | None:
    """Canonical display string for a list of items or a price schedule object."""
    if value is None:
        return None
    lines: list[str] = []
    if isinstance(value, Mapping):
        for item in value.get("items") or []:
            line = _render_item(item)
            if line:
                lines.append(line)
        totals = [f"{k}={value[k]}" for k in sorted(value) if k != "items" and value[k] not in (None, "")]
        if totals and lines:
            lines.append(", ".join(totals))
    elif isinstance(value, list):
        for item in value:
            line = _render_item(item)
            if line:
                lines.append(line)
    else:
        raise ValidationError("Collections must be a list or a price schedule object.", code="legacy_shape")
    return "\n".join(lines) or None


def _normalize_collection(spec: FieldSpec, value: Any) -> str | None:
    try:
        return render_collection(value)
    except ValidationError as e:
        raise ValidationError(e.message, field=spec.name, code=e.code) from None


def _normalize_scalar(spec: FieldSpec, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        cleaned = {k: v for k, v in value.items() if v not in (None, "")}
        return json.loads(_canonical(cleaned)) if cleaned else None
    if isinstance(value, list):
        return json.loads(_canonical(value)) if value else None
    return value


_NORMALIZERS = {
    Strategy.DATE: _normalize_date,
    Strategy.TEXT: _normalize_text,
    Strategy.COLLECTION: _normalize_collection,
    Strategy.SCALAR: _normalize_scalar,
}


def normalize(spec: FieldSpec, value: Any) -> Any:
    return _NORMALIZERS[spec.strategy](spec, value)


def diff(
    kind: DocumentKind,
    fields: Iterable[str] | None,
    base: Mapping[str, Any],
    candidate: Mapping[str, Any],
) -> list[Change]:
    """
    Ordered [{field, from, to}] list for fields present in `candidate` whose normalized
    value differs from `base`. `fields` restricts the comparison (None = whole table).
    A field missing from `candidate` is never a change: clearing needs an explicit empty.
    """
    wanted = None if fields is None else {field_spec(kind, f).name for f in fields}
    changes: list[Change] = []
    for spec in field_table(kind):
        if wanted is not None and spec.name not in wanted:
            continue
        if spec.name not in candidate:
            continue
        before = normalize(spec, base.get(spec.name))
        after = normalize(spec, candidate[spec.name])
        if _canonical(before) != _canonical(after):
            changes.append({"field": spec.name, "from": before, "to": after})
    return changes
