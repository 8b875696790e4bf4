"""rentals_shared.codec — Record (de)serialization and per-kind field checks.

Records are plain dicts. ``encode`` writes compact, key-sorted JSON so the
stored bytes are stable; ``decode`` parses and then checks that every
required field of the record's kind is present and correctly typed. A stored
record that fails the check is corrupt and is never defaulted. ``validate``
runs the same checks on a record about to be written and raises
``InvalidRecord`` instead.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from rentals_shared.errors import CorruptRecord, InvalidRecord
from rentals_shared.serialization import _parse_day, _parse_iso8601

POST_STATUSES = frozenset({"draft", "scheduled", "published"})
RENTAL_STATUSES = frozenset({"pending", "confirmed", "active", "completed", "cancelled"})
INVOICE_STATUSES = frozenset({"draft", "ready", "sent", "paid", "overdue", "cancelled"})

_NUMBER = (int, float)


@dataclass(frozen=True)
class Field:
    types: Tuple[type, ...]
    required: bool = True
    choices: Optional[FrozenSet[str]] = None
    items: Optional[Tuple[type, ...]] = None
    timestamp: bool = False
    day: bool = False


def _str(required: bool = True, **kwargs: Any) -> Field:
    return Field((str,), required=required, **kwargs)


def _ts(required: bool = True) -> Field:
    return Field((str,), required=required, timestamp=True)


def _str_list(required: bool = True) -> Field:
    return Field((list,), required=required, items=(str,))


SCHEMAS: Dict[str, Dict[str, Field]] = {
    "post": {
        "id": _str(),
        "title": _str(),
        "slug": _str(),
        "body": _str(),
        "excerpt": _str(required=False),
        "author": Field((dict,), required=False),
        "featured": Field((bool,), required=False),
        "status": _str(choices=POST_STATUSES),
        "scheduled_at": _ts(required=False),
        "published_at": _ts(required=False),
        "category_ids": _str_list(),
        "tag_ids": _str_list(),
        "created_at": _ts(),
        "updated_at": _ts(),
    },
    "category": {
        "id": _str(),
        "name": _str(),
        "slug": _str(),
        "description": _str(required=False),
        "post_count": Field((int,)),
    },
    "tag": {
        "id": _str(),
        "name": _str(),
        "slug": _str(),
        "post_count": Field((int,)),
    },
    "car": {
        "id": _str(),
        "brand": _str(),
        "model": _str(),
        "year": Field((int,)),
        "daily_price": Field(_NUMBER),
        "available": Field((bool,)),
        "show_on_homepage": Field((bool,), required=False),
        "display_order": Field((int,), required=False),
        "images": _str_list(required=False),
        "created_at": _ts(),
        "updated_at": _ts(),
    },
    "rental": {
        "id": _str(),
        "customer_id": _str(),
        "car_id": _str(),
        "status": _str(choices=RENTAL_STATUSES),
        "rental_dates": Field((dict,)),
        "payment": Field((dict,)),
        "customer": Field((dict,), required=False),
        "pricing": Field((dict,), required=False),
        "created_at": _ts(),
        "updated_at": _ts(),
    },
    "invoice": {
        "id": _str(),
        "invoice_number": _str(),
        "status": _str(choices=INVOICE_STATUSES),
        "customer": Field((dict,)),
        "title": _str(required=False),
        "line_items": Field((list,), items=(dict,)),
        "subtotal": Field(_NUMBER),
        "tax_rate": Field(_NUMBER),
        "tax_amount": Field(_NUMBER),
        "total_amount": Field(_NUMBER),
        "due_date": _str(day=True),
        "paid_date": _ts(required=False),
        "notes": _str(required=False),
        "created_at": _ts(),
        "updated_at": _ts(),
    },
}


def _type_ok(value: Any, types: Tuple[type, ...]) -> bool:
    # bool is an int subclass; only accept it where bool is asked for.
    if isinstance(value, bool) and bool not in types:
        return False
    return isinstance(value, types)


def _check_post(record: Dict[str, Any], problems: Dict[str, str]) -> None:
    if record.get("status") == "scheduled" and not record.get("scheduled_at"):
        problems.setdefault("scheduled_at", "required when status is scheduled")


def _check_rental(record: Dict[str, Any], problems: Dict[str, str]) -> None:
    dates = record.get("rental_dates")
    if not isinstance(dates, dict):
        return
    start = _parse_day(dates.get("start_date"))
    end = _parse_day(dates.get("end_date"))
    if start is None or end is None:
        problems.setdefault("rental_dates", "start_date and end_date must be YYYY-MM-DD")
    elif end < start:
        problems.setdefault("rental_dates", "end_date precedes start_date")


def _check_invoice(record: Dict[str, Any], problems: Dict[str, str]) -> None:
    customer = record.get("customer")
    if isinstance(customer, dict) and not (customer.get("name") and customer.get("email")):
        problems.setdefault("customer", "name and email are required")


_CONDITIONAL: Dict[str, Callable[[Dict[str, Any], Dict[str, str]], None]] = {
    "post": _check_post,
    "rental": _check_rental,
    "invoice": _check_invoice,
}


def problems_for(kind: str, record: Any) -> Dict[str, str]:
    """Return ``{field: problem}`` for every violated field rule."""
    schema = SCHEMAS.get(kind)
    if schema is None:
        raise KeyError(f"Unknown record kind '{kind}'")
    if not isinstance(record, dict):
        return {"_record": "must be a JSON object"}

    problems: Dict[str, str] = {}
    for name, field in schema.items():
        value = record.get(name)
        if value is None:
            if field.required:
                problems[name] = "missing"
            continue
        if not _type_ok(value, field.types):
            expected = "/".join(t.__name__ for t in field.types)
            problems[name] = f"expected {expected}, got {type(value).__name__}"
            continue
        if field.required and isinstance(value, str) and not value.strip():
            problems[name] = "must not be empty"
        elif field.choices is not None and value not in field.choices:
            problems[name] = f"must be one of {sorted(field.choices)}"
        elif field.items is not None and not all(_type_ok(v, field.items) for v in value):
            problems[name] = "contains items of the wrong type"
        elif field.timestamp and _parse_iso8601(value) is None:
            problems[name] = "must be an ISO 8601 timestamp"
        elif field.day and _parse_day(value) is None:
            problems[name] = "must be a YYYY-MM-DD date"

    check = _CONDITIONAL.get(kind)
    if check is not None:
        check(record, problems)
    return problems


def encode(record: Dict[str, Any]) -> bytes:
    return json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(kind: str, data: bytes) -> Dict[str, Any]:
    try:
        record = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise CorruptRecord(f"Stored {kind} is not valid JSON", {"kind": kind}) from exc

    problems = problems_for(kind, record)
    if problems:
        record_id = record.get("id") if isinstance(record, dict) else None
        raise CorruptRecord(
            f"Stored {kind} '{record_id}' failed validation",
            {"kind": kind, "id": record_id, "fields": problems},
        )
    return record


def validate(kind: str, record: Dict[str, Any]) -> None:
    problems = problems_for(kind, record)
    if problems:
        raise InvalidRecord(f"Invalid {kind}", {"kind": kind, "fields": problems})
