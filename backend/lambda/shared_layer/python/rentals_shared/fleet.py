"""rentals_shared.fleet — Cars, rentals and invoices over the content store.

Key layout:

    car:<id>, cars:all, car:availability:<id>     cars + blocked days (JSON list)
    rental:<id>, rentals:all                      rentals
    rentals:status:<s>, rentals:customer:<id>, rentals:car:<id>
    rentals:date:<YYYY-MM-DD>                     one set per rented day, expires
                                                  RENTAL_DATE_INDEX_TTL_DAYS after it
    payment:<intent_id>                           -> rental id
    invoice:<id>, invoices:all, invoices:status:<s>
    invoice_counter                               INV-<year>-<nnnn> sequence
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from rentals_shared import config
from rentals_shared.codec import INVOICE_STATUSES, RENTAL_STATUSES
from rentals_shared.errors import InvalidRecord
from rentals_shared.indexes import IndexSpec, PointerSpec, attribute_index, nested_values, status_index
from rentals_shared.serialization import _iso_z, _parse_day, _utcnow
from rentals_shared.store import ContentStore, EntityConfig, TransitionReport

logger = logging.getLogger(__name__)

MAX_RENTAL_DAYS = 366


def _days(start: dt.date, end: dt.date) -> List[dt.date]:
    return [start + dt.timedelta(days=n) for n in range((end - start).days + 1)]


def _day_range(start_raw: Any, end_raw: Any) -> tuple[dt.date, dt.date]:
    start = _parse_day(start_raw)
    end = _parse_day(end_raw)
    if start is None or end is None:
        raise InvalidRecord("start and end must be YYYY-MM-DD dates", {"fields": {"dates": "invalid"}})
    if end < start:
        raise InvalidRecord("end precedes start", {"fields": {"dates": "end before start"}})
    return start, end


# ---------------------------------------------------------------------------
# Cars
# ---------------------------------------------------------------------------


def _prepare_car(record: Dict[str, Any], previous: Optional[Dict[str, Any]], now: dt.datetime) -> Dict[str, Any]:
    record.setdefault("available", True)
    record.setdefault("show_on_homepage", False)
    return record


CAR_ENTITY = EntityConfig(
    kind="car",
    plural="cars",
    search_fields=("brand", "model"),
    prepare=_prepare_car,
)


class CarStore:
    def __init__(self, kv, clock: Optional[Callable[[], dt.datetime]] = None):
        self.kv = kv
        self.cars = ContentStore(kv, CAR_ENTITY, clock=clock)

    @staticmethod
    def availability_key(car_id: str) -> str:
        return f"car:availability:{car_id}"

    def create_car(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.cars.create(data)

    def get_car(self, car_id: str) -> Optional[Dict[str, Any]]:
        return self.cars.get(car_id)

    def update_car(self, car_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.cars.update(car_id, patch)

    def delete_car(self, car_id: str) -> Dict[str, Any]:
        car = self.cars.delete(car_id)
        self.kv.delete(self.availability_key(car_id))
        return car

    def list_cars(self, homepage_only: bool = False) -> List[Dict[str, Any]]:
        cars = self.cars.load_many(self.cars.ids(), "cars:all")
        if homepage_only:
            cars = [c for c in cars if c.get("show_on_homepage")]
        return sorted(
            cars,
            key=lambda c: (
                c.get("display_order") if c.get("display_order") is not None else 10**6,
                str(c.get("brand", "")).casefold(),
                str(c.get("model", "")).casefold(),
            ),
        )

    def reorder(self, car_ids: List[str]) -> List[Dict[str, Any]]:
        """Persist ``display_order`` following the given id order."""
        return [self.cars.update(car_id, {"display_order": position}) for position, car_id in enumerate(car_ids)]

    def set_availability(self, car_id: str, unavailable_dates: Iterable[str]) -> List[str]:
        self.cars.require(car_id)
        days = set()
        for raw in unavailable_dates or []:
            day = _parse_day(raw)
            if day is None:
                raise InvalidRecord(f"Invalid date '{raw}'", {"fields": {"unavailable_dates": "YYYY-MM-DD"}})
            days.add(day.isoformat())
        ordered = sorted(days)
        self.kv.set(self.availability_key(car_id), json.dumps(ordered).encode("utf-8"))
        return ordered

    def get_availability(self, car_id: str) -> List[str]:
        raw = self.kv.get(self.availability_key(car_id))
        if raw is None:
            return []
        try:
            dates = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.error("Ignoring corrupt availability for car %s", car_id)
            return []
        return [d for d in dates if isinstance(d, str)] if isinstance(dates, list) else []

    def is_available(self, car_id: str, start: str, end: str, rentals: "RentalStore") -> Dict[str, Any]:
        first, last = _day_range(start, end)
        if (last - first).days + 1 > MAX_RENTAL_DAYS:
            raise InvalidRecord(f"Rentals are limited to {MAX_RENTAL_DAYS} days", {"fields": {"dates": "range too long"}})
        car = self.cars.get(car_id)
        if car is None or not car.get("available"):
            return {"available": False, "conflicts": {"custom_blocks": [], "booking_conflict": False}}

        blocked = set(self.get_availability(car_id))
        custom_blocks = [d.isoformat() for d in _days(first, last) if d.isoformat() in blocked]
        booking_conflict = rentals.has_conflict(car_id, start, end)
        return {
            "available": not custom_blocks and not booking_conflict,
            "conflicts": {"custom_blocks": custom_blocks, "booking_conflict": booking_conflict},
        }


# ---------------------------------------------------------------------------
# Rentals
# ---------------------------------------------------------------------------


def _rental_days(record: Dict[str, Any]) -> List[str]:
    dates = record.get("rental_dates") or {}
    start = _parse_day(dates.get("start_date")) if isinstance(dates, dict) else None
    end = _parse_day(dates.get("end_date")) if isinstance(dates, dict) else None
    if start is None or end is None or end < start:
        return []
    return [d.isoformat() for d in _days(start, end)]


def _date_index_ttl(day: str) -> Optional[int]:
    parsed = _parse_day(day)
    if parsed is None:
        return None
    expires = dt.datetime.combine(
        parsed + dt.timedelta(days=config.RENTAL_DATE_INDEX_TTL_DAYS),
        dt.time(),
        tzinfo=dt.timezone.utc,
    )
    return max(int((expires - _utcnow()).total_seconds()), 60)


def _prepare_rental(record: Dict[str, Any], previous: Optional[Dict[str, Any]], now: dt.datetime) -> Dict[str, Any]:
    record.setdefault("status", "pending")
    record.setdefault("payment", {})
    if len(_rental_days(record)) > MAX_RENTAL_DAYS:
        raise InvalidRecord(
            f"Rentals are limited to {MAX_RENTAL_DAYS} days",
            {"fields": {"rental_dates": "too long"}},
        )
    if previous is not None and previous.get("status") == "cancelled" and record.get("status") != "cancelled":
        raise InvalidRecord("Cancelled rentals cannot be reopened", {"fields": {"status": "terminal"}})
    return record


RENTAL_ENTITY = EntityConfig(
    kind="rental",
    plural="rentals",
    indexes=(
        status_index(keyed=True),
        attribute_index("customer", "customer_id"),
        attribute_index("car", "car_id"),
        IndexSpec(name="date", values=_rental_days, ttl=_date_index_ttl),
    ),
    pointers=(
        PointerSpec(
            "payment",
            nested_values("payment.deposit_payment_intent_id", "payment.final_payment_intent_id"),
        ),
    ),
    search_fields=("id", "customer_id", "car_id"),
    prepare=_prepare_rental,
)


class RentalStore:
    def __init__(self, kv, clock: Optional[Callable[[], dt.datetime]] = None):
        self.kv = kv
        self.rentals = ContentStore(kv, RENTAL_ENTITY, clock=clock)

    def create_rental(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.rentals.create(data)

    def get_rental(self, rental_id: str) -> Optional[Dict[str, Any]]:
        return self.rentals.get(rental_id)

    def update_rental(self, rental_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.rentals.update(rental_id, patch)

    def delete_rental(self, rental_id: str) -> Dict[str, Any]:
        return self.rentals.delete(rental_id)

    def list_rentals(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status:
            if status not in RENTAL_STATUSES:
                raise InvalidRecord(f"Unknown rental status '{status}'", {"fields": {"status": "unknown"}})
            return self.rentals.list_index("status", status)
        return self.rentals.list_all()

    def get_by_customer(self, customer_id: str) -> List[Dict[str, Any]]:
        return self.rentals.list_index("customer", customer_id)

    def get_by_car(self, car_id: str) -> List[Dict[str, Any]]:
        return self.rentals.list_index("car", car_id)

    def get_by_payment_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        raw = self.kv.get(f"payment:{intent_id}")
        if raw is None:
            return None
        return self.get_rental(raw.decode("utf-8"))

    def get_by_date_range(self, start: str, end: str) -> List[Dict[str, Any]]:
        """Rentals overlapping [start, end], resolved through the per-day sets.

        Spans longer than RENTAL_DATE_RANGE_MAX_DAYS are rejected.
        """
        first, last = _day_range(start, end)
        days = _days(first, last)
        if len(days) > config.RENTAL_DATE_RANGE_MAX_DAYS:
            raise InvalidRecord(
                f"Date ranges are limited to {config.RENTAL_DATE_RANGE_MAX_DAYS} days",
                {"fields": {"dates": "range too long"}},
            )
        ids: set = set()
        for day in days:
            ids |= self.kv.set_members(self.rentals.indexes.key_for("date", day.isoformat()))
        wanted = {d.isoformat() for d in days}
        return self.rentals.load_many(
            ids,
            f"rentals:date:{first.isoformat()}..{last.isoformat()}",
            still_member=lambda r: bool(wanted.intersection(_rental_days(r))),
        )

    def has_conflict(self, car_id: str, start: str, end: str, exclude_id: Optional[str] = None) -> bool:
        """True when a live rental of the car overlaps any day of [start, end].

        Scans the car's own rentals, so the whole span is checked however
        long it is.
        """
        first, last = _day_range(start, end)
        for rental in self.get_by_car(car_id):
            if rental.get("status") == "cancelled" or rental.get("id") == exclude_id:
                continue
            days = _rental_days(rental)
            if days and days[0] <= last.isoformat() and days[-1] >= first.isoformat():
                return True
        return False

    def get_detail(self, rental_id: str, retrieve_payment_intent: Callable[[str], Dict[str, Any]]) -> Dict[str, Any]:
        """Rental plus its deposit payment intent, read from the payment provider."""
        rental = self.rentals.require(rental_id)
        intent_id = (rental.get("payment") or {}).get("deposit_payment_intent_id")
        return {
            "rental": rental,
            "payment_intent": retrieve_payment_intent(intent_id) if intent_id else None,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_rentals": self.rentals.count(),
            "rentals_by_status": {s: self.rentals.count("status", s) for s in sorted(RENTAL_STATUSES)},
        }


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

INVOICE_COUNTER_KEY = "invoice_counter"
_TOTAL_FIELDS = {"line_items", "tax_rate", "discount_amount"}


def _money(value: float) -> float:
    return round(float(value), 2)


def _priced_lines(raw_lines: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw_lines, list) or not raw_lines:
        raise InvalidRecord("At least one line item is required", {"fields": {"line_items": "empty"}})
    lines: List[Dict[str, Any]] = []
    for position, raw in enumerate(raw_lines):
        if not isinstance(raw, dict):
            raise InvalidRecord("Line items must be objects", {"fields": {f"line_items[{position}]": "not an object"}})
        quantity = raw.get("quantity")
        unit_price = raw.get("unit_price")
        if (
            not isinstance(raw.get("description"), str)
            or not raw["description"].strip()
            or isinstance(quantity, bool)
            or not isinstance(quantity, (int, float))
            or quantity <= 0
            or isinstance(unit_price, bool)
            or not isinstance(unit_price, (int, float))
            or unit_price < 0
        ):
            raise InvalidRecord(
                "Line items need a description, a positive quantity and a non-negative unit_price",
                {"fields": {f"line_items[{position}]": "invalid"}},
            )
        line = dict(raw)
        line["amount"] = _money(quantity * unit_price)
        lines.append(line)
    return lines


def _apply_totals(record: Dict[str, Any]) -> Dict[str, Any]:
    record["line_items"] = _priced_lines(record.get("line_items"))
    tax_rate = record.get("tax_rate")
    if tax_rate is None:
        tax_rate = config.INVOICE_TAX_RATE
    discount = record.get("discount_amount") or 0
    if isinstance(tax_rate, bool) or not isinstance(tax_rate, (int, float)) or tax_rate < 0:
        raise InvalidRecord("tax_rate must be a non-negative percentage", {"fields": {"tax_rate": "invalid"}})
    if isinstance(discount, bool) or not isinstance(discount, (int, float)) or discount < 0:
        raise InvalidRecord("discount_amount must be non-negative", {"fields": {"discount_amount": "invalid"}})
    subtotal = _money(sum(line["amount"] for line in record["line_items"]))
    tax_amount = _money(subtotal * tax_rate / 100)
    record["tax_rate"] = tax_rate
    record["subtotal"] = subtotal
    record["tax_amount"] = tax_amount
    record["total_amount"] = _money(max(subtotal + tax_amount - discount, 0))
    return record


def _prepare_invoice(record: Dict[str, Any], previous: Optional[Dict[str, Any]], now: dt.datetime) -> Dict[str, Any]:
    record.setdefault("status", "draft")
    if previous is None or any(record.get(f) != previous.get(f) for f in _TOTAL_FIELDS):
        record = _apply_totals(record)
    if record.get("status") == "paid" and not record.get("paid_date"):
        record["paid_date"] = _iso_z(now)
    return record


INVOICE_ENTITY = EntityConfig(
    kind="invoice",
    plural="invoices",
    indexes=(status_index(keyed=True),),
    search_fields=("invoice_number", "title", "notes"),
    prepare=_prepare_invoice,
)


class InvoiceStore:
    def __init__(self, kv, clock: Optional[Callable[[], dt.datetime]] = None):
        self.kv = kv
        self.invoices = ContentStore(kv, INVOICE_ENTITY, clock=clock)

    def next_invoice_number(self) -> str:
        counter = self.kv.incr(INVOICE_COUNTER_KEY)
        return f"INV-{self.invoices.clock().year}-{counter:04d}"

    def create_invoice(self, data: Dict[str, Any], created_by: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise InvalidRecord("invoice must be an object")
        record = dict(data)
        # Price first so a rejected invoice does not consume a number.
        _apply_totals(dict(record))
        record["invoice_number"] = self.next_invoice_number()
        if created_by:
            record["created_by"] = created_by
        return self.invoices.create(record)

    def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        return self.invoices.get(invoice_id)

    def update_invoice(self, invoice_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(patch, dict) and "invoice_number" in patch:
            raise InvalidRecord("invoice_number cannot be changed", {"fields": {"invoice_number": "immutable"}})
        return self.invoices.update(invoice_id, patch)

    def delete_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return self.invoices.delete(invoice_id)

    def list_invoices(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status and status != "all":
            if status not in INVOICE_STATUSES:
                raise InvalidRecord(f"Unknown invoice status '{status}'", {"fields": {"status": "unknown"}})
            return self.invoices.list_index("status", status)
        return self.invoices.list_all()

    def mark_overdue(self, now: Optional[dt.datetime] = None) -> TransitionReport:
        """Move sent invoices whose due date has passed to ``overdue``."""
        today = (now or self.invoices.clock()).date()

        def _past_due(invoice: Dict[str, Any]) -> bool:
            due = _parse_day(invoice.get("due_date"))
            return invoice.get("status") == "sent" and due is not None and due < today

        report = self.invoices.transition_matching(_past_due, {"status": "overdue"}, expected_status="sent")
        logger.info("Marked %d invoice(s) overdue, %d failed", len(report.succeeded), len(report.failed))
        return report

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_invoices": self.invoices.count(),
            "invoices_by_status": {s: self.invoices.count("status", s) for s in sorted(INVOICE_STATUSES)},
        }
