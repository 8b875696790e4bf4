"""fleet_api/lambda_function.py

Lambda API for the rental fleet: cars (public catalogue plus admin
management), rentals and invoices stored in the content table.

Routes (via API Gateway proxy):
    GET    /api/cars                                   — public fleet (?homepage=true)
    GET    /api/cars/{carId}                           — one car
    GET    /api/cars/{carId}/availability?start&end    — availability check
    GET    /api/admin/fleet                            — all cars
    POST   /api/admin/fleet                            — create car
    PUT    /api/admin/fleet/reorder                    — {car_ids: [...]} display order
    PUT    /api/admin/fleet/{carId}                    — update car (PATCH accepted)
    DELETE /api/admin/fleet/{carId}                    — delete car
    GET    /api/admin/fleet/{carId}/availability       — blocked days
    PUT    /api/admin/fleet/{carId}/availability       — {unavailable_dates: [...]}
    GET    /api/admin/rentals                          — ?status | ?customer | ?car | ?start&end
    POST   /api/admin/rentals                          — create rental (409 on overlap)
    GET    /api/admin/rentals/stats                    — counts by status
    GET    /api/admin/rentals/by-payment/{intentId}    — rental for a payment intent
    GET    /api/admin/rentals/{rentalId}               — rental + deposit payment intent
    PUT    /api/admin/rentals/{rentalId}               — update rental (PATCH accepted)
    DELETE /api/admin/rentals/{rentalId}               — delete rental
    GET    /api/admin/invoices                         — ?status
    POST   /api/admin/invoices                         — create invoice (numbered, totals computed)
    GET    /api/admin/invoices/stats                   — counts by status
    POST   /api/admin/invoices/mark-overdue            — sent -> overdue sweep
    GET    /api/admin/invoices/{invoiceId}             — read invoice
    PUT    /api/admin/invoices/{invoiceId}             — update invoice (PATCH accepted)
    DELETE /api/admin/invoices/{invoiceId}             — delete invoice
    OPTIONS *                                          — CORS preflight

Auth:
    Admin routes require ``Authorization: Bearer <jwt>`` (HS256) or an
    ``X-Internal-Api-Key`` header. ``/api/cars`` routes are anonymous.

Environment variables:
    CONTENT_TABLE          DynamoDB table backing the content store
    ADMIN_JWT_SECRET       HS256 signing secret
    STRIPE_SECRET_KEY      payment provider key (rental detail view)
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from rentals_shared import payments
from rentals_shared.auth import authenticate
from rentals_shared.errors import Conflict, ContentStoreError, InvalidRecord, NotFound
from rentals_shared.fleet import CarStore, InvoiceStore, RentalStore
from rentals_shared.http_utils import _error, _error_from, _json_body, _options, _path_method, _query, _response
from rentals_shared.kv import KVClient

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

_ID = r"[A-Za-z0-9_-]+"
_PUBLIC_AVAILABILITY_PATTERN = re.compile(rf"/api/cars/(?P<carId>{_ID})/availability$")
_PUBLIC_CAR_PATTERN = re.compile(rf"/api/cars/(?P<carId>{_ID})$")
_PUBLIC_CARS_PATTERN = re.compile(r"/api/cars$")

_FLEET_REORDER_PATTERN = re.compile(r"/api/admin/fleet/reorder$")
_FLEET_AVAILABILITY_PATTERN = re.compile(rf"/api/admin/fleet/(?P<carId>{_ID})/availability$")
_FLEET_CAR_PATTERN = re.compile(rf"/api/admin/fleet/(?P<carId>{_ID})$")
_FLEET_PATTERN = re.compile(r"/api/admin/fleet$")

_RENTAL_STATS_PATTERN = re.compile(r"/api/admin/rentals/stats$")
_RENTAL_BY_PAYMENT_PATTERN = re.compile(rf"/api/admin/rentals/by-payment/(?P<intentId>{_ID})$")
_RENTAL_PATTERN = re.compile(rf"/api/admin/rentals/(?P<rentalId>{_ID})$")
_RENTALS_PATTERN = re.compile(r"/api/admin/rentals$")

_INVOICE_STATS_PATTERN = re.compile(r"/api/admin/invoices/stats$")
_INVOICE_OVERDUE_PATTERN = re.compile(r"/api/admin/invoices/mark-overdue$")
_INVOICE_PATTERN = re.compile(rf"/api/admin/invoices/(?P<invoiceId>{_ID})$")
_INVOICES_PATTERN = re.compile(r"/api/admin/invoices$")

_TRUE_VALUES = {"1", "true", "yes"}

# ---------------------------------------------------------------------------
# Store access
# ---------------------------------------------------------------------------

_kv = None


def _get_kv():
    global _kv
    if _kv is None:
        _kv = KVClient()
    return _kv


def _not_allowed(method: str) -> Dict:
    return _error(405, f"Method {method} not allowed.")


def _found(record: Optional[Dict[str, Any]], label: str, record_id: str) -> Dict[str, Any]:
    if record is None:
        raise NotFound(f"{label} not found", {"id": record_id})
    return record


# ---------------------------------------------------------------------------
# Cars
# ---------------------------------------------------------------------------


def _handle_public(method: str, path: str, qs: Dict[str, str]) -> Dict:
    if method != "GET":
        return _error(405, f"Method {method} not allowed. Public fleet routes are read-only.")
    cars = CarStore(_get_kv())

    m = _PUBLIC_AVAILABILITY_PATTERN.search(path)
    if m:
        if not qs.get("start") or not qs.get("end"):
            raise InvalidRecord("start and end query parameters are required")
        result = cars.is_available(m.group("carId"), qs["start"], qs["end"], RentalStore(_get_kv()))
        return _response(200, {"success": True, **result})

    m = _PUBLIC_CAR_PATTERN.search(path)
    if m:
        car = _found(cars.get_car(m.group("carId")), "Car", m.group("carId"))
        return _response(200, {"success": True, "car": car})

    if _PUBLIC_CARS_PATTERN.search(path):
        homepage_only = str(qs.get("homepage", "")).lower() in _TRUE_VALUES
        visible = [c for c in cars.list_cars(homepage_only=homepage_only) if c.get("available")]
        return _response(200, {"success": True, "cars": visible, "count": len(visible)})

    return _error(404, f"Route not found: {method} {path}")


def _handle_fleet(method: str, path: str, event: Dict) -> Optional[Dict]:
    cars = CarStore(_get_kv())

    if _FLEET_REORDER_PATTERN.search(path):
        if method not in ("PUT", "POST"):
            return _not_allowed(method)
        car_ids = _json_body(event).get("car_ids")
        if not isinstance(car_ids, list) or not all(isinstance(c, str) for c in car_ids):
            raise InvalidRecord("car_ids must be a list of ids", {"fields": {"car_ids": "invalid"}})
        return _response(200, {"success": True, "cars": cars.reorder(car_ids)})

    m = _FLEET_AVAILABILITY_PATTERN.search(path)
    if m:
        car_id = m.group("carId")
        if method == "GET":
            cars.cars.require(car_id)
            return _response(200, {"success": True, "car_id": car_id, "unavailable_dates": cars.get_availability(car_id)})
        if method in ("PUT", "POST"):
            dates = _json_body(event).get("unavailable_dates")
            if not isinstance(dates, list):
                raise InvalidRecord("unavailable_dates must be a list", {"fields": {"unavailable_dates": "invalid"}})
            saved = cars.set_availability(car_id, dates)
            return _response(200, {"success": True, "car_id": car_id, "unavailable_dates": saved})
        return _not_allowed(method)

    m = _FLEET_CAR_PATTERN.search(path)
    if m:
        car_id = m.group("carId")
        if method == "GET":
            return _response(200, {"success": True, "car": _found(cars.get_car(car_id), "Car", car_id)})
        if method in ("PUT", "PATCH"):
            return _response(200, {"success": True, "car": cars.update_car(car_id, _json_body(event))})
        if method == "DELETE":
            cars.delete_car(car_id)
            return _response(200, {"success": True, "id": car_id})
        return _not_allowed(method)

    if _FLEET_PATTERN.search(path):
        if method == "GET":
            all_cars = cars.list_cars()
            return _response(200, {"success": True, "cars": all_cars, "count": len(all_cars)})
        if method == "POST":
            return _response(201, {"success": True, "car": cars.create_car(_json_body(event))})
        return _not_allowed(method)

    return None


# ---------------------------------------------------------------------------
# Rentals
# ---------------------------------------------------------------------------


def _ensure_bookable(rentals: RentalStore, record: Dict[str, Any], exclude_id: Optional[str] = None) -> None:
    if record.get("status") == "cancelled":
        return
    dates = record.get("rental_dates") or {}
    if not isinstance(dates, dict) or not record.get("car_id"):
        return  # left for the codec to reject
    start, end = dates.get("start_date"), dates.get("end_date")
    if start and end and rentals.has_conflict(record["car_id"], start, end, exclude_id=exclude_id):
        raise Conflict(
            "Car is already booked for these dates",
            {"car_id": record["car_id"], "start_date": start, "end_date": end},
        )


def _handle_rentals(method: str, path: str, event: Dict, qs: Dict[str, str]) -> Optional[Dict]:
    rentals = RentalStore(_get_kv())

    if _RENTAL_STATS_PATTERN.search(path):
        if method != "GET":
            return _not_allowed(method)
        return _response(200, {"success": True, "stats": rentals.get_stats()})

    m = _RENTAL_BY_PAYMENT_PATTERN.search(path)
    if m:
        if method != "GET":
            return _not_allowed(method)
        intent_id = m.group("intentId")
        rental = _found(rentals.get_by_payment_intent(intent_id), "Rental", intent_id)
        return _response(200, {"success": True, "rental": rental})

    m = _RENTAL_PATTERN.search(path)
    if m:
        rental_id = m.group("rentalId")
        if method == "GET":
            detail = rentals.get_detail(rental_id, payments.retrieve_payment_intent)
            return _response(200, {"success": True, "data": detail})
        if method in ("PUT", "PATCH"):
            patch = _json_body(event)
            if "rental_dates" in patch or "car_id" in patch or patch.get("status") not in (None, "cancelled"):
                current = rentals.rentals.require(rental_id)
                _ensure_bookable(rentals, {**current, **patch}, exclude_id=rental_id)
            return _response(200, {"success": True, "rental": rentals.update_rental(rental_id, patch)})
        if method == "DELETE":
            rentals.delete_rental(rental_id)
            return _response(200, {"success": True, "id": rental_id})
        return _not_allowed(method)

    if _RENTALS_PATTERN.search(path):
        if method == "GET":
            if qs.get("start") or qs.get("end"):
                if not qs.get("start") or not qs.get("end"):
                    raise InvalidRecord("start and end must be given together")
                items = rentals.get_by_date_range(qs["start"], qs["end"])
            elif qs.get("customer"):
                items = rentals.get_by_customer(qs["customer"])
            elif qs.get("car"):
                items = rentals.get_by_car(qs["car"])
            else:
                items = rentals.list_rentals(qs.get("status") or None)
            return _response(200, {"success": True, "rentals": items, "count": len(items)})
        if method == "POST":
            body = _json_body(event)
            _ensure_bookable(rentals, body)
            rental = rentals.create_rental(body)
            logger.info("rental created: %s car=%s", rental["id"], rental["car_id"])
            return _response(201, {"success": True, "rental": rental})
        return _not_allowed(method)

    return None


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def _handle_invoices(method: str, path: str, event: Dict, qs: Dict[str, str], claims: Dict) -> Optional[Dict]:
    invoices = InvoiceStore(_get_kv())

    if _INVOICE_STATS_PATTERN.search(path):
        if method != "GET":
            return _not_allowed(method)
        return _response(200, {"success": True, "stats": invoices.get_stats()})

    if _INVOICE_OVERDUE_PATTERN.search(path):
        if method != "POST":
            return _not_allowed(method)
        report = invoices.mark_overdue()
        return _response(200, {
            "success": not report.failed,
            "processed": report.processed,
            "overdue": report.succeeded,
            "failed": report.failed,
            "errors": report.errors,
        })

    m = _INVOICE_PATTERN.search(path)
    if m:
        invoice_id = m.group("invoiceId")
        if method == "GET":
            invoice = _found(invoices.get_invoice(invoice_id), "Invoice", invoice_id)
            return _response(200, {"success": True, "invoice": invoice})
        if method in ("PUT", "PATCH"):
            return _response(200, {"success": True, "invoice": invoices.update_invoice(invoice_id, _json_body(event))})
        if method == "DELETE":
            invoices.delete_invoice(invoice_id)
            return _response(200, {"success": True, "id": invoice_id})
        return _not_allowed(method)

    if _INVOICES_PATTERN.search(path):
        if method == "GET":
            items = invoices.list_invoices(qs.get("status") or None)
            return _response(200, {"success": True, "invoices": items, "count": len(items)})
        if method == "POST":
            created_by = claims.get("email") or claims.get("sub")
            invoice = invoices.create_invoice(_json_body(event), created_by=created_by)
            logger.info("invoice created: %s number=%s", invoice["id"], invoice["invoice_number"])
            return _response(201, {"success": True, "invoice": invoice})
        return _not_allowed(method)

    return None


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def _handle_admin(method: str, path: str, event: Dict, qs: Dict[str, str]) -> Dict:
    claims = authenticate(event)
    if "/api/admin/fleet" in path:
        result = _handle_fleet(method, path, event)
    elif "/api/admin/rentals" in path:
        result = _handle_rentals(method, path, event, qs)
    elif "/api/admin/invoices" in path:
        result = _handle_invoices(method, path, event, qs, claims)
    else:
        result = None
    return result if result is not None else _error(404, f"Route not found: {method} {path}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict:
    method, path = _path_method(event)
    qs = _query(event)
    logger.info("fleet_api: %s %s qs_keys=%s", method, path, sorted(qs.keys()))

    if method == "OPTIONS":
        return _options()

    try:
        if "/api/admin/" in path:
            return _handle_admin(method, path, event, qs)
        return _handle_public(method, path, qs)
    except ContentStoreError as exc:
        return _error_from(exc)
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return _error(500, "Internal service error")
