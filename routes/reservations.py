import uuid
from datetime import date as date_cls, time as time_cls

from flask import Blueprint, jsonify, request

from services import ledger
from services.reservations import SlotReservationManager

reservations_bp = Blueprint("reservations", __name__, url_prefix="/reservations")


def _parse_date(value: str) -> date_cls:
    # "2026-01-20"
    return date_cls.fromisoformat(value)


def _parse_time(value: str) -> time_cls:
    # "18:00" or "18:00:00"
    return time_cls.fromisoformat(value)


def new_order_id():
    return f"order_{uuid.uuid4().hex}"


def parse_claim_request(data: dict):
    """
    Validate a booking-initiation body. Returns (kwargs, error) where error is
    a message for a 400 response.
    """
    provider_id = str(data.get("provider_id") or "").strip()
    client_id = str(data.get("client_id") or "").strip()
    raw_date = data.get("date")
    raw_time = data.get("time")
    amount = data.get("amount")

    if not provider_id or not client_id or not raw_date or not raw_time or amount is None:
        return None, "provider_id, client_id, date, time, amount are required"

    try:
        slot_date = _parse_date(str(raw_date))
        slot_time = _parse_time(str(raw_time))
    except ValueError:
        return None, "Invalid date/time format. Use YYYY-MM-DD and HH:MM"

    try:
        amount = int(amount)
    except (TypeError, ValueError):
        return None, "amount must be an integer in the smallest currency unit"
    if amount <= 0:
        return None, "amount must be positive"

    return {
        "provider_id": provider_id,
        "client_id": client_id,
        "date": slot_date,
        "time": slot_time.replace(microsecond=0),
        "order_id": (data.get("order_id") or "").strip() or new_order_id(),
        "amount": amount,
        "currency": data.get("currency"),
        "contact_email": (data.get("contact_email") or "").strip().lower() or None,
    }, None


@reservations_bp.post("")
def claim_slot():
    data = request.get_json(silent=True) or {}
    claim, error = parse_claim_request(data)
    if error:
        return jsonify(error=error), 400

    reservation, created = SlotReservationManager().claim(**claim)
    return jsonify(reservation=reservation.to_dict(), created=created), (201 if created else 200)


@reservations_bp.get("/<order_id>")
def get_reservation(order_id):
    reservation = SlotReservationManager().get(order_id)
    return jsonify(reservation=reservation.to_dict()), 200


@reservations_bp.post("/<order_id>/payment-pending")
def payment_pending(order_id):
    reservation = SlotReservationManager().mark_payment_pending(order_id)
    return jsonify(reservation=reservation.to_dict()), 200


@reservations_bp.post("/<order_id>/release")
def release(order_id):
    data = request.get_json(silent=True) or {}
    manager = SlotReservationManager()
    manager.get(order_id)  # 404 for unknown orders
    released = manager.release(order_id, reason=(data.get("reason") or "released by client"))
    if released:
        ledger.fail_if_pending(order_id)
    return jsonify(released=released, reservation=manager.get(order_id).to_dict()), 200
