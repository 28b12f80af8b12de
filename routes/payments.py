import logging
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

import stripe
from flask import Blueprint, current_app, jsonify, request

from models.reservation import ReservationStatus
from routes.reservations import parse_claim_request
from services import ledger
from services.reservations import SlotReservationManager
from services.webhooks import PaymentWebhookProcessor
from utils.audit import log_event

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    new_query = urlencode(query)
    return urlunparse(parts._replace(query=new_query))


@payments_bp.post("/checkout")
def start_checkout():
    stripe.api_key = current_app.config.get("STRIPE_SECRET_KEY")
    success_url = current_app.config.get("STRIPE_SUCCESS_URL")
    cancel_url = current_app.config.get("STRIPE_CANCEL_URL")
    if not stripe.api_key:
        return jsonify(error="Stripe secret key missing (STRIPE_SECRET_KEY)"), 500
    if not success_url or not cancel_url:
        return jsonify(error="Stripe success/cancel URLs not configured"), 500

    data = request.get_json(silent=True) or {}
    claim, error = parse_claim_request(data)
    if error:
        return jsonify(error=error), 400

    manager = SlotReservationManager()
    reservation, _created = manager.claim(**claim)
    order_id = reservation.order_id
    if reservation.status not in ReservationStatus.EXPIRING:
        return jsonify(error="Reservation is not awaiting payment", status=reservation.status), 409
    attempt = ledger.get_by_order(order_id)

    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": attempt.currency.lower(),
                    "product_data": {
                        "name": f"Session with {reservation.provider_id} on "
                                f"{reservation.date.isoformat()} {reservation.time.strftime('%H:%M')}",
                    },
                    "unit_amount": attempt.amount,
                },
                "quantity": 1,
            }],
            success_url=_append_query(success_url, {"order_id": order_id}),
            cancel_url=_append_query(cancel_url, {"order_id": order_id}),
            client_reference_id=order_id,
            customer_email=attempt.contact_email,
            metadata={"order_id": order_id},
            payment_intent_data={"metadata": {"order_id": order_id}},
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session failed for order %s: %s", order_id, exc)
        if manager.release(order_id, reason="checkout session could not be created"):
            ledger.fail_if_pending(order_id)
        return jsonify(error="Payment provider unavailable, please try again"), 502

    reservation = manager.mark_payment_pending(order_id)
    log_event("PAYMENT_SESSION_CREATED", entity="payment", entity_id=attempt.id,
              metadata={"order_id": order_id, "stripe_session_id": session["id"]})
    return jsonify(
        checkout_url=session["url"],
        order_id=order_id,
        expires_at=reservation.expires_at.isoformat(),
    ), 200


@payments_bp.get("/status/<order_id>")
def payment_status(order_id):
    view = PaymentWebhookProcessor().status(order_id)
    return jsonify(view.to_dict()), 200
