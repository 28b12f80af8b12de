"""Shared test helpers: config, a controllable clock and Stripe-shaped events."""

import hashlib
import hmac
import json
import time as _time
from datetime import date, datetime, time, timedelta

from config import Config

WEBHOOK_SECRET = "whsec_test_secret"
SLOT_DATE = date(2026, 3, 2)
SLOT_TIME = time(10, 0)
AMOUNT = 150000


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    STRIPE_SUCCESS_URL = "https://example.test/pay/success"
    STRIPE_CANCEL_URL = "https://example.test/pay/cancel"
    DEFAULT_CURRENCY = "INR"
    CLAIM_MAX_RETRIES = 1
    SMTP_HOST = None
    SMTP_FROM_EMAIL = None
    LOG_LEVEL = "DEBUG"


class FrozenClock:
    """Callable clock the services accept in place of utcnow()."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def sign_payload(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for body."""
    timestamp = int(_time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + body
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode(event) -> bytes:
    return json.dumps(event).encode()


def checkout_completed(order_id, payment_intent="pi_1", amount=AMOUNT, currency="inr",
                       payment_status="paid", event_id="evt_1", event_type="checkout.session.completed"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": f"cs_{order_id}",
                "object": "checkout.session",
                "payment_intent": payment_intent,
                "payment_status": payment_status,
                "amount_total": amount,
                "currency": currency,
                "client_reference_id": order_id,
                "metadata": {"order_id": order_id},
            }
        },
    }


def checkout_expired(order_id, event_id="evt_expired"):
    return checkout_completed(order_id, payment_intent=None, payment_status="unpaid",
                              event_id=event_id, event_type="checkout.session.expired")


def payment_intent_event(order_id, payment_intent="pi_1", amount=AMOUNT, currency="inr",
                         event_type="payment_intent.succeeded", event_id="evt_pi", error_message=None):
    obj = {
        "id": payment_intent,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
        "currency": currency,
        "metadata": {"order_id": order_id},
    }
    if error_message:
        obj["last_payment_error"] = {"message": error_message}
    return {"id": event_id, "type": event_type, "data": {"object": obj}}
