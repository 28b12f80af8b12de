import stripe
from flask import current_app

from services.errors import InvalidSignature


def verify_stripe_signature(payload: bytes, sig_header: str, secret: str = None, tolerance: int = None):
    """
    Check a ``Stripe-Signature`` header against the raw request body.

    Stripe signs ``"<timestamp>.<body>"`` with HMAC-SHA256; the SDK recomputes it and
    compares in constant time. Raises InvalidSignature on any failure.
    """
    secret = secret or current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if tolerance is None:
        tolerance = current_app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300)

    if not secret:
        # misconfiguration, not bad input: let the gateway retry
        raise RuntimeError("Webhook secret not configured (STRIPE_WEBHOOK_SECRET)")
    if not sig_header:
        raise InvalidSignature("Missing webhook signature")

    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError:
        raise InvalidSignature("Invalid webhook signature")
    return True
