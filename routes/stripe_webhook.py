import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from models import db
from services.webhooks import PaymentWebhookProcessor

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    if not current_app.config.get("STRIPE_WEBHOOK_SECRET"):
        return jsonify(error="Webhook secret not configured"), 500

    # signature covers the exact bytes, so read them before any JSON parsing
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    try:
        result = PaymentWebhookProcessor().handle_event(payload, sig_header)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Storage error while processing webhook")
        return jsonify(error="Temporary failure, please retry"), 500

    return jsonify(result.to_dict()), 200
