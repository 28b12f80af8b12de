"""
Payment ledger: conditional updates on PaymentAttempt rows.

Each helper changes a row only when it is in the expected state and reports
whether it did, so callers can re-read instead of trusting what they saw
earlier.
"""

import logging

from sqlalchemy.exc import IntegrityError

from models import db
from models.payment import PaymentAttempt, PaymentStatus
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def get_by_order(order_id):
    return PaymentAttempt.query.filter_by(order_id=order_id).populate_existing().first()


def get_by_gateway_id(gateway_payment_id):
    if not gateway_payment_id:
        return None
    return PaymentAttempt.query.filter_by(gateway_payment_id=gateway_payment_id).populate_existing().first()


def _finish(changed, commit):
    if commit:
        db.session.commit()
    return bool(changed)


def record_gateway_payment_id(attempt_id, gateway_payment_id, commit=True):
    """
    First-seen write of the gateway id. Returns True if this call stored it.
    A unique violation means another attempt already owns the id.
    """
    try:
        changed = (
            PaymentAttempt.query
            .filter(PaymentAttempt.id == attempt_id, PaymentAttempt.gateway_payment_id.is_(None))
            .update({"gateway_payment_id": gateway_payment_id}, synchronize_session=False)
        )
        return _finish(changed, commit)
    except IntegrityError:
        db.session.rollback()
        logger.error("Gateway payment %s already recorded on another attempt", gateway_payment_id)
        raise


def mark_success(attempt_id, now=None, commit=True):
    """pending/failed -> success. A confirmed payment always wins over an earlier failure."""
    changed = (
        PaymentAttempt.query
        .filter(PaymentAttempt.id == attempt_id, PaymentAttempt.status != PaymentStatus.SUCCESS)
        .update({"status": PaymentStatus.SUCCESS, "completed_at": now or utcnow()},
                synchronize_session=False)
    )
    return _finish(changed, commit)


def mark_failed(attempt_id, now=None, commit=True):
    """pending -> failed. Never downgrades a captured payment."""
    changed = (
        PaymentAttempt.query
        .filter(PaymentAttempt.id == attempt_id, PaymentAttempt.status == PaymentStatus.PENDING)
        .update({"status": PaymentStatus.FAILED, "completed_at": now or utcnow()},
                synchronize_session=False)
    )
    return _finish(changed, commit)


def fail_if_pending(order_id, now=None, commit=True):
    """Close out an abandoned checkout: pending -> failed for this order."""
    changed = (
        PaymentAttempt.query
        .filter(PaymentAttempt.order_id == order_id, PaymentAttempt.status == PaymentStatus.PENDING)
        .update({"status": PaymentStatus.FAILED, "completed_at": now or utcnow()},
                synchronize_session=False)
    )
    return _finish(changed, commit)


def flag_for_review(attempt_id, reason, commit=True):
    changed = (
        PaymentAttempt.query
        .filter(PaymentAttempt.id == attempt_id)
        .update({"needs_review": True, "review_reason": reason[:255]}, synchronize_session=False)
    )
    logger.warning("Payment attempt %s flagged for review: %s", attempt_id, reason)
    return _finish(changed, commit)


def link_booking(attempt_id, booking_id, commit=True):
    changed = (
        PaymentAttempt.query
        .filter(PaymentAttempt.id == attempt_id, PaymentAttempt.booking_id.is_(None))
        .update({"booking_id": booking_id}, synchronize_session=False)
    )
    return _finish(changed, commit)


def review_queue(limit=200):
    return (
        PaymentAttempt.query
        .filter_by(needs_review=True)
        .order_by(PaymentAttempt.created_at.desc())
        .limit(limit)
        .all()
    )
