"""
Outbox for post-booking follow-ups (confirmation email and anything else
registered with ``@handler``).

Tasks are written in the same transaction as the Booking, then drained by a
separate worker. A worker leases a task by pushing its ``available_at`` into
the future with a conditional update, so several workers can drain at once
and a crashed worker's lease simply runs out. A failing handler only ever
reschedules its own task; it never touches the Booking.
"""

import json
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking
from models.outbox_task import OutboxStatus, OutboxTask
from utils.clock import utcnow
from utils.emailer import send_email

logger = logging.getLogger(__name__)

BOOKING_CONFIRMATION = "booking_confirmation"

_handlers = {}


def handler(kind):
    def decorator(fn):
        _handlers[kind] = fn
        return fn
    return decorator


def enqueue(booking_id, kind, payload=None, now=None, commit=True):
    """Add a follow-up task. Enqueueing the same (booking, kind) twice is a no-op."""
    exists = OutboxTask.query.filter_by(booking_id=booking_id, kind=kind).first()
    if exists is not None:
        return exists
    task = OutboxTask(
        booking_id=booking_id,
        kind=kind,
        payload_json=json.dumps(payload, default=str) if payload else None,
        status=OutboxStatus.PENDING,
        available_at=now or utcnow(),
    )
    db.session.add(task)
    if commit:
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return OutboxTask.query.filter_by(booking_id=booking_id, kind=kind).first()
    return task


def enqueue_booking_followups(booking, attempt, now=None, commit=True):
    payload = {
        "order_id": attempt.order_id,
        "contact_email": attempt.contact_email,
        "amount": attempt.amount,
        "currency": attempt.currency,
    }
    return enqueue(booking.id, BOOKING_CONFIRMATION, payload, now=now, commit=commit)


def _lease(task_id, now, lease_seconds):
    leased = (
        OutboxTask.query
        .filter(OutboxTask.id == task_id,
                OutboxTask.status == OutboxStatus.PENDING,
                OutboxTask.available_at <= now)
        .update({
            "available_at": now + timedelta(seconds=lease_seconds),
            "attempts": OutboxTask.attempts + 1,
        }, synchronize_session=False)
    )
    db.session.commit()
    return bool(leased)


def drain_outbox(limit=50, clock=utcnow):
    """Run due follow-up tasks. Returns a dict of counts."""
    config = current_app.config
    max_attempts = config.get("OUTBOX_MAX_ATTEMPTS", 5)
    retry_seconds = config.get("OUTBOX_RETRY_SECONDS", 60)
    lease_seconds = config.get("OUTBOX_LEASE_SECONDS", 120)

    now = clock()
    due_ids = [
        row.id for row in
        OutboxTask.query
        .filter(OutboxTask.status == OutboxStatus.PENDING, OutboxTask.available_at <= now)
        .order_by(OutboxTask.available_at.asc())
        .limit(limit)
        .all()
    ]

    counts = {"done": 0, "retried": 0, "dead": 0, "skipped": 0}
    for task_id in due_ids:
        if not _lease(task_id, now, lease_seconds):
            counts["skipped"] += 1  # another worker got it
            continue

        task = db.session.get(OutboxTask, task_id, populate_existing=True)
        fn = _handlers.get(task.kind)
        try:
            if fn is None:
                raise LookupError(f"no handler registered for {task.kind}")
            payload = json.loads(task.payload_json) if task.payload_json else {}
            fn(task.booking_id, payload)
        except Exception as exc:
            db.session.rollback()
            task = db.session.get(OutboxTask, task_id, populate_existing=True)
            task.last_error = str(exc)[:500]
            if task.attempts >= max_attempts:
                task.status = OutboxStatus.DEAD
                counts["dead"] += 1
                logger.error("Outbox task %s (%s) dead after %s attempts: %s",
                             task.id, task.kind, task.attempts, exc)
            else:
                task.available_at = clock() + timedelta(seconds=retry_seconds * task.attempts)
                counts["retried"] += 1
                logger.warning("Outbox task %s (%s) failed, retry #%s: %s",
                               task.id, task.kind, task.attempts, exc)
            db.session.commit()
            continue

        task.status = OutboxStatus.DONE
        task.completed_at = clock()
        task.last_error = None
        db.session.commit()
        counts["done"] += 1

    if due_ids:
        logger.info("Outbox drained: %s", counts)
    return counts


@handler(BOOKING_CONFIRMATION)
def send_booking_confirmation(booking_id, payload):
    booking = db.session.get(Booking, booking_id)
    if booking is None or booking.notification_sent_at is not None:
        return

    to_email = payload.get("contact_email")
    if not to_email:
        logger.info("Booking %s has no contact email; confirmation skipped", booking_id)
        return

    amount = payload.get("amount") or 0
    currency = payload.get("currency") or ""
    body = (
        f"Your session is confirmed.\n\n"
        f"Date: {booking.date.isoformat()}\n"
        f"Time: {booking.time.strftime('%H:%M')}\n"
        f"Amount paid: {amount / 100:.2f} {currency}\n"
        f"Booking reference: {booking.id}\n"
    )
    send_email(to_email, "Your session is confirmed", body)

    # durable marker so a re-run after a crash does not email twice
    (
        Booking.query
        .filter(Booking.id == booking_id, Booking.notification_sent_at.is_(None))
        .update({"notification_sent_at": utcnow()}, synchronize_session=False)
    )
