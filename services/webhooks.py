"""
Payment webhook processing.

The gateway is an untrusted, at-least-once event source: the same event may
arrive twice, concurrently, out of order, or never. Every step below is an
idempotent read or a conditional write, so replaying an event changes nothing
after the first successful run.

Confirmed-payment flow:

1. verify the signature over the raw body
2. parse into a known event type
3. idempotency gate on gateway_payment_id: already booked -> done
4. find the attempt by order_id and record gateway_payment_id (first seen)
5. amount/currency must match exactly, otherwise fail + review
6. no reservation -> legacy path straight to the materializer
7. lapsed reservation -> accept only if the slot is still free
8. confirm reservation + attempt, then materialize the booking
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking, BookingStatus
from models.payment import PaymentStatus
from models.reservation import Reservation, ReservationStatus
from security.webhook_signature import verify_stripe_signature
from services import ledger
from services.errors import (
    AmountMismatch,
    BookingConflict,
    InvalidSignature,
    PaymentAttemptNotFound,
    SlotConflict,
)
from services.events import PaymentConfirmed, PaymentFailed, PendingEvent, UnhandledEvent, parse_event
from services.materializer import BookingMaterializer
from services.reservations import SlotReservationManager
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)


class Outcome:
    BOOKED = "booked"
    ALREADY_PROCESSED = "already_processed"
    CONFLICT = "conflict"
    PAYMENT_FAILED = "payment_failed"
    PENDING = "pending"
    IGNORED = "ignored"


@dataclass
class WebhookResult:
    outcome: str
    order_id: Optional[str] = None
    booking_id: Optional[int] = None
    message: str = ""

    def to_dict(self):
        return {
            "received": True,
            "outcome": self.outcome,
            "order_id": self.order_id,
            "booking_id": self.booking_id,
            "message": self.message,
        }


@dataclass
class BookingStatusView:
    order_id: str
    overall: str
    message: str
    reservation: Optional[dict] = None
    payment: Optional[dict] = None
    booking: Optional[dict] = None

    def to_dict(self):
        return {
            "order_id": self.order_id,
            "status": self.overall,
            "message": self.message,
            "reservation": self.reservation,
            "payment": self.payment,
            "booking": self.booking,
        }


_STATUS_MESSAGES = {
    "SLOT_HELD": "Slot reserved, waiting for payment...",
    "PAYMENT_PENDING": "Payment in progress...",
    "PROCESSING": "Payment successful, confirming your booking...",
    "COMPLETED": "Booking confirmed!",
    "FAILED": "Payment failed. Please try again.",
    "EXPIRED": "Slot reservation expired. Please book again.",
    "NEEDS_REVIEW": "We received your payment but could not confirm this slot. Our team will contact you.",
}


class PaymentWebhookProcessor:
    def __init__(self, reservations=None, materializer=None, clock=utcnow):
        self.clock = clock
        self.reservations = reservations or SlotReservationManager(clock=clock)
        self.materializer = materializer or BookingMaterializer(self.reservations, clock=clock)

    # ---------- entry point ----------

    def handle_event(self, raw_body, signature_header, secret=None):
        try:
            verify_stripe_signature(raw_body, signature_header, secret=secret)
        except InvalidSignature:
            logger.warning("Rejected webhook with invalid signature")
            log_event("WEBHOOK_SIGNATURE_INVALID", entity="webhook",
                      metadata={"has_signature": bool(signature_header)})
            raise

        event = parse_event(raw_body)

        if isinstance(event, PaymentConfirmed):
            return self.handle_confirmed(event)
        if isinstance(event, PaymentFailed):
            return self.handle_failed(event)
        if isinstance(event, PendingEvent):
            logger.info("Checkout %s completed, payment not settled yet", event.order_id)
            return WebhookResult(Outcome.PENDING, event.order_id, message="Awaiting payment settlement")

        logger.info("Unhandled webhook event %s (%s)", event.event_type, event.event_id)
        return WebhookResult(Outcome.IGNORED, message=f"Event {event.event_type} received but not handled")

    # ---------- payment confirmed ----------

    def handle_confirmed(self, event: PaymentConfirmed):
        order_id = event.order_id
        logger.info("Payment confirmed: order=%s payment=%s amount=%s %s",
                    order_id, event.gateway_payment_id, event.amount, event.currency)

        # idempotency gate
        attempt = ledger.get_by_gateway_id(event.gateway_payment_id)
        if attempt is not None and attempt.order_id != order_id:
            # a gateway id we already tied to another order: never book twice on it
            ledger.flag_for_review(attempt.id, f"gateway_id_reused_by:{order_id}")
            return WebhookResult(Outcome.CONFLICT, order_id, message="Payment id belongs to another order")
        if attempt is not None and attempt.booking_id:
            logger.info("Payment %s already processed (booking=%s)", event.gateway_payment_id, attempt.booking_id)
            return WebhookResult(Outcome.ALREADY_PROCESSED, attempt.order_id, attempt.booking_id,
                                 "Payment already processed")

        if attempt is None:
            attempt = ledger.get_by_order(order_id)
            if attempt is None:
                logger.error("Payment record not found for order %s", order_id)
                raise PaymentAttemptNotFound("Payment record not found", order_id=order_id)
            duplicate = self._record_first_seen(attempt, event)
            if duplicate is not None:
                return duplicate

        if attempt.amount != event.amount or attempt.currency.upper() != event.currency:
            self._reject_amount(attempt, event)

        reservation = Reservation.query.filter_by(order_id=order_id).populate_existing().first()
        if reservation is None:
            return self._confirm_legacy(attempt, event)

        if reservation.status == ReservationStatus.BOOKED:
            return self._materialize(reservation, attempt, event)

        if reservation.status in (ReservationStatus.EXPIRED, ReservationStatus.FAILED):
            late = self._accept_late(reservation, attempt, event)
            if late is not None:
                return late
            confirmed_now = True
        else:
            reservation = self.reservations.advance(order_id, ReservationStatus.PAYMENT_CONFIRMED,
                                                    payment_id=event.gateway_payment_id, commit=False)
            if reservation.status in (ReservationStatus.PAYMENT_CONFIRMED, ReservationStatus.BOOKED):
                confirmed_now = ledger.mark_success(attempt.id, now=self.clock(), commit=False)
                db.session.commit()
            else:
                # lapsed hold was pre-empted by a new claim after the read above
                db.session.commit()
                late = self._accept_late(reservation, attempt, event)
                if late is not None:
                    return late
                confirmed_now = True

        if confirmed_now:
            log_event("PAYMENT_CONFIRMED", entity="payment", entity_id=attempt.id,
                      metadata={"order_id": order_id, "gateway_payment_id": event.gateway_payment_id})
        reservation = Reservation.query.filter_by(order_id=order_id).populate_existing().first()
        return self._materialize(reservation, attempt, event)

    def _record_first_seen(self, attempt, event):
        try:
            stored = ledger.record_gateway_payment_id(attempt.id, event.gateway_payment_id)
        except IntegrityError:
            # a concurrent delivery stored the same id on this attempt, or the id is on another order
            owner = ledger.get_by_gateway_id(event.gateway_payment_id)
            if owner is not None and owner.id == attempt.id:
                return None
            return WebhookResult(Outcome.CONFLICT, attempt.order_id, message="Payment id belongs to another order")

        if stored:
            return None

        current = ledger.get_by_order(attempt.order_id)
        if current.gateway_payment_id == event.gateway_payment_id:
            return None

        # A second, different payment for one order: keep the money on record, book nothing new.
        logger.error("Duplicate charge for order %s: recorded %s, received %s",
                     attempt.order_id, current.gateway_payment_id, event.gateway_payment_id)
        ledger.flag_for_review(
            attempt.id, f"duplicate_charge:{event.gateway_payment_id}:{event.amount}", commit=False
        )
        log_event("DUPLICATE_CHARGE", entity="payment", entity_id=attempt.id,
                  metadata={"order_id": attempt.order_id, "recorded": current.gateway_payment_id,
                            "received": event.gateway_payment_id, "amount": event.amount})
        return WebhookResult(Outcome.CONFLICT, attempt.order_id, current.booking_id,
                             "A different payment was already recorded for this order; flagged for refund")

    def _reject_amount(self, attempt, event):
        logger.error("Payment amount mismatch for order %s: expected %s %s, received %s %s",
                     attempt.order_id, attempt.amount, attempt.currency, event.amount, event.currency)
        ledger.mark_failed(attempt.id, now=self.clock(), commit=False)
        ledger.flag_for_review(
            attempt.id, f"amount_mismatch:expected={attempt.amount}{attempt.currency}:"
                        f"received={event.amount}{event.currency}", commit=False
        )
        log_event("PAYMENT_AMOUNT_MISMATCH", entity="payment", entity_id=attempt.id,
                  metadata={"order_id": attempt.order_id, "expected": attempt.amount,
                            "received": event.amount, "currency": event.currency})
        if attempt.status != PaymentStatus.SUCCESS:
            self.reservations.release(attempt.order_id, reason="payment amount mismatch")
        raise AmountMismatch("Payment amount mismatch", order_id=attempt.order_id)

    def _accept_late(self, reservation, attempt, event):
        """
        Payment arrived for a hold that already lapsed or failed. Book it only
        if nobody else has taken the slot since; otherwise keep the payment and
        report the conflict. Returns a result when the payment cannot be booked.
        """
        order_id = reservation.order_id
        logger.warning("Late payment for %s reservation (order=%s)", reservation.status, order_id)

        taken_by = self._slot_taken_by(reservation)
        if taken_by is None:
            try:
                ledger.mark_success(attempt.id, now=self.clock(), commit=False)
                self.reservations.reinstate(order_id, payment_id=event.gateway_payment_id, commit=False)
                db.session.commit()
                return None
            except SlotConflict:
                # reinstate rolled back; the slot was claimed between our check and the update
                taken_by = "reservation"

        ledger.mark_success(attempt.id, now=self.clock(), commit=False)
        ledger.flag_for_review(attempt.id, f"late_payment_slot_taken:{taken_by}", commit=False)
        log_event("LATE_PAYMENT_CONFLICT", entity="payment", entity_id=attempt.id,
                  metadata={"order_id": order_id, "taken_by": taken_by,
                            "gateway_payment_id": event.gateway_payment_id})
        logger.error("Late payment for order %s kept without booking; slot taken by %s", order_id, taken_by)
        return WebhookResult(
            Outcome.CONFLICT, order_id,
            message="This time slot was booked by another user. Your payment will be refunded.",
        )

    def _slot_taken_by(self, reservation):
        booking = (
            Booking.query
            .filter_by(provider_id=reservation.provider_id, date=reservation.date, time=reservation.time)
            .filter(Booking.status != BookingStatus.CANCELLED)
            .first()
        )
        if booking is not None:
            attempt = ledger.get_by_order(reservation.order_id)
            if attempt is not None and booking.payment_attempt_id == attempt.id:
                return None
            return f"booking:{booking.id}"
        holder = self.reservations.find_active_holder(reservation.provider_id, reservation.date, reservation.time)
        if holder is not None and holder.order_id != reservation.order_id:
            return f"reservation:{holder.id}"
        return None

    def _confirm_legacy(self, attempt, event):
        logger.warning("No reservation for order %s - legacy payment flow", attempt.order_id)
        if ledger.mark_success(attempt.id, now=self.clock()):
            log_event("PAYMENT_CONFIRMED", entity="payment", entity_id=attempt.id,
                      metadata={"order_id": attempt.order_id, "gateway_payment_id": event.gateway_payment_id,
                                "legacy": True})
        try:
            booking = self.materializer.materialize_legacy(ledger.get_by_order(attempt.order_id))
        except BookingConflict as exc:
            return WebhookResult(Outcome.CONFLICT, attempt.order_id, message=exc.message)
        return WebhookResult(Outcome.BOOKED, attempt.order_id, booking.id,
                             "Payment processed and session created (legacy)")

    def _materialize(self, reservation, attempt, event):
        try:
            booking = self.materializer.materialize(reservation)
        except BookingConflict as exc:
            return WebhookResult(Outcome.CONFLICT, reservation.order_id, message=exc.message)
        return WebhookResult(Outcome.BOOKED, reservation.order_id, booking.id,
                             "Payment processed and session created")

    # ---------- payment failed ----------

    def handle_failed(self, event: PaymentFailed):
        order_id = event.order_id
        logger.info("Payment failed: order=%s reason=%s", order_id, event.reason)

        attempt = ledger.get_by_order(order_id)
        if attempt is None:
            logger.info("Failure event for unknown order %s ignored", order_id)
            return WebhookResult(Outcome.IGNORED, order_id, message="Unknown order")

        if attempt.status == PaymentStatus.SUCCESS:
            # out-of-order delivery: a confirmation already won
            return WebhookResult(Outcome.ALREADY_PROCESSED, order_id, attempt.booking_id,
                                 "Payment already confirmed")

        failed_now = ledger.mark_failed(attempt.id, now=self.clock())
        released = self.reservations.release(order_id, reason=event.reason or "payment failed")
        if failed_now or released:
            log_event("PAYMENT_FAILED", entity="payment", entity_id=attempt.id,
                      metadata={"order_id": order_id, "reason": event.reason, "released": released})
        return WebhookResult(Outcome.PAYMENT_FAILED, order_id,
                             message="Payment failure recorded and slot released")

    # ---------- polling read model ----------

    def status(self, order_id):
        attempt = ledger.get_by_order(order_id)
        if attempt is None:
            raise PaymentAttemptNotFound("Payment not found", order_id=order_id)
        reservation = Reservation.query.filter_by(order_id=order_id).first()
        booking = db.session.get(Booking, attempt.booking_id) if attempt.booking_id else None

        if booking is not None:
            overall = "COMPLETED"
        elif attempt.needs_review:
            overall = "NEEDS_REVIEW"
        elif attempt.status == PaymentStatus.SUCCESS:
            overall = "PROCESSING"
        elif attempt.status == PaymentStatus.FAILED:
            overall = "EXPIRED" if reservation is not None and reservation.status == ReservationStatus.EXPIRED else "FAILED"
        elif reservation is None:
            overall = "PAYMENT_PENDING"
        elif reservation.status == ReservationStatus.HELD:
            overall = "SLOT_HELD"
        elif reservation.status in (ReservationStatus.FAILED, ReservationStatus.EXPIRED):
            overall = reservation.status
        else:
            overall = "PAYMENT_PENDING"

        return BookingStatusView(
            order_id=order_id,
            overall=overall,
            message=_STATUS_MESSAGES[overall],
            reservation=reservation.to_dict() if reservation else None,
            payment=attempt.to_dict(),
            booking=booking.to_dict() if booking else None,
        )
