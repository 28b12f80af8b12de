"""
Booking materialization.

Turns a PAYMENT_CONFIRMED reservation (or, for legacy orders, a successful
payment attempt with stored slot details) into exactly one Booking.

The unique indexes on the live slot and on payment_attempt_id decide every
race here, including orders that never had a reservation.
An IntegrityError is never an answer by itself; it is followed by a re-read
that tells our own concurrent insert apart from somebody else's booking.
"""

import logging

from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking, BookingStatus
from models.payment import PaymentStatus
from models.reservation import Reservation, ReservationStatus
from services import ledger, outbox
from services.errors import (
    BookingConflict,
    InvalidTransition,
    PaymentAttemptNotFound,
    ReservationNotFound,
    RetryLater,
)
from services.reservations import SlotReservationManager
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)


class BookingMaterializer:
    def __init__(self, reservations=None, clock=utcnow):
        self.clock = clock
        self.reservations = reservations or SlotReservationManager(clock=clock)

    def materialize(self, reservation):
        """
        Create the Booking for a confirmed reservation. Safe to call any number
        of times; returns the one Booking or raises BookingConflict.
        Refuses reservations that are not PAYMENT_CONFIRMED (or already BOOKED)
        and payments that have not succeeded.
        """
        order_id = reservation.order_id
        reservation = Reservation.query.filter_by(order_id=order_id).populate_existing().first()
        if reservation is None:
            raise ReservationNotFound("Reservation not found", order_id=order_id)
        attempt = ledger.get_by_order(order_id)
        if attempt is None:
            raise PaymentAttemptNotFound("Payment record not found", order_id=order_id)

        if reservation.status not in (ReservationStatus.PAYMENT_CONFIRMED, ReservationStatus.BOOKED):
            raise InvalidTransition("Reservation is not confirmed for booking",
                                    order_id=order_id, status=reservation.status)
        if attempt.status != PaymentStatus.SUCCESS:
            raise InvalidTransition("Payment has not succeeded", order_id=order_id, payment_status=attempt.status)

        slot = (reservation.provider_id, reservation.client_id, reservation.date, reservation.time)
        return self._materialize(attempt, slot, order_id=reservation.order_id, has_reservation=True)

    def materialize_legacy(self, attempt):
        """
        Degraded path for orders that never had a reservation: only the bookings
        index guards the slot here.
        """
        if not attempt.has_slot_details:
            ledger.flag_for_review(attempt.id, "legacy_missing_slot_details")
            raise BookingConflict("Payment has no slot details to book", order_id=attempt.order_id)

        logger.warning("Materializing legacy payment %s without a reservation", attempt.order_id)
        slot = (attempt.provider_id, attempt.client_id, attempt.date, attempt.time)
        return self._materialize(attempt, slot, order_id=attempt.order_id, has_reservation=False)

    # ---------- internals ----------

    def _materialize(self, attempt, slot, order_id, has_reservation):
        existing = self._booking_for_attempt(attempt)
        if existing is not None:
            self._finish_links(attempt.id, existing, order_id, has_reservation)
            return existing

        provider_id, client_id, date, time = slot
        booking = Booking(
            provider_id=provider_id,
            client_id=client_id,
            date=date,
            time=time,
            payment_attempt_id=attempt.id,
            status=BookingStatus.CONFIRMED,
            created_at=self.clock(),
        )
        db.session.add(booking)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            return self._resolve_conflict(attempt, slot, order_id, has_reservation)

        ledger.link_booking(attempt.id, booking.id, commit=False)
        if has_reservation:
            self.reservations.advance(order_id, ReservationStatus.BOOKED, commit=False)
        outbox.enqueue_booking_followups(booking, attempt, now=self.clock(), commit=False)
        try:
            db.session.commit()
        except IntegrityError:
            # lost the race at commit time on a backend that defers the check
            db.session.rollback()
            return self._resolve_conflict(attempt, slot, order_id, has_reservation)

        logger.info("Booking %s created for order %s (%s %s %s)", booking.id, order_id, provider_id, date, time)
        log_event("BOOKING_CREATED", entity="booking", entity_id=booking.id,
                  metadata={"order_id": order_id, "payment_attempt_id": attempt.id})
        return booking

    def _booking_for_attempt(self, attempt):
        if attempt.booking_id:
            booking = db.session.get(Booking, attempt.booking_id)
            if booking is not None:
                return booking
        return Booking.query.filter_by(payment_attempt_id=attempt.id).first()

    def _finish_links(self, attempt_id, booking, order_id, has_reservation):
        ledger.link_booking(attempt_id, booking.id, commit=False)
        if has_reservation:
            self.reservations.advance(order_id, ReservationStatus.BOOKED, commit=False)
        db.session.commit()

    def _resolve_conflict(self, attempt, slot, order_id, has_reservation):
        provider_id, client_id, date, time = slot

        own = Booking.query.filter_by(payment_attempt_id=attempt.id).first()
        if own is not None:
            logger.info("Booking %s already created by a concurrent call (order=%s)", own.id, order_id)
            self._finish_links(attempt.id, own, order_id, has_reservation)
            return own

        other = (
            Booking.query
            .filter_by(provider_id=provider_id, date=date, time=time)
            .filter(Booking.status != BookingStatus.CANCELLED)
            .first()
        )
        if other is None:
            # the conflicting row vanished (cancelled in between); let the caller retry
            raise RetryLater("Booking insert conflicted but no conflicting booking found", order_id=order_id)

        # Genuine double booking. Keep the payment, create nothing, hand it to an operator.
        logger.error("Double booking prevented: order %s lost slot %s %s %s to booking %s",
                     order_id, provider_id, date, time, other.id)
        ledger.flag_for_review(attempt.id, f"double_booking:booking={other.id}", commit=False)
        if has_reservation:
            self.reservations.advance(order_id, ReservationStatus.FAILED,
                                      reason="slot taken by another booking", commit=False)
        log_event("BOOKING_CONFLICT", entity="payment", entity_id=attempt.id,
                  metadata={"order_id": order_id, "existing_booking_id": other.id}, commit=False)
        db.session.commit()
        raise BookingConflict(
            "This time slot was just booked by another user",
            existing_booking_id=other.id,
            order_id=order_id,
        )
