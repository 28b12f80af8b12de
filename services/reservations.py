"""
Slot reservation state machine.

    HELD -> PAYMENT_PENDING -> PAYMENT_CONFIRMED -> BOOKED
      \\___________\\__________________\\_____-> FAILED | EXPIRED

Every change is a conditional UPDATE keyed on the current status, and the
in-flight partial unique index on (provider_id, date, time) decides who wins a
concurrent claim. Nothing here keeps state between calls; each operation
re-reads the store.
"""

import logging
import time as _time
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.reservation import Reservation, ReservationStatus
from models.booking import Booking, BookingStatus
from models.payment import PaymentAttempt, PaymentStatus
from services import ledger
from services.errors import InvalidTransition, ReservationNotFound, SlotConflict
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)

SLOT_HOLD_MINUTES = 5


class SlotReservationManager:
    def __init__(self, clock=utcnow, hold_minutes=None, extension_minutes=None, max_retries=None):
        self.clock = clock
        config = current_app.config
        self.hold_minutes = hold_minutes or config.get("SLOT_HOLD_MINUTES", SLOT_HOLD_MINUTES)
        self.extension_minutes = extension_minutes or config.get("SLOT_PAYMENT_EXTENSION_MINUTES", 10)
        self.max_retries = max_retries if max_retries is not None else config.get("CLAIM_MAX_RETRIES", 3)

    # ---------- reads ----------

    def get(self, order_id):
        reservation = Reservation.query.filter_by(order_id=order_id).first()
        if reservation is None:
            raise ReservationNotFound("Reservation not found", order_id=order_id)
        return reservation

    def find_active_holder(self, provider_id, date, time):
        """The reservation currently holding the slot, or None."""
        now = self.clock()
        rows = (
            Reservation.query
            .filter_by(provider_id=provider_id, date=date, time=time)
            .filter(Reservation.status.in_(ReservationStatus.IN_FLIGHT))
            .all()
        )
        for row in rows:
            if row.holds_slot(now):
                return row
        return None

    # ---------- claim ----------

    def claim(self, provider_id, client_id, date, time, order_id, amount,
              currency=None, contact_email=None):
        """
        Reserve (provider_id, date, time) for client_id under order_id.

        Creates the HELD reservation and its pending PaymentAttempt in one
        transaction. Replaying the same (client_id, order_id) returns the
        existing reservation. Raises SlotConflict when someone else holds it.
        Returns (reservation, created).
        """
        currency = (currency or current_app.config.get("DEFAULT_CURRENCY", "INR")).upper()

        for try_no in range(self.max_retries + 1):
            existing = self._existing_for_order(order_id, client_id, provider_id, date, time)
            if existing is not None:
                return existing, False

            holder = self._current_holder(provider_id, date, time)
            if holder is not None:
                if holder.client_id == client_id and holder.order_id == order_id:
                    return holder, False
                self._record_conflict(provider_id, date, time, order_id, holder)
                raise SlotConflict(
                    "This time slot is already booked by another user. Please select another time."
                )

            booked = self._live_booking(provider_id, date, time)
            if booked is not None:
                logger.info("Slot %s %s %s already booked (booking=%s)", provider_id, date, time, booked.id)
                raise SlotConflict(
                    "This time slot is already booked by another user. Please select another time."
                )

            now = self.clock()
            reservation = Reservation(
                provider_id=provider_id,
                client_id=client_id,
                date=date,
                time=time,
                order_id=order_id,
                status=ReservationStatus.HELD,
                expires_at=now + timedelta(minutes=self.hold_minutes),
                created_at=now,
                updated_at=now,
            )
            try:
                db.session.add(reservation)
                db.session.flush()
                db.session.add(PaymentAttempt(
                    order_id=order_id,
                    reservation_id=reservation.id,
                    amount=int(amount),
                    currency=currency,
                    status=PaymentStatus.PENDING,
                    provider_id=provider_id,
                    client_id=client_id,
                    date=date,
                    time=time,
                    contact_email=contact_email,
                    created_at=now,
                ))
                db.session.commit()
            except IntegrityError:
                # another claim for this slot (or this order id) committed first
                db.session.rollback()
                logger.info("Claim race on %s %s %s (order=%s, try=%s)", provider_id, date, time, order_id, try_no)
                if try_no < self.max_retries:
                    _time.sleep(0.05 * (try_no + 1))
                continue

            logger.info("Slot held: order=%s provider=%s %s %s until %s",
                        order_id, provider_id, date, time, reservation.expires_at)
            log_event("RESERVATION_CLAIMED", entity="reservation", entity_id=reservation.id,
                      metadata={"order_id": order_id, "expires_at": reservation.expires_at.isoformat()})
            return reservation, True

        # Lost every race and the winner disappeared each time; report it as taken.
        raise SlotConflict("Failed to reserve slot after multiple attempts. Please try again.")

    def _existing_for_order(self, order_id, client_id, provider_id, date, time):
        row = Reservation.query.filter_by(order_id=order_id).first()
        if row is None:
            return None
        same_claim = (row.client_id, row.provider_id, row.date, row.time) == (client_id, provider_id, date, time)
        if not same_claim:
            raise SlotConflict("Order id already used for a different reservation", order_id=order_id)
        if row.holds_slot(self.clock()) or row.status == ReservationStatus.BOOKED:
            return row
        raise SlotConflict(
            "Reservation for this order is no longer active. Please start a new booking.",
            order_id=order_id, status=row.status,
        )

    def _current_holder(self, provider_id, date, time):
        """
        Return the live holder of the slot, expiring any lapsed hold that still
        occupies the in-flight index so the new claim can take its place.
        """
        now = self.clock()
        holder = None
        rows = (
            Reservation.query
            .filter_by(provider_id=provider_id, date=date, time=time)
            .filter(Reservation.status.in_(ReservationStatus.IN_FLIGHT))
            .all()
        )
        for row in rows:
            if row.holds_slot(now):
                holder = row
            elif self.expire_if_lapsed(row.id, now=now, commit=False):
                ledger.fail_if_pending(row.order_id, now=now, commit=False)
                logger.info("Lapsed hold %s (order=%s) pre-empted by new claim", row.id, row.order_id)
        db.session.commit()
        return holder

    def _live_booking(self, provider_id, date, time):
        return (
            Booking.query
            .filter_by(provider_id=provider_id, date=date, time=time)
            .filter(Booking.status != BookingStatus.CANCELLED)
            .first()
        )

    def _record_conflict(self, provider_id, date, time, order_id, holder):
        logger.info("Slot conflict: order=%s wants %s %s %s held by order=%s (%s)",
                    order_id, provider_id, date, time, holder.order_id, holder.status)
        log_event("RESERVATION_CONFLICT", entity="reservation", entity_id=holder.id,
                  metadata={"order_id": order_id, "holder_status": holder.status})

    # ---------- transitions ----------

    def advance(self, order_id, new_status, payment_id=None, reason=None, commit=True):
        """
        Move the reservation to new_status if its current status is a valid
        predecessor. Otherwise a no-op that returns the current record, which
        makes duplicate calls harmless.
        """
        if new_status not in ReservationStatus.TRANSITIONS:
            raise InvalidTransition(f"Unknown reservation status {new_status}")

        values = {"status": new_status, "updated_at": self.clock()}
        if payment_id:
            values["payment_id"] = payment_id
        if reason:
            values["failure_reason"] = reason[:255]

        changed = (
            Reservation.query
            .filter(Reservation.order_id == order_id,
                    Reservation.status.in_(ReservationStatus.predecessors(new_status)))
            .update(values, synchronize_session=False)
        )
        if commit:
            db.session.commit()
        else:
            db.session.flush()

        reservation = (
            Reservation.query.filter_by(order_id=order_id)
            .populate_existing()
            .first()
        )
        if reservation is None:
            raise ReservationNotFound("Reservation not found", order_id=order_id)
        if changed:
            logger.info("Reservation %s -> %s (order=%s)", reservation.id, new_status, order_id)
        elif reservation.status != new_status:
            logger.debug("Reservation %s stays %s; %s not reachable", reservation.id, reservation.status, new_status)
        return reservation

    def mark_payment_pending(self, order_id):
        """Checkout opened: HELD -> PAYMENT_PENDING and give the payer extra time."""
        now = self.clock()
        reservation = self.get(order_id)
        if reservation.status == ReservationStatus.HELD:
            (
                Reservation.query
                .filter(Reservation.id == reservation.id,
                        Reservation.status == ReservationStatus.HELD,
                        Reservation.expires_at > now)
                .update({
                    "status": ReservationStatus.PAYMENT_PENDING,
                    "expires_at": reservation.expires_at + timedelta(minutes=self.extension_minutes),
                    "updated_at": now,
                }, synchronize_session=False)
            )
            db.session.commit()
        return Reservation.query.filter_by(id=reservation.id).populate_existing().first()

    def release(self, order_id, reason=None):
        """Mark the reservation FAILED unless it is already terminal. Returns True if it changed."""
        values = {"status": ReservationStatus.FAILED, "updated_at": self.clock()}
        if reason:
            values["failure_reason"] = reason[:255]
        changed = (
            Reservation.query
            .filter(Reservation.order_id == order_id,
                    Reservation.status.notin_(ReservationStatus.TERMINAL))
            .update(values, synchronize_session=False)
        )
        db.session.commit()
        if changed:
            logger.info("Reservation released (order=%s, reason=%s)", order_id, reason)
        return bool(changed)

    def reinstate(self, order_id, payment_id=None, commit=True):
        """
        Accept a late payment for an EXPIRED/FAILED reservation by moving it to
        PAYMENT_CONFIRMED. The in-flight index rejects this if someone else has
        claimed the slot meanwhile; that surfaces as SlotConflict.
        """
        values = {"status": ReservationStatus.PAYMENT_CONFIRMED, "updated_at": self.clock(),
                  "failure_reason": None}
        if payment_id:
            values["payment_id"] = payment_id
        try:
            changed = (
                Reservation.query
                .filter(Reservation.order_id == order_id,
                        Reservation.status.in_((ReservationStatus.EXPIRED, ReservationStatus.FAILED)))
                .update(values, synchronize_session=False)
            )
            if commit:
                db.session.commit()
            else:
                db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise SlotConflict("Slot was claimed by another client after this hold lapsed", order_id=order_id)

        reservation = Reservation.query.filter_by(order_id=order_id).populate_existing().first()
        if reservation is None:
            raise ReservationNotFound("Reservation not found", order_id=order_id)
        if changed:
            logger.warning("Lapsed reservation %s reinstated by late payment (order=%s)", reservation.id, order_id)
        return reservation

    def expire_if_lapsed(self, reservation_id, now=None, commit=True):
        """HELD/PAYMENT_PENDING past expires_at -> EXPIRED. Returns True if this call flipped it."""
        now = now or self.clock()
        changed = (
            Reservation.query
            .filter(Reservation.id == reservation_id,
                    Reservation.status.in_(ReservationStatus.EXPIRING),
                    Reservation.expires_at <= now)
            .update({"status": ReservationStatus.EXPIRED, "updated_at": now}, synchronize_session=False)
        )
        if commit:
            db.session.commit()
        return bool(changed)
