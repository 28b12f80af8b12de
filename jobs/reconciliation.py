"""
Reconciliation sweep.

Repairs what dropped or crashed webhook deliveries leave behind:

- PAYMENT_CONFIRMED reservations that never got their Booking
- HELD / PAYMENT_PENDING holds past expires_at (slot freed, pending attempt failed)
- pending payment attempts that no live reservation backs any more

The sweep keeps no memory between ticks and may run on several instances at
once; every step is a conditional update or an idempotent materialization.
One bad row is counted and skipped, never allowed to stop the batch.
"""

import logging
import time as _time
from dataclasses import asdict, dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.payment import PaymentAttempt, PaymentStatus
from models.reservation import Reservation, ReservationStatus
from services import ledger
from services.errors import BookingConflict
from services.materializer import BookingMaterializer
from services.reservations import SlotReservationManager
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    materialized: int = 0
    conflicts: int = 0
    expired: int = 0
    payments_failed: int = 0
    abandoned_payments: int = 0
    errors: int = 0

    def to_dict(self):
        return asdict(self)


class ReconciliationSweep:
    def __init__(self, reservations=None, materializer=None, clock=utcnow):
        config = current_app.config
        self.clock = clock
        self.reservations = reservations or SlotReservationManager(clock=clock)
        self.materializer = materializer or BookingMaterializer(self.reservations, clock=clock)
        self.lookback = timedelta(hours=config.get("RECONCILE_LOOKBACK_HOURS", 24))
        self.batch_size = config.get("RECONCILE_BATCH_SIZE", 50)
        self.abandoned_after = timedelta(minutes=config.get("ABANDONED_PAYMENT_MINUTES", 10))

    def run(self):
        """One tick. Returns a SweepReport."""
        report = SweepReport()
        started = _time.monotonic()

        self._materialize_confirmed(report)
        self._expire_lapsed_holds(report)
        self._fail_abandoned_payments(report)

        elapsed_ms = int((_time.monotonic() - started) * 1000)
        if any(asdict(report).values()):
            logger.info("Reconciliation sweep finished in %sms: %s", elapsed_ms, report.to_dict())
            log_event("SWEEP_COMPLETED", entity="sweep", metadata=report.to_dict())
        else:
            logger.debug("Reconciliation sweep: nothing to do (%sms)", elapsed_ms)
        return report

    # ---------- phase 1: confirmed but never booked ----------

    def _materialize_confirmed(self, report):
        # rows still PAYMENT_CONFIRMED after their pass are paged past with the offset
        since = self.clock() - self.lookback
        stuck = 0
        recovered = 0
        while recovered < self.batch_size:
            order_ids = [
                row.order_id for row in
                Reservation.query
                .filter(Reservation.status == ReservationStatus.PAYMENT_CONFIRMED,
                        Reservation.updated_at >= since)
                .order_by(Reservation.updated_at.asc(), Reservation.id.asc())
                .offset(stuck)
                .limit(self.batch_size)
                .all()
            ]
            if not order_ids:
                break
            logger.info("Found %s confirmed reservations without a booking", len(order_ids))

            for order_id in order_ids:
                if self._recover_one(order_id, report):
                    recovered += 1
                else:
                    stuck += 1

    def _recover_one(self, order_id, report):
        """Returns True once the reservation has left PAYMENT_CONFIRMED."""
        try:
            # re-read: a webhook may have finished this one since the scan
            reservation = Reservation.query.filter_by(order_id=order_id).populate_existing().first()
            if reservation is None or reservation.status != ReservationStatus.PAYMENT_CONFIRMED:
                return True
            attempt = ledger.get_by_order(order_id)
            if attempt is None or attempt.status != PaymentStatus.SUCCESS:
                logger.error("Confirmed reservation %s has no successful payment (order=%s)",
                             reservation.id, order_id)
                report.errors += 1
                return False

            booking = self.materializer.materialize(reservation)
            report.materialized += 1
            logger.info("Recovered booking %s for order %s", booking.id, order_id)
            return True
        except BookingConflict:
            # durably recorded by the materializer
            report.conflicts += 1
            return True
        except Exception:
            db.session.rollback()
            report.errors += 1
            logger.exception("Recovery failed for order %s", order_id)
            return False

    # ---------- phase 2: lapsed holds ----------

    def _expire_lapsed_holds(self, report):
        now = self.clock()
        rows = (
            Reservation.query
            .filter(Reservation.status.in_(ReservationStatus.EXPIRING),
                    Reservation.expires_at <= now)
            .order_by(Reservation.expires_at.asc())
            .limit(self.batch_size)
            .all()
        )
        targets = [(row.id, row.order_id) for row in rows]

        for reservation_id, order_id in targets:
            try:
                expired = self.reservations.expire_if_lapsed(reservation_id, now=now, commit=False)
                failed = ledger.fail_if_pending(order_id, now=now, commit=False)
                if expired:
                    log_event("RESERVATION_EXPIRED", entity="reservation", entity_id=reservation_id,
                              metadata={"order_id": order_id, "payment_failed": failed}, commit=False)
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                report.errors += 1
                logger.exception("Could not expire reservation %s", reservation_id)
                continue

            if expired:
                report.expired += 1
            if failed:
                report.payments_failed += 1

    # ---------- phase 3: orphaned pending payments ----------

    def _fail_abandoned_payments(self, report):
        now = self.clock()
        cutoff = now - self.abandoned_after
        rows = (
            PaymentAttempt.query
            .filter(PaymentAttempt.status == PaymentStatus.PENDING,
                    PaymentAttempt.created_at <= cutoff)
            .order_by(PaymentAttempt.created_at.asc())
            .limit(self.batch_size)
            .all()
        )
        candidates = [(row.id, row.order_id) for row in rows]

        for attempt_id, order_id in candidates:
            try:
                reservation = Reservation.query.filter_by(order_id=order_id).first()
                if reservation is not None and reservation.holds_slot(now):
                    continue
                if ledger.fail_if_pending(order_id, now=now):
                    report.abandoned_payments += 1
                    logger.info("Abandoned payment attempt %s marked failed (order=%s)", attempt_id, order_id)
            except SQLAlchemyError:
                db.session.rollback()
                report.errors += 1
                logger.exception("Could not close abandoned payment %s", attempt_id)


def run_forever(interval_minutes=None, clock=utcnow):
    """Blocking loop for a dedicated worker process. Store errors wait for the next tick."""
    interval = interval_minutes or current_app.config.get("RECONCILE_INTERVAL_MINUTES", 5)
    logger.info("Reconciliation loop started (every %s min)", interval)
    while True:
        try:
            ReconciliationSweep(clock=clock).run()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Reconciliation tick failed; retrying next interval")
        _time.sleep(interval * 60)
