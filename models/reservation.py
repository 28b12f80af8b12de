from models.db import db
from utils.clock import utcnow


class ReservationStatus:
    HELD = "HELD"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    BOOKED = "BOOKED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    # rows covered by the partial unique index on the slot
    IN_FLIGHT = (HELD, PAYMENT_PENDING, PAYMENT_CONFIRMED)
    # statuses whose expires_at decides whether they still hold the slot
    EXPIRING = (HELD, PAYMENT_PENDING)
    TERMINAL = (BOOKED, FAILED, EXPIRED)

    # allowed forward moves; FAILED/EXPIRED are reachable from any non-terminal status
    TRANSITIONS = {
        HELD: (PAYMENT_PENDING, PAYMENT_CONFIRMED, FAILED, EXPIRED),
        PAYMENT_PENDING: (PAYMENT_CONFIRMED, FAILED, EXPIRED),
        PAYMENT_CONFIRMED: (BOOKED, FAILED, EXPIRED),
        BOOKED: (),
        FAILED: (),
        EXPIRED: (),
    }

    @classmethod
    def predecessors(cls, status):
        return tuple(s for s, nxt in cls.TRANSITIONS.items() if status in nxt)


class Reservation(db.Model):
    __tablename__ = "reservations"

    id = db.Column(db.Integer, primary_key=True)

    provider_id = db.Column(db.String(64), nullable=False, index=True)
    client_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False)
    time = db.Column(db.Time, nullable=False)

    # merchant order id, shared with payment_attempts
    order_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=ReservationStatus.HELD, index=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    payment_id = db.Column(db.String(255), nullable=True)  # gateway id, set on confirmation
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        # One in-flight claim per slot. BOOKED rows are guarded by the bookings index instead.
        db.Index(
            "uq_reservation_slot_in_flight",
            "provider_id", "date", "time",
            unique=True,
            sqlite_where=db.text("status IN ('HELD', 'PAYMENT_PENDING', 'PAYMENT_CONFIRMED')"),
            postgresql_where=db.text("status IN ('HELD', 'PAYMENT_PENDING', 'PAYMENT_CONFIRMED')"),
        ),
    )

    def holds_slot(self, now):
        if self.status == ReservationStatus.PAYMENT_CONFIRMED:
            return True
        return self.status in ReservationStatus.EXPIRING and self.expires_at > now

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "provider_id": self.provider_id,
            "client_id": self.client_id,
            "date": self.date.isoformat(),
            "time": self.time.strftime("%H:%M:%S"),
            "status": self.status,
            "expires_at": self.expires_at.isoformat(),
            "payment_id": self.payment_id,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
