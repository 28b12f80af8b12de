from models.db import db
from utils.clock import utcnow


class BookingStatus:
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    provider_id = db.Column(db.String(64), nullable=False, index=True)
    client_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False)
    time = db.Column(db.Time, nullable=False)

    payment_attempt_id = db.Column(
        db.Integer, db.ForeignKey("payment_attempts.id"), nullable=False, unique=True, index=True
    )

    status = db.Column(db.String(20), nullable=False, default=BookingStatus.CONFIRMED)
    # status values: CONFIRMED, CANCELLED (cancellation is owned by the wider application)

    notification_sent_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # Hard business rule: one live booking per provider slot (prevents double booking)
        db.Index(
            "uq_booking_slot_live",
            "provider_id", "date", "time",
            unique=True,
            sqlite_where=db.text("status != 'CANCELLED'"),
            postgresql_where=db.text("status != 'CANCELLED'"),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "client_id": self.client_id,
            "date": self.date.isoformat(),
            "time": self.time.strftime("%H:%M:%S"),
            "payment_attempt_id": self.payment_attempt_id,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }
