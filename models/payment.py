from models.db import db
from utils.clock import utcnow


class PaymentStatus:
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentAttempt(db.Model):
    __tablename__ = "payment_attempts"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    # idempotency key for webhook replays; unique once set
    gateway_payment_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=True, index=True)

    amount = db.Column(db.Integer, nullable=False)  # smallest unit
    currency = db.Column(db.String(10), nullable=False, default="INR")
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING, index=True)
    booking_id = db.Column(
        db.Integer,
        db.ForeignKey("bookings.id", use_alter=True, name="fk_payment_attempts_booking_id"),
        nullable=True,
        index=True,
    )

    # slot details kept on the attempt itself so legacy orders without a reservation can still book
    provider_id = db.Column(db.String(64), nullable=True)
    client_id = db.Column(db.String(64), nullable=True)
    date = db.Column(db.Date, nullable=True)
    time = db.Column(db.Time, nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)

    needs_review = db.Column(db.Boolean, default=False, nullable=False, index=True)
    review_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    @property
    def has_slot_details(self):
        return all(v is not None for v in (self.provider_id, self.client_id, self.date, self.time))

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "booking_id": self.booking_id,
            "needs_review": self.needs_review,
            "review_reason": self.review_reason,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
