from models.db import db
from utils.clock import utcnow


class OutboxStatus:
    PENDING = "PENDING"
    DONE = "DONE"
    DEAD = "DEAD"


class OutboxTask(db.Model):
    __tablename__ = "outbox_tasks"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)
    kind = db.Column(db.String(64), nullable=False)  # e.g. booking_confirmation
    payload_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=OutboxStatus.PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    available_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    last_error = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint("booking_id", "kind", name="uq_outbox_booking_kind"),
    )
