from .db import db
from .audit_log import AuditLog
from .reservation import Reservation, ReservationStatus
from .payment import PaymentAttempt, PaymentStatus
from .booking import Booking, BookingStatus
from .outbox_task import OutboxTask, OutboxStatus
