"""
Error taxonomy for the reservation and payment core.

Each exception carries the HTTP status the routes answer with and a stable
``code`` clients can switch on.
"""


class BookingCoreError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class SlotConflict(BookingCoreError):
    """Slot is actively held or booked by someone else."""

    status_code = 409
    code = "SLOT_UNAVAILABLE"


class InvalidTransition(BookingCoreError):
    status_code = 409
    code = "INVALID_TRANSITION"


class ReservationNotFound(BookingCoreError):
    status_code = 404
    code = "RESERVATION_NOT_FOUND"


class PaymentAttemptNotFound(BookingCoreError):
    status_code = 404
    code = "PAYMENT_NOT_FOUND"


class InvalidSignature(BookingCoreError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class InvalidEvent(BookingCoreError):
    status_code = 400
    code = "INVALID_EVENT"


class AmountMismatch(BookingCoreError):
    """Paid amount differs from the expected amount. Never reconciled automatically."""

    status_code = 400
    code = "AMOUNT_MISMATCH"


class BookingConflict(BookingCoreError):
    """Slot already has a live booking that belongs to a different payment."""

    status_code = 409
    code = "DOUBLE_BOOKING"

    def __init__(self, message, existing_booking_id=None, **details):
        super().__init__(message, **details)
        self.existing_booking_id = existing_booking_id


class RetryLater(BookingCoreError):
    """Store state moved underneath us; the caller should retry the whole operation."""

    status_code = 503
    code = "RETRY_LATER"
