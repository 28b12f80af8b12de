import pytest

from models import db
from models.audit_log import AuditLog
from models.booking import Booking
from models.payment import PaymentAttempt, PaymentStatus
from models.reservation import Reservation, ReservationStatus
from services.errors import AmountMismatch, InvalidEvent, InvalidSignature, PaymentAttemptNotFound
from services.webhooks import Outcome
from tests.helpers import (
    AMOUNT,
    SLOT_DATE,
    SLOT_TIME,
    checkout_completed,
    checkout_expired,
    encode,
    payment_intent_event,
    sign_payload,
)


def _attempt(order_id):
    return PaymentAttempt.query.filter_by(order_id=order_id).populate_existing().one()


def _reservation(order_id):
    return Reservation.query.filter_by(order_id=order_id).populate_existing().one()


# ---------- happy path and duplicates ----------

def test_confirmed_payment_books_the_slot(claim, deliver):
    claim(order_id="O1", client_id="C1")

    result = deliver(checkout_completed("O1", payment_intent="pay_123"))

    assert result.outcome == Outcome.BOOKED
    booking = Booking.query.one()
    assert result.booking_id == booking.id
    assert (booking.provider_id, booking.client_id, booking.date, booking.time) == (
        "provider_1", "C1", SLOT_DATE, SLOT_TIME)

    attempt = _attempt("O1")
    assert attempt.status == PaymentStatus.SUCCESS
    assert attempt.gateway_payment_id == "pay_123"
    assert attempt.booking_id == booking.id
    reservation = _reservation("O1")
    assert reservation.status == ReservationStatus.BOOKED
    assert reservation.payment_id == "pay_123"


def test_duplicate_delivery_returns_same_booking(claim, deliver):
    claim(order_id="O1")
    event = checkout_completed("O1", payment_intent="pay_123")

    first = deliver(event)
    second = deliver(event)

    assert second.outcome == Outcome.ALREADY_PROCESSED
    assert second.booking_id == first.booking_id
    assert Booking.query.count() == 1
    assert AuditLog.query.filter_by(action="PAYMENT_CONFIRMED").count() == 1


def test_payment_intent_event_after_checkout_event_is_a_replay(claim, deliver):
    claim(order_id="O1")
    first = deliver(checkout_completed("O1", payment_intent="pi_1"))

    second = deliver(payment_intent_event("O1", payment_intent="pi_1"))

    assert second.outcome == Outcome.ALREADY_PROCESSED
    assert second.booking_id == first.booking_id
    assert Booking.query.count() == 1


def test_concurrent_duplicate_that_missed_the_gate(claim, deliver, monkeypatch):
    claim(order_id="O1")
    event = checkout_completed("O1", payment_intent="pay_123")
    first = deliver(event)

    # the second delivery read the gateway id before the first one committed
    monkeypatch.setattr("services.ledger.get_by_gateway_id", lambda gateway_payment_id: None)
    second = deliver(event)

    assert second.outcome == Outcome.BOOKED
    assert second.booking_id == first.booking_id
    assert Booking.query.count() == 1


def test_payment_pending_reservation_is_booked(manager, claim, deliver):
    claim(order_id="O1")
    manager.mark_payment_pending("O1")

    assert deliver(checkout_completed("O1")).outcome == Outcome.BOOKED


def test_unpaid_checkout_completion_waits(claim, deliver):
    claim(order_id="O1")

    result = deliver(checkout_completed("O1", payment_status="unpaid"))

    assert result.outcome == Outcome.PENDING
    assert _reservation("O1").status == ReservationStatus.HELD
    assert _attempt("O1").status == PaymentStatus.PENDING


# ---------- rejected input ----------

def test_bad_signature_is_rejected_and_audited(processor, claim):
    claim(order_id="O1")
    body = encode(checkout_completed("O1"))

    with pytest.raises(InvalidSignature):
        processor.handle_event(body, sign_payload(body, secret="whsec_wrong"))
    with pytest.raises(InvalidSignature):
        processor.handle_event(body, None)

    assert Booking.query.count() == 0
    assert _attempt("O1").status == PaymentStatus.PENDING
    assert AuditLog.query.filter_by(action="WEBHOOK_SIGNATURE_INVALID").count() == 2


def test_tampered_body_is_rejected(processor, claim):
    claim(order_id="O1")
    body = encode(checkout_completed("O1"))
    header = sign_payload(body)

    with pytest.raises(InvalidSignature):
        processor.handle_event(encode(checkout_completed("O1", amount=1)), header)


def test_amount_mismatch_never_books(claim, deliver):
    claim(order_id="O1")

    with pytest.raises(AmountMismatch):
        deliver(checkout_completed("O1", amount=AMOUNT - 1))

    assert Booking.query.count() == 0
    attempt = _attempt("O1")
    assert attempt.status == PaymentStatus.FAILED
    assert attempt.needs_review is True
    assert attempt.review_reason.startswith("amount_mismatch")
    assert _reservation("O1").status == ReservationStatus.FAILED


def test_currency_mismatch_never_books(claim, deliver):
    claim(order_id="O1")

    with pytest.raises(AmountMismatch):
        deliver(checkout_completed("O1", currency="usd"))

    assert Booking.query.count() == 0


def test_confirmation_for_unknown_order(deliver):
    with pytest.raises(PaymentAttemptNotFound):
        deliver(checkout_completed("nope"))


def test_malformed_known_event(deliver):
    event = checkout_completed("O1")
    del event["data"]["object"]["payment_status"]

    with pytest.raises(InvalidEvent):
        deliver(event)


def test_unknown_event_type_is_acknowledged(deliver):
    result = deliver({"id": "evt_9", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert result.outcome == Outcome.IGNORED


# ---------- failures ----------

def test_failed_payment_releases_slot(claim, deliver):
    claim(order_id="O1", client_id="C1")

    result = deliver(payment_intent_event("O1", event_type="payment_intent.payment_failed",
                                          error_message="Your card was declined."))

    assert result.outcome == Outcome.PAYMENT_FAILED
    assert _attempt("O1").status == PaymentStatus.FAILED
    reservation = _reservation("O1")
    assert reservation.status == ReservationStatus.FAILED
    assert reservation.failure_reason == "Your card was declined."

    assert claim(order_id="O2", client_id="C2").status == ReservationStatus.HELD


def test_expired_checkout_releases_slot(claim, deliver):
    claim(order_id="O1")

    assert deliver(checkout_expired("O1")).outcome == Outcome.PAYMENT_FAILED
    assert _reservation("O1").status == ReservationStatus.FAILED


def test_failure_replay_writes_one_audit_row(claim, deliver):
    claim(order_id="O1")
    event = checkout_expired("O1")

    deliver(event)
    deliver(event)

    assert AuditLog.query.filter_by(action="PAYMENT_FAILED").count() == 1


def test_failure_after_success_is_ignored(claim, deliver):
    claim(order_id="O1")
    booked = deliver(checkout_completed("O1"))

    result = deliver(payment_intent_event("O1", event_type="payment_intent.payment_failed"))

    assert result.outcome == Outcome.ALREADY_PROCESSED
    assert result.booking_id == booked.booking_id
    assert _attempt("O1").status == PaymentStatus.SUCCESS
    assert _reservation("O1").status == ReservationStatus.BOOKED


def test_failure_for_unknown_order_is_ignored(deliver):
    result = deliver(checkout_expired("nope"))
    assert result.outcome == Outcome.IGNORED


def test_success_after_failure_still_books_free_slot(claim, deliver):
    claim(order_id="O1")
    deliver(checkout_expired("O1"))

    result = deliver(checkout_completed("O1"))

    assert result.outcome == Outcome.BOOKED
    assert _attempt("O1").status == PaymentStatus.SUCCESS
    assert _reservation("O1").status == ReservationStatus.BOOKED


# ---------- late confirmations ----------

def test_late_payment_books_slot_nobody_took(claim, deliver, clock):
    claim(order_id="O1")
    clock.advance(minutes=20)

    result = deliver(checkout_completed("O1"))

    assert result.outcome == Outcome.BOOKED
    assert _reservation("O1").status == ReservationStatus.BOOKED


def test_late_payment_for_expired_reservation_is_reinstated(manager, claim, deliver, clock):
    held = claim(order_id="O1")
    clock.advance(minutes=6)
    manager.expire_if_lapsed(held.id)
    assert _reservation("O1").status == ReservationStatus.EXPIRED

    result = deliver(checkout_completed("O1"))

    assert result.outcome == Outcome.BOOKED
    assert Booking.query.count() == 1
    assert _reservation("O1").status == ReservationStatus.BOOKED
    assert _attempt("O1").status == PaymentStatus.SUCCESS


def test_late_payment_for_slot_booked_by_someone_else(claim, deliver, clock):
    claim(order_id="O1", client_id="C1")
    clock.advance(minutes=6)
    claim(order_id="O2", client_id="C2")
    winner = deliver(checkout_completed("O2", payment_intent="pi_2", event_id="evt_2"))

    result = deliver(checkout_completed("O1", payment_intent="pi_1", event_id="evt_1"))

    assert result.outcome == Outcome.CONFLICT
    assert result.booking_id is None
    assert Booking.query.count() == 1
    assert Booking.query.one().id == winner.booking_id

    late = _attempt("O1")
    assert late.status == PaymentStatus.SUCCESS
    assert late.booking_id is None
    assert late.needs_review is True
    assert late.review_reason == f"late_payment_slot_taken:booking:{winner.booking_id}"
    assert AuditLog.query.filter_by(action="LATE_PAYMENT_CONFLICT").count() == 1


def test_late_payment_for_slot_held_by_someone_else(claim, deliver, clock):
    claim(order_id="O1", client_id="C1")
    clock.advance(minutes=6)
    claim(order_id="O2", client_id="C2")

    result = deliver(checkout_completed("O1"))

    assert result.outcome == Outcome.CONFLICT
    assert Booking.query.count() == 0
    assert _attempt("O1").status == PaymentStatus.SUCCESS
    assert _reservation("O2").status == ReservationStatus.HELD


# ---------- duplicate charge ----------

def test_second_payment_for_same_order_is_flagged(claim, deliver):
    claim(order_id="O1")
    first = deliver(checkout_completed("O1", payment_intent="pi_1"))

    result = deliver(checkout_completed("O1", payment_intent="pi_2", event_id="evt_2"))

    assert result.outcome == Outcome.CONFLICT
    assert result.booking_id == first.booking_id
    assert Booking.query.count() == 1
    attempt = _attempt("O1")
    assert attempt.gateway_payment_id == "pi_1"
    assert attempt.needs_review is True
    assert attempt.review_reason.startswith("duplicate_charge:pi_2")


def test_gateway_id_reused_by_another_order(claim, deliver):
    claim(order_id="O1", client_id="C1")
    claim(order_id="O2", client_id="C2", slot_time=SLOT_TIME.replace(hour=11))
    deliver(checkout_completed("O1", payment_intent="pi_1"))

    result = deliver(payment_intent_event("O2", payment_intent="pi_1", event_id="evt_other"))

    assert result.outcome == Outcome.CONFLICT
    assert Booking.query.count() == 1
    assert _attempt("O2").status == PaymentStatus.PENDING


# ---------- legacy orders without a reservation ----------

def _legacy_attempt(order_id, with_slot=True):
    attempt = PaymentAttempt(order_id=order_id, amount=AMOUNT, currency="INR", status=PaymentStatus.PENDING)
    if with_slot:
        attempt.provider_id = "provider_1"
        attempt.client_id = "C7"
        attempt.date = SLOT_DATE
        attempt.time = SLOT_TIME
    db.session.add(attempt)
    db.session.commit()
    return attempt


def test_legacy_payment_is_booked_from_stored_slot(deliver):
    _legacy_attempt("L1")

    result = deliver(checkout_completed("L1"))

    assert result.outcome == Outcome.BOOKED
    booking = Booking.query.one()
    assert booking.client_id == "C7"
    assert _attempt("L1").booking_id == booking.id


def test_legacy_payment_without_slot_details_goes_to_review(deliver):
    _legacy_attempt("L1", with_slot=False)

    result = deliver(checkout_completed("L1"))

    assert result.outcome == Outcome.CONFLICT
    attempt = _attempt("L1")
    assert attempt.status == PaymentStatus.SUCCESS
    assert attempt.review_reason == "legacy_missing_slot_details"


def test_legacy_payment_cannot_double_book(claim, deliver):
    claim(order_id="O1", client_id="C1")
    deliver(checkout_completed("O1", payment_intent="pi_1"))
    _legacy_attempt("L1")

    result = deliver(checkout_completed("L1", payment_intent="pi_legacy", event_id="evt_legacy"))

    assert result.outcome == Outcome.CONFLICT
    assert Booking.query.count() == 1
    legacy = _attempt("L1")
    assert legacy.status == PaymentStatus.SUCCESS
    assert legacy.needs_review is True
    assert legacy.review_reason.startswith("double_booking:")


# ---------- status read model ----------

def test_status_follows_the_flow(processor, manager, claim, deliver):
    claim(order_id="O1")
    assert processor.status("O1").overall == "SLOT_HELD"

    manager.mark_payment_pending("O1")
    assert processor.status("O1").overall == "PAYMENT_PENDING"

    deliver(checkout_completed("O1"))
    view = processor.status("O1")
    assert view.overall == "COMPLETED"
    assert view.booking is not None
    assert view.to_dict()["status"] == "COMPLETED"


def test_status_never_reports_paid_without_booking(processor, manager, claim):
    from services import ledger

    claim(order_id="O1")
    manager.advance("O1", ReservationStatus.PAYMENT_CONFIRMED)
    ledger.mark_success(_attempt("O1").id)

    assert processor.status("O1").overall == "PROCESSING"


def test_status_for_failed_and_unknown(processor, claim, deliver):
    claim(order_id="O1")
    deliver(checkout_expired("O1"))
    assert processor.status("O1").overall == "FAILED"

    with pytest.raises(PaymentAttemptNotFound):
        processor.status("nope")


def test_late_payment_loses_to_claim_landing_mid_confirmation(manager, claim, deliver, clock, monkeypatch):
    claim(order_id="O1", client_id="C1")
    clock.advance(minutes=6)
    real_advance = manager.advance

    def claim_then_advance(order_id, new_status, **kwargs):
        # C2 pre-empts the lapsed hold after the processor read it as HELD
        if order_id == "O1" and new_status == ReservationStatus.PAYMENT_CONFIRMED:
            claim(order_id="O2", client_id="C2")
        return real_advance(order_id, new_status, **kwargs)

    monkeypatch.setattr(manager, "advance", claim_then_advance)

    result = deliver(checkout_completed("O1"))

    assert result.outcome == Outcome.CONFLICT
    assert Booking.query.count() == 0
    assert _reservation("O1").status == ReservationStatus.EXPIRED
    assert _reservation("O2").status == ReservationStatus.HELD

    late = _attempt("O1")
    assert late.status == PaymentStatus.SUCCESS
    assert late.needs_review is True
    assert late.review_reason.startswith("late_payment_slot_taken:reservation:")
