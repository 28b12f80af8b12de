"""Real thread races against a file-backed SQLite database."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import event

from app import create_app
from models import db
from models.booking import Booking
from models.payment import PaymentAttempt
from models.reservation import Reservation, ReservationStatus
from services.errors import SlotConflict
from services.reservations import SlotReservationManager
from services.webhooks import Outcome, PaymentWebhookProcessor
from tests.helpers import (
    AMOUNT,
    SLOT_DATE,
    SLOT_TIME,
    TestingConfig,
    checkout_completed,
    encode,
    sign_payload,
)


@pytest.fixture
def race_app(tmp_path):
    class FileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}

    app = create_app(FileConfig)
    with app.app_context():
        engine = db.engine

        # pysqlite defers BEGIN; take the write lock up front so writers queue
        # on the busy timeout instead of failing on lock upgrade
        @event.listens_for(engine, "connect")
        def _autocommit_driver(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _run_together(app, jobs):
    """Start every job at once, each in its own app context. Returns results or exceptions."""
    barrier = threading.Barrier(len(jobs))

    def _worker(job):
        with app.app_context():
            barrier.wait(timeout=5)
            try:
                return job()
            except Exception as exc:
                return exc
            finally:
                db.session.remove()

    with ThreadPoolExecutor(max_workers=len(jobs)) as executor:
        return list(executor.map(_worker, jobs))


def test_parallel_claims_leave_one_holder(race_app, clock):
    def claim_as(n):
        def job():
            reservation, created = SlotReservationManager(clock=clock).claim(
                provider_id="provider_1", client_id=f"C{n}", date=SLOT_DATE, time=SLOT_TIME,
                order_id=f"O{n}", amount=AMOUNT,
            )
            return reservation.order_id, created
        return job

    outcomes = _run_together(race_app, [claim_as(n) for n in range(4)])

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(winners) == 1
    assert winners[0][1] is True
    assert len(losers) == 3
    assert all(isinstance(exc, SlotConflict) for exc in losers)

    with race_app.app_context():
        held = Reservation.query.filter(Reservation.status.in_(ReservationStatus.IN_FLIGHT)).all()
        assert [r.order_id for r in held] == [winners[0][0]]
        assert PaymentAttempt.query.count() == 1


def test_parallel_duplicate_deliveries_book_once(race_app, clock):
    with race_app.app_context():
        SlotReservationManager(clock=clock).claim(
            provider_id="provider_1", client_id="C1", date=SLOT_DATE, time=SLOT_TIME,
            order_id="O1", amount=AMOUNT,
        )
    body = encode(checkout_completed("O1", payment_intent="pay_123"))
    signature = sign_payload(body)

    def deliver():
        processor = PaymentWebhookProcessor(reservations=SlotReservationManager(clock=clock), clock=clock)
        return processor.handle_event(body, signature)

    results = _run_together(race_app, [deliver, deliver, deliver])

    assert not [r for r in results if isinstance(r, Exception)]
    assert {r.outcome for r in results} <= {Outcome.BOOKED, Outcome.ALREADY_PROCESSED}

    with race_app.app_context():
        booking = Booking.query.one()
        assert {r.booking_id for r in results} == {booking.id}
        assert Reservation.query.filter_by(order_id="O1").one().status == ReservationStatus.BOOKED
        assert PaymentAttempt.query.filter_by(order_id="O1").one().booking_id == booking.id
