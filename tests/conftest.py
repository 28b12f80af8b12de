import pytest

from app import create_app
from models import db
from tests.helpers import AMOUNT, SLOT_DATE, SLOT_TIME, FrozenClock, TestingConfig, encode, sign_payload


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def manager(app, clock):
    from services.reservations import SlotReservationManager
    return SlotReservationManager(clock=clock)


@pytest.fixture
def processor(app, clock, manager):
    from services.webhooks import PaymentWebhookProcessor
    return PaymentWebhookProcessor(reservations=manager, clock=clock)


@pytest.fixture
def claim(manager):
    """Claim the default slot; keyword arguments override the defaults."""
    def _claim(order_id="order_1", client_id="client_1", provider_id="provider_1",
               slot_date=SLOT_DATE, slot_time=SLOT_TIME, amount=AMOUNT, **kwargs):
        reservation, _created = manager.claim(
            provider_id=provider_id, client_id=client_id, date=slot_date, time=slot_time,
            order_id=order_id, amount=amount, **kwargs
        )
        return reservation
    return _claim


@pytest.fixture
def deliver(processor):
    """Sign an event dict and hand it to the processor the way the webhook route does."""
    def _deliver(event):
        body = encode(event)
        return processor.handle_event(body, sign_payload(body))
    return _deliver
