"""
Gateway event schemas.

Stripe delivers loosely-typed JSON. Known event types are validated strictly at
the boundary and normalized into one of two domain events:

* ``PaymentConfirmed`` - money was captured for an order
* ``PaymentFailed``    - the payment for an order will not complete

Anything else is returned as ``UnhandledEvent`` and is acknowledged without
touching state.
"""

import json
from dataclasses import dataclass
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from services.errors import InvalidEvent


class _GatewayModel(BaseModel):
    # Stripe objects carry many fields we do not read
    model_config = ConfigDict(extra="ignore")


class _OrderLinked(_GatewayModel):
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("order_id") or getattr(self, "client_reference_id", None)

    @model_validator(mode="after")
    def _require_order(self):
        if not self.order_id:
            raise ValueError("event object carries no order_id")
        return self


class CheckoutSessionObject(_OrderLinked):
    id: str
    payment_intent: Optional[str] = None
    payment_status: str
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    client_reference_id: Optional[str] = None


class PaymentIntentObject(_OrderLinked):
    id: str
    amount: int
    amount_received: int = 0
    currency: str
    last_payment_error: Optional[dict] = None


class _CheckoutData(_GatewayModel):
    object: CheckoutSessionObject


class _PaymentIntentData(_GatewayModel):
    object: PaymentIntentObject


class CheckoutSessionEvent(_GatewayModel):
    id: str
    type: Literal[
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
        "checkout.session.async_payment_failed",
        "checkout.session.expired",
    ]
    data: _CheckoutData


class PaymentIntentEvent(_GatewayModel):
    id: str
    type: Literal["payment_intent.succeeded", "payment_intent.payment_failed"]
    data: _PaymentIntentData


GatewayEvent = Annotated[
    Union[CheckoutSessionEvent, PaymentIntentEvent],
    Field(discriminator="type"),
]
_event_adapter = TypeAdapter(GatewayEvent)

KNOWN_EVENT_TYPES = frozenset((
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
))


@dataclass(frozen=True)
class PaymentConfirmed:
    event_id: str
    event_type: str
    order_id: str
    gateway_payment_id: str
    amount: int
    currency: str


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    event_type: str
    order_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: Optional[str]
    event_type: Optional[str]


@dataclass(frozen=True)
class PendingEvent:
    """Checkout finished but the money has not settled yet (delayed payment methods)."""

    event_id: str
    event_type: str
    order_id: str


def _from_checkout(event: CheckoutSessionEvent):
    obj = event.data.object
    if event.type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
        reason = "checkout_expired" if event.type == "checkout.session.expired" else "async_payment_failed"
        return PaymentFailed(event.id, event.type, obj.order_id, reason)

    if event.type == "checkout.session.completed" and obj.payment_status != "paid":
        return PendingEvent(event.id, event.type, obj.order_id)

    if obj.amount_total is None or not obj.currency:
        raise InvalidEvent("Paid checkout session without amount_total/currency", event_id=event.id)
    return PaymentConfirmed(
        event_id=event.id,
        event_type=event.type,
        order_id=obj.order_id,
        # PaymentIntent id is what payment_intent.* events carry too
        gateway_payment_id=obj.payment_intent or obj.id,
        amount=obj.amount_total,
        currency=obj.currency.upper(),
    )


def _from_payment_intent(event: PaymentIntentEvent):
    obj = event.data.object
    if event.type == "payment_intent.payment_failed":
        reason = (obj.last_payment_error or {}).get("message") or "payment_failed"
        return PaymentFailed(event.id, event.type, obj.order_id, reason[:255])
    return PaymentConfirmed(
        event_id=event.id,
        event_type=event.type,
        order_id=obj.order_id,
        gateway_payment_id=obj.id,
        amount=obj.amount_received,
        currency=obj.currency.upper(),
    )


def parse_event(raw_body):
    """Turn a verified webhook body into a domain event."""
    try:
        envelope = json.loads(raw_body)
    except (TypeError, ValueError):
        raise InvalidEvent("Webhook body is not valid JSON")

    if not isinstance(envelope, dict):
        raise InvalidEvent("Webhook body must be a JSON object")

    event_type = envelope.get("type")
    if event_type not in KNOWN_EVENT_TYPES:
        return UnhandledEvent(envelope.get("id"), event_type)

    try:
        event = _event_adapter.validate_python(envelope)
    except ValidationError as exc:
        raise InvalidEvent(
            f"Malformed {event_type} payload",
            errors=exc.errors(include_url=False, include_input=False, include_context=False),
        )

    if isinstance(event, CheckoutSessionEvent):
        return _from_checkout(event)
    return _from_payment_intent(event)
