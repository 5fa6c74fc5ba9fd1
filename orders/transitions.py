"""Legal moves for an order's two status axes.

Payment and fulfillment move independently. ``apply`` either returns the new
state or an ``IllegalTransition``; it never adjusts a request to make it fit,
so callers decide what an illegal move means for them.
"""

from __future__ import annotations

from dataclasses import dataclass

from storefront.types import Err, Ok, Result

from .models import FulfillmentStatus as F
from .models import PaymentStatus as P

PAYMENT_TRANSITIONS = {
    P.PENDING: {P.INITIATED},
    P.INITIATED: {P.COMPLETED, P.FAILED},
    # retry from the checkout page, or a success that arrives after a failure
    P.FAILED: {P.INITIATED, P.COMPLETED},
    P.COMPLETED: {P.REFUND_INITIATED},
    P.REFUND_INITIATED: set(),
}

FULFILLMENT_TRANSITIONS = {
    F.PENDING: {F.CONFIRMED, F.CANCELLED, F.FAILED},
    F.CONFIRMED: {F.PROCESSING, F.CANCELLED, F.FAILED},
    F.PROCESSING: {F.SHIPPED, F.CANCELLED, F.FAILED},
    F.SHIPPED: {F.DELIVERED},
    F.DELIVERED: set(),
    F.CANCELLED: set(),
    F.FAILED: {F.PENDING, F.CONFIRMED},
}

TERMINAL_PAYMENT_STATUSES = frozenset({P.COMPLETED, P.REFUND_INITIATED})


@dataclass(frozen=True)
class OrderState:
    payment_status: str
    fulfillment_status: str

    @classmethod
    def of(cls, order) -> OrderState:
        return cls(payment_status=order.payment_status, fulfillment_status=order.status)


@dataclass(frozen=True)
class StatusEvent:
    """Requested targets; ``None`` leaves that axis alone."""

    payment_status: str | None = None
    fulfillment_status: str | None = None


@dataclass(frozen=True)
class IllegalTransition:
    axis: str
    current: str
    target: str

    @property
    def message(self) -> str:
        return f"Illegal {self.axis} transition {self.current} -> {self.target}"


def can_transition_payment(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


def can_transition_fulfillment(current: str, target: str) -> bool:
    return target in FULFILLMENT_TRANSITIONS.get(current, set())


def apply(state: OrderState, event: StatusEvent) -> Result[OrderState, IllegalTransition]:
    payment = state.payment_status
    fulfillment = state.fulfillment_status

    if event.payment_status is not None:
        if not can_transition_payment(payment, event.payment_status):
            return Err(IllegalTransition("payment", payment, event.payment_status))
        payment = event.payment_status

    if event.fulfillment_status is not None:
        if not can_transition_fulfillment(fulfillment, event.fulfillment_status):
            return Err(IllegalTransition("fulfillment", fulfillment, event.fulfillment_status))
        fulfillment = event.fulfillment_status

    return Ok(OrderState(payment_status=payment, fulfillment_status=fulfillment))
