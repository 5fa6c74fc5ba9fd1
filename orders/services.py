import logging

from django.utils import timezone

from payments.errors import ErrorKind, PaymentError
from storefront.types import Err, Ok

from . import transitions
from .models import FulfillmentStatus, Order, PaymentStatus

logger = logging.getLogger(__name__)


def update_fulfillment_status(order_id: str, target: str, *, actor: str = ""):
    """Staff edit of the fulfillment axis. Returns Ok(order) or Err(PaymentError)."""
    if target not in FulfillmentStatus.values:
        return Err(PaymentError(ErrorKind.VALIDATION, f"Unknown fulfillment status: {target}"))

    order = Order.objects.filter(order_id=order_id).first()
    if order is None:
        return Err(PaymentError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found"))

    result = transitions.apply(transitions.OrderState.of(order), transitions.StatusEvent(fulfillment_status=target))
    if result.is_err():
        illegal = result.unwrap_err()
        return Err(PaymentError(ErrorKind.ILLEGAL_TRANSITION, illegal.message))

    updated = Order.objects.filter(pk=order.pk, status=order.status).update(
        status=target, updated_at=timezone.now()
    )
    if not updated:
        return Err(PaymentError(ErrorKind.ILLEGAL_TRANSITION, "Order changed concurrently, reload and retry"))

    logger.info("Order %s fulfillment %s -> %s by %s", order.order_id, order.status, target, actor or "unknown")
    order.refresh_from_db()
    return Ok(order)


def close_failed_payment(order_id: str, *, actor: str = ""):
    """Mark a failed payment as final so late gateway outcomes are not applied."""
    order = Order.objects.filter(order_id=order_id).first()
    if order is None:
        return Err(PaymentError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found"))

    updated = Order.objects.filter(
        pk=order.pk, payment_status=PaymentStatus.FAILED, payment_closed=False
    ).update(payment_closed=True, updated_at=timezone.now())
    if not updated:
        if order.payment_closed:
            return Ok(order)
        return Err(PaymentError(
            ErrorKind.ILLEGAL_TRANSITION,
            f"Only failed payments can be closed (payment status is {order.payment_status})",
        ))

    logger.info("Order %s failed payment closed by %s", order.order_id, actor or "unknown")
    order.refresh_from_db()
    return Ok(order)
