"""Applies gateway-reported payment outcomes to orders.

Browser redirects, server callbacks and status checks all end up in
``reconcile``. It reads the order, plans the move with the order state machine
and writes it with a compare-and-swap on both statuses it read. A paid order
never moves back to failed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from orders import transitions
from orders.models import FulfillmentStatus as F
from orders.models import Order
from orders.models import PaymentStatus as P

from . import records
from .checksum import SignatureEngine
from .emails import send_payment_confirmation
from .integrations.phonepe import GatewayConfig, decode_payload
from .models import AttemptSource, AttemptStatus

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payments.security")

# gateway result code -> (payment status, fulfillment status or None to leave it)
RESULT_CODES = {
    "PAYMENT_SUCCESS": (P.COMPLETED, F.CONFIRMED),
    "PAYMENT_ERROR": (P.FAILED, F.FAILED),
    "PAYMENT_DECLINED": (P.FAILED, F.FAILED),
    "PAYMENT_CANCELLED": (P.FAILED, F.FAILED),
    "TIMED_OUT": (P.FAILED, F.FAILED),
    "AUTHORIZATION_FAILED": (P.FAILED, F.FAILED),
    "PAYMENT_PENDING": (P.INITIATED, None),
    "PAYMENT_INITIATED": (P.INITIATED, None),
}

ATTEMPT_STATUS_FOR = {
    P.COMPLETED: AttemptStatus.COMPLETED,
    P.FAILED: AttemptStatus.FAILED,
}


def map_result_code(code):
    if not isinstance(code, str):
        return None
    return RESULT_CODES.get(code.strip().upper())


class ReconciliationOutcome(Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REGRESSION_REJECTED = "regression_rejected"
    STALE = "stale"
    ANOMALY = "anomaly"
    AMOUNT_MISMATCH = "amount_mismatch"
    UNKNOWN_ORDER = "unknown_order"
    UNKNOWN_CODE = "unknown_code"
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    RETRY_EXHAUSTED = "retry_exhausted"
    ILLEGAL_TRANSITION = "illegal_transition"

    @property
    def http_status(self) -> int:
        if self is ReconciliationOutcome.INVALID_SIGNATURE:
            return 401
        if self is ReconciliationOutcome.RETRY_EXHAUSTED:
            # the gateway re-delivers on non-2xx
            return 503
        return 200


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    order_id: str = ""
    payment_status: str = ""
    fulfillment_status: str = ""
    gateway_transaction_id: str = ""
    message: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome is ReconciliationOutcome.APPLIED

    @property
    def paid(self) -> bool:
        return self.payment_status in transitions.TERMINAL_PAYMENT_STATUSES

    def as_json(self) -> dict:
        return {
            "ok": self.outcome.http_status == 200,
            "outcome": self.outcome.value,
            "orderId": self.order_id,
            "paymentStatus": self.payment_status,
            "status": self.fulfillment_status,
            "message": self.message,
        }


def _result(outcome, order=None, message="", gateway_transaction_id=""):
    if order is None:
        return ReconciliationResult(outcome, message=message, gateway_transaction_id=gateway_transaction_id or "")
    return ReconciliationResult(
        outcome,
        order_id=order.order_id,
        payment_status=order.payment_status,
        fulfillment_status=order.status,
        gateway_transaction_id=gateway_transaction_id or order.gateway_transaction_id,
        message=message,
    )


def plan(order, mapped, amount_minor=None):
    """Target ``OrderState`` for a mapped outcome, or a ``ReconciliationResult`` when nothing is written."""
    payment_target, fulfillment_target = mapped
    current = order.payment_status

    if current == payment_target:
        return _result(ReconciliationOutcome.DUPLICATE, order, "Already applied")

    if current in transitions.TERMINAL_PAYMENT_STATUSES:
        if payment_target == P.FAILED:
            security_logger.warning(
                "Rejected regression of paid order %s from %s to %s", order.order_id, current, payment_target
            )
            return _result(ReconciliationOutcome.REGRESSION_REJECTED, order, "Order is already paid")
        if payment_target == P.COMPLETED:
            return _result(ReconciliationOutcome.DUPLICATE, order, "Already applied")
        return _result(ReconciliationOutcome.STALE, order, "Order already has a final payment outcome")

    if current == P.FAILED:
        if order.payment_closed:
            if payment_target == P.COMPLETED:
                security_logger.warning(
                    "Success reported for closed failed order %s; needs manual review", order.order_id
                )
                return _result(ReconciliationOutcome.ANOMALY, order, "Payment was closed, flagged for review")
            return _result(ReconciliationOutcome.STALE, order, "Payment was closed")
        if payment_target == P.INITIATED:
            return _result(ReconciliationOutcome.STALE, order, "Order already has a final payment outcome")

    if payment_target == P.COMPLETED and amount_minor is not None and amount_minor != order.amount_minor:
        security_logger.warning(
            "Amount mismatch in success notification for order %s: reported=%s expected=%s",
            order.order_id, amount_minor, order.amount_minor,
        )
        return _result(ReconciliationOutcome.AMOUNT_MISMATCH, order, "Reported amount does not match the order")

    steps = [payment_target]
    if current == P.PENDING and payment_target != P.INITIATED:
        steps = [P.INITIATED, payment_target]

    state = transitions.OrderState.of(order)
    for step in steps:
        moved = transitions.apply(state, transitions.StatusEvent(payment_status=step))
        if moved.is_err():
            illegal = moved.unwrap_err()
            logger.warning("Order %s: %s", order.order_id, illegal.message)
            return _result(ReconciliationOutcome.ILLEGAL_TRANSITION, order, illegal.message)
        state = moved.unwrap()

    if fulfillment_target and fulfillment_target != state.fulfillment_status:
        moved = transitions.apply(state, transitions.StatusEvent(fulfillment_status=fulfillment_target))
        if moved.is_ok():
            state = moved.unwrap()
        else:
            # staff already moved fulfillment; payment still applies
            logger.warning("Order %s: %s, payment status applied anyway", order.order_id, moved.unwrap_err().message)

    return state


def _notify_paid(order_pk):
    try:
        order = Order.objects.get(pk=order_pk)
        send_payment_confirmation(order=order)
    except Exception:
        logger.exception("Failed to send payment confirmation for order pk=%s", order_pk)


def _write(order, target, *, gateway_reference_id, raw, source) -> bool:
    now = timezone.now()
    updates = {"payment_status": target.payment_status, "status": target.fulfillment_status, "updated_at": now}
    terminal = target.payment_status in ATTEMPT_STATUS_FOR
    if terminal and gateway_reference_id:
        updates["gateway_transaction_id"] = gateway_reference_id
    if target.payment_status == P.INITIATED and order.payment_initiated_at is None:
        updates["payment_initiated_at"] = now

    with transaction.atomic():
        rows = Order.objects.filter(
            pk=order.pk, payment_status=order.payment_status, status=order.status, payment_closed=order.payment_closed
        ).update(**updates)
        if not rows:
            return False
        if terminal:
            records.insert_or_update(
                order, gateway_reference_id, ATTEMPT_STATUS_FOR[target.payment_status], order.amount, raw, source
            )
        if target.payment_status == P.COMPLETED:
            pk = order.pk
            transaction.on_commit(lambda: _notify_paid(pk))
    return True


def reconcile(transaction_id, result_code, gateway_reference_id, raw_payload, *, amount_minor=None,
              source=AttemptSource.CALLBACK, max_attempts=None) -> ReconciliationResult:
    transaction_id = str(transaction_id or "").strip()
    gateway_reference_id = str(gateway_reference_id or "").strip()
    if not transaction_id:
        logger.warning("Gateway notification without a transaction id (%s)", source)
        return _result(ReconciliationOutcome.MALFORMED, message="Missing transaction id")

    if not Order.objects.filter(order_id=transaction_id).exists():
        logger.warning("Gateway notification for unknown order %s (%s)", transaction_id, source)
        return _result(ReconciliationOutcome.UNKNOWN_ORDER, message=f"Unknown order {transaction_id}")

    mapped = map_result_code(result_code)
    if mapped is None:
        logger.warning("Unknown gateway result code %r for order %s", result_code, transaction_id)
        return _result(ReconciliationOutcome.UNKNOWN_CODE, message=f"Unknown result code {result_code}")

    max_attempts = max_attempts or int(getattr(settings, "PAYMENTS_RECONCILE_MAX_ATTEMPTS", 3))
    for attempt in range(1, max_attempts + 1):
        order = Order.objects.filter(order_id=transaction_id).first()
        if order is None:
            return _result(ReconciliationOutcome.UNKNOWN_ORDER, message=f"Unknown order {transaction_id}")

        target = plan(order, mapped, amount_minor)
        if isinstance(target, ReconciliationResult):
            logger.info("Order %s: %s for %s via %s", order.order_id, target.outcome.value, result_code, source)
            return target

        try:
            written = _write(order, target, gateway_reference_id=gateway_reference_id, raw=raw_payload, source=source)
        except (IntegrityError, OperationalError) as e:
            logger.warning("Reconciling %s failed (attempt %s/%s): %s", transaction_id, attempt, max_attempts, e)
            continue
        if not written:
            logger.info("Order %s changed while reconciling, re-reading (attempt %s/%s)", transaction_id, attempt, max_attempts)
            continue

        logger.info(
            "Order %s payment %s -> %s, status %s -> %s via %s",
            order.order_id, order.payment_status, target.payment_status, order.status, target.fulfillment_status, source,
        )
        return ReconciliationResult(
            ReconciliationOutcome.APPLIED,
            order_id=order.order_id,
            payment_status=target.payment_status,
            fulfillment_status=target.fulfillment_status,
            gateway_transaction_id=gateway_reference_id or order.gateway_transaction_id,
        )

    logger.error("Giving up reconciling order %s after %s attempts", transaction_id, max_attempts)
    return _result(ReconciliationOutcome.RETRY_EXHAUSTED, message="Temporary failure, please retry")


def amount_in_minor_units(value):
    """Gateway amounts are integral paise. None when absent; raises ValueError when unusable."""
    if value is None or value == "":
        return None
    amount = Decimal(str(value).strip())
    if not amount.is_finite() or amount != amount.to_integral_value():
        raise ValueError(f"Amount {value!r} is not a whole number of minor units")
    return int(amount)


def fields_from_gateway_body(body: dict) -> dict:
    """Flatten a decoded callback or status-check body into the redirect field shape."""
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return {
        "code": body.get("code"),
        "merchantId": data.get("merchantId"),
        "transactionId": data.get("merchantTransactionId"),
        "providerReferenceId": data.get("transactionId"),
        "amount": data.get("amount"),
    }


class CallbackReconciler:
    """Entry point for inbound gateway notifications (browser redirect and server callback)."""

    def __init__(self, config: GatewayConfig = None):
        self.config = config or GatewayConfig.from_settings()
        self.signer = SignatureEngine(self.config.salt_key, self.config.salt_index)

    def handle(self, payload, headers=None, channel=AttemptSource.CALLBACK) -> ReconciliationResult:
        headers = headers or {}
        if not isinstance(payload, dict):
            logger.warning("Unparseable %s payload", channel)
            return _result(ReconciliationOutcome.MALFORMED, message="Unparseable payload")

        if "response" in payload:
            envelope = payload.get("response")
            signature = headers.get("X-VERIFY")
            if not isinstance(envelope, str) or not self.signer.verify(signature, envelope):
                security_logger.warning("Invalid X-VERIFY on %s notification", channel)
                return _result(ReconciliationOutcome.INVALID_SIGNATURE, message="Invalid signature")
            try:
                fields = fields_from_gateway_body(decode_payload(envelope))
            except ValueError as e:
                logger.warning("Undecodable %s envelope: %s", channel, e)
                return _result(ReconciliationOutcome.MALFORMED, message="Unparseable payload")
        elif self.config.require_signed_callbacks:
            security_logger.warning("Unsigned %s notification rejected", channel)
            return _result(ReconciliationOutcome.INVALID_SIGNATURE, message="Signature required")
        else:
            fields = payload

        merchant_id = fields.get("merchantId")
        if merchant_id and merchant_id != self.config.merchant_id:
            security_logger.warning("Notification for foreign merchant %s on %s", merchant_id, channel)
            return _result(ReconciliationOutcome.INVALID_SIGNATURE, message="Merchant mismatch")

        try:
            amount_minor = amount_in_minor_units(fields.get("amount"))
        except (ValueError, ArithmeticError):
            logger.warning("Unusable amount %r in %s notification", fields.get("amount"), channel)
            return _result(ReconciliationOutcome.MALFORMED, message="Invalid amount")

        return reconcile(
            fields.get("transactionId"),
            fields.get("code"),
            fields.get("providerReferenceId"),
            payload,
            amount_minor=amount_minor,
            source=channel,
        )
