import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.utils import timezone

from orders import transitions
from orders.models import FulfillmentStatus, Order, PaymentStatus
from storefront.types import Err, Ok

from . import records
from .errors import ErrorKind, PaymentError
from .integrations.phonepe import GatewayConfig, PhonePeClient, PhonePeError, redirect_url_from
from .models import AttemptStatus

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payments.security")

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class CustomerContact:
    phone: str
    email: str = ""
    name: str = ""


@dataclass(frozen=True)
class InitiationResult:
    order_id: str
    redirect_url: str
    attempt_id: int


def parse_amount(value):
    """Decimal in major units with two places, or None if not a positive whole number of paise."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    try:
        paise = amount.quantize(TWO_PLACES)
    except InvalidOperation:
        return None
    # sub-paisa fractions are refused, not rounded
    return paise if paise == amount else None


def mobile_number(phone):
    digits = re.sub(r"\D", "", str(phone or ""))
    return digits[-10:] if len(digits) >= 10 else None


def merchant_user_id(order) -> str:
    ref = re.sub(r"[^A-Za-z0-9]", "", order.customer_id or "")
    return ref[:36] or f"MUID{order.pk}"


def gateway_error(exc: PhonePeError) -> PaymentError:
    detail = {"status_code": exc.status_code} if exc.status_code else {}
    if exc.timeout or (exc.retryable and exc.status_code is None):
        return PaymentError(ErrorKind.GATEWAY_TIMEOUT, "Payment gateway unreachable, please retry", detail)
    if exc.status_code and exc.status_code >= 500:
        return PaymentError(ErrorKind.GATEWAY_ERROR, "Payment gateway error, please retry", detail)
    return PaymentError(ErrorKind.GATEWAY_REJECTED, exc.message, detail)


class PaymentInitiator:
    """Creates a hosted pay-page session for an existing order."""

    def __init__(self, config: GatewayConfig = None, client: PhonePeClient = None):
        self.config = config or GatewayConfig.from_settings()
        self.client = client or PhonePeClient(self.config)

    def build_payload(self, order, mobile: str) -> dict:
        return {
            "merchantId": self.config.merchant_id,
            "merchantTransactionId": order.order_id,
            "merchantUserId": merchant_user_id(order),
            "amount": order.amount_minor,
            "redirectUrl": self.config.redirect_url,
            "redirectMode": "POST",
            "callbackUrl": self.config.callback_url,
            "mobileNumber": mobile,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }

    def _check_payable(self, order):
        status = order.payment_status
        if status in transitions.TERMINAL_PAYMENT_STATUSES:
            return PaymentError(ErrorKind.ALREADY_PAID, f"Order {order.order_id} is already paid")
        if status == PaymentStatus.INITIATED:
            return PaymentError(ErrorKind.PAYMENT_IN_PROGRESS, f"A payment for order {order.order_id} is already in progress")
        if status == PaymentStatus.FAILED and order.payment_closed:
            return PaymentError(ErrorKind.PAYMENT_CLOSED, f"Payment for order {order.order_id} was closed")
        return None

    def initiate(self, order_id, requested_amount, contact: CustomerContact):
        order_id = str(order_id or "").strip()
        if not order_id:
            return Err(PaymentError(ErrorKind.VALIDATION, "orderId is required"))
        amount = parse_amount(requested_amount)
        if amount is None:
            return Err(PaymentError(ErrorKind.VALIDATION, "amount must be a positive number"))
        mobile = mobile_number(getattr(contact, "phone", ""))
        if mobile is None:
            return Err(PaymentError(ErrorKind.VALIDATION, "customerPhone must contain a 10 digit mobile number"))

        order = Order.objects.filter(order_id=order_id).first()
        if order is None:
            return Err(PaymentError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found"))

        blocked = self._check_payable(order)
        if blocked:
            return Err(blocked)

        expected = Decimal(str(order.amount)).quantize(TWO_PLACES)
        if amount != expected:
            security_logger.warning(
                "Amount mismatch on initiation for order %s: requested=%s stored=%s",
                order.order_id, amount, expected,
            )
            return Err(PaymentError(
                ErrorKind.AMOUNT_MISMATCH, "Requested amount does not match the order amount",
                {"expected": str(expected), "requested": str(amount)},
            ))

        payload = self.build_payload(order, mobile)
        try:
            data = self.client.pay(payload)
        except PhonePeError as e:
            logger.warning("PhonePe pay failed for %s: %s (status=%s)", order.order_id, e.message, e.status_code)
            records.record_attempt(
                order, status=AttemptStatus.FAILED,
                raw={"error": e.message, "status_code": e.status_code, "response": e.payload},
            )
            return Err(gateway_error(e))

        url = redirect_url_from(data)
        if not url:
            message = data.get("message") or "Gateway response did not include a redirect URL"
            logger.warning("PhonePe pay for %s returned no redirect URL: %s", order.order_id, message)
            records.record_attempt(order, status=AttemptStatus.FAILED, raw=data)
            return Err(PaymentError(ErrorKind.GATEWAY_REJECTED, message))

        event = transitions.StatusEvent(
            payment_status=PaymentStatus.INITIATED,
            fulfillment_status=FulfillmentStatus.PENDING if order.status == FulfillmentStatus.FAILED else None,
        )
        planned = transitions.apply(transitions.OrderState.of(order), event)

        with transaction.atomic():
            attempt = records.record_attempt(order, raw=data)
            claimed = 0
            if planned.is_ok():
                target = planned.unwrap()
                now = timezone.now()
                claimed = Order.objects.filter(
                    pk=order.pk, payment_status=order.payment_status, status=order.status, payment_closed=False,
                ).update(
                    payment_status=target.payment_status,
                    status=target.fulfillment_status,
                    payment_initiated_at=now,
                    updated_at=now,
                )

        if not claimed:
            # another request moved the order first; the session exists either way
            logger.warning("Order %s changed during initiation, attempt %s kept", order.order_id, attempt.pk)
        logger.info("Payment session created for %s (attempt %s)", order.order_id, attempt.pk)
        return Ok(InitiationResult(order_id=order.order_id, redirect_url=url, attempt_id=attempt.pk))
