import logging

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from django.utils.crypto import get_random_string

from orders import transitions
from orders.models import Order, PaymentStatus
from storefront.types import Err, Ok

from .errors import ErrorKind, PaymentError
from .integrations.phonepe import GatewayConfig, PhonePeClient, PhonePeError
from .models import AttemptStatus, PaymentAttempt, Refund, RefundStatus
from .services import gateway_error, merchant_user_id, parse_amount

logger = logging.getLogger(__name__)

REFUND_ID_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def new_refund_id() -> str:
    # gateway limit: 38 alphanumeric characters
    return "RF" + timezone.now().strftime("%y%m%d") + get_random_string(16, allowed_chars=REFUND_ID_CHARS)


class RefundService:
    def __init__(self, config: GatewayConfig = None, client: PhonePeClient = None):
        self.config = config or GatewayConfig.from_settings()
        self.client = client or PhonePeClient(self.config)

    def refundable_amount(self, attempt):
        refunded = attempt.refunds.exclude(status=RefundStatus.FAILED).aggregate(total=Sum("amount"))["total"]
        return attempt.amount - (refunded or 0)

    def _reserve(self, attempt_id, amount, reason, requested_by):
        # the attempt row lock serialises concurrent refunds of one payment
        with transaction.atomic():
            attempt = PaymentAttempt.objects.select_for_update().filter(pk=attempt_id).first()
            if attempt is None:
                return Err(PaymentError(ErrorKind.ATTEMPT_NOT_FOUND, f"Payment attempt {attempt_id} not found"))
            if attempt.status != AttemptStatus.COMPLETED:
                return Err(PaymentError(ErrorKind.REFUND_NOT_ALLOWED, "Only completed payments can be refunded"))
            remaining = self.refundable_amount(attempt)
            if amount > remaining:
                return Err(PaymentError(
                    ErrorKind.REFUND_NOT_ALLOWED, "Refund exceeds the refundable amount", {"refundable": str(remaining)}
                ))
            return Ok(Refund.objects.create(
                attempt=attempt, merchant_refund_id=new_refund_id(), amount=amount, status=RefundStatus.INITIATED,
                reason=(reason or "")[:255], requested_by=requested_by or "",
            ))

    def _mark_failed(self, refund, raw):
        Refund.objects.filter(pk=refund.pk).update(status=RefundStatus.FAILED, raw_response=raw)
        refund.status, refund.raw_response = RefundStatus.FAILED, raw

    def request_refund(self, attempt_id, amount, reason="", requested_by=""):
        if not PaymentAttempt.objects.filter(pk=attempt_id).exists():
            return Err(PaymentError(ErrorKind.ATTEMPT_NOT_FOUND, f"Payment attempt {attempt_id} not found"))
        amount = parse_amount(amount)
        if amount is None:
            return Err(PaymentError(ErrorKind.VALIDATION, "amount must be a positive number"))

        reserved = self._reserve(attempt_id, amount, reason, requested_by)
        if reserved.is_err():
            return reserved
        refund = reserved.unwrap()
        order = Order.objects.get(pk=refund.attempt.order_id)
        payload = {
            "merchantId": self.config.merchant_id,
            "merchantUserId": merchant_user_id(order),
            "originalTransactionId": order.order_id,
            "merchantTransactionId": refund.merchant_refund_id,
            "amount": int(amount * 100),
            "callbackUrl": self.config.callback_url,
        }

        try:
            data = self.client.refund(payload)
        except PhonePeError as e:
            logger.warning("Refund %s for %s failed: %s", refund.merchant_refund_id, order.order_id, e.message)
            self._mark_failed(refund, {"error": e.message, "status_code": e.status_code, "response": e.payload})
            return Err(gateway_error(e))

        if data.get("success") is False:
            self._mark_failed(refund, data)
            return Err(PaymentError(ErrorKind.GATEWAY_REJECTED, data.get("message") or "Refund rejected by gateway"))

        with transaction.atomic():
            Refund.objects.filter(pk=refund.pk).update(raw_response=data)
            refund.raw_response = data
            order.refresh_from_db()
            if transitions.can_transition_payment(order.payment_status, PaymentStatus.REFUND_INITIATED):
                Order.objects.filter(pk=order.pk, payment_status=PaymentStatus.COMPLETED).update(
                    payment_status=PaymentStatus.REFUND_INITIATED, updated_at=timezone.now()
                )

        logger.info(
            "Refund %s of %s initiated for order %s by %s",
            refund.merchant_refund_id, amount, order.order_id, requested_by or "unknown",
        )
        return Ok(refund)
