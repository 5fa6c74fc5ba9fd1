import logging
import time
from dataclasses import dataclass
from datetime import timedelta

from django.utils import timezone

from orders.models import Order, PaymentStatus
from storefront.types import Err, Ok

from .errors import ErrorKind, PaymentError
from .integrations.phonepe import GatewayConfig, PhonePeClient, PhonePeError
from .models import AttemptSource
from .reconciliation import ReconciliationResult, amount_in_minor_units, fields_from_gateway_body, reconcile
from .services import gateway_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayStatus:
    order_id: str
    code: str
    gateway_transaction_id: str
    amount_minor: int
    reconciliation: ReconciliationResult

    def as_json(self) -> dict:
        return {
            "ok": True,
            "orderId": self.order_id,
            "code": self.code,
            "transactionId": self.gateway_transaction_id,
            "amount": self.amount_minor,
            "outcome": self.reconciliation.outcome.value,
            "paymentStatus": self.reconciliation.payment_status,
            "status": self.reconciliation.fulfillment_status,
        }


@dataclass
class SweepReport:
    checked: int = 0
    applied: int = 0
    failed: int = 0

    def as_json(self) -> dict:
        return {"ok": True, "checked": self.checked, "applied": self.applied, "failed": self.failed}


class StatusPoller:
    """Pulls authoritative status from the gateway and reconciles it like a callback."""

    def __init__(self, config: GatewayConfig = None, client: PhonePeClient = None):
        self.config = config or GatewayConfig.from_settings()
        self.client = client or PhonePeClient(self.config)

    def check_status(self, order_id):
        order = Order.objects.filter(order_id=order_id).first()
        if order is None:
            return Err(PaymentError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found"))

        try:
            body = self.client.status(order.order_id)
        except PhonePeError as e:
            logger.warning("Status check for %s failed: %s (status=%s)", order.order_id, e.message, e.status_code)
            return Err(gateway_error(e))

        fields = fields_from_gateway_body(body)
        try:
            amount_minor = amount_in_minor_units(fields["amount"])
        except (ValueError, ArithmeticError):
            logger.warning("Status check for %s returned unusable amount %r", order.order_id, fields["amount"])
            amount_minor = None

        # the path already names the transaction; the body is only trusted for the outcome
        result = reconcile(
            order.order_id,
            fields["code"],
            fields["providerReferenceId"],
            body,
            amount_minor=amount_minor,
            source=AttemptSource.STATUS_CHECK,
        )
        return Ok(GatewayStatus(
            order_id=order.order_id,
            code=fields["code"] or "",
            gateway_transaction_id=fields["providerReferenceId"] or "",
            amount_minor=amount_minor,
            reconciliation=result,
        ))

    def stuck_orders(self, older_than=timedelta(minutes=30), limit=50):
        cutoff = timezone.now() - older_than
        return (
            Order.objects.filter(payment_status=PaymentStatus.INITIATED, payment_initiated_at__lt=cutoff)
            .order_by("payment_initiated_at")[:limit]
        )

    def sweep(self, older_than=timedelta(minutes=30), limit=50, pause=0.0) -> SweepReport:
        report = SweepReport()
        for order in self.stuck_orders(older_than, limit):
            report.checked += 1
            result = self.check_status(order.order_id)
            if result.is_err():
                report.failed += 1
                logger.warning("Sweep: %s: %s", order.order_id, result.unwrap_err().message)
            elif result.unwrap().reconciliation.applied:
                report.applied += 1
            if pause:
                time.sleep(pause)
        logger.info("Stuck-order sweep: checked=%s applied=%s failed=%s", report.checked, report.applied, report.failed)
        return report
