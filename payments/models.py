from django.db import IntegrityError, models
from django.db.models import Q

from orders.models import Order


class AttemptStatus(models.TextChoices):
    INITIATED = "initiated", "Initiated"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class AttemptSource(models.TextChoices):
    INITIATION = "initiation", "Initiation"
    REDIRECT = "redirect", "Browser redirect"
    CALLBACK = "callback", "Server callback"
    STATUS_CHECK = "status_check", "Status check"


class PaymentAttempt(models.Model):
    """Audit row for one gateway payment session. Rows are updated, never deleted."""

    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="payment_attempts")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=AttemptStatus.choices, default=AttemptStatus.INITIATED, db_index=True)
    # providerReferenceId; unknown until the gateway reports an outcome
    gateway_transaction_id = models.CharField(max_length=64, blank=True, null=True)
    source = models.CharField(max_length=16, choices=AttemptSource.choices, default=AttemptSource.INITIATION)
    raw_response = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at", "-id")
        constraints = [
            models.UniqueConstraint(fields=["order", "gateway_transaction_id"], name="uniq_attempt_order_gateway_txn"),
            models.UniqueConstraint(
                fields=["order"], condition=Q(status="completed"), name="uniq_completed_attempt_per_order"
            ),
        ]

    def delete(self, *args, **kwargs):
        raise IntegrityError("Payment attempts are append-only")

    def __str__(self):
        return f"{self.order_id}:{self.gateway_transaction_id or '-'} ({self.status})"


class RefundStatus(models.TextChoices):
    INITIATED = "initiated", "Initiated"
    FAILED = "failed", "Failed"


class Refund(models.Model):
    attempt = models.ForeignKey(PaymentAttempt, on_delete=models.PROTECT, related_name="refunds")
    merchant_refund_id = models.CharField(max_length=38, unique=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.CharField(max_length=255, blank=True, default="")
    status = models.CharField(max_length=16, choices=RefundStatus.choices, default=RefundStatus.INITIATED)
    requested_by = models.CharField(max_length=150, blank=True, default="")
    raw_response = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)

    def delete(self, *args, **kwargs):
        raise IntegrityError("Refunds are append-only")

    def __str__(self):
        return f"{self.merchant_refund_id} {self.status} ₹{self.amount}"
