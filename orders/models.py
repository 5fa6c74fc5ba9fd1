from decimal import Decimal

from django.db import models


class FulfillmentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    PROCESSING = "processing", "Processing"
    SHIPPED = "shipped", "Shipped"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"
    FAILED = "failed", "Failed"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    INITIATED = "initiated", "Initiated"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUND_INITIATED = "refund_initiated", "Refund initiated"


class Order(models.Model):
    # also sent to the gateway as merchantTransactionId
    order_id = models.CharField(max_length=36, unique=True, db_index=True)

    # snapshot taken at checkout; every gateway amount is derived from it
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="INR")

    status = models.CharField(
        max_length=16, choices=FulfillmentStatus.choices, default=FulfillmentStatus.PENDING, db_index=True
    )
    payment_status = models.CharField(
        max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )
    # staff closed a failed payment; no further gateway outcome is applied
    payment_closed = models.BooleanField(default=False)

    customer_id = models.CharField(max_length=64, blank=True, default="")
    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=16, blank=True, default="")
    items = models.JSONField(default=list, blank=True)

    payment_method = models.CharField(max_length=32, blank=True, default="phonepe")
    gateway_transaction_id = models.CharField(max_length=64, blank=True, default="")
    payment_initiated_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_amount = instance.__dict__.get("amount")
        return instance

    def save(self, *args, **kwargs):
        loaded = getattr(self, "_loaded_amount", None)
        if self.pk and loaded is not None and Decimal(str(self.amount)) != Decimal(str(loaded)):
            raise ValueError(f"Order {self.order_id}: amount is immutable once the order exists")
        super().save(*args, **kwargs)
        self._loaded_amount = self.amount

    @property
    def is_paid(self) -> bool:
        return self.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUND_INITIATED)

    @property
    def amount_minor(self) -> int:
        """Amount in paise, the unit the gateway works in."""
        return int((Decimal(str(self.amount)) * 100).to_integral_value())

    def __str__(self):
        return f"{self.order_id} ({self.status}/{self.payment_status})"
