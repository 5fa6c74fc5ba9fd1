from django.contrib import admin
from .models import PaymentAttempt, Refund


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    can_delete = False
    readonly_fields = ("merchant_refund_id", "amount", "reason", "status", "requested_by", "raw_response", "created_at")


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    list_display = ("order", "status", "amount", "gateway_transaction_id", "source", "created_at", "updated_at")
    search_fields = ("order__order_id", "gateway_transaction_id", "order__customer_id")
    list_filter = ("status", "source", "created_at")
    readonly_fields = ("order", "amount", "status", "gateway_transaction_id", "source", "raw_response", "created_at", "updated_at")
    inlines = (RefundInline,)

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ("merchant_refund_id", "attempt", "amount", "status", "requested_by", "created_at")
    search_fields = ("merchant_refund_id", "attempt__order__order_id")
    list_filter = ("status", "created_at")
    readonly_fields = ("attempt", "merchant_refund_id", "amount", "status", "requested_by", "raw_response", "created_at")

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
