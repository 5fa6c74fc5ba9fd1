from django.contrib import admin
from .models import Order

@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_id", "status", "payment_status", "amount", "currency", "customer_id", "created_at", "updated_at")
    search_fields = ("order_id", "gateway_transaction_id", "customer_id", "customer_email")
    list_filter = ("status", "payment_status", "payment_closed", "created_at")
    readonly_fields = ("payment_status", "gateway_transaction_id", "payment_initiated_at", "created_at", "updated_at")

    def get_readonly_fields(self, request, obj=None):
        # amount is a checkout snapshot; status edits go through /orders/<id>/status and /close-payment
        if obj is not None:
            return ("amount", "status", "payment_closed") + self.readonly_fields
        return self.readonly_fields
