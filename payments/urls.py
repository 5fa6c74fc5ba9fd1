from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("pay", views.pay_view, name="pay"),
    path("redirect", views.redirect_view, name="redirect"),
    path("callback", views.callback_view, name="callback"),
    path("status/sweep", views.sweep_view, name="sweep"),
    path("status/<str:order_id>", views.status_view, name="status"),
    path("payments/my", views.my_payments_view, name="my_payments"),
    path("payments/analytics", views.analytics_view, name="analytics"),
    path("payments/attempts/<int:attempt_id>/refunds", views.refund_view, name="refund"),
    path("payments/<str:order_id>", views.order_payments_view, name="order_payments"),
    path("payment/health", views.health_view, name="health"),
]
