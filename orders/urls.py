from django.urls import path
from . import views
app_name = "orders"
urlpatterns = [
    path("<str:order_id>/status", views.order_status_view, name="order_status"),
    path("<str:order_id>/close-payment", views.close_payment_view, name="close_payment"),
]
