import base64
import json
from decimal import Decimal

from orders.models import Order
from payments.integrations.phonepe import GatewayConfig

SALT_KEY = "test-salt-key"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def make_order(order_id="ORD1", amount="499.00", **kwargs):
    kwargs.setdefault("customer_id", "cust-42")
    kwargs.setdefault("customer_email", "buyer@example.com")
    kwargs.setdefault("customer_phone", "+91 98765 43210")
    return Order.objects.create(order_id=order_id, amount=Decimal(amount), **kwargs)


def pay_page_response(url="https://gateway.example.com/pay/abc"):
    return {
        "success": True,
        "code": "PAYMENT_INITIATED",
        "message": "Payment initiated",
        "data": {
            "merchantId": "PGTESTPAYUAT",
            "merchantTransactionId": "ORD1",
            "instrumentResponse": {"type": "PAY_PAGE", "redirectInfo": {"url": url, "method": "GET"}},
        },
    }


def status_body(order_id, code, *, provider_ref="T2401", amount=49900, merchant_id="PGTESTPAYUAT"):
    return {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "message": code.replace("_", " ").title(),
        "data": {
            "merchantId": merchant_id,
            "merchantTransactionId": order_id,
            "transactionId": provider_ref,
            "amount": amount,
            "state": "COMPLETED" if code == "PAYMENT_SUCCESS" else "FAILED",
        },
    }


def envelope(body):
    return base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")


def gateway_config(**overrides):
    values = {
        "merchant_id": "PGTESTPAYUAT",
        "salt_key": SALT_KEY,
        "salt_index": "1",
        "base_url": "https://gateway.example.com",
        "redirect_url": "https://api.example.com/redirect",
        "callback_url": "https://api.example.com/callback",
        "frontend_url": "https://shop.example.com",
    }
    values.update(overrides)
    return GatewayConfig(**values)
