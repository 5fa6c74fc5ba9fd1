from decimal import Decimal
from unittest.mock import patch

import requests
from django.test import TestCase

from orders.models import FulfillmentStatus, PaymentStatus
from payments.checksum import SignatureEngine
from payments.errors import ErrorKind
from payments.integrations.phonepe import PAY_PATH, decode_payload
from payments.models import AttemptStatus, PaymentAttempt
from payments.services import CustomerContact, PaymentInitiator, mobile_number, parse_amount

from .utils import FakeResponse, gateway_config, make_order, pay_page_response

CONTACT = CustomerContact(phone="+91 98765-43210", email="buyer@example.com")


class InitiateSuccessTests(TestCase):
    def setUp(self):
        self.order = make_order()
        self.initiator = PaymentInitiator(gateway_config())

    def test_creates_session_and_marks_order_initiated(self):
        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, pay_page_response())) as post:
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)

        self.assertTrue(result.is_ok())
        session = result.unwrap()
        self.assertEqual(session.redirect_url, "https://gateway.example.com/pay/abc")

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertEqual(self.order.status, FulfillmentStatus.PENDING)
        self.assertIsNotNone(self.order.payment_initiated_at)

        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.pk, session.attempt_id)
        self.assertEqual(attempt.status, AttemptStatus.INITIATED)
        self.assertIsNone(attempt.gateway_transaction_id)
        self.assertEqual(attempt.amount, Decimal("499.00"))

        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://gateway.example.com/pg/v1/pay")
        self.assertEqual(post.call_args.kwargs["timeout"], 30.0)

    def test_payload_is_signed_and_uses_minor_units(self):
        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, pay_page_response())) as post:
            self.initiator.initiate("ORD1", Decimal("499"), CONTACT)

        body = post.call_args.kwargs["json"]["request"]
        headers = post.call_args.kwargs["headers"]
        self.assertTrue(SignatureEngine("test-salt-key", "1").verify(headers["X-VERIFY"], body, PAY_PATH))

        payload = decode_payload(body)
        self.assertEqual(payload["merchantId"], "PGTESTPAYUAT")
        self.assertEqual(payload["merchantTransactionId"], "ORD1")
        self.assertEqual(payload["merchantUserId"], "cust42")
        self.assertEqual(payload["amount"], 49900)
        self.assertEqual(payload["mobileNumber"], "9876543210")
        self.assertEqual(payload["redirectMode"], "POST")
        self.assertEqual(payload["redirectUrl"], "https://api.example.com/redirect")
        self.assertEqual(payload["callbackUrl"], "https://api.example.com/callback")
        self.assertEqual(payload["paymentInstrument"], {"type": "PAY_PAGE"})

    def test_retry_after_failure_resets_fulfillment(self):
        self.order.payment_status = PaymentStatus.FAILED
        self.order.status = FulfillmentStatus.FAILED
        self.order.save()

        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, pay_page_response())):
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)

        self.assertTrue(result.is_ok())
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertEqual(self.order.status, FulfillmentStatus.PENDING)


class InitiatePreconditionTests(TestCase):
    def setUp(self):
        self.order = make_order()
        self.initiator = PaymentInitiator(gateway_config())

    def _initiate(self, *args):
        with patch("payments.integrations.phonepe.requests.post") as post:
            result = self.initiator.initiate(*args)
        post.assert_not_called()
        return result

    def test_validation_errors(self):
        cases = [
            ("", "499.00", CONTACT),
            ("ORD1", "abc", CONTACT),
            ("ORD1", "0", CONTACT),
            ("ORD1", "-5", CONTACT),
            ("ORD1", None, CONTACT),
            ("ORD1", "498.995", CONTACT),
            ("ORD1", "499.00", CustomerContact(phone="12345")),
        ]
        for args in cases:
            with self.subTest(args=args):
                result = self._initiate(*args)
                self.assertEqual(result.unwrap_err().kind, ErrorKind.VALIDATION)

    def test_unknown_order(self):
        self.assertEqual(self._initiate("NOPE", "499.00", CONTACT).unwrap_err().kind, ErrorKind.ORDER_NOT_FOUND)

    def test_already_paid(self):
        for status in (PaymentStatus.COMPLETED, PaymentStatus.REFUND_INITIATED):
            with self.subTest(status=status):
                self.order.payment_status = status
                self.order.save()
                self.assertEqual(self._initiate("ORD1", "499.00", CONTACT).unwrap_err().kind, ErrorKind.ALREADY_PAID)

    def test_in_progress(self):
        self.order.payment_status = PaymentStatus.INITIATED
        self.order.save()
        self.assertEqual(self._initiate("ORD1", "499.00", CONTACT).unwrap_err().kind, ErrorKind.PAYMENT_IN_PROGRESS)

    def test_closed_failed_payment(self):
        self.order.payment_status = PaymentStatus.FAILED
        self.order.payment_closed = True
        self.order.save()
        self.assertEqual(self._initiate("ORD1", "499.00", CONTACT).unwrap_err().kind, ErrorKind.PAYMENT_CLOSED)

    def test_amount_mismatch_is_security_logged_and_writes_nothing(self):
        with self.assertLogs("payments.security", level="WARNING") as cm:
            result = self._initiate("ORD1", "1.00", CONTACT)

        self.assertEqual(result.unwrap_err().kind, ErrorKind.AMOUNT_MISMATCH)
        self.assertIn("ORD1", cm.output[0])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertFalse(PaymentAttempt.objects.exists())


class InitiateGatewayFailureTests(TestCase):
    def setUp(self):
        self.order = make_order()
        self.initiator = PaymentInitiator(gateway_config())

    def _assert_untouched(self):
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, AttemptStatus.FAILED)

    def test_timeout_is_retryable_and_leaves_order_pending(self):
        with patch("payments.integrations.phonepe.requests.post", side_effect=requests.Timeout("read timed out")):
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)

        error = result.unwrap_err()
        self.assertEqual(error.kind, ErrorKind.GATEWAY_TIMEOUT)
        self.assertEqual(error.kind.http_status, 503)
        self.assertTrue(error.retryable)
        self._assert_untouched()

    def test_connection_error_maps_to_timeout_kind(self):
        with patch("payments.integrations.phonepe.requests.post", side_effect=requests.ConnectionError("refused")):
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)
        self.assertEqual(result.unwrap_err().kind, ErrorKind.GATEWAY_TIMEOUT)
        self._assert_untouched()

    def test_server_error(self):
        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(502, None, text="bad gateway")):
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)
        self.assertEqual(result.unwrap_err().kind, ErrorKind.GATEWAY_ERROR)
        self._assert_untouched()

    def test_rejection_message_passes_through(self):
        body = {"success": False, "code": "BAD_REQUEST", "message": "Please check the inputs you have provided."}
        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(400, body)):
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)

        error = result.unwrap_err()
        self.assertEqual(error.kind, ErrorKind.GATEWAY_REJECTED)
        self.assertEqual(error.message, "Please check the inputs you have provided.")
        self.assertFalse(error.retryable)
        self._assert_untouched()
        self.assertEqual(PaymentAttempt.objects.get().raw_response["response"], body)

    def test_success_without_redirect_url_is_rejected(self):
        body = {"success": True, "code": "PAYMENT_INITIATED", "message": "odd", "data": {}}
        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, body)):
            result = self.initiator.initiate("ORD1", "499.00", CONTACT)
        self.assertEqual(result.unwrap_err().kind, ErrorKind.GATEWAY_REJECTED)
        self._assert_untouched()


class InputHelperTests(TestCase):
    def test_parse_amount(self):
        self.assertEqual(parse_amount("499"), Decimal("499.00"))
        self.assertEqual(parse_amount(12.5), Decimal("12.50"))
        self.assertIsNone(parse_amount("NaN"))
        self.assertIsNone(parse_amount("Infinity"))
        self.assertIsNone(parse_amount(True))
        self.assertEqual(parse_amount("1000.000"), Decimal("1000.00"))
        self.assertIsNone(parse_amount("999.995"))

    def test_mobile_number_keeps_last_ten_digits(self):
        self.assertEqual(mobile_number("+91-98765 43210"), "9876543210")
        self.assertEqual(mobile_number("9876543210"), "9876543210")
        self.assertIsNone(mobile_number("98765"))
        self.assertIsNone(mobile_number(None))
