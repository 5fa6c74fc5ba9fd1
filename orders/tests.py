import json
from decimal import Decimal

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.test import RequestFactory, SimpleTestCase, TestCase

from payments.errors import ErrorKind
from storefront.http import json_body

from . import services, transitions
from .models import FulfillmentStatus as F
from .models import Order
from .models import PaymentStatus as P


class PaymentTransitionTests(SimpleTestCase):
    def test_legal_moves(self):
        for current, target in [
            (P.PENDING, P.INITIATED),
            (P.INITIATED, P.COMPLETED),
            (P.INITIATED, P.FAILED),
            (P.FAILED, P.INITIATED),
            (P.FAILED, P.COMPLETED),
            (P.COMPLETED, P.REFUND_INITIATED),
        ]:
            with self.subTest(current=current, target=target):
                self.assertTrue(transitions.can_transition_payment(current, target))

    def test_illegal_moves(self):
        for current, target in [
            (P.PENDING, P.COMPLETED),
            (P.COMPLETED, P.FAILED),
            (P.COMPLETED, P.INITIATED),
            (P.REFUND_INITIATED, P.COMPLETED),
            (P.INITIATED, P.INITIATED),
        ]:
            with self.subTest(current=current, target=target):
                self.assertFalse(transitions.can_transition_payment(current, target))


class FulfillmentTransitionTests(SimpleTestCase):
    def test_happy_path(self):
        path = [F.PENDING, F.CONFIRMED, F.PROCESSING, F.SHIPPED, F.DELIVERED]
        for current, target in zip(path, path[1:]):
            self.assertTrue(transitions.can_transition_fulfillment(current, target))

    def test_cancel_and_fail_only_before_shipping(self):
        for current in (F.PENDING, F.CONFIRMED, F.PROCESSING):
            self.assertTrue(transitions.can_transition_fulfillment(current, F.CANCELLED))
            self.assertTrue(transitions.can_transition_fulfillment(current, F.FAILED))
        for current in (F.SHIPPED, F.DELIVERED):
            self.assertFalse(transitions.can_transition_fulfillment(current, F.CANCELLED))
            self.assertFalse(transitions.can_transition_fulfillment(current, F.FAILED))

    def test_final_states(self):
        for target in F.values:
            self.assertFalse(transitions.can_transition_fulfillment(F.DELIVERED, target))
            self.assertFalse(transitions.can_transition_fulfillment(F.CANCELLED, target))


class ApplyTests(SimpleTestCase):
    def test_applies_both_axes(self):
        state = transitions.OrderState(P.INITIATED, F.PENDING)
        result = transitions.apply(state, transitions.StatusEvent(payment_status=P.COMPLETED, fulfillment_status=F.CONFIRMED))
        self.assertEqual(result.unwrap(), transitions.OrderState(P.COMPLETED, F.CONFIRMED))

    def test_illegal_move_is_reported_not_clamped(self):
        state = transitions.OrderState(P.COMPLETED, F.CONFIRMED)
        result = transitions.apply(state, transitions.StatusEvent(payment_status=P.FAILED))
        self.assertTrue(result.is_err())
        illegal = result.unwrap_err()
        self.assertEqual((illegal.axis, illegal.current, illegal.target), ("payment", P.COMPLETED, P.FAILED))
        self.assertIn("completed -> failed", illegal.message)

    def test_empty_event_keeps_state(self):
        state = transitions.OrderState(P.PENDING, F.PENDING)
        self.assertEqual(transitions.apply(state, transitions.StatusEvent()).unwrap(), state)


class OrderModelTests(TestCase):
    def test_amount_is_immutable(self):
        order = Order.objects.create(order_id="ORD1", amount=Decimal("100.00"))
        order.status = F.CONFIRMED
        order.save()

        order = Order.objects.get(pk=order.pk)
        order.amount = Decimal("1.00")
        with self.assertRaises(ValueError):
            order.save()
        self.assertEqual(Order.objects.get().amount, Decimal("100.00"))

    def test_amount_minor(self):
        self.assertEqual(Order(order_id="x", amount=Decimal("499.99")).amount_minor, 49999)
        self.assertEqual(Order(order_id="x", amount="10").amount_minor, 1000)


class StaffOrderEditTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.staff = User.objects.create_user("ops", password="pw", is_staff=True)
        self.order = Order.objects.create(
            order_id="ORD1", amount=Decimal("100.00"), payment_status=P.COMPLETED, status=F.CONFIRMED
        )

    def _post(self, path, body=None):
        return self.client.post(path, data=json.dumps(body or {}), content_type="application/json")

    def test_service_applies_legal_edit(self):
        result = services.update_fulfillment_status("ORD1", F.PROCESSING, actor="ops")
        self.assertEqual(result.unwrap().status, F.PROCESSING)

    def test_service_rejects_illegal_edit(self):
        result = services.update_fulfillment_status("ORD1", F.DELIVERED)
        self.assertEqual(result.unwrap_err().kind, ErrorKind.ILLEGAL_TRANSITION)
        self.assertEqual(services.update_fulfillment_status("ORD1", "lost").unwrap_err().kind, ErrorKind.VALIDATION)
        self.assertEqual(services.update_fulfillment_status("NOPE", F.PROCESSING).unwrap_err().kind, ErrorKind.ORDER_NOT_FOUND)

    def test_status_endpoint(self):
        self.assertEqual(self._post("/orders/ORD1/status", {"status": "processing"}).status_code, 401)
        self.client.force_login(self.staff)

        resp = self._post("/orders/ORD1/status", {"status": "processing"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["status"], "processing")

        resp = self._post("/orders/ORD1/status", {"status": "pending"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "illegal_transition")
        self.assertEqual(self._post("/orders/ORD1/status", {}).status_code, 400)

    def test_close_failed_payment(self):
        self.client.force_login(self.staff)
        self.assertEqual(self._post("/orders/ORD1/close-payment").status_code, 409)

        Order.objects.filter(pk=self.order.pk).update(payment_status=P.FAILED, status=F.FAILED)
        resp = self._post("/orders/ORD1/close-payment")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["order"]["payment_closed"])
        # closing twice is harmless
        self.assertEqual(self._post("/orders/ORD1/close-payment").status_code, 200)


class OrderAdminTests(TestCase):
    def setUp(self):
        self.model_admin = admin.site._registry[Order]
        self.request = RequestFactory().get("/admin/orders/order/")
        self.request.user = get_user_model().objects.create_superuser("root", "root@example.com", "pw")

    def test_statuses_are_not_editable_on_existing_orders(self):
        order = Order.objects.create(order_id="ORD1", amount=Decimal("100.00"), payment_status=P.FAILED, status=F.FAILED)
        form = self.model_admin.get_form(self.request, order)
        for field in ("status", "payment_closed", "payment_status", "amount"):
            self.assertNotIn(field, form.base_fields)

    def test_new_orders_can_set_amount(self):
        form = self.model_admin.get_form(self.request)
        self.assertIn("amount", form.base_fields)


class JsonBodyTests(SimpleTestCase):
    def _request(self, body):
        return RequestFactory().post("/x", data=body, content_type="application/json")

    def test_only_objects_are_accepted(self):
        self.assertEqual(json_body(self._request('{"status": "shipped"}')), {"status": "shipped"})
        for body in ("[1, 2]", '"text"', "{{", b"\xff"):
            with self.subTest(body=body):
                self.assertIsNone(json_body(self._request(body)))
