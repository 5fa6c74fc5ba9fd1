from unittest.mock import patch

from django.core import mail
from django.db import OperationalError
from django.test import TestCase, override_settings

from orders.models import FulfillmentStatus, Order, PaymentStatus
from orders.services import update_fulfillment_status
from payments import reconciliation
from payments.checksum import SignatureEngine
from payments.models import AttemptSource, AttemptStatus, PaymentAttempt
from payments.reconciliation import CallbackReconciler, ReconciliationOutcome, map_result_code, reconcile
from payments.services import CustomerContact, PaymentInitiator

from .utils import FakeResponse, envelope, gateway_config, make_order, pay_page_response, status_body


class ReconcileTestCase(TestCase):
    def setUp(self):
        self.order = make_order(amount="1000.00")
        self.reconciler = CallbackReconciler(gateway_config())

    def initiate(self):
        with patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, pay_page_response())):
            PaymentInitiator(gateway_config()).initiate("ORD1", "1000", CustomerContact(phone="9876543210"))
        self.order.refresh_from_db()

    def notify(self, code, ref="T123", amount=None, channel=AttemptSource.CALLBACK, **extra):
        payload = {"code": code, "merchantId": "PGTESTPAYUAT", "transactionId": "ORD1", "providerReferenceId": ref}
        if amount is not None:
            payload["amount"] = amount
        payload.update(extra)
        with self.captureOnCommitCallbacks(execute=True):
            result = self.reconciler.handle(payload, {}, channel)
        self.order.refresh_from_db()
        return result

    def set_state(self, payment_status, status=FulfillmentStatus.PENDING, closed=False):
        Order.objects.filter(pk=self.order.pk).update(payment_status=payment_status, status=status, payment_closed=closed)
        self.order.refresh_from_db()


class SuccessFlowTests(ReconcileTestCase):
    def test_scenario_a_success_callback_completes_order(self):
        self.initiate()
        result = self.notify("PAYMENT_SUCCESS", amount=100000)

        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, FulfillmentStatus.CONFIRMED)
        self.assertEqual(self.order.gateway_transaction_id, "T123")

        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.gateway_transaction_id, "T123")
        self.assertEqual(attempt.status, AttemptStatus.COMPLETED)
        self.assertEqual(attempt.source, AttemptSource.CALLBACK)

    def test_confirmation_email_sent_once(self):
        self.initiate()
        self.notify("PAYMENT_SUCCESS")
        self.notify("PAYMENT_SUCCESS")

        self.assertEqual(len(mail.outbox), 2)
        recipients = sorted(m.to[0] for m in mail.outbox)
        self.assertEqual(recipients, ["buyer@example.com", "ops@example.com"])

    def test_confirmation_problems_never_escape_the_commit_hook(self):
        with self.assertLogs("payments.reconciliation", level="ERROR"):
            reconciliation._notify_paid(999999)
        with patch("payments.reconciliation.send_payment_confirmation", side_effect=RuntimeError("smtp down")), \
                self.assertLogs("payments.reconciliation", level="ERROR"):
            reconciliation._notify_paid(self.order.pk)

    def test_replayed_success_is_idempotent(self):
        self.initiate()
        first = self.notify("PAYMENT_SUCCESS")
        replays = [self.notify("PAYMENT_SUCCESS") for _ in range(3)]

        self.assertEqual(first.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual({r.outcome for r in replays}, {ReconciliationOutcome.DUPLICATE})
        self.assertEqual(PaymentAttempt.objects.count(), 1)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)

    def test_redirect_and_callback_for_same_payment_share_one_row(self):
        self.initiate()
        self.notify("PAYMENT_SUCCESS", channel=AttemptSource.REDIRECT)
        self.notify("PAYMENT_SUCCESS", channel=AttemptSource.CALLBACK)

        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.source, AttemptSource.REDIRECT)

    def test_pending_order_success_passes_through_initiated(self):
        result = self.notify("PAYMENT_SUCCESS")

        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(PaymentAttempt.objects.get().gateway_transaction_id, "T123")

    def test_late_success_after_failure(self):
        self.initiate()
        self.notify("PAYMENT_ERROR", ref="T1")
        result = self.notify("PAYMENT_SUCCESS", ref="T2")

        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, FulfillmentStatus.CONFIRMED)
        statuses = dict(PaymentAttempt.objects.values_list("gateway_transaction_id", "status"))
        self.assertEqual(statuses, {"T1": AttemptStatus.FAILED, "T2": AttemptStatus.COMPLETED})

    def test_staff_cancelled_order_still_records_payment(self):
        self.set_state(PaymentStatus.INITIATED, FulfillmentStatus.CANCELLED)
        with self.assertLogs("payments.reconciliation", level="WARNING"):
            result = self.notify("PAYMENT_SUCCESS")

        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, FulfillmentStatus.CANCELLED)


class FailureFlowTests(ReconcileTestCase):
    def test_scenario_b_duplicate_failure_is_noop(self):
        self.initiate()
        first = self.notify("PAYMENT_ERROR")
        self.assertEqual(first.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(self.order.status, FulfillmentStatus.FAILED)

        second = self.notify("PAYMENT_ERROR")
        self.assertEqual(second.outcome, ReconciliationOutcome.DUPLICATE)
        self.assertEqual(PaymentAttempt.objects.count(), 1)
        self.assertEqual(PaymentAttempt.objects.get().status, AttemptStatus.FAILED)

    def test_failure_after_success_is_rejected(self):
        self.initiate()
        self.notify("PAYMENT_SUCCESS")
        with self.assertLogs("payments.security", level="WARNING"):
            result = self.notify("PAYMENT_DECLINED", ref="T999")

        self.assertEqual(result.outcome, ReconciliationOutcome.REGRESSION_REJECTED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, FulfillmentStatus.CONFIRMED)
        self.assertEqual(PaymentAttempt.objects.count(), 1)

    def test_pending_code_never_moves_terminal_order(self):
        for state in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUND_INITIATED):
            with self.subTest(state=state):
                self.set_state(state)
                result = self.notify("PAYMENT_PENDING")
                self.assertEqual(result.outcome, ReconciliationOutcome.STALE)
                self.assertEqual(self.order.payment_status, state)

    def test_success_on_closed_failed_order_is_flagged_not_applied(self):
        self.set_state(PaymentStatus.FAILED, FulfillmentStatus.FAILED, closed=True)
        with self.assertLogs("payments.security", level="WARNING"):
            result = self.notify("PAYMENT_SUCCESS")

        self.assertEqual(result.outcome, ReconciliationOutcome.ANOMALY)
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_pending_code_on_pending_order_marks_initiated(self):
        result = self.notify("PAYMENT_PENDING")
        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertIsNotNone(self.order.payment_initiated_at)
        self.assertFalse(PaymentAttempt.objects.exists())


class RejectedNotificationTests(ReconcileTestCase):
    def assertNoWrites(self, status=PaymentStatus.PENDING):
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, status)
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_amount_mismatch_on_success(self):
        self.set_state(PaymentStatus.INITIATED)
        with self.assertLogs("payments.security", level="WARNING"):
            result = self.notify("PAYMENT_SUCCESS", amount=100)
        self.assertEqual(result.outcome, ReconciliationOutcome.AMOUNT_MISMATCH)
        self.assertNoWrites(PaymentStatus.INITIATED)

    def test_unknown_order_is_acknowledged(self):
        result = self.notify("PAYMENT_SUCCESS", transactionId="GHOST")
        self.assertEqual(result.outcome, ReconciliationOutcome.UNKNOWN_ORDER)
        self.assertEqual(result.outcome.http_status, 200)
        self.assertNoWrites()

    def test_unknown_code(self):
        result = self.notify("SOMETHING_NEW")
        self.assertEqual(result.outcome, ReconciliationOutcome.UNKNOWN_CODE)
        self.assertNoWrites()

    def test_missing_transaction_id_and_bad_amount_are_malformed(self):
        self.assertEqual(self.notify("PAYMENT_SUCCESS", transactionId="").outcome, ReconciliationOutcome.MALFORMED)
        self.assertEqual(self.notify("PAYMENT_SUCCESS", amount="12.5").outcome, ReconciliationOutcome.MALFORMED)
        self.assertEqual(self.notify("PAYMENT_SUCCESS", amount="lots").outcome, ReconciliationOutcome.MALFORMED)
        self.assertEqual(self.reconciler.handle(None).outcome, ReconciliationOutcome.MALFORMED)
        self.assertNoWrites()

    def test_foreign_merchant(self):
        result = self.notify("PAYMENT_SUCCESS", merchantId="SOMEONEELSE")
        self.assertEqual(result.outcome, ReconciliationOutcome.INVALID_SIGNATURE)
        self.assertEqual(result.outcome.http_status, 401)
        self.assertNoWrites()

    def test_unsigned_payload_rejected_when_signatures_required(self):
        self.reconciler = CallbackReconciler(gateway_config(require_signed_callbacks=True))
        result = self.notify("PAYMENT_SUCCESS")
        self.assertEqual(result.outcome, ReconciliationOutcome.INVALID_SIGNATURE)
        self.assertNoWrites()


class SignedEnvelopeTests(ReconcileTestCase):
    def setUp(self):
        super().setUp()
        self.set_state(PaymentStatus.INITIATED)
        self.body = envelope(status_body("ORD1", "PAYMENT_SUCCESS", provider_ref="T555", amount=100000))

    def test_valid_signature_applies(self):
        signature = SignatureEngine("test-salt-key", "1").sign(self.body, "")
        with self.captureOnCommitCallbacks(execute=True):
            result = self.reconciler.handle({"response": self.body}, {"X-VERIFY": signature})

        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.gateway_transaction_id, "T555")

    def test_invalid_signature_writes_nothing(self):
        signature = SignatureEngine("wrong-key", "1").sign(self.body, "")
        with self.assertLogs("payments.security", level="WARNING"):
            result = self.reconciler.handle({"response": self.body}, {"X-VERIFY": signature})

        self.assertEqual(result.outcome, ReconciliationOutcome.INVALID_SIGNATURE)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_missing_signature(self):
        result = self.reconciler.handle({"response": self.body}, {})
        self.assertEqual(result.outcome, ReconciliationOutcome.INVALID_SIGNATURE)

    def test_signed_garbage_is_malformed(self):
        garbage = "bm90IGpzb24="
        signature = SignatureEngine("test-salt-key", "1").sign(garbage, "")
        result = self.reconciler.handle({"response": garbage}, {"X-VERIFY": signature})
        self.assertEqual(result.outcome, ReconciliationOutcome.MALFORMED)


class ConcurrencyTests(ReconcileTestCase):
    def test_lost_race_rereads_and_replans(self):
        self.initiate()
        real_plan = reconciliation.plan
        calls = []

        def racing_plan(order, mapped, amount_minor=None):
            target = real_plan(order, mapped, amount_minor)
            if not calls:
                # another channel fails the payment between our read and our write
                Order.objects.filter(pk=order.pk).update(payment_status=PaymentStatus.FAILED, status=FulfillmentStatus.FAILED)
            calls.append(order.payment_status)
            return target

        with patch("payments.reconciliation.plan", side_effect=racing_plan):
            result = self.notify("PAYMENT_SUCCESS")

        self.assertEqual(calls, [PaymentStatus.INITIATED, PaymentStatus.FAILED])
        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, FulfillmentStatus.CONFIRMED)

    def test_staff_cancel_between_read_and_write_is_kept(self):
        self.initiate()
        real_plan = reconciliation.plan
        calls = []

        def racing_plan(order, mapped, amount_minor=None):
            target = real_plan(order, mapped, amount_minor)
            if not calls:
                cancelled = update_fulfillment_status("ORD1", FulfillmentStatus.CANCELLED, actor="ops")
                self.assertTrue(cancelled.is_ok())
            calls.append(order.status)
            return target

        with patch("payments.reconciliation.plan", side_effect=racing_plan):
            result = self.notify("PAYMENT_SUCCESS")

        self.assertEqual(calls, [FulfillmentStatus.PENDING, FulfillmentStatus.CANCELLED])
        self.assertEqual(result.outcome, ReconciliationOutcome.APPLIED)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, FulfillmentStatus.CANCELLED)

    def test_pending_code_does_not_undo_concurrent_cancel(self):
        self.set_state(PaymentStatus.PENDING)
        stale = Order.objects.get(pk=self.order.pk)
        target = reconciliation.plan(stale, map_result_code("PAYMENT_PENDING"))
        update_fulfillment_status("ORD1", FulfillmentStatus.CANCELLED)

        written = reconciliation._write(stale, target, gateway_reference_id="", raw={}, source=AttemptSource.CALLBACK)

        self.assertFalse(written)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, FulfillmentStatus.CANCELLED)
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

    @override_settings(PAYMENTS_RECONCILE_MAX_ATTEMPTS=2)
    def test_persistent_db_errors_exhaust_retries_and_roll_back(self):
        self.initiate()
        with patch("payments.reconciliation.records.insert_or_update", side_effect=OperationalError("database is locked")) as upsert:
            result = self.notify("PAYMENT_SUCCESS")

        self.assertEqual(upsert.call_count, 2)
        self.assertEqual(result.outcome, ReconciliationOutcome.RETRY_EXHAUSTED)
        self.assertEqual(result.outcome.http_status, 503)
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertEqual(PaymentAttempt.objects.get().status, AttemptStatus.INITIATED)
        self.assertEqual(len(mail.outbox), 0)


class ResultCodeTableTests(TestCase):
    def test_mapping(self):
        self.assertEqual(map_result_code("PAYMENT_SUCCESS"), (PaymentStatus.COMPLETED, FulfillmentStatus.CONFIRMED))
        for code in ("PAYMENT_ERROR", "PAYMENT_DECLINED", "PAYMENT_CANCELLED", "TIMED_OUT", "AUTHORIZATION_FAILED"):
            self.assertEqual(map_result_code(code), (PaymentStatus.FAILED, FulfillmentStatus.FAILED))
        for code in ("PAYMENT_PENDING", "PAYMENT_INITIATED"):
            self.assertEqual(map_result_code(code), (PaymentStatus.INITIATED, None))
        self.assertEqual(map_result_code(" payment_success "), map_result_code("PAYMENT_SUCCESS"))
        self.assertIsNone(map_result_code("NOPE"))
        self.assertIsNone(map_result_code(None))

    def test_reconcile_rejects_blank_transaction(self):
        result = reconcile("  ", "PAYMENT_SUCCESS", "T1", {})
        self.assertEqual(result.outcome, ReconciliationOutcome.MALFORMED)
