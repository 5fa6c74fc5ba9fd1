import logging
from datetime import timedelta
from urllib.parse import urlencode

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ImproperlyConfigured
from django.http import HttpResponseRedirect, JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from orders.models import Order, PaymentStatus
from storefront.decorators import staff_required
from storefront.http import json_body

from . import records
from .errors import ErrorKind, PaymentError
from .integrations.phonepe import GatewayConfig
from .models import AttemptSource
from .polling import StatusPoller
from .reconciliation import CallbackReconciler
from .refunds import RefundService
from .services import CustomerContact, PaymentInitiator

logger = logging.getLogger(__name__)


def _inbound_payload(request):
    # gateway posts form fields on the redirect and JSON on the callback
    data = json_body(request)
    if data is None and request.POST:
        data = request.POST.dict()
    return data


def _error_response(error: PaymentError):
    return JsonResponse(error.as_json(), status=error.kind.http_status)


def _attempt_json(attempt, with_refunds=False):
    data = {
        "id": attempt.pk,
        "orderId": attempt.order.order_id,
        "amount": str(attempt.amount),
        "status": attempt.status,
        "transactionId": attempt.gateway_transaction_id,
        "source": attempt.source,
        "createdAt": attempt.created_at.isoformat(),
        "updatedAt": attempt.updated_at.isoformat(),
    }
    if with_refunds:
        data["refunds"] = [_refund_json(r) for r in attempt.refunds.all()]
    return data


def _refund_json(refund):
    return {
        "id": refund.pk,
        "refundId": refund.merchant_refund_id,
        "amount": str(refund.amount),
        "status": refund.status,
        "reason": refund.reason,
        "requestedBy": refund.requested_by,
        "createdAt": refund.created_at.isoformat(),
    }


@csrf_exempt
@require_POST
def pay_view(request):
    body = json_body(request)
    if body is None:
        return _error_response(PaymentError(ErrorKind.VALIDATION, "Invalid JSON body"))

    contact = CustomerContact(
        phone=str(body.get("customerPhone") or ""),
        email=str(body.get("customerEmail") or ""),
        name=str(body.get("customerName") or ""),
    )
    result = PaymentInitiator().initiate(body.get("orderId"), body.get("amount"), contact)
    if result.is_err():
        return _error_response(result.unwrap_err())

    session = result.unwrap()
    return JsonResponse({
        "ok": True,
        "orderId": session.order_id,
        "redirectUrl": session.redirect_url,
        "attemptId": session.attempt_id,
    })


@csrf_exempt
@require_POST
def redirect_view(request):
    """Browser lands here from the pay page; reconcile, then send it back to the storefront."""
    result = CallbackReconciler().handle(_inbound_payload(request), request.headers, AttemptSource.REDIRECT)
    frontend = GatewayConfig.from_settings().frontend_url

    if result.paid:
        query = {"status": "success", "orderId": result.order_id, "transactionId": result.gateway_transaction_id}
    elif result.payment_status in (PaymentStatus.PENDING, PaymentStatus.INITIATED):
        query = {"status": "pending", "orderId": result.order_id}
    else:
        query = {"status": "failure", "orderId": result.order_id, "message": result.message or "Payment failed"}
    return HttpResponseRedirect(f"{frontend}/checkout?{urlencode(query)}")


@csrf_exempt
@require_POST
def callback_view(request):
    result = CallbackReconciler().handle(_inbound_payload(request), request.headers, AttemptSource.CALLBACK)
    return JsonResponse(result.as_json(), status=result.outcome.http_status)


@require_GET
@staff_required
def status_view(request, order_id: str):
    result = StatusPoller().check_status(order_id)
    if result.is_err():
        return _error_response(result.unwrap_err())
    return JsonResponse(result.unwrap().as_json())


@csrf_exempt
@require_POST
@staff_required
def sweep_view(request):
    body = json_body(request) or {}
    try:
        minutes = int(body.get("olderThanMinutes", getattr(settings, "PAYMENTS_STUCK_AFTER_MINUTES", 30)))
        limit = int(body.get("limit", 50))
    except (TypeError, ValueError):
        return _error_response(PaymentError(ErrorKind.VALIDATION, "olderThanMinutes and limit must be integers"))
    if minutes < 0 or limit < 1:
        return _error_response(PaymentError(ErrorKind.VALIDATION, "olderThanMinutes and limit must be positive"))

    report = StatusPoller().sweep(older_than=timedelta(minutes=minutes), limit=limit)
    return JsonResponse(report.as_json())


@require_GET
@staff_required
def order_payments_view(request, order_id: str):
    order = Order.objects.filter(order_id=order_id).first()
    if order is None:
        return _error_response(PaymentError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found"))
    attempts = records.list_by_order(order.order_id)
    return JsonResponse({
        "ok": True,
        "orderId": order.order_id,
        "amount": str(order.amount),
        "paymentStatus": order.payment_status,
        "status": order.status,
        "attempts": [_attempt_json(a, with_refunds=True) for a in attempts],
    })


@csrf_exempt
@require_POST
@staff_required
def refund_view(request, attempt_id: int):
    body = json_body(request)
    if body is None:
        return _error_response(PaymentError(ErrorKind.VALIDATION, "Invalid JSON body"))
    result = RefundService().request_refund(
        attempt_id, body.get("amount"), reason=str(body.get("reason") or ""), requested_by=request.user.get_username(),
    )
    if result.is_err():
        return _error_response(result.unwrap_err())
    return JsonResponse({"ok": True, "refund": _refund_json(result.unwrap())}, status=201)


@require_GET
@staff_required
def analytics_view(request):
    today = timezone.localdate()
    try:
        start = parse_date(request.GET["start"]) if request.GET.get("start") else today - timedelta(days=29)
        end = parse_date(request.GET["end"]) if request.GET.get("end") else today
    except ValueError:
        start = end = None
    if start is None or end is None:
        return _error_response(PaymentError(ErrorKind.VALIDATION, "start and end must be ISO dates (YYYY-MM-DD)"))
    if start > end:
        return _error_response(PaymentError(ErrorKind.VALIDATION, "start must not be after end"))

    stats = records.aggregate(start, end)
    stats["revenue"] = str(stats["revenue"])
    stats["average_transaction_value"] = str(stats["average_transaction_value"])
    for day in stats["daily_breakdown"]:
        day["revenue"] = str(day["revenue"])
    return JsonResponse({"ok": True, "start": start.isoformat(), "end": end.isoformat(), **stats})


@login_required
@require_GET
def my_payments_view(request):
    """Previous payments for the logged-in customer."""
    page = records.history(request.user.get_username(), request.GET.get("page", "1"))
    return JsonResponse({
        "ok": True,
        "page": page["page"],
        "total": page["total"],
        "has_next": page["has_next"],
        "has_prev": page["has_prev"],
        "payments": [_attempt_json(a) for a in page["items"]],
    })


@require_GET
def health_view(request):
    try:
        config = GatewayConfig.from_settings()
    except ImproperlyConfigured as e:
        logger.error("Payment gateway misconfigured: %s", e)
        return JsonResponse({"ok": False, "error": str(e)}, status=503)
    return JsonResponse({
        "ok": True,
        "gateway": config.base_url,
        "redirectUrlConfigured": bool(config.redirect_url),
        "callbackUrlConfigured": bool(config.callback_url),
        "signedCallbacksRequired": config.require_signed_callbacks,
    })
