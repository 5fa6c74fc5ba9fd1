from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from storefront.decorators import staff_required
from storefront.http import json_body

from . import services


def _order_json(order):
    return {
        "order_id": order.order_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_closed": order.payment_closed,
        "amount": str(order.amount),
        "currency": order.currency,
        "gateway_transaction_id": order.gateway_transaction_id,
    }


@csrf_exempt
@require_POST
@staff_required
def order_status_view(request, order_id: str):
    body = json_body(request)
    if not body or not body.get("status"):
        return JsonResponse({"ok": False, "error": "validation_error", "message": "status is required"}, status=400)

    result = services.update_fulfillment_status(order_id, str(body["status"]), actor=request.user.get_username())
    if result.is_err():
        err = result.unwrap_err()
        return JsonResponse(err.as_json(), status=err.kind.http_status)
    return JsonResponse({"ok": True, "order": _order_json(result.unwrap())})


@csrf_exempt
@require_POST
@staff_required
def close_payment_view(request, order_id: str):
    result = services.close_failed_payment(order_id, actor=request.user.get_username())
    if result.is_err():
        err = result.unwrap_err()
        return JsonResponse(err.as_json(), status=err.kind.http_status)
    return JsonResponse({"ok": True, "order": _order_json(result.unwrap())})
