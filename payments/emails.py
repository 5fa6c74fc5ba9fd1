import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    # Comma-separated list via env or settings; fall back to DEFAULT_FROM_EMAIL/host user
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None) or getattr(settings, "ADMIN_EMAILS", None)
    if not raw:
        raw = ",".join([
            getattr(settings, "EMAIL_HOST_USER", "") or "",
            getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
        ])
    seen = set()
    uniq: List[str] = []
    for e in (raw or "").split(","):
        e = e.strip()
        if e and e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def _send(subject, template, context, recipients):
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    text = render_to_string(f"emails/{template}.txt", context)
    html = render_to_string(f"emails/{template}.html", context)
    msg = EmailMultiAlternatives(subject, text, from_email, recipients)
    msg.attach_alternative(html, "text/html")
    msg.send(fail_silently=_fail_silently())


def send_payment_confirmation(*, order) -> None:
    """Receipt to the customer and a notification to admins for a paid order.

    Runs after the reconciliation transaction commits; never raises.
    """
    context = {
        "order_id": order.order_id,
        "gateway_transaction_id": order.gateway_transaction_id,
        "amount": order.amount,
        "currency": order.currency,
        "payment_status": order.payment_status,
        "status": order.status,
        "customer_id": order.customer_id,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "items": order.items or [],
    }

    if order.customer_email:
        try:
            _send(
                f"Payment received: {order.order_id} - {order.currency} {order.amount}",
                "payment_receipt_customer", context, [order.customer_email],
            )
        except Exception:
            logger.exception("Failed to send payment receipt to %s", order.customer_email)

    admins = _admin_recipients()
    if admins:
        try:
            _send(
                f"New payment: {order.order_id} - {order.currency} {order.amount} ({order.payment_status})",
                "payment_notification_admin", context, admins,
            )
        except Exception:
            logger.exception("Failed to send payment admin notification for %s", order.order_id)
