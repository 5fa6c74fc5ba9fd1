"""Audit ledger of payment attempts. Rows are inserted or updated, never deleted."""

from datetime import date, datetime, time, timedelta
from decimal import Decimal

from django.db.models import Count, Q, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone

from .models import AttemptSource, AttemptStatus, PaymentAttempt


TWO_PLACES = Decimal("0.01")


def record_attempt(order, *, status=AttemptStatus.INITIATED, amount=None, raw=None,
                   source=AttemptSource.INITIATION, gateway_transaction_id=None) -> PaymentAttempt:
    return PaymentAttempt.objects.create(
        order=order,
        amount=order.amount if amount is None else amount,
        status=status,
        gateway_transaction_id=gateway_transaction_id or None,
        source=source,
        raw_response=raw,
    )


def insert_or_update(order, gateway_transaction_id, status, amount, raw, source) -> PaymentAttempt:
    """Upsert keyed by (order, gateway_transaction_id).

    Without a keyed row, the newest unkeyed ``initiated`` attempt (the one written at
    initiation) is claimed so one session keeps one row. Must run inside the
    caller's transaction.
    """
    gateway_transaction_id = gateway_transaction_id or None
    fields = {"status": status, "amount": amount, "raw_response": raw, "source": source}

    attempt = None
    if gateway_transaction_id:
        attempt = PaymentAttempt.objects.filter(order=order, gateway_transaction_id=gateway_transaction_id).first()
    if attempt is None:
        attempt = (
            PaymentAttempt.objects.filter(
                order=order, gateway_transaction_id__isnull=True, status=AttemptStatus.INITIATED
            ).order_by("-created_at", "-id").first()
        )
        if attempt is not None:
            fields["gateway_transaction_id"] = gateway_transaction_id
    if attempt is None:
        return record_attempt(
            order, status=status, amount=amount, raw=raw, source=source,
            gateway_transaction_id=gateway_transaction_id,
        )

    for name, value in fields.items():
        setattr(attempt, name, value)
    attempt.save(update_fields=[*fields.keys(), "updated_at"])
    return attempt


def list_by_order(order_id: str):
    return list(PaymentAttempt.objects.filter(order__order_id=order_id).order_by("created_at", "id"))


def history(customer_id: str, page=1, page_size=10) -> dict:
    """One page of a customer's attempts, newest first."""
    try:
        page = max(int(page), 1)
    except (TypeError, ValueError):
        page = 1
    qs = PaymentAttempt.objects.filter(order__customer_id=customer_id).select_related("order")
    start = (page - 1) * page_size
    end = start + page_size
    total = qs.count()
    return {
        "items": list(qs[start:end]),
        "page": page,
        "total": total,
        "has_next": end < total,
        "has_prev": start > 0,
    }


def _bounds(start, end):
    # dates are inclusive on both ends
    tz = timezone.get_current_timezone()
    if isinstance(start, date) and not isinstance(start, datetime):
        start = timezone.make_aware(datetime.combine(start, time.min), tz)
    if isinstance(end, date) and not isinstance(end, datetime):
        end = timezone.make_aware(datetime.combine(end + timedelta(days=1), time.min), tz)
    return start, end


def aggregate(start, end) -> dict:
    lo, hi = _bounds(start, end)
    qs = PaymentAttempt.objects.filter(created_at__gte=lo, created_at__lt=hi)
    completed = Q(status=AttemptStatus.COMPLETED)

    totals = qs.aggregate(
        count=Count("id"),
        completed=Count("id", filter=completed),
        revenue=Sum("amount", filter=completed),
    )
    count = totals["count"] or 0
    n_completed = totals["completed"] or 0
    revenue = (totals["revenue"] or Decimal("0")).quantize(TWO_PLACES)

    status_breakdown = {s: 0 for s in AttemptStatus.values}
    for row in qs.values("status").annotate(n=Count("id")).order_by():
        status_breakdown[row["status"]] = row["n"]

    daily = (
        qs.annotate(day=TruncDate("created_at"))
        .values("day")
        .annotate(count=Count("id"), completed=Count("id", filter=completed), revenue=Sum("amount", filter=completed))
        .order_by("day")
    )

    return {
        "count": count,
        "revenue": revenue,
        "success_rate": round(n_completed * 100.0 / count, 2) if count else 0.0,
        "average_transaction_value": (revenue / n_completed).quantize(TWO_PLACES) if n_completed else Decimal("0.00"),
        "status_breakdown": status_breakdown,
        "daily_breakdown": [
            {
                "date": row["day"].isoformat(),
                "count": row["count"],
                "completed": row["completed"],
                "revenue": (row["revenue"] or Decimal("0")).quantize(TWO_PLACES),
            }
            for row in daily
        ],
    }
