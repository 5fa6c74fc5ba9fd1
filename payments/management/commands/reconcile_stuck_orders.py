import time
from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand

from payments.polling import StatusPoller


class Command(BaseCommand):
    help = "Check gateway status for orders stuck in 'initiated' and reconcile them"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument(
            "--older-than-minutes", type=int, default=getattr(settings, "PAYMENTS_STUCK_AFTER_MINUTES", 30)
        )

    def handle(self, *args, **opts):
        poller = StatusPoller()
        older_than = timedelta(minutes=opts["older_than_minutes"])
        stuck = list(poller.stuck_orders(older_than, opts["max"]))

        if not stuck:
            self.stdout.write(self.style.SUCCESS("No stuck orders to reconcile."))
            return

        applied = failed = 0
        for i, order in enumerate(stuck):
            if i and opts["sleep"]:
                time.sleep(opts["sleep"])
            result = poller.check_status(order.order_id)
            if result.is_err():
                failed += 1
                self.stdout.write(self.style.WARNING(f"{order.order_id}: {result.unwrap_err().message}"))
                continue
            status = result.unwrap()
            outcome = status.reconciliation
            if outcome.applied:
                applied += 1
            self.stdout.write(self.style.SUCCESS(
                f"{order.order_id}: {status.code or '?'} -> {outcome.outcome.value} ({outcome.payment_status})"
            ))

        self.stdout.write(self.style.SUCCESS(f"Checked {len(stuck)}, applied {applied}, failed {failed}."))
