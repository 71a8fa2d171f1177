"""Sweep orders waiting for payment and settle those the gateway reports paid.

Covers buyers who closed the tab before their client poller saw the
payment and gateways whose webhook never arrived.
"""

import logging

from django.core.management.base import BaseCommand

from apps.orders.domain import OrderError, OrderStatus, PaymentStatus, TransientNetworkError
from apps.orders.models import OrderModel
from apps.orders.providers import get_gateway, get_synchronizer

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Check the payment gateway for every order still in pending_payment"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Only report what the gateway says; change nothing",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=500,
            help="Maximum number of orders to check (default: 500)",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        ids = list(
            OrderModel.objects.filter(status=OrderStatus.PENDING_PAYMENT.value)
            .order_by("created_at")
            .values_list("id", flat=True)[: options["limit"]]
        )
        if dry_run:
            self.stdout.write(self.style.WARNING("Dry run: no order will be modified"))
        self.stdout.write(f"{len(ids)} order(s) pending payment")

        gateway = get_gateway()
        synchronizer = get_synchronizer()
        settled = unreachable = 0
        for order_id in ids:
            try:
                if dry_run:
                    report = gateway.fetch_status(str(order_id))
                    self.stdout.write(f"{order_id}: {report.status.value}")
                    continue
                order = synchronizer.check_payment_status(order_id)
            except TransientNetworkError:
                unreachable += 1
                self.stdout.write(self.style.ERROR(f"{order_id}: gateway unreachable"))
                continue
            except OrderError as e:
                self.stdout.write(self.style.ERROR(f"{order_id}: {e}"))
                continue
            if order.payment_status == PaymentStatus.PAID.value and order.status != OrderStatus.PENDING_PAYMENT.value:
                settled += 1
                self.stdout.write(self.style.SUCCESS(f"{order_id}: paid"))

        logger.info("pending payment sweep", extra={"checked": len(ids), "settled": settled, "unreachable": unreachable})
        self.stdout.write(
            self.style.SUCCESS(f"Done: {settled} settled, {unreachable} unreachable, {len(ids)} checked")
        )
