import threading

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from mpesa.coordinator import CoordinatorState, MpesaPaymentCoordinator, StorefrontPaymentsApi


class Command(BaseCommand):
    help = "Pay for an order with an M-Pesa STK push and wait for the outcome"

    def add_arguments(self, parser):
        parser.add_argument("order_id")
        parser.add_argument("phone")
        parser.add_argument("amount")
        parser.add_argument(
            "--base-url",
            default=getattr(settings, "STOREFRONT_BASE_URL", "http://localhost:8000"),
            help="Storefront serving /api/mpesa/",
        )
        parser.add_argument("--poll-interval", type=float, default=5.0)
        parser.add_argument("--max-attempts", type=int, default=24)

    def handle(self, *args, **opts):
        done = threading.Event()
        coordinator = MpesaPaymentCoordinator(
            StorefrontPaymentsApi(opts["base_url"]),
            on_success=lambda checkout_request_id: done.set(),
            on_error=lambda message: done.set(),
            poll_interval=opts["poll_interval"],
            max_poll_attempts=opts["max_attempts"],
        )

        if not coordinator.initiate(opts["phone"], opts["amount"], opts["order_id"]):
            raise CommandError(coordinator.message)

        self.stdout.write(f"{coordinator.message} (CheckoutRequestID {coordinator.checkout_request_id})")
        try:
            done.wait()
        except KeyboardInterrupt:
            coordinator.close()
            raise CommandError("Abandoned before the payment finished")

        if coordinator.state == CoordinatorState.SUCCESS:
            self.stdout.write(self.style.SUCCESS(coordinator.message))
        else:
            raise CommandError(f"{coordinator.state.value}: {coordinator.message}")
