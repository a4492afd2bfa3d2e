from unittest.mock import Mock

import requests
from django.test import SimpleTestCase

from mpesa.coordinator import (
    CoordinatorState,
    MpesaPaymentCoordinator,
    PaymentApiError,
    StorefrontPaymentsApi,
)

ORDER_ID = "3f2b9c1e-8d4a-4f6b-9e2c-1a2b3c4d5e6f"


class FakeTimer:
    def __init__(self, due, callback, args):
        self.due = due
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Runs timers on demand against a virtual clock."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def active(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.active if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            timer.fired = True
            timer.callback(*timer.args)
        self.now = target


class FakeApi:
    def __init__(self, statuses=None, push_error=None):
        self.statuses = list(statuses or [])
        self.push_error = push_error
        self.pushes = []
        self.queries = []

    def initiate_push(self, phone, amount, order_id, account_reference=None):
        self.pushes.append((phone, amount, order_id, account_reference))
        if self.push_error:
            raise PaymentApiError(self.push_error)
        return {"success": True, "checkoutRequestId": f"ws_CO_{len(self.pushes)}", "merchantRequestId": "1"}

    def query_status(self, checkout_request_id):
        self.queries.append(checkout_request_id)
        status = self.statuses.pop(0) if self.statuses else "pending"
        if isinstance(status, Exception):
            raise status
        return {"success": True, "status": status, "message": f"status {status}"}


class MpesaPaymentCoordinatorTests(SimpleTestCase):
    def make(self, api, **kwargs):
        self.scheduler = FakeScheduler()
        self.on_success = Mock()
        self.on_error = Mock()
        options = {"poll_interval": 5.0, "max_poll_attempts": 24, "initial_poll_delay": 8.0}
        options.update(kwargs)
        return MpesaPaymentCoordinator(
            api,
            scheduler=self.scheduler,
            on_success=self.on_success,
            on_error=self.on_error,
            **options,
        )

    def test_initiate_waits_for_pin_before_first_poll(self):
        api = FakeApi()
        coordinator = self.make(api)

        self.assertTrue(coordinator.initiate("0712345678", 1000, ORDER_ID))

        self.assertEqual(coordinator.state, CoordinatorState.WAITING_FOR_PIN)
        self.assertEqual(coordinator.checkout_request_id, "ws_CO_1")
        self.assertEqual(api.pushes, [("0712345678", 1000, ORDER_ID, "ORDER-3F2B9C1E")])
        self.assertEqual(len(self.scheduler.active), 1)
        self.assertEqual(self.scheduler.active[0].due, 8.0)

        self.scheduler.advance(7.9)
        self.assertEqual(api.queries, [])

    def test_pending_then_success(self):
        api = FakeApi(statuses=["pending", "pending", "success"])
        coordinator = self.make(api)
        coordinator.initiate("0712345678", 1000, ORDER_ID)

        self.scheduler.advance(8)
        self.assertEqual(coordinator.state, CoordinatorState.PROCESSING)
        self.assertEqual(coordinator.attempts, 1)

        self.scheduler.advance(10)

        self.assertEqual(coordinator.state, CoordinatorState.SUCCESS)
        self.assertEqual(api.queries, ["ws_CO_1"] * 3)
        self.on_success.assert_called_once_with("ws_CO_1")
        self.on_error.assert_not_called()
        self.assertEqual(self.scheduler.active, [])
        self.assertTrue(coordinator.can_start)

    def test_gateway_failures_are_terminal(self):
        for status, state in [
            ("cancelled", CoordinatorState.CANCELLED),
            ("failed", CoordinatorState.FAILED),
            ("timeout", CoordinatorState.TIMEOUT),
        ]:
            with self.subTest(status=status):
                api = FakeApi(statuses=[status])
                coordinator = self.make(api)
                coordinator.initiate("0712345678", 1000, ORDER_ID)

                self.scheduler.advance(60)

                self.assertEqual(coordinator.state, state)
                self.assertEqual(coordinator.message, f"status {status}")
                self.assertEqual(len(api.queries), 1)
                self.on_error.assert_called_once_with(f"status {status}")
                self.on_success.assert_not_called()
                self.assertFalse(coordinator.is_processing)

    def test_times_out_after_exactly_max_attempts(self):
        api = FakeApi()
        coordinator = self.make(api, max_poll_attempts=5)
        coordinator.initiate("0712345678", 1000, ORDER_ID)

        self.scheduler.advance(8 + 4 * 5 - 0.1)
        self.assertEqual(len(api.queries), 4)
        self.assertEqual(coordinator.state, CoordinatorState.PROCESSING)

        self.scheduler.advance(1000)

        self.assertEqual(len(api.queries), 5)
        self.assertEqual(coordinator.attempts, 5)
        self.assertEqual(coordinator.state, CoordinatorState.TIMEOUT)
        self.on_error.assert_called_once()
        self.assertEqual(self.scheduler.active, [])

    def test_error_status_keeps_polling(self):
        api = FakeApi(statuses=["error", PaymentApiError("storefront down"), "success"])
        coordinator = self.make(api)
        coordinator.initiate("0712345678", 1000, ORDER_ID)

        self.scheduler.advance(8 + 5 + 5)

        self.assertEqual(len(api.queries), 3)
        self.assertEqual(coordinator.state, CoordinatorState.SUCCESS)

    def test_failed_push_goes_straight_to_error(self):
        api = FakeApi(push_error="Invalid phone number format")
        coordinator = self.make(api)

        self.assertFalse(coordinator.initiate("0712", 1000, ORDER_ID))

        self.assertEqual(coordinator.state, CoordinatorState.ERROR)
        self.assertEqual(coordinator.message, "Invalid phone number format")
        self.on_error.assert_called_once_with("Invalid phone number format")
        self.assertEqual(self.scheduler.timers, [])

    def test_reset_cancels_polling(self):
        api = FakeApi()
        coordinator = self.make(api)
        coordinator.initiate("0712345678", 1000, ORDER_ID)
        timer = self.scheduler.active[0]

        coordinator.reset()

        self.assertTrue(timer.cancelled)
        self.assertEqual(coordinator.state, CoordinatorState.IDLE)
        self.assertIsNone(coordinator.checkout_request_id)
        self.assertEqual(coordinator.attempts, 0)

    def test_stale_poll_after_reset_is_ignored(self):
        """
        A timer that already fired its callback into the queue before reset()
        must not query or change state.
        """
        api = FakeApi(statuses=["success"])
        coordinator = self.make(api)
        coordinator.initiate("0712345678", 1000, ORDER_ID)
        timer = self.scheduler.active[0]

        coordinator.reset()
        timer.callback(*timer.args)

        self.assertEqual(api.queries, [])
        self.assertEqual(coordinator.state, CoordinatorState.IDLE)
        self.on_success.assert_not_called()

    def test_retry_leaves_one_timer_chain_for_latest_request(self):
        api = FakeApi(statuses=["pending", "pending", "success"])
        coordinator = self.make(api)

        coordinator.initiate("0712345678", 1000, ORDER_ID)
        coordinator.reset()
        coordinator.initiate("0712345678", 1000, ORDER_ID)

        self.assertEqual(len(self.scheduler.active), 1)
        self.assertEqual(coordinator.checkout_request_id, "ws_CO_2")

        self.scheduler.advance(8)
        self.assertEqual(len(self.scheduler.active), 1)

        self.scheduler.advance(100)

        self.assertEqual(api.queries, ["ws_CO_2"] * 3)
        self.on_success.assert_called_once_with("ws_CO_2")

    def test_initiate_from_terminal_state_starts_over(self):
        api = FakeApi(statuses=["cancelled", "success"])
        coordinator = self.make(api)
        coordinator.initiate("0712345678", 1000, ORDER_ID)
        self.scheduler.advance(8)
        self.assertEqual(coordinator.state, CoordinatorState.CANCELLED)

        coordinator.initiate("0712345678", 1000, ORDER_ID)
        self.assertEqual(coordinator.attempts, 0)
        self.scheduler.advance(8)

        self.assertEqual(coordinator.state, CoordinatorState.SUCCESS)
        self.on_success.assert_called_once_with("ws_CO_2")

    def test_close_tears_down(self):
        api = FakeApi()
        coordinator = self.make(api)
        coordinator.initiate("0712345678", 1000, ORDER_ID)

        coordinator.close()
        self.scheduler.advance(1000)

        self.assertEqual(api.queries, [])
        self.assertEqual(self.scheduler.active, [])


class StorefrontPaymentsApiTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.api = StorefrontPaymentsApi("https://shop.example.com/", session=self.session)

    def respond(self, payload, status_code=200):
        self.session.post.return_value = Mock(status_code=status_code, json=Mock(return_value=payload))

    def test_initiate_push_posts_to_storefront(self):
        self.respond({"success": True, "checkoutRequestId": "ws_CO_1", "merchantRequestId": "1"})

        data = self.api.initiate_push("0712345678", 1000, ORDER_ID, account_reference="ORDER-3F2B9C1E")

        self.assertEqual(data["checkoutRequestId"], "ws_CO_1")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://shop.example.com/api/mpesa/stk-push/")
        self.assertEqual(kwargs["json"]["orderId"], ORDER_ID)

    def test_initiate_push_failure_raises_with_server_message(self):
        self.respond({"success": False, "error": "Order is already paid"}, status_code=400)
        with self.assertRaisesMessage(PaymentApiError, "Order is already paid"):
            self.api.initiate_push("0712345678", 1000, ORDER_ID)

    def test_query_status_returns_payload(self):
        self.respond({"success": True, "status": "pending", "message": "Waiting for your M-Pesa PIN..."})
        self.assertEqual(self.api.query_status("ws_CO_1")["status"], "pending")
        self.assertEqual(self.session.post.call_args.kwargs["json"], {"checkoutRequestId": "ws_CO_1"})

    def test_network_errors_become_api_errors(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(PaymentApiError):
            self.api.query_status("ws_CO_1")

    def test_non_json_response_becomes_api_error(self):
        self.session.post.return_value = Mock(status_code=502, json=Mock(side_effect=ValueError))
        with self.assertRaises(PaymentApiError):
            self.api.query_status("ws_CO_1")
