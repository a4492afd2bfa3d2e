"""
Client side of the STK push flow.

MpesaPaymentCoordinator drives one checkout session: it asks the storefront to
send the STK push, then polls the status endpoint on a timer until Safaricom
reports a final outcome or the attempt ceiling is reached. Timers come from an
injected scheduler (anything with ``call_later(delay, fn)`` returning an object
with ``cancel()``), and every scheduled poll carries the generation it was
started in, so a poll that fires after ``reset()`` does nothing.
"""

import enum
import logging
import threading

import requests

from utils.mpesa import PaymentStatus

logger = logging.getLogger(__name__)


class CoordinatorState(enum.Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    WAITING_FOR_PIN = "waiting_for_pin"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_processing(self) -> bool:
        return self in (
            CoordinatorState.INITIATING,
            CoordinatorState.WAITING_FOR_PIN,
            CoordinatorState.PROCESSING,
        )


TERMINAL_STATES = frozenset(
    {
        CoordinatorState.SUCCESS,
        CoordinatorState.FAILED,
        CoordinatorState.CANCELLED,
        CoordinatorState.TIMEOUT,
        CoordinatorState.ERROR,
    }
)

# Gateway outcomes that end polling
FINAL_OUTCOMES = {
    PaymentStatus.SUCCESS: CoordinatorState.SUCCESS,
    PaymentStatus.CANCELLED: CoordinatorState.CANCELLED,
    PaymentStatus.FAILED: CoordinatorState.FAILED,
    PaymentStatus.TIMEOUT: CoordinatorState.TIMEOUT,
}

DEFAULT_MESSAGES = {
    CoordinatorState.SUCCESS: "Payment successful!",
    CoordinatorState.CANCELLED: "Payment was cancelled",
    CoordinatorState.FAILED: "Payment failed",
    CoordinatorState.TIMEOUT: "Payment request timed out",
}

VERIFICATION_TIMEOUT_MESSAGE = "Payment verification timed out. Please check your M-Pesa messages."


class PaymentApiError(Exception):
    pass


class StorefrontPaymentsApi:
    """HTTP client for the storefront's /api/mpesa/ endpoints."""

    def __init__(self, base_url, session=None, timeout=30):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, path, payload):
        try:
            res = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise PaymentApiError(f"Could not reach the storefront: {e}")
        try:
            data = res.json()
        except ValueError:
            raise PaymentApiError(f"Unexpected response from the storefront (HTTP {res.status_code})")
        if not isinstance(data, dict):
            raise PaymentApiError(f"Unexpected response from the storefront (HTTP {res.status_code})")
        return data

    def initiate_push(self, phone, amount, order_id, account_reference=None) -> dict:
        data = self._post(
            "/api/mpesa/stk-push/",
            {
                "phone": phone,
                "amount": amount,
                "orderId": str(order_id),
                "accountReference": account_reference,
            },
        )
        if not data.get("success") or not data.get("checkoutRequestId"):
            raise PaymentApiError(data.get("error") or "Failed to initiate payment")
        return data

    def query_status(self, checkout_request_id) -> dict:
        data = self._post("/api/mpesa/query/", {"checkoutRequestId": checkout_request_id})
        if not data.get("success"):
            raise PaymentApiError(data.get("error") or "Error checking payment status")
        return data


class ThreadingScheduler:
    def call_later(self, delay, callback, *args):
        timer = threading.Timer(delay, callback, args=args)
        timer.daemon = True
        timer.start()
        return timer


class MpesaPaymentCoordinator:
    def __init__(
        self,
        api,
        scheduler=None,
        on_success=None,
        on_error=None,
        poll_interval=5.0,
        max_poll_attempts=24,
        initial_poll_delay=8.0,
    ):
        self.api = api
        self.scheduler = scheduler or ThreadingScheduler()
        self.on_success = on_success
        self.on_error = on_error
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        # Give the customer time to see the PIN prompt before the first query
        self.initial_poll_delay = initial_poll_delay

        self.state = CoordinatorState.IDLE
        self.message = ""
        self.checkout_request_id = None
        self.attempts = 0

        self._lock = threading.RLock()
        self._generation = 0
        self._timer = None

    @property
    def is_processing(self) -> bool:
        return self.state.is_processing

    @property
    def can_start(self) -> bool:
        return self.state == CoordinatorState.IDLE or self.state.is_terminal

    @property
    def generation(self) -> int:
        return self._generation

    def reset(self):
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self.attempts = 0
            self.state = CoordinatorState.IDLE
            self.message = ""
            self.checkout_request_id = None

    def close(self):
        """Tear down when the checkout page goes away."""
        self.reset()

    def initiate(self, phone, amount, order_id) -> bool:
        with self._lock:
            self.reset()
            generation = self._generation
            self.state = CoordinatorState.INITIATING
            self.message = "Initiating M-Pesa payment..."

        logger.info(f"Initiating STK push for order {order_id}")
        try:
            data = self.api.initiate_push(
                phone, amount, order_id, account_reference=f"ORDER-{str(order_id)[:8].upper()}"
            )
        except PaymentApiError as e:
            logger.error(f"STK push for order {order_id} failed: {e}")
            self._finish(generation, CoordinatorState.ERROR, str(e) or "Failed to initiate payment")
            return False

        with self._lock:
            if generation != self._generation:
                # reset() while the push was in flight
                return False
            self.checkout_request_id = data["checkoutRequestId"]
            self.state = CoordinatorState.WAITING_FOR_PIN
            self.message = "Please check your phone and enter your M-Pesa PIN"
            self._schedule(self.initial_poll_delay, generation)

        logger.info(f"STK push sent for order {order_id}, polling {self.checkout_request_id}")
        return True

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay, generation):
        self._cancel_timer()
        self._timer = self.scheduler.call_later(delay, self._poll, generation)

    def _poll(self, generation):
        with self._lock:
            if generation != self._generation or not self.state.is_processing:
                return
            self._timer = None
            self.attempts += 1
            attempt = self.attempts
            checkout_request_id = self.checkout_request_id

        logger.debug(f"Polling attempt {attempt}/{self.max_poll_attempts} for {checkout_request_id}")
        try:
            data = self.api.query_status(checkout_request_id)
            outcome = PaymentStatus(data.get("status"))
            message = data.get("message") or ""
        except PaymentApiError as e:
            logger.warning(f"Status query for {checkout_request_id} failed: {e}")
            outcome, message = PaymentStatus.ERROR, str(e)
        except ValueError:
            outcome, message = PaymentStatus.PENDING, ""

        final_state = FINAL_OUTCOMES.get(outcome)
        if final_state is not None:
            self._finish(generation, final_state, message or DEFAULT_MESSAGES[final_state])
            return

        with self._lock:
            if generation != self._generation:
                return
            if attempt < self.max_poll_attempts:
                self.state = CoordinatorState.PROCESSING
                self.message = message or "Processing payment..."
                self._schedule(self.poll_interval, generation)
                return

        self._finish(generation, CoordinatorState.TIMEOUT, VERIFICATION_TIMEOUT_MESSAGE)

    def _finish(self, generation, state, message):
        with self._lock:
            if generation != self._generation:
                return
            self._cancel_timer()
            self.state = state
            self.message = message
            checkout_request_id = self.checkout_request_id

        logger.info(f"Payment for {checkout_request_id} finished: {state.value} ({message})")
        if state == CoordinatorState.SUCCESS:
            if self.on_success:
                self.on_success(checkout_request_id)
        elif self.on_error:
            self.on_error(message)
