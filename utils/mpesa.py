import base64
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Callable, Optional

import requests
from requests.auth import HTTPBasicAuth
from django.conf import settings
from django.db import models
from django.utils import timezone

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

COUNTRY_PREFIX = "254"
PHONE_LENGTH = 12

# Daraja reports "transaction still being processed" with this code
STILL_PROCESSING_ERROR = "500.001.1001"
INVALID_PHONE_ERROR = "404.001.04"


class MpesaError(Exception):
    """Base class for everything raised by the gateway client."""


class ConfigurationError(MpesaError):
    pass


class ValidationError(MpesaError):
    pass


class GatewayAuthError(MpesaError):
    pass


class TransportError(MpesaError):
    pass


class MalformedCallback(MpesaError):
    pass


class GatewayRejection(MpesaError):
    """The gateway answered but declined the request."""

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.payload = payload or {}


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SUCCESS = "success", "Success"
    CANCELLED = "cancelled", "Cancelled"
    TIMEOUT = "timeout", "Timeout"
    FAILED = "failed", "Failed"
    ERROR = "error", "Error"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PaymentStatus.SUCCESS,
            PaymentStatus.CANCELLED,
            PaymentStatus.TIMEOUT,
            PaymentStatus.FAILED,
        )


@dataclass
class MpesaConfig:
    consumer_key: str = ""
    consumer_secret: str = ""
    passkey: str = ""
    shortcode: str = "174379"
    environment: str = "sandbox"
    callback_base_url: str = ""
    timeout: int = 30

    @classmethod
    def from_settings(cls):
        return cls(
            consumer_key=getattr(settings, "MPESA_CONSUMER_KEY", ""),
            consumer_secret=getattr(settings, "MPESA_CONSUMER_SECRET", ""),
            passkey=getattr(settings, "MPESA_PASSKEY", ""),
            shortcode=getattr(settings, "MPESA_SHORTCODE", "174379"),
            environment=getattr(settings, "MPESA_ENV", "sandbox"),
            callback_base_url=getattr(settings, "MPESA_CALLBACK_BASE_URL", ""),
            timeout=getattr(settings, "MPESA_TIMEOUT", 30),
        )

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

    @property
    def callback_url(self) -> str:
        return f"{self.callback_base_url.rstrip('/')}/api/mpesa/callback/"


@dataclass
class PushResult:
    checkout_request_id: str
    merchant_request_id: str
    message: str = ""


@dataclass
class StatusResult:
    status: PaymentStatus
    message: str
    result_code: Optional[str] = None
    result_desc: Optional[str] = None


def mask_phone(phone) -> str:
    phone = str(phone or "")
    return f"***{phone[-4:]}" if phone else ""


def format_phone_number(phone: str) -> str:
    """Bring a local phone number into the 2547XXXXXXXX form Daraja expects."""
    cleaned = re.sub(r"[\s\-+()]", "", str(phone or ""))
    if cleaned.startswith("0"):
        cleaned = COUNTRY_PREFIX + cleaned[1:]
    if not cleaned.startswith(COUNTRY_PREFIX):
        cleaned = COUNTRY_PREFIX + cleaned
    return cleaned


def normalize_phone_number(phone: str) -> str:
    formatted = format_phone_number(phone)
    if len(formatted) != PHONE_LENGTH or not formatted.isdigit():
        raise ValidationError(
            "Invalid phone number format. Use format: 07XXXXXXXX or 254XXXXXXXXX"
        )
    return formatted


def round_amount(amount) -> int:
    """M-Pesa only takes whole shillings."""
    try:
        return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, OverflowError):
        raise ValidationError(f"Invalid amount: {amount}")


def interpret_result_code(result_code, result_desc=None):
    """Map a Daraja ResultCode onto (PaymentStatus, message)."""
    code = str(result_code)
    if code == "0":
        return PaymentStatus.SUCCESS, "Payment successful! Your order has been confirmed."
    if code == "1032":
        return PaymentStatus.CANCELLED, "Transaction cancelled by user"
    if code == "1037":
        return PaymentStatus.TIMEOUT, "Transaction timed out. Please try again."
    if code == "2001":
        return PaymentStatus.FAILED, "Wrong PIN entered. Please try again."
    if code == "1":
        return PaymentStatus.FAILED, "Insufficient balance"
    return PaymentStatus.FAILED, result_desc or "Payment failed. Please try again."


def parse_query_response(result: dict) -> StatusResult:
    """Turn the body of an STK push query into a StatusResult."""
    response_code = result.get("ResponseCode")
    result_code = result.get("ResultCode")
    result_desc = result.get("ResultDesc")

    if response_code == "0" and result_code not in (None, ""):
        status, message = interpret_result_code(result_code, result_desc)
    elif response_code == "0":
        status, message = PaymentStatus.PENDING, "Waiting for your M-Pesa PIN..."
    elif result.get("errorCode") == STILL_PROCESSING_ERROR:
        # The gateway has not recorded the transaction yet
        status, message = PaymentStatus.PENDING, "Processing your payment..."
    elif response_code:
        status = PaymentStatus.ERROR
        message = result.get("ResponseDescription") or "Error checking payment status"
    elif result.get("errorCode"):
        status = PaymentStatus.ERROR
        message = result.get("errorMessage") or "Error checking payment status"
    else:
        status, message = PaymentStatus.PENDING, "Transaction is being processed. Please wait..."

    return StatusResult(
        status=status,
        message=message,
        result_code=None if result_code in (None, "") else str(result_code),
        result_desc=result_desc,
    )


def push_error_message(result: dict) -> str:
    error_code = result.get("errorCode")
    if error_code == STILL_PROCESSING_ERROR:
        return "Invalid credentials. Please contact support."
    if error_code == INVALID_PHONE_ERROR:
        return "Invalid phone number format"
    return (
        result.get("errorMessage")
        or result.get("ResponseDescription")
        or "Failed to initiate M-Pesa payment"
    )


class MpesaClient:
    """Daraja (M-Pesa Express) client.

    All outbound traffic to Safaricom goes through here. The configuration is
    passed in rather than read from settings so tests can point the client at
    a fake session.
    """

    def __init__(self, config: MpesaConfig, session=None, clock: Optional[Callable] = None):
        self.config = config
        self.session = session or requests.Session()
        self.clock = clock or timezone.localtime

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    def timestamp(self) -> str:
        return self.clock().strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self.config.shortcode}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    def get_access_token(self) -> str:
        """Get Daraja OAuth token"""
        if not self.config.consumer_key or not self.config.consumer_secret:
            raise ConfigurationError("M-Pesa credentials not configured")

        logger.info(f"Getting access token from {self.config.environment} environment")
        try:
            res = self.session.get(
                self._url("/oauth/v1/generate?grant_type=client_credentials"),
                auth=HTTPBasicAuth(self.config.consumer_key, self.config.consumer_secret),
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Could not reach M-Pesa: {e}")

        if not res.ok:
            logger.error(f"Failed to get access token: {res.status_code} {res.text}")
            raise GatewayAuthError(f"Failed to get M-Pesa access token: {res.status_code}")

        try:
            return res.json()["access_token"]
        except (ValueError, KeyError):
            raise GatewayAuthError("M-Pesa returned an unreadable token response")

    def _post(self, path: str, payload: dict) -> dict:
        headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }
        try:
            res = self.session.post(
                self._url(path), json=payload, headers=headers, timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"Could not reach M-Pesa: {e}")

        # Daraja puts useful error codes in non-2xx bodies, so only give up
        # when there is no JSON to read.
        try:
            return res.json()
        except ValueError:
            raise TransportError(f"M-Pesa returned HTTP {res.status_code} without a JSON body")

    def initiate_push(self, order_id, phone, amount, account_reference=None) -> PushResult:
        """Send the STK push prompt to the customer's phone."""
        formatted_phone = normalize_phone_number(phone)
        short_id = str(order_id)[:8]
        timestamp = self.timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": round_amount(amount),
            "PartyA": formatted_phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference or f"ORDER-{short_id.upper()}",
            "TransactionDesc": f"Payment for order {short_id}",
        }
        logger.info(
            f"Sending STK push for order {short_id} to {mask_phone(formatted_phone)} "
            f"(amount {payload['Amount']})"
        )

        result = self._post("/mpesa/stkpush/v1/processrequest", payload)

        if result.get("ResponseCode") != "0":
            logger.warning(f"STK push rejected for order {short_id}: {result}")
            raise GatewayRejection(push_error_message(result), result)

        return PushResult(
            checkout_request_id=result["CheckoutRequestID"],
            merchant_request_id=result.get("MerchantRequestID", ""),
            message=result.get("CustomerMessage", ""),
        )

    def query_status(self, checkout_request_id: str) -> StatusResult:
        """Ask the gateway what happened to an STK push."""
        timestamp = self.timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            result = self._post("/mpesa/stkpushquery/v1/query", payload)
        except (TransportError, GatewayAuthError) as e:
            logger.error(f"Status query for {checkout_request_id} failed: {e}")
            return StatusResult(status=PaymentStatus.ERROR, message=str(e))

        logger.debug(f"Query response for {checkout_request_id}: {result}")
        return parse_query_response(result)


def get_mpesa_client() -> MpesaClient:
    return MpesaClient(MpesaConfig.from_settings())
