import base64
from datetime import datetime
from unittest.mock import Mock

import requests
from django.test import SimpleTestCase, override_settings

from utils.mpesa import (
    ConfigurationError,
    GatewayAuthError,
    GatewayRejection,
    MpesaClient,
    MpesaConfig,
    PaymentStatus,
    ValidationError,
    format_phone_number,
    normalize_phone_number,
    round_amount,
)

ORDER_ID = "3f2b9c1e-8d4a-4f6b-9e2c-1a2b3c4d5e6f"


def gateway_response(payload, status_code=200):
    return Mock(ok=200 <= status_code < 300, status_code=status_code, json=Mock(return_value=payload), text="")


class PhoneNumberTests(SimpleTestCase):
    def test_local_formats_become_canonical(self):
        for raw in [
            "0712345678",
            "712345678",
            "254712345678",
            "+254712345678",
            "+254 712 345 678",
            "0712-345-678",
            "(0712) 345678",
        ]:
            with self.subTest(raw=raw):
                formatted = normalize_phone_number(raw)
                self.assertEqual(formatted, "254712345678")
                self.assertEqual(len(formatted), 12)
                self.assertTrue(formatted.startswith("254"))

    def test_safaricom_01_prefix_is_accepted(self):
        self.assertEqual(normalize_phone_number("0110123456"), "254110123456")

    def test_wrong_length_is_rejected(self):
        for raw in ["07123", "07123456789", "2547123456789", "", "0712abc678"]:
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationError):
                    normalize_phone_number(raw)

    def test_format_does_not_validate(self):
        self.assertEqual(format_phone_number("07123"), "2547123")


class RoundAmountTests(SimpleTestCase):
    def test_rounds_half_up_to_whole_shillings(self):
        self.assertEqual(round_amount("999.5"), 1000)
        self.assertEqual(round_amount(999.4), 999)
        self.assertEqual(round_amount(1000), 1000)

    def test_garbage_amount_raises(self):
        for amount in ["ten", "Infinity", "NaN"]:
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    round_amount(amount)


class MpesaClientTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.session.get.return_value = gateway_response({"access_token": "token-123", "expires_in": "3599"})
        self.config = MpesaConfig(
            consumer_key="key",
            consumer_secret="secret",
            passkey="passkey",
            shortcode="174379",
            callback_base_url="https://shop.example.com/",
        )
        self.client = MpesaClient(self.config, session=self.session, clock=lambda: datetime(2024, 1, 2, 3, 4, 5))

    def test_base_url_follows_environment(self):
        self.assertEqual(MpesaConfig().base_url, "https://sandbox.safaricom.co.ke")
        self.assertEqual(MpesaConfig(environment="production").base_url, "https://api.safaricom.co.ke")

    @override_settings(MPESA_ENV="production", MPESA_SHORTCODE="600000", MPESA_CALLBACK_BASE_URL="https://x.io")
    def test_config_from_settings(self):
        config = MpesaConfig.from_settings()
        self.assertEqual(config.shortcode, "600000")
        self.assertEqual(config.base_url, "https://api.safaricom.co.ke")
        self.assertEqual(config.callback_url, "https://x.io/api/mpesa/callback/")

    def test_access_token_requires_credentials(self):
        client = MpesaClient(MpesaConfig(), session=self.session)
        with self.assertRaises(ConfigurationError):
            client.get_access_token()
        self.session.get.assert_not_called()

    def test_access_token_uses_basic_auth(self):
        self.assertEqual(self.client.get_access_token(), "token-123")
        args, kwargs = self.session.get.call_args
        self.assertEqual(
            args[0], "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials"
        )
        self.assertEqual(kwargs["auth"].username, "key")
        self.assertEqual(kwargs["auth"].password, "secret")

    def test_access_token_http_failure(self):
        self.session.get.return_value = gateway_response({}, status_code=400)
        with self.assertRaises(GatewayAuthError):
            self.client.get_access_token()

    def test_initiate_push_builds_signed_request(self):
        self.session.post.return_value = gateway_response(
            {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            }
        )

        result = self.client.initiate_push(ORDER_ID, "0712345678", "999.5")

        self.assertEqual(result.checkout_request_id, "ws_CO_191220191020363925")
        self.assertEqual(result.merchant_request_id, "29115-34620561-1")

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-123")
        payload = kwargs["json"]
        self.assertEqual(payload["Timestamp"], "20240102030405")
        self.assertEqual(
            base64.b64decode(payload["Password"]).decode(), "174379passkey20240102030405"
        )
        self.assertEqual(payload["Amount"], 1000)
        self.assertEqual(payload["PartyA"], "254712345678")
        self.assertEqual(payload["PhoneNumber"], "254712345678")
        self.assertEqual(payload["PartyB"], "174379")
        self.assertEqual(payload["TransactionType"], "CustomerPayBillOnline")
        self.assertEqual(payload["CallBackURL"], "https://shop.example.com/api/mpesa/callback/")
        self.assertEqual(payload["AccountReference"], "ORDER-3F2B9C1E")
        self.assertEqual(payload["TransactionDesc"], "Payment for order 3f2b9c1e")

    def test_initiate_push_keeps_explicit_account_reference(self):
        self.session.post.return_value = gateway_response(
            {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_1", "MerchantRequestID": "1"}
        )
        self.client.initiate_push(ORDER_ID, "0712345678", 100, account_reference="SALON-42")
        self.assertEqual(self.session.post.call_args.kwargs["json"]["AccountReference"], "SALON-42")

    def test_initiate_push_validates_phone_before_any_call(self):
        with self.assertRaises(ValidationError):
            self.client.initiate_push(ORDER_ID, "0712", 100)
        self.session.get.assert_not_called()
        self.session.post.assert_not_called()

    def test_initiate_push_rejection_carries_gateway_message(self):
        self.session.post.return_value = gateway_response(
            {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"},
            status_code=400,
        )
        with self.assertRaises(GatewayRejection) as ctx:
            self.client.initiate_push(ORDER_ID, "0712345678", 100)
        self.assertEqual(str(ctx.exception), "Bad Request - Invalid Amount")
        self.assertEqual(ctx.exception.payload["errorCode"], "400.002.02")

    def test_initiate_push_rejection_for_invalid_phone(self):
        self.session.post.return_value = gateway_response(
            {"errorCode": "404.001.04", "errorMessage": "Invalid PhoneNumber"}, status_code=404
        )
        with self.assertRaises(GatewayRejection) as ctx:
            self.client.initiate_push(ORDER_ID, "0712345678", 100)
        self.assertEqual(str(ctx.exception), "Invalid phone number format")


class QueryStatusTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.session.get.return_value = gateway_response({"access_token": "token-123"})
        self.client = MpesaClient(
            MpesaConfig(consumer_key="key", consumer_secret="secret", passkey="passkey"),
            session=self.session,
        )

    def query(self, payload, status_code=200):
        self.session.post.return_value = gateway_response(payload, status_code)
        return self.client.query_status("ws_CO_1")

    def test_result_codes_map_to_canonical_statuses(self):
        cases = [
            ("0", PaymentStatus.SUCCESS),
            ("1032", PaymentStatus.CANCELLED),
            ("1037", PaymentStatus.TIMEOUT),
            ("2001", PaymentStatus.FAILED),
            ("1", PaymentStatus.FAILED),
            ("17", PaymentStatus.FAILED),
        ]
        for code, expected in cases:
            with self.subTest(code=code):
                result = self.query({"ResponseCode": "0", "ResultCode": code, "ResultDesc": "desc"})
                self.assertEqual(result.status, expected)
                self.assertTrue(result.message)
                self.assertEqual(result.result_code, code)

    def test_integer_result_codes_are_accepted(self):
        self.assertEqual(self.query({"ResponseCode": "0", "ResultCode": 1032}).status, PaymentStatus.CANCELLED)
        self.assertEqual(self.query({"ResponseCode": "0", "ResultCode": 0}).status, PaymentStatus.SUCCESS)

    def test_specific_messages(self):
        self.assertEqual(
            self.query({"ResponseCode": "0", "ResultCode": "2001"}).message,
            "Wrong PIN entered. Please try again.",
        )
        self.assertEqual(self.query({"ResponseCode": "0", "ResultCode": "1"}).message, "Insufficient balance")

    def test_unknown_failure_uses_gateway_description(self):
        result = self.query({"ResponseCode": "0", "ResultCode": "17", "ResultDesc": "System internal error."})
        self.assertEqual(result.message, "System internal error.")

    def test_accepted_without_result_is_pending(self):
        result = self.query({"ResponseCode": "0", "ResponseDescription": "accepted"})
        self.assertEqual(result.status, PaymentStatus.PENDING)
        self.assertTrue(result.message)

    def test_still_processing_error_is_pending(self):
        result = self.query(
            {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
            status_code=500,
        )
        self.assertEqual(result.status, PaymentStatus.PENDING)

    def test_non_zero_response_code_is_error(self):
        result = self.query({"ResponseCode": "1", "ResponseDescription": "Rejected"})
        self.assertEqual(result.status, PaymentStatus.ERROR)
        self.assertEqual(result.message, "Rejected")

    def test_transport_failure_is_error(self):
        self.session.post.side_effect = requests.Timeout("read timed out")
        result = self.client.query_status("ws_CO_1")
        self.assertEqual(result.status, PaymentStatus.ERROR)
        self.assertTrue(result.message)

    def test_non_json_body_is_error(self):
        self.session.post.return_value = Mock(status_code=502, json=Mock(side_effect=ValueError("no json")))
        result = self.client.query_status("ws_CO_1")
        self.assertEqual(result.status, PaymentStatus.ERROR)

    def test_token_failure_is_error(self):
        self.session.get.return_value = gateway_response({}, status_code=401)
        result = self.client.query_status("ws_CO_1")
        self.assertEqual(result.status, PaymentStatus.ERROR)
        self.session.post.assert_not_called()

    def test_terminal_statuses(self):
        self.assertTrue(PaymentStatus.SUCCESS.is_terminal)
        self.assertTrue(PaymentStatus.TIMEOUT.is_terminal)
        self.assertFalse(PaymentStatus.PENDING.is_terminal)
        self.assertFalse(PaymentStatus.ERROR.is_terminal)
