import json
from decimal import Decimal
from unittest.mock import Mock, patch

import requests
from django.db import DatabaseError
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from orders.models import AdminNotification, Order
from utils.mpesa import (
    ConfigurationError,
    GatewayRejection,
    MpesaClient,
    MpesaConfig,
    PushResult,
    TransportError,
)

CHECKOUT_REQUEST_ID = "ws_CO_191220191020363925"


def make_order(**kwargs):
    fields = {
        "customer_name": "Jane Wanjiku",
        "customer_email": "jane@example.com",
        "customer_phone": "0712345678",
        "delivery_address": "Moi Avenue, Shop 12",
        "delivery_city": "Nairobi",
        "total_amount": Decimal("1000.00"),
    }
    fields.update(kwargs)
    return Order.objects.create(**fields)


def callback_payload(checkout_request_id=CHECKOUT_REQUEST_ID, result_code=0, result_desc=None, items=None):
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or "The service request is processed successfully.",
    }
    if items is not None:
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}


SUCCESS_ITEMS = [
    {"Name": "Amount", "Value": 1000},
    {"Name": "MpesaReceiptNumber", "Value": "ABC123"},
    {"Name": "Balance"},
    {"Name": "TransactionDate", "Value": 20191219102115},
    {"Name": "PhoneNumber", "Value": 254712345678},
]


def gateway_response(payload, status_code=200):
    return Mock(ok=200 <= status_code < 300, status_code=status_code, json=Mock(return_value=payload), text="")


class StkPushViewTests(APITestCase):
    def setUp(self):
        self.url = reverse("mpesa-stk-push")
        self.order = make_order()
        self.payment_data = {"phone": "0712345678", "amount": 1000, "orderId": str(self.order.pk)}

    def test_missing_fields_are_rejected(self):
        """
        Ensure the request fails with a 400 error if orderId is not provided.
        """
        response = self.client.post(self.url, {"phone": "0712345678", "amount": 1000}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data["success"])
        self.assertEqual(response.data["error"], "Missing required fields: phone, amount, orderId")

    def test_amount_below_one_shilling_is_rejected(self):
        data = dict(self.payment_data, amount="0.50")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "Invalid amount. Must be at least 1 KES")

    def test_non_numeric_amount_is_rejected(self):
        data = dict(self.payment_data, amount="lots")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @patch("mpesa.views.get_mpesa_client")
    def test_non_finite_amount_is_rejected(self, mock_get_client):
        for amount in ["Infinity", "-Infinity", "NaN"]:
            with self.subTest(amount=amount):
                response = self.client.post(self.url, dict(self.payment_data, amount=amount), format="json")
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertEqual(response.data["error"], "Invalid amount. Must be at least 1 KES")
        mock_get_client.assert_not_called()

    def test_non_object_body_is_rejected(self):
        for body in [[1, 2], "0712345678", 1000]:
            with self.subTest(body=body):
                response = self.client.post(self.url, body, format="json")
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertFalse(response.data["success"])
                self.assertEqual(response.data["error"], "Request body must be a JSON object")

    @patch("mpesa.views.get_mpesa_client")
    def test_malformed_phone_never_reaches_the_gateway(self, mock_get_client):
        data = dict(self.payment_data, phone="07123")
        response = self.client.post(self.url, data, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("Invalid phone number format", response.data["error"])
        mock_get_client.assert_not_called()

    def test_unknown_order_returns_404(self):
        data = dict(self.payment_data, orderId="00000000-0000-0000-0000-000000000000")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_garbage_order_id_returns_404(self):
        data = dict(self.payment_data, orderId="not-a-uuid")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_paid_order_cannot_be_pushed_again(self):
        self.order.status = Order.Status.PAID
        self.order.save()
        response = self.client.post(self.url, self.payment_data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "Order is already paid")

    @patch("mpesa.views.get_mpesa_client")
    def test_successful_push_pairs_order_with_checkout_request(self, mock_get_client):
        """
        A 1000 KES push for 0712345678 stores the CheckoutRequestID on the order
        and leaves it pending.
        """
        client = mock_get_client.return_value
        client.initiate_push.return_value = PushResult(
            checkout_request_id=CHECKOUT_REQUEST_ID, merchant_request_id="29115-34620561-1"
        )

        response = self.client.post(self.url, self.payment_data, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["checkoutRequestId"], CHECKOUT_REQUEST_ID)
        self.assertEqual(response.data["merchantRequestId"], "29115-34620561-1")

        client.initiate_push.assert_called_once_with(
            order_id=self.order.pk, phone="0712345678", amount=1000, account_reference=None
        )

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_reference, CHECKOUT_REQUEST_ID)
        self.assertEqual(self.order.payment_method, "mpesa")
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertIn("STK push initiated", self.order.notes)

    @patch("mpesa.views.get_mpesa_client")
    def test_retry_replaces_the_live_checkout_request(self, mock_get_client):
        client = mock_get_client.return_value
        client.initiate_push.side_effect = [
            PushResult(checkout_request_id="ws_CO_first", merchant_request_id="1"),
            PushResult(checkout_request_id="ws_CO_second", merchant_request_id="2"),
        ]

        self.client.post(self.url, self.payment_data, format="json")
        self.client.post(self.url, self.payment_data, format="json")

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_reference, "ws_CO_second")

    @patch("mpesa.views.get_mpesa_client")
    def test_gateway_rejection_is_reported_without_touching_status(self, mock_get_client):
        mock_get_client.return_value.initiate_push.side_effect = GatewayRejection(
            "Invalid phone number format", {"errorCode": "404.001.04"}
        )

        response = self.client.post(self.url, self.payment_data, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data, {"success": False, "error": "Invalid phone number format"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.payment_reference, "")

    @patch("mpesa.views.get_mpesa_client")
    def test_missing_credentials_return_500(self, mock_get_client):
        mock_get_client.return_value.initiate_push.side_effect = ConfigurationError(
            "M-Pesa credentials not configured"
        )
        response = self.client.post(self.url, self.payment_data, format="json")
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["error"], "M-Pesa credentials not configured")

    @patch("mpesa.views.get_mpesa_client")
    def test_unreachable_gateway_returns_502(self, mock_get_client):
        mock_get_client.return_value.initiate_push.side_effect = TransportError("Could not reach M-Pesa")
        response = self.client.post(self.url, self.payment_data, format="json")
        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertFalse(response.data["success"])

    @patch("mpesa.views.Order.save")
    @patch("mpesa.views.get_mpesa_client")
    def test_failed_pairing_write_returns_structured_500(self, mock_get_client, mock_save):
        mock_get_client.return_value.initiate_push.return_value = PushResult(
            checkout_request_id=CHECKOUT_REQUEST_ID, merchant_request_id="29115-34620561-1"
        )
        mock_save.side_effect = DatabaseError("database is locked")

        response = self.client.post(self.url, self.payment_data, format="json")

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertFalse(response.data["success"])
        self.assertEqual(response.data["error"], "Failed to update order with payment reference")


class MpesaCallbackViewTests(APITestCase):
    ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}

    def setUp(self):
        self.url = reverse("mpesa-callback")
        self.order = make_order(payment_reference=CHECKOUT_REQUEST_ID, payment_method="mpesa")

    def _post(self, payload):
        with self.captureOnCommitCallbacks(execute=True):
            return self.client.post(self.url, payload, format="json")

    def test_successful_payment_marks_order_paid(self):
        """
        ResultCode 0 with receipt ABC123 marks the order paid and swaps the
        CheckoutRequestID for the receipt number.
        """
        response = self._post(callback_payload(items=SUCCESS_ITEMS))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, self.ACK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertEqual(self.order.payment_reference, "ABC123")
        self.assertIn("Receipt: ABC123", self.order.notes)
        self.assertIn("20191219102115", self.order.notes)

    def test_successful_payment_notifies_admins(self):
        self._post(callback_payload(items=SUCCESS_ITEMS))

        notification = AdminNotification.objects.get()
        self.assertEqual(notification.type, AdminNotification.Type.NEW_ORDER)
        self.assertEqual(notification.order, self.order)
        self.assertIn("ABC123", notification.message)

    def test_redelivered_callback_is_a_no_op(self):
        self._post(callback_payload(items=SUCCESS_ITEMS))
        self.order.refresh_from_db()
        first = (self.order.status, self.order.payment_reference, self.order.notes)

        response = self._post(callback_payload(items=SUCCESS_ITEMS))

        self.assertEqual(response.data, self.ACK)
        self.order.refresh_from_db()
        self.assertEqual((self.order.status, self.order.payment_reference, self.order.notes), first)
        self.assertEqual(AdminNotification.objects.count(), 1)

    def test_redelivered_callback_without_receipt_is_a_no_op(self):
        """
        Without a receipt the reference keeps the CheckoutRequestID, so the
        second delivery finds the order again and must leave it alone.
        """
        self._post(callback_payload(items=[{"Name": "Amount", "Value": 1000}]))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_reference, CHECKOUT_REQUEST_ID)
        notes = self.order.notes

        self._post(callback_payload(items=[{"Name": "Amount", "Value": 1000}]))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertEqual(self.order.notes, notes)
        self.assertEqual(AdminNotification.objects.count(), 1)

    def test_cancelled_payment_keeps_order_pending(self):
        response = self._post(callback_payload(result_code=1032, result_desc="Request cancelled by user"))

        self.assertEqual(response.data, self.ACK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.payment_reference, CHECKOUT_REQUEST_ID)
        self.assertIn("cancelled", self.order.notes)
        self.assertIn("1032", self.order.notes)
        self.assertFalse(AdminNotification.objects.exists())

    def test_timed_out_payment_is_noted(self):
        self._post(callback_payload(result_code=1037, result_desc="DS timeout user cannot be reached"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertIn("timed out", self.order.notes)

    def test_callback_for_superseded_request_is_acknowledged(self):
        response = self._post(callback_payload(checkout_request_id="ws_CO_stale", items=SUCCESS_ITEMS))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, self.ACK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_malformed_envelope_is_acknowledged(self):
        response = self._post({"Body": {"somethingElse": {}}})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, self.ACK)

    def test_invalid_json_is_acknowledged(self):
        response = self.client.post(self.url, data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(json.loads(response.content), self.ACK)

    @patch("mpesa.views.parse_stk_callback")
    def test_unexpected_error_is_still_acknowledged(self, mock_parse):
        mock_parse.side_effect = RuntimeError("database went away")
        response = self._post(callback_payload(items=SUCCESS_ITEMS))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, self.ACK)

    def test_payment_on_cancelled_order_is_noted_only(self):
        self.order.status = Order.Status.CANCELLED
        self.order.save()

        self._post(callback_payload(items=SUCCESS_ITEMS))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertIn("Receipt: ABC123", self.order.notes)


class MpesaQueryViewTests(APITestCase):
    def setUp(self):
        self.url = reverse("mpesa-query")
        self.session = Mock()
        self.session.get.return_value = gateway_response({"access_token": "token", "expires_in": "3599"})
        self.gateway = MpesaClient(
            MpesaConfig(consumer_key="key", consumer_secret="secret", passkey="passkey"),
            session=self.session,
        )

    def test_missing_checkout_request_id_returns_400(self):
        response = self.client.post(self.url, {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "Missing checkoutRequestId")

    @patch("mpesa.views.get_mpesa_client")
    def test_non_object_body_is_rejected(self, mock_get_client):
        response = self.client.post(self.url, [1, 2], format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data["success"])
        self.assertEqual(response.data["error"], "Request body must be a JSON object")
        mock_get_client.assert_not_called()

    @patch("mpesa.views.get_mpesa_client")
    def test_unknown_request_is_reported_as_pending(self, mock_get_client):
        """
        The sandbox answers 'invalid request' until it has recorded the push;
        that must read as pending, not error.
        """
        mock_get_client.return_value = self.gateway
        self.session.post.return_value = gateway_response(
            {
                "requestId": "1234-5678",
                "errorCode": "500.001.1001",
                "errorMessage": "The transaction is being processed",
            },
            status_code=500,
        )

        response = self.client.post(self.url, {"checkoutRequestId": "ws_CO_unknown"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["status"], "pending")

    @patch("mpesa.views.get_mpesa_client")
    def test_completed_payment_is_reported_as_success(self, mock_get_client):
        mock_get_client.return_value = self.gateway
        self.session.post.return_value = gateway_response(
            {
                "ResponseCode": "0",
                "ResponseDescription": "The service request has been accepted successsfully",
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": CHECKOUT_REQUEST_ID,
                "ResultCode": "0",
                "ResultDesc": "The service request is processed successfully.",
            }
        )

        response = self.client.post(self.url, {"checkoutRequestId": CHECKOUT_REQUEST_ID}, format="json")

        self.assertEqual(response.data["status"], "success")
        self.assertEqual(response.data["resultCode"], "0")
        self.assertTrue(response.data["message"])

    @patch("mpesa.views.get_mpesa_client")
    def test_query_never_modifies_the_order(self, mock_get_client):
        order = make_order(payment_reference=CHECKOUT_REQUEST_ID)
        mock_get_client.return_value = self.gateway
        self.session.post.return_value = gateway_response({"ResponseCode": "0", "ResultCode": "0"})

        self.client.post(self.url, {"checkoutRequestId": CHECKOUT_REQUEST_ID}, format="json")

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_reference, CHECKOUT_REQUEST_ID)

    @patch("mpesa.views.get_mpesa_client")
    def test_network_failure_is_an_error_status_not_an_http_error(self, mock_get_client):
        mock_get_client.return_value = self.gateway
        self.session.post.side_effect = requests.ConnectionError("connection reset")

        response = self.client.post(self.url, {"checkoutRequestId": CHECKOUT_REQUEST_ID}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "error")
        self.assertTrue(response.data["message"])

    @patch("mpesa.views.get_mpesa_client")
    def test_missing_credentials_return_500(self, mock_get_client):
        mock_get_client.return_value = MpesaClient(MpesaConfig(), session=self.session)

        response = self.client.post(self.url, {"checkoutRequestId": CHECKOUT_REQUEST_ID}, format="json")

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["status"], "error")
        self.session.get.assert_not_called()
