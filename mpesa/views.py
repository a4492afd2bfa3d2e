import logging
import uuid
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from orders.models import Order
from utils.mpesa import (
    ConfigurationError,
    GatewayAuthError,
    GatewayRejection,
    MalformedCallback,
    MpesaError,
    PaymentStatus,
    TransportError,
    ValidationError,
    get_mpesa_client,
    interpret_result_code,
    mask_phone,
    normalize_phone_number,
)

from .callbacks import parse_stk_callback

logger = logging.getLogger(__name__)

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}

MIN_AMOUNT = Decimal("1")


def _request_id():
    return uuid.uuid4().hex[:8]


def _error(message, http_status, **extra):
    return Response({"success": False, "error": message, **extra}, status=http_status)


class StkPushView(APIView):
    """
    Send an M-Pesa STK push for a pending order and pair the order with the
    CheckoutRequestID the gateway hands back.
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        rid = _request_id()
        data = request.data
        if not isinstance(data, dict):
            return _error("Request body must be a JSON object", status.HTTP_400_BAD_REQUEST)

        phone = data.get("phone")
        amount = data.get("amount")
        order_id = data.get("orderId")
        account_reference = data.get("accountReference") or None

        logger.info(f"[STK-PUSH][{rid}] order={order_id} amount={amount} phone={mask_phone(phone)}")

        if not phone or amount in (None, "") or not order_id:
            return _error("Missing required fields: phone, amount, orderId", status.HTTP_400_BAD_REQUEST)

        try:
            value = Decimal(str(amount))
            if not value.is_finite() or value < MIN_AMOUNT:
                raise InvalidOperation
        except (InvalidOperation, ValueError):
            logger.warning(f"[STK-PUSH][{rid}] Invalid amount: {amount}")
            return _error("Invalid amount. Must be at least 1 KES", status.HTTP_400_BAD_REQUEST)

        try:
            normalize_phone_number(phone)
        except ValidationError as e:
            logger.warning(f"[STK-PUSH][{rid}] Invalid phone format: {mask_phone(phone)}")
            return _error(str(e), status.HTTP_400_BAD_REQUEST)

        try:
            order = Order.objects.get(pk=order_id)
        except (Order.DoesNotExist, ValueError, TypeError, DjangoValidationError):
            return _error("Order not found", status.HTTP_404_NOT_FOUND)

        if order.status != Order.Status.PENDING:
            return _error(f"Order is already {order.status}", status.HTTP_400_BAD_REQUEST)

        try:
            result = get_mpesa_client().initiate_push(
                order_id=order.pk,
                phone=phone,
                amount=amount,
                account_reference=account_reference,
            )
        except GatewayRejection as e:
            return _error(str(e), status.HTTP_400_BAD_REQUEST)
        except ValidationError as e:
            return _error(str(e), status.HTTP_400_BAD_REQUEST)
        except ConfigurationError as e:
            logger.error(f"[STK-PUSH][{rid}] {e}")
            return _error(str(e), status.HTTP_500_INTERNAL_SERVER_ERROR)
        except (GatewayAuthError, TransportError) as e:
            logger.error(f"[STK-PUSH][{rid}] Gateway unreachable: {e}")
            return _error(str(e), status.HTTP_502_BAD_GATEWAY)
        except Exception as e:
            logger.exception(f"[STK-PUSH][{rid}] Unexpected error")
            return _error(str(e) or "Internal server error", status.HTTP_500_INTERNAL_SERVER_ERROR)

        # The CheckoutRequestID is what the callback will look the order up by
        order.payment_reference = result.checkout_request_id
        order.payment_method = Order.PaymentMethod.MPESA
        order.append_note("M-Pesa STK push initiated. Waiting for payment confirmation.")
        try:
            order.save(update_fields=["payment_reference", "payment_method", "notes", "updated_at"])
        except Exception:
            logger.exception(
                f"[STK-PUSH][{rid}] Could not pair order {order.pk} with {result.checkout_request_id}"
            )
            return _error("Failed to update order with payment reference", status.HTTP_500_INTERNAL_SERVER_ERROR)
        logger.info(f"[STK-PUSH][{rid}] Order {order.pk} paired with {result.checkout_request_id}")

        return Response(
            {
                "success": True,
                "message": "STK push sent successfully. Please check your phone and enter your M-Pesa PIN.",
                "checkoutRequestId": result.checkout_request_id,
                "merchantRequestId": result.merchant_request_id,
            },
            status=status.HTTP_200_OK,
        )


class MpesaCallbackView(APIView):
    """
    Receives the STK push result from Safaricom.

    Safaricom retries anything that is not a success, so every path through
    this view answers with CALLBACK_ACK and failures only end up in the log.
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        rid = _request_id()
        logger.info(f"[CALLBACK][{rid}] M-Pesa callback received")
        try:
            self.handle(request.data, rid)
        except MalformedCallback as e:
            logger.error(f"[CALLBACK][{rid}] Ignoring callback: {e}")
        except Exception:
            logger.exception(f"[CALLBACK][{rid}] Error processing callback")
        return Response(CALLBACK_ACK, status=status.HTTP_200_OK)

    def handle(self, payload, rid):
        callback = parse_stk_callback(payload)
        logger.info(
            f"[CALLBACK][{rid}] CheckoutRequestID={callback.checkout_request_id} "
            f"ResultCode={callback.result_code} ResultDesc={callback.result_desc}"
        )

        with transaction.atomic():
            order = (
                Order.objects.select_for_update()
                .filter(payment_reference=callback.checkout_request_id)
                .first()
            )
            if order is None:
                # Superseded by a retried push, or never ours
                raise MalformedCallback(f"No order for CheckoutRequestID {callback.checkout_request_id}")

            if callback.succeeded:
                self.confirm(order, callback, rid)
            else:
                self.record_failure(order, callback, rid)

    def confirm(self, order, callback, rid):
        if order.status == Order.Status.PAID:
            logger.info(f"[CALLBACK][{rid}] Order {order.pk} already paid, nothing to do")
            return

        note = (
            f"M-Pesa payment confirmed. Receipt: {callback.receipt_number}. "
            f"Amount: KSh {callback.amount}. Date: {callback.transaction_date}"
        )
        update_fields = ["notes", "updated_at"]
        if order.status == Order.Status.PENDING:
            order.status = Order.Status.PAID
            order.payment_reference = callback.receipt_number or callback.checkout_request_id
            update_fields += ["status", "payment_reference"]
        else:
            logger.warning(f"[CALLBACK][{rid}] Payment received for order {order.pk} in status {order.status}")
            note = f"{note}. Order was {order.status}, status left unchanged."

        order.append_note(note)
        order.save(update_fields=update_fields)
        logger.info(
            f"[CALLBACK][{rid}] Order {order.pk} is {order.status}. Receipt {callback.receipt_number}, "
            f"amount {callback.amount}, phone {mask_phone(callback.phone_number)}"
        )

    def record_failure(self, order, callback, rid):
        if order.status == Order.Status.PAID:
            logger.info(f"[CALLBACK][{rid}] Order {order.pk} already paid, ignoring result {callback.result_code}")
            return

        outcome, _ = interpret_result_code(callback.result_code, callback.result_desc)
        reason = {
            PaymentStatus.CANCELLED: "cancelled",
            PaymentStatus.TIMEOUT: "timed out",
        }.get(outcome, "failed")

        order.append_note(f"M-Pesa payment {reason}: {callback.result_desc} (Code: {callback.result_code})")
        order.save(update_fields=["notes", "updated_at"])
        logger.info(f"[CALLBACK][{rid}] Order {order.pk} payment {reason}, status stays {order.status}")


class MpesaQueryView(APIView):
    """
    Lets the checkout page ask Safaricom directly whether the customer has paid.
    Read-only: only the callback changes the order.
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        rid = _request_id()
        if not isinstance(request.data, dict):
            return _error("Request body must be a JSON object", status.HTTP_400_BAD_REQUEST)
        checkout_request_id = request.data.get("checkoutRequestId")

        if not checkout_request_id:
            return _error("Missing checkoutRequestId", status.HTTP_400_BAD_REQUEST)

        logger.info(f"[QUERY][{rid}] Querying status for {checkout_request_id}")
        try:
            result = get_mpesa_client().query_status(checkout_request_id)
        except ConfigurationError as e:
            logger.error(f"[QUERY][{rid}] {e}")
            return _error(str(e), status.HTTP_500_INTERNAL_SERVER_ERROR, status=PaymentStatus.ERROR.value)
        except MpesaError as e:
            # Transport trouble is reported as a status so the client keeps polling
            logger.error(f"[QUERY][{rid}] {e}")
            return Response(
                {"success": True, "status": PaymentStatus.ERROR.value, "message": str(e)},
                status=status.HTTP_200_OK,
            )
        except Exception as e:
            logger.exception(f"[QUERY][{rid}] Unexpected error")
            return _error(
                str(e) or "Internal server error",
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                status=PaymentStatus.ERROR.value,
            )

        logger.info(f"[QUERY][{rid}] Final status: {result.status.value}, message: {result.message}")
        return Response(
            {
                "success": True,
                "status": result.status.value,
                "message": result.message,
                "resultCode": result.result_code,
                "resultDesc": result.result_desc,
            },
            status=status.HTTP_200_OK,
        )
