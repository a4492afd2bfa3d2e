import logging

from django.db import transaction
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .delivery import calculate_delivery_fee
from .models import Order, OrderItem
from .serializers import CheckoutSerializer, first_error

logger = logging.getLogger(__name__)


class CheckoutView(APIView):
    """
    Turn the customer's cart into a pending order.
    Payment happens afterwards, either through the M-Pesa endpoints or on delivery.
    """

    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(
                {"success": False, "error": first_error(serializer.errors)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        data = serializer.validated_data

        subtotal = sum(item["unit_price"] * item["quantity"] for item in data["items"])
        delivery_fee = calculate_delivery_fee(subtotal)

        with transaction.atomic():
            order = Order.objects.create(
                user=request.user,
                customer_name=data["name"],
                customer_email=data["email"],
                customer_phone=data["phone"],
                delivery_address=data["address"],
                delivery_city=data["city"],
                total_amount=subtotal + delivery_fee,
                delivery_fee=delivery_fee,
                payment_method=data["payment_method"],
                notes=data.get("notes") or "",
                status=Order.Status.PENDING,
            )
            OrderItem.objects.bulk_create(
                [
                    OrderItem(
                        order=order,
                        product_id=item.get("product_id") or None,
                        product_name=item["product_name"],
                        quantity=item["quantity"],
                        unit_price=item["unit_price"],
                        total_price=item["unit_price"] * item["quantity"],
                    )
                    for item in data["items"]
                ]
            )

        logger.info(f"Order {order.pk} created for user {request.user.pk} ({order.payment_method}, total {order.total_amount})")
        return Response(
            {
                "success": True,
                "order_id": str(order.pk),
                "subtotal": str(subtotal),
                "delivery_fee": str(delivery_fee),
                "total_amount": str(order.total_amount),
                "payment_method": order.payment_method,
                "status": order.status,
            },
            status=status.HTTP_201_CREATED,
        )


class PayOnDeliveryView(APIView):
    """
    Fallback for when the M-Pesa prompt fails: keep the order and collect cash on delivery.
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        try:
            order = Order.objects.get(pk=pk, user=request.user)
        except Order.DoesNotExist:
            return Response(
                {"success": False, "error": "Order not found"}, status=status.HTTP_404_NOT_FOUND
            )

        if order.status != Order.Status.PENDING:
            return Response(
                {"success": False, "error": f"Order is already {order.status}"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        order.payment_method = Order.PaymentMethod.PAY_ON_DELIVERY
        order.append_note("Customer switched to pay on delivery.")
        order.save(update_fields=["payment_method", "notes", "updated_at"])
        logger.info(f"Order {order.pk} switched to pay on delivery")

        return Response(
            {"success": True, "order_id": str(order.pk), "payment_method": order.payment_method},
            status=status.HTTP_200_OK,
        )
