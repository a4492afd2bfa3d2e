from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .delivery import calculate_delivery_fee
from .models import AdminNotification, Order, OrderItem
from .tasks import create_admin_notification

User = get_user_model()


def make_order(**kwargs):
    fields = {
        "customer_name": "Jane Wanjiku",
        "customer_email": "jane@example.com",
        "customer_phone": "0712345678",
        "delivery_address": "Moi Avenue, Shop 12",
        "delivery_city": "Nairobi",
        "total_amount": Decimal("12500.00"),
    }
    fields.update(kwargs)
    return Order.objects.create(**fields)


class CheckoutViewTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username="testuser",
            email="test@example.com",
            password="testpassword123",
        )
        self.client.force_authenticate(user=self.user)
        self.url = reverse("orders-checkout")
        self.checkout_data = {
            "name": "Jane Wanjiku",
            "email": "jane@example.com",
            "phone": "0712345678",
            "address": "Moi Avenue, Shop 12",
            "city": "Nairobi",
            "payment_method": "mpesa",
            "items": [
                {"product_id": "clipper-pro", "product_name": "Clipper Pro", "quantity": 2, "unit_price": "4500.00"},
                {"product_name": "Barber Cape", "quantity": 1, "unit_price": "1000.00"},
            ],
        }

    def test_unauthenticated_user_cannot_checkout(self):
        """
        Ensure unauthenticated users receive a 401 Unauthorized response.
        """
        self.client.force_authenticate(user=None)
        response = self.client.post(self.url, self.checkout_data, format="json")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_checkout_creates_pending_order_with_items(self):
        response = self.client.post(self.url, self.checkout_data, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["subtotal"], "10000.00")
        self.assertEqual(response.data["delivery_fee"], "1000")
        self.assertEqual(response.data["total_amount"], "11000.00")

        order = Order.objects.get(pk=response.data["order_id"])
        self.assertEqual(order.user, self.user)
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_method, "mpesa")
        self.assertEqual(order.payment_reference, "")
        self.assertEqual(order.delivery_fee, Decimal("1000"))
        self.assertEqual(order.total_amount, Decimal("11000.00"))

        items = OrderItem.objects.filter(order=order).order_by("product_name")
        self.assertEqual(items.count(), 2)
        self.assertIsNone(items[0].product_id)
        self.assertEqual(items[1].total_price, Decimal("9000.00"))

    def test_pay_on_delivery_checkout(self):
        data = dict(self.checkout_data, payment_method="pay_on_delivery")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["payment_method"], "pay_on_delivery")

    def test_short_phone_is_rejected(self):
        data = dict(self.checkout_data, phone="07123")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("Phone number must be at least 10 digits", response.data["error"])
        self.assertFalse(Order.objects.exists())

    def test_empty_cart_is_rejected(self):
        data = dict(self.checkout_data, items=[])
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data["success"])

    def test_unknown_payment_method_is_rejected(self):
        data = dict(self.checkout_data, payment_method="bitcoin")
        response = self.client.post(self.url, data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class PayOnDeliveryViewTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="buyer", password="testpassword123")
        self.client.force_authenticate(user=self.user)
        self.order = make_order(user=self.user, payment_reference="ws_CO_1")

    def url(self, order):
        return reverse("orders-pay-on-delivery", kwargs={"pk": order.pk})

    def test_failed_mpesa_order_switches_to_pay_on_delivery(self):
        response = self.client.post(self.url(self.order), format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_method, "pay_on_delivery")
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertIn("pay on delivery", self.order.notes)

    def test_paid_order_cannot_switch(self):
        self.order.status = Order.Status.PAID
        self.order.save()
        response = self.client.post(self.url(self.order), format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_other_customers_order_is_not_found(self):
        other = make_order()
        response = self.client.post(self.url(other), format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class DeliveryFeeTests(TestCase):
    def test_flat_rate_tiers(self):
        self.assertEqual(calculate_delivery_fee(Decimal("2500")), Decimal("500"))
        self.assertEqual(calculate_delivery_fee(Decimal("10000")), Decimal("1000"))
        self.assertEqual(calculate_delivery_fee(Decimal("35000")), Decimal("1500"))
        self.assertEqual(calculate_delivery_fee(Decimal("80000")), Decimal("2000"))

    @override_settings(DELIVERY_FEE_TIERS=[(0, 250), (20000, 0)])
    def test_tiers_come_from_settings(self):
        self.assertEqual(calculate_delivery_fee(1000), Decimal("250"))
        self.assertEqual(calculate_delivery_fee(25000), Decimal("0"))


class OrderNotificationTests(TestCase):
    def test_paid_order_notifies_admins(self):
        order = make_order(payment_reference="ws_CO_1")
        order.status = Order.Status.PAID
        order.payment_reference = "QKH1XY2Z3A"
        with self.captureOnCommitCallbacks(execute=True):
            order.save()

        notification = AdminNotification.objects.get()
        self.assertEqual(notification.type, AdminNotification.Type.NEW_ORDER)
        self.assertEqual(notification.title, "New Order Paid via M-Pesa")
        self.assertEqual(notification.order, order)
        self.assertIn("Jane Wanjiku", notification.message)
        self.assertIn("KSh 12,500.00", notification.message)
        self.assertIn("QKH1XY2Z3A", notification.message)

    def test_notification_waits_for_commit(self):
        order = make_order()
        order.status = Order.Status.PAID
        with self.captureOnCommitCallbacks() as callbacks:
            order.save()
            self.assertFalse(AdminNotification.objects.exists())

        self.assertEqual(len(callbacks), 1)
        self.assertFalse(AdminNotification.objects.exists())

    @patch("orders.signals.create_admin_notification.delay")
    def test_rolled_back_status_change_is_not_announced(self, mock_delay):
        order = make_order()
        order.status = Order.Status.PAID
        with self.captureOnCommitCallbacks(execute=True):
            try:
                with transaction.atomic():
                    order.save()
                    raise DatabaseError("write failed")
            except DatabaseError:
                pass

        mock_delay.assert_not_called()

    def test_delivered_order_notifies_admins(self):
        order = make_order(status=Order.Status.DISPATCHED, payment_method="pay_on_delivery")
        order.status = Order.Status.DELIVERED
        with self.captureOnCommitCallbacks(execute=True):
            order.save()

        notification = AdminNotification.objects.get()
        self.assertEqual(notification.type, AdminNotification.Type.ORDER_DELIVERED)
        self.assertEqual(notification.title, "Order Delivered")

    def test_saving_without_status_change_is_silent(self):
        order = make_order(status=Order.Status.PAID)
        order.append_note("Packed")
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            order.save()
        self.assertEqual(callbacks, [])
        self.assertFalse(AdminNotification.objects.exists())

    @patch("orders.signals.create_admin_notification.delay")
    def test_broker_outage_does_not_block_the_order(self, mock_delay):
        mock_delay.side_effect = ConnectionError("broker unreachable")
        order = make_order()
        order.status = Order.Status.PAID
        with self.captureOnCommitCallbacks(execute=True):
            order.save()

        mock_delay.assert_called_once()
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PAID)

    def test_task_tolerates_missing_order(self):
        pk = create_admin_notification("new_order", "New Order Paid", "paid", "00000000-0000-0000-0000-000000000000")
        notification = AdminNotification.objects.get(pk=pk)
        self.assertIsNone(notification.order)

    def test_append_note_keeps_history(self):
        order = make_order()
        order.append_note("first")
        order.append_note("second")
        self.assertEqual(order.notes, "first\nsecond")
