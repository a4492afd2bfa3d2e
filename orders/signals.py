import logging

from django.db import transaction
from django.db.models.signals import pre_save
from django.dispatch import receiver

from .models import AdminNotification, Order
from .tasks import create_admin_notification

logger = logging.getLogger(__name__)


def _money(order):
    symbol = "KSh" if order.currency == "KES" else order.currency
    return f"{symbol} {order.total_amount:,.2f}"


def _dispatch(notification_type, title, message, order):
    order_id = str(order.pk)

    def queue():
        try:
            create_admin_notification.delay(notification_type, title, message, order_id)
        except Exception:
            # Notifications are fire-and-forget: a broker outage must not block the order write.
            logger.exception(f"Could not queue '{notification_type}' notification for order {order_id}")

    # Only announce status changes that actually reached the database
    transaction.on_commit(queue)


@receiver(pre_save, sender=Order)
def on_order_status_change(sender, instance, **kwargs):
    """
    Notifies the admin portal when an order becomes paid or delivered.
    Re-saving an order that is already in that status does nothing, so a
    redelivered payment callback never produces a second notification.
    """
    if instance._state.adding:
        return

    old_status = sender.objects.filter(pk=instance.pk).values_list("status", flat=True).first()
    if old_status is None or old_status == instance.status:
        return

    if instance.status == Order.Status.PAID:
        logger.info(f"Order {instance.pk} paid. Notifying admins.")
        if instance.payment_method == Order.PaymentMethod.MPESA:
            title = "New Order Paid via M-Pesa"
            message = (
                f"Order from {instance.customer_name} for {_money(instance)} paid via M-Pesa. "
                f"Receipt: {instance.payment_reference}"
            )
        else:
            title = "New Order Paid"
            message = f"Order from {instance.customer_name} for {_money(instance)} has been paid."
        _dispatch(AdminNotification.Type.NEW_ORDER, title, message, instance)

    elif instance.status == Order.Status.DELIVERED:
        logger.info(f"Order {instance.pk} delivered. Notifying admins.")
        _dispatch(
            AdminNotification.Type.ORDER_DELIVERED,
            "Order Delivered",
            f"Order for {instance.customer_name} ({_money(instance)}) has been successfully delivered.",
            instance,
        )
