import logging

from celery import shared_task

from .models import AdminNotification, Order

logger = logging.getLogger(__name__)


@shared_task
def create_admin_notification(notification_type, title, message, order_id=None):
    """
    Records an event for the admin portal (new paid order, delivered order).
    Fired from the order status signal; nothing waits on the result.
    """
    order = None
    if order_id:
        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            logger.warning(f"Notification '{title}' refers to unknown order {order_id}")

    notification = AdminNotification.objects.create(
        type=notification_type,
        title=title,
        message=message,
        order=order,
    )
    logger.info(f"Admin notification {notification.pk} ({notification_type}) created for order {order_id}")
    return notification.pk
