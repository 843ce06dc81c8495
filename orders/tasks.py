"""
Celery tasks for order processing.

Tasks:
    - send_order_confirmation: E-mail the customer after checkout
    - generate_daily_order_report: Daily order statistics (Celery Beat)
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail
from django.db.models import Count, Q, Sum
from django.utils import timezone

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(ConnectionError,),
    retry_backoff=True
)
def send_order_confirmation(self, order_id: int):
    """
    Send the order-placed e-mail to the customer.

    Args:
        order_id: ID of the placed order

    Returns:
        Dict with confirmation details
    """
    from orders.models import Order

    try:
        order = Order.objects.prefetch_related('items').get(id=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order #{order_id} not found for confirmation")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    if order.status == Order.Status.CANCELLED:
        logger.warning(f"Order {order.order_number} was cancelled, skipping confirmation")
        return {'status': 'skipped', 'message': f'Order {order_id} is cancelled'}

    items_summary = [
        f"  - {item.quantity}x {item.name} ({item.size}) @ ${item.unit_price}"
        for item in order.items.all()
    ]
    body = "\n".join([
        f"Hi {order.customer_name},",
        "",
        f"Thanks for your order {order.order_number}.",
        "",
        "Items:",
        *items_summary,
        "",
        f"Subtotal: ${order.subtotal}",
        f"Shipping: ${order.shipping_cost}",
        f"Tax: ${order.tax}",
        f"Total: ${order.total}",
        f"Payment: {order.get_payment_method_display()}",
    ])

    send_mail(
        subject=f"Order {order.order_number} received",
        message=body,
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    logger.info(f"[CELERY] Confirmation sent for order {order.order_number}")

    return {
        'status': 'success',
        'order_id': order.id,
        'message': f'Confirmation sent for order {order_id}'
    }


@shared_task
def generate_daily_order_report():
    """
    Generate yesterday's order statistics.

    Scheduled via CELERY_BEAT_SCHEDULE.
    """
    from orders.models import Order

    yesterday = timezone.now().date() - timedelta(days=1)
    orders = Order.objects.filter(created_at__date=yesterday)

    stats = orders.aggregate(
        total_orders=Count('id'),
        confirmed_orders=Count('id', filter=Q(status=Order.Status.CONFIRMED)),
        cancelled_orders=Count('id', filter=Q(status=Order.Status.CANCELLED)),
        payment_failed_orders=Count('id', filter=Q(status=Order.Status.PAYMENT_FAILED)),
        total_revenue=Sum('total', filter=Q(payment_status=Order.PaymentStatus.PAID)),
    )

    report = f"""
    ===============================================
    DAILY ORDER REPORT - {yesterday}
    ===============================================
    Total Orders: {stats['total_orders']}
    Confirmed: {stats['confirmed_orders']}
    Cancelled: {stats['cancelled_orders']}
    Payment failed: {stats['payment_failed_orders']}
    Paid Revenue: ${stats['total_revenue'] or 0}
    ===============================================
    """

    logger.info(report)

    stats['total_revenue'] = str(stats['total_revenue'] or '0.00')
    stats['date'] = yesterday.isoformat()
    return stats
