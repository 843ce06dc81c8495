"""
Order Service Layer - order creation, status transitions and stock
reconciliation.

Creation runs in one transaction:
1. Normalize the cart against the live catalog (prices, sizes, stock)
2. Reserve stock per line with the ledger's conditional UPDATE
3. Insert the order, its item snapshots and the first history entry
If any reservation loses a race the whole transaction rolls back, so a
failed checkout leaves neither an order nor a stock change behind.

Every transition locks the order row, checks the transition graph and
writes status, timestamp and history together or not at all.
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from django.db import transaction
from django.db.models import Avg, Count, Q, Sum
from django.utils import timezone

from catalog.ledger import adjust_stock, release_stock
from core.exceptions import (
    InsufficientStock,
    InvalidTransition,
    NotAuthorized,
    OrderValidationError,
)
from .cart import CartLine, normalize_cart
from .models import Order, OrderItem

logger = logging.getLogger(__name__)

Status = Order.Status
PaymentStatus = Order.PaymentStatus

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    Status.PENDING: frozenset({
        Status.CONFIRMED, Status.CANCELLED, Status.PAYMENT_FAILED, Status.REFUNDED,
    }),
    Status.CONFIRMED: frozenset({
        Status.PROCESSING, Status.CANCELLED, Status.PAYMENT_FAILED, Status.REFUNDED,
    }),
    Status.PROCESSING: frozenset({
        Status.CONFIRMED, Status.SHIPPED, Status.CANCELLED, Status.PAYMENT_FAILED,
        Status.REFUNDED,
    }),
    Status.SHIPPED: frozenset({
        Status.DELIVERED, Status.PAYMENT_FAILED, Status.REFUNDED,
    }),
    Status.PAYMENT_FAILED: frozenset({
        Status.CONFIRMED, Status.CANCELLED, Status.REFUNDED,
    }),
    Status.DELIVERED: frozenset(),
    Status.CANCELLED: frozenset(),
    Status.REFUNDED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({
    Status.PENDING, Status.CONFIRMED, Status.PROCESSING, Status.PAYMENT_FAILED,
})

# Statuses in which a paid order counts as already confirmed
PAID_STATUSES = frozenset({
    Status.CONFIRMED, Status.PROCESSING, Status.SHIPPED, Status.DELIVERED,
})

# Statuses that still hold reserved stock
RESERVING_STATUSES = frozenset({
    Status.PENDING, Status.CONFIRMED, Status.PROCESSING, Status.PAYMENT_FAILED,
})

ADVANCE_TIMESTAMPS = {
    Status.PROCESSING: None,
    Status.SHIPPED: 'shipped_at',
    Status.DELIVERED: 'delivered_at',
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def actor_label(user) -> str:
    """Name recorded in the status history for a user or system actor."""
    if user is None or not getattr(user, 'is_authenticated', False):
        return 'guest'
    label = user.get_username() or user.email
    if user.is_staff:
        return f"admin:{label}"
    return label


def _lock(order: Order) -> Order:
    """Re-read the order under a row lock. Must run inside a transaction."""
    return Order.objects.select_for_update().get(pk=order.pk)


def _check_transition(order: Order, target: str) -> None:
    if not can_transition(order.status, target):
        raise InvalidTransition(order.status, target)


def _require_staff(user, action: str) -> None:
    if user is None or not getattr(user, 'is_staff', False):
        raise NotAuthorized(f"Only administrators can {action}")


# =============================================================================
# Creation
# =============================================================================

def validate_checkout(
    lines: List[CartLine],
    user=None,
    customer_info: Optional[Dict] = None,
    shipping_address: Optional[Dict] = None,
    payment_method: Optional[str] = None,
) -> Dict:
    """
    Validate checkout input before touching storage.

    Returns:
        Dict with the resolved customer fields and canonical payment method

    Raises:
        OrderValidationError: If validation fails
    """
    if not lines:
        raise OrderValidationError("Order must contain at least one item", field='items')
    if not shipping_address:
        raise OrderValidationError("Shipping address is required", field='shipping_address')

    method = (payment_method or '').strip().upper()
    if method not in Order.PaymentMethod.values:
        raise OrderValidationError(
            f"Unsupported payment method {payment_method!r}", field='payment_method'
        )

    customer_info = customer_info or {}
    is_authenticated = user is not None and getattr(user, 'is_authenticated', False)
    if is_authenticated:
        customer = {
            'customer_name': customer_info.get('name') or user.get_full_name() or user.get_username(),
            'customer_email': customer_info.get('email') or user.email,
            'customer_phone': customer_info.get('phone') or '',
        }
        if not customer['customer_email']:
            raise OrderValidationError(
                "Customer email is required", field='customer_info.email'
            )
    else:
        if not customer_info.get('name') or not customer_info.get('email'):
            raise OrderValidationError(
                "Customer information (name and email) is required for guest checkout",
                field='customer_info',
            )
        customer = {
            'customer_name': customer_info['name'],
            'customer_email': customer_info['email'],
            'customer_phone': customer_info.get('phone') or '',
        }

    return {'payment_method': method, **customer}


def create_order(
    lines: List[CartLine],
    *,
    shipping_address: Dict,
    payment_method: str,
    user=None,
    customer_info: Optional[Dict] = None,
    billing_address: Optional[Dict] = None,
    declared_total: Optional[Decimal] = None,
    declared_figures: Optional[Dict[str, Decimal]] = None,
    discount: Decimal = Decimal('0.00'),
) -> Order:
    """
    Create an order and reserve its stock.

    Args:
        lines: Normalized cart lines in client order
        shipping_address: Address dict
        payment_method: Any casing of COD, CARD, UPI or NETBANKING
        user: Authenticated user, or None for guest checkout
        customer_info: Dict with name, email, phone (required for guests)
        billing_address: Defaults to the shipping address
        declared_total: Client-computed total, logged if it disagrees
        declared_figures: Client-computed subtotal, tax and shipping_cost,
            each logged if it disagrees
        discount: Server-side discount

    Returns:
        The persisted Order in ``pending`` status

    Raises:
        OrderValidationError, ProductNotFound, SizeUnavailable,
        InsufficientStock: nothing is persisted in any of these cases
    """
    checkout = validate_checkout(lines, user, customer_info, shipping_address, payment_method)
    is_authenticated = user is not None and getattr(user, 'is_authenticated', False)

    with transaction.atomic():
        cart = normalize_cart(
            lines,
            declared_total=declared_total,
            declared_figures=declared_figures,
            discount=discount,
        )

        # The normalizer's stock check is advisory; the conditional
        # decrement below is what actually reserves units.
        for idx, line in enumerate(cart.lines):
            try:
                adjust_stock(line.product_id, line.size, -line.quantity)
            except InsufficientStock as e:
                logger.warning(
                    f"Stock reservation lost for {line.name} ({line.size}): "
                    f"requested {line.quantity}, available {e.available}"
                )
                raise e.for_item(idx, line.name) from e

        totals = cart.totals
        order = Order.objects.create(
            user=user if is_authenticated else None,
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping_cost=totals.shipping_cost,
            discount=totals.discount,
            total=totals.total,
            status=Status.PENDING,
            payment_status=PaymentStatus.PENDING,
            **checkout,
        )
        OrderItem.objects.bulk_create([
            OrderItem(order=order, **line.as_item_fields()) for line in cart.lines
        ])
        order.record_status(Status.PENDING, actor=actor_label(user), note='Order placed')

        transaction.on_commit(lambda: _queue_confirmation(order.pk))

    logger.info(
        f"Order {order.order_number} placed: {len(cart.lines)} items, "
        f"total ${order.total}, customer {order.customer_email}"
    )
    return order


def _queue_confirmation(order_id: int) -> None:
    try:
        from .tasks import send_order_confirmation
        send_order_confirmation.delay(order_id)
    except Exception as e:
        # Don't fail the order if task queuing fails
        logger.error(f"Failed to queue confirmation task for order #{order_id}: {e}")


# =============================================================================
# Payment outcomes
# =============================================================================

def confirm_payment(
    order: Order,
    *,
    actor: str = 'system',
    note: str = 'Payment confirmed',
    gateway_payment_id: Optional[str] = None,
) -> Order:
    """
    Mark an order paid and confirmed.

    Safe to call repeatedly: an order that is already confirmed (or further
    along) keeps its status and gets no new history entry. If an
    administrator confirmed it before the payment arrived, only the payment
    status is updated.

    Raises:
        InvalidTransition: The order is cancelled, refunded or otherwise
            cannot be confirmed
    """
    with transaction.atomic():
        order = _lock(order)

        if order.status in PAID_STATUSES:
            if order.is_paid:
                logger.info(f"Order {order.order_number} already confirmed, ignoring duplicate")
                return order

            order.payment_status = PaymentStatus.PAID
            fields = ['payment_status', 'updated_at']
            if gateway_payment_id:
                order.gateway_payment_id = gateway_payment_id
                fields.append('gateway_payment_id')
            order.save(update_fields=fields)
            logger.info(
                f"Payment recorded by {actor} for order {order.order_number} "
                f"already in {order.status}"
            )
            return order

        _check_transition(order, Status.CONFIRMED)

        order.status = Status.CONFIRMED
        order.payment_status = PaymentStatus.PAID
        if order.confirmed_at is None:
            order.confirmed_at = timezone.now()
        if gateway_payment_id:
            order.gateway_payment_id = gateway_payment_id
        order.save(update_fields=[
            'status', 'payment_status', 'confirmed_at', 'gateway_payment_id', 'updated_at',
        ])
        order.record_status(Status.CONFIRMED, actor=actor, note=note)

    logger.info(f"Order {order.order_number} confirmed by {actor}")
    return order


def mark_payment_failed(
    order: Order,
    *,
    actor: str = 'system',
    note: str = 'Payment failed',
) -> Order:
    """
    Record a failed payment.

    Reserved stock is kept; an administrator decides whether to cancel.
    Repeated failure events for the same order are ignored.
    """
    with transaction.atomic():
        order = _lock(order)

        if order.status == Status.PAYMENT_FAILED:
            logger.info(f"Order {order.order_number} already marked payment_failed")
            return order

        _check_transition(order, Status.PAYMENT_FAILED)

        order.status = Status.PAYMENT_FAILED
        order.payment_status = PaymentStatus.FAILED
        order.save(update_fields=['status', 'payment_status', 'updated_at'])
        order.record_status(Status.PAYMENT_FAILED, actor=actor, note=note)

    logger.warning(f"Payment failed for order {order.order_number}")
    return order


# =============================================================================
# Fulfillment
# =============================================================================

def advance_order(
    order: Order,
    status: str,
    *,
    actor: str = 'system',
    note: str = '',
    tracking_number: Optional[str] = None,
) -> Order:
    """
    Move an order along confirmed -> processing -> shipped -> delivered.

    Each timestamp is set once. Delivering a cash-on-delivery order also
    marks it paid.
    """
    if status not in ADVANCE_TIMESTAMPS:
        raise OrderValidationError(f"{status!r} is not a fulfillment status", field='status')

    with transaction.atomic():
        order = _lock(order)
        _check_transition(order, status)

        fields = ['status', 'updated_at']
        order.status = status

        stamp = ADVANCE_TIMESTAMPS[status]
        if stamp and getattr(order, stamp) is None:
            setattr(order, stamp, timezone.now())
            fields.append(stamp)

        if tracking_number:
            order.tracking_number = tracking_number
            fields.append('tracking_number')

        if (status == Status.DELIVERED
                and order.payment_method == Order.PaymentMethod.COD
                and not order.is_paid):
            order.payment_status = PaymentStatus.PAID
            fields.append('payment_status')

        order.save(update_fields=fields)
        order.record_status(status, actor=actor, note=note or f"Order {status}")

    logger.info(f"Order {order.order_number} moved to {status} by {actor}")
    return order


def cancel_order(order: Order, *, requested_by=None, reason: str = '') -> Order:
    """
    Cancel an order and give its units back to stock.

    Only the owner or an administrator may cancel, and only before the
    order ships. A line whose product or size no longer exists is logged
    and skipped; the cancellation itself always completes.

    Raises:
        NotAuthorized: Requester is neither owner nor staff
        InvalidTransition: Order already shipped, delivered, cancelled
            or refunded
    """
    is_staff = getattr(requested_by, 'is_staff', False)
    if not is_staff and not order.is_owned_by(requested_by):
        raise NotAuthorized("Not authorized to cancel this order")

    with transaction.atomic():
        order = _lock(order)
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(
                order.status, Status.CANCELLED,
                message=f"Order cannot be cancelled at this stage ({order.status})",
            )

        skipped = release_stock(order.items.all())

        note = reason or ('Order cancelled by administrator' if is_staff
                          else 'Order cancelled by customer')
        order.status = Status.CANCELLED
        order.cancelled_at = timezone.now()
        order.cancellation_reason = reason
        order.save(update_fields=['status', 'cancelled_at', 'cancellation_reason', 'updated_at'])
        order.record_status(Status.CANCELLED, actor=actor_label(requested_by), note=note)

    if skipped:
        logger.warning(
            f"Order {order.order_number} cancelled with {len(skipped)} item(s) "
            "not returned to stock"
        )
    logger.info(f"Order {order.order_number} cancelled by {actor_label(requested_by)}")
    return order


def refund_order(order: Order, *, actor: str = 'system', note: str = 'Order refunded') -> Order:
    """Mark an order refunded. Stock is not returned."""
    with transaction.atomic():
        order = _lock(order)
        _check_transition(order, Status.REFUNDED)

        order.status = Status.REFUNDED
        order.payment_status = PaymentStatus.REFUNDED
        order.save(update_fields=['status', 'payment_status', 'updated_at'])
        order.record_status(Status.REFUNDED, actor=actor, note=note)

    logger.info(f"Order {order.order_number} refunded by {actor}")
    return order


# =============================================================================
# Admin console
# =============================================================================

def update_order_status(
    order: Order,
    status: str,
    *,
    requested_by,
    note: str = '',
    tracking_number: Optional[str] = None,
) -> Order:
    """
    Apply an administrator's status change through the matching transition.

    Raises:
        NotAuthorized: Requester is not staff
        OrderValidationError: Unknown status
        InvalidTransition: Move not allowed from the current status
    """
    _require_staff(requested_by, 'update order status')
    if status not in Status.values:
        raise OrderValidationError(f"Invalid order status {status!r}", field='status')

    actor = actor_label(requested_by)

    if status == order.status and status != Status.CONFIRMED:
        raise InvalidTransition(order.status, status, message=f"Order is already {status}")

    if status == Status.CONFIRMED:
        return _admin_confirm(order, actor=actor, note=note)
    if status == Status.CANCELLED:
        return cancel_order(order, requested_by=requested_by, reason=note)
    if status == Status.PAYMENT_FAILED:
        return mark_payment_failed(order, actor=actor, note=note or 'Payment marked failed')
    if status == Status.REFUNDED:
        return refund_order(order, actor=actor, note=note or 'Order refunded')
    if status == Status.PENDING:
        raise InvalidTransition(order.status, status)
    return advance_order(order, status, actor=actor, note=note, tracking_number=tracking_number)


def _admin_confirm(order: Order, *, actor: str, note: str) -> Order:
    """
    Confirm without touching payment status, e.g. accepting a COD order.
    """
    with transaction.atomic():
        order = _lock(order)
        if order.status == Status.CONFIRMED:
            return order
        _check_transition(order, Status.CONFIRMED)

        order.status = Status.CONFIRMED
        if order.confirmed_at is None:
            order.confirmed_at = timezone.now()
        order.save(update_fields=['status', 'confirmed_at', 'updated_at'])
        order.record_status(Status.CONFIRMED, actor=actor, note=note or 'Order confirmed')

    logger.info(f"Order {order.order_number} confirmed by {actor}")
    return order


def delete_order(order: Order, *, requested_by) -> None:
    """
    Administrative delete. Delivered orders are never deleted; units still
    reserved by the order are returned to stock first.
    """
    _require_staff(requested_by, 'delete orders')

    with transaction.atomic():
        order = _lock(order)
        if order.status == Status.DELIVERED:
            raise InvalidTransition(
                order.status, 'deleted', message='Cannot delete delivered orders'
            )
        if order.status in RESERVING_STATUSES:
            release_stock(order.items.all())
        order_number = order.order_number
        order.delete()

    logger.warning(f"Order {order_number} deleted by {actor_label(requested_by)}")


def bulk_update_status(orders: Iterable[Order], status: str, *, requested_by) -> Dict[str, List[str]]:
    """
    Apply one status change to many orders, collecting per-order failures.
    """
    result = {'updated': [], 'failed': []}
    for order in orders:
        try:
            update_order_status(order, status, requested_by=requested_by)
            result['updated'].append(order.order_number)
        except (InvalidTransition, NotAuthorized, OrderValidationError) as e:
            logger.warning(f"Bulk update skipped {order.order_number}: {e}")
            result['failed'].append(order.order_number)
    return result


# =============================================================================
# Reporting
# =============================================================================

def get_order_stats() -> Dict:
    """
    Order statistics with one aggregate query per section.
    """
    breakdown = list(
        Order.objects.values('status')
        .annotate(count=Count('id'), total_amount=Sum('total'))
        .order_by('status')
    )
    totals = Order.objects.aggregate(
        total_orders=Count('id'),
        total_revenue=Sum('total', filter=Q(status=Status.DELIVERED)),
        avg_order_value=Avg('total', filter=~Q(status=Status.CANCELLED)),
    )
    recent = Order.objects.order_by('-created_at')[:5]

    return {
        'total_orders': totals['total_orders'],
        'total_revenue': str(totals['total_revenue'] or Decimal('0.00')),
        'avg_order_value': str(round(totals['avg_order_value'] or 0, 2)),
        'status_breakdown': [
            {
                'status': row['status'],
                'count': row['count'],
                'total_amount': str(row['total_amount'] or Decimal('0.00')),
            }
            for row in breakdown
        ],
        'recent_orders': [
            {
                'id': order.id,
                'order_number': order.order_number,
                'customer': {'name': order.customer_name, 'email': order.customer_email},
                'total': str(order.total),
                'status': order.status,
                'created_at': order.created_at.isoformat(),
            }
            for order in recent
        ],
    }
