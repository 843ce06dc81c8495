"""
Order Models - Order, OrderItem and OrderStatusHistory.

Order Status Flow:
    pending -> confirmed -> processing -> shipped -> delivered
    cancelled / payment_failed / refunded reachable from non-terminal states
    delivered, cancelled and refunded are terminal
"""
import secrets
import string
import time
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from catalog.models import Product

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """Build an order number like ORD-1718000000000-7K2QX9M1A."""
    suffix = ''.join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


class Order(models.Model):
    """
    Order entity created once per checkout attempt.

    Line items are snapshots; later catalog changes never touch them.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        CONFIRMED = 'confirmed', 'Confirmed'
        PROCESSING = 'processing', 'Processing'
        SHIPPED = 'shipped', 'Shipped'
        DELIVERED = 'delivered', 'Delivered'
        CANCELLED = 'cancelled', 'Cancelled'
        PAYMENT_FAILED = 'payment_failed', 'Payment failed'
        REFUNDED = 'refunded', 'Refunded'

    class PaymentStatus(models.TextChoices):
        PENDING = 'Pending', 'Pending'
        PAID = 'Paid', 'Paid'
        FAILED = 'Failed', 'Failed'
        REFUNDED = 'Refunded', 'Refunded'

    class PaymentMethod(models.TextChoices):
        COD = 'COD', 'Cash on delivery'
        CARD = 'CARD', 'Card'
        UPI = 'UPI', 'UPI'
        NETBANKING = 'NETBANKING', 'Net banking'

    TERMINAL_STATUSES = frozenset({Status.DELIVERED, Status.CANCELLED, Status.REFUNDED})

    order_number = models.CharField(
        max_length=40,
        unique=True,
        editable=False,
        default=generate_order_number,
        help_text="Public order identifier"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='orders',
        help_text="Owning account, empty for guest checkout"
    )
    customer_name = models.CharField(max_length=200)
    customer_email = models.EmailField()
    customer_phone = models.CharField(max_length=30, blank=True, default='')
    shipping_address = models.JSONField(default=dict)
    billing_address = models.JSONField(default=dict)
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        help_text="subtotal + shipping_cost + tax - discount"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
        help_text="Current fulfillment status"
    )
    tracking_number = models.CharField(max_length=100, blank=True, default='')
    cancellation_reason = models.TextField(blank=True, default='')

    # Gateway references
    payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Intent id issued by the intent-based gateway"
    )
    gateway_order_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Order id issued by the signed-order gateway"
    )
    gateway_amount = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Amount in minor units bound to the gateway order"
    )
    gateway_payment_id = models.CharField(max_length=255, blank=True, default='')

    confirmed_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'created_at'], name='order_user_created_idx'),
            models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
        ]

    def __str__(self):
        return f"Order {self.order_number} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PaymentStatus.PAID

    def is_owned_by(self, user) -> bool:
        return (
            user is not None
            and getattr(user, 'is_authenticated', False)
            and self.user_id is not None
            and self.user_id == user.pk
        )

    def record_status(self, status: str, actor: str = 'system', note: str = '') -> 'OrderStatusHistory':
        """Append one entry to the status history."""
        return OrderStatusHistory.objects.create(
            order=self,
            status=status,
            actor=actor,
            note=note,
        )


class OrderItem(models.Model):
    """
    Snapshot of one product line at the moment the order was placed.

    ``product`` is kept only as a back-reference for stock restoration and
    is cleared if the product is later deleted.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
        help_text="Parent order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='order_items',
        help_text="Ordered product"
    )
    name = models.CharField(max_length=200)
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    size = models.CharField(max_length=20)
    color = models.CharField(max_length=50, blank=True, default='')
    image_url = models.CharField(max_length=500, blank=True, default='')
    line_total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.name} [{self.size}] @ ${self.unit_price}"


class OrderStatusHistory(models.Model):
    """Append-only log of status changes."""
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    status = models.CharField(max_length=20, choices=Order.Status.choices)
    actor = models.CharField(max_length=150, default='system')
    note = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        verbose_name = 'Order Status Entry'
        verbose_name_plural = 'Order Status History'
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.order.order_number}: {self.status} by {self.actor}"
