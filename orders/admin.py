"""
Django Admin configuration for order models.

Status changes made from the admin go through the lifecycle services so
stock and history stay consistent.
"""
from django.contrib import admin, messages

from .models import Order, OrderItem, OrderStatusHistory
from .services import bulk_update_status, delete_order


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'name', 'size', 'color', 'quantity', 'unit_price', 'line_total']
    can_delete = False


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ['status', 'actor', 'note', 'created_at']
    can_delete = False


def _status_action(status, label):
    def action(modeladmin, request, queryset):
        result = bulk_update_status(queryset, status, requested_by=request.user)
        if result['updated']:
            modeladmin.message_user(
                request, f"{len(result['updated'])} order(s) marked {status}."
            )
        if result['failed']:
            modeladmin.message_user(
                request,
                f"Skipped {', '.join(result['failed'])}: transition not allowed.",
                level=messages.WARNING,
            )
    action.__name__ = f"mark_{status}"
    action.short_description = label
    return action


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'order_number', 'customer_name', 'status', 'payment_status',
        'payment_method', 'total', 'created_at'
    ]
    list_filter = ['status', 'payment_status', 'payment_method', 'created_at']
    search_fields = ['order_number', 'customer_name', 'customer_email']
    ordering = ['-created_at']
    readonly_fields = [
        'order_number', 'user', 'status', 'payment_status', 'subtotal', 'tax',
        'shipping_cost', 'discount', 'total', 'payment_intent_id', 'gateway_order_id',
        'gateway_amount', 'gateway_payment_id', 'confirmed_at', 'shipped_at', 'delivered_at',
        'cancelled_at', 'cancellation_reason', 'created_at', 'updated_at'
    ]
    inlines = [OrderItemInline, OrderStatusHistoryInline]
    actions = [
        _status_action(Order.Status.CONFIRMED, 'Confirm selected orders'),
        _status_action(Order.Status.PROCESSING, 'Mark selected orders processing'),
        _status_action(Order.Status.SHIPPED, 'Mark selected orders shipped'),
        _status_action(Order.Status.DELIVERED, 'Mark selected orders delivered'),
        _status_action(Order.Status.CANCELLED, 'Cancel selected orders and restore stock'),
    ]

    def has_add_permission(self, request):
        # Orders are only created through checkout
        return False

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.status == Order.Status.DELIVERED:
            return False
        return super().has_delete_permission(request, obj)

    def delete_model(self, request, obj):
        delete_order(obj, requested_by=request.user)

    def delete_queryset(self, request, queryset):
        delivered = queryset.filter(status=Order.Status.DELIVERED)
        if delivered.exists():
            self.message_user(
                request,
                f"Delivered orders are never deleted: "
                f"{', '.join(delivered.values_list('order_number', flat=True))}",
                level=messages.WARNING,
            )
        for order in queryset.exclude(status=Order.Status.DELIVERED):
            delete_order(order, requested_by=request.user)
