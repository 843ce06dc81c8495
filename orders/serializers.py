"""
Serializers for order models and checkout requests.

The request serializers are the single place where client field names
are normalized (``product`` / ``productId`` / ``product_id``) before the
cart reaches the service layer.
"""
from decimal import Decimal

from rest_framework import serializers

from .cart import CartLine
from .models import Order, OrderItem, OrderStatusHistory


class AddressSerializer(serializers.Serializer):
    full_name = serializers.CharField(max_length=200)
    address = serializers.CharField(max_length=300)
    city = serializers.CharField(max_length=100)
    state = serializers.CharField(max_length=100)
    zip_code = serializers.CharField(max_length=20)
    country = serializers.CharField(max_length=100, required=False, default='')
    phone = serializers.CharField(max_length=30)


class CustomerInfoSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    email = serializers.EmailField()
    phone = serializers.CharField(max_length=30, required=False, allow_blank=True, default='')


class OrderItemInputSerializer(serializers.Serializer):
    """One cart line as submitted by the client."""
    product_id = serializers.IntegerField(min_value=1, required=False)
    product = serializers.IntegerField(min_value=1, required=False, write_only=True)
    productId = serializers.IntegerField(min_value=1, required=False, write_only=True)
    quantity = serializers.IntegerField(min_value=1)
    size = serializers.CharField(max_length=20)
    color = serializers.CharField(max_length=50, required=False, allow_blank=True, default='')
    price = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal('0'), required=False,
        help_text="Advisory only; the current catalog price is charged"
    )

    def validate(self, attrs):
        product_id = attrs.pop('product_id', None)
        product = attrs.pop('product', None)
        product_alias = attrs.pop('productId', None)
        resolved = product_id or product or product_alias
        if resolved is None:
            raise serializers.ValidationError({'product': 'Product ID is required'})
        attrs['product_id'] = resolved
        return attrs

    def to_cart_line(self, attrs) -> CartLine:
        return CartLine(
            product_id=attrs['product_id'],
            quantity=attrs['quantity'],
            size=attrs['size'],
            color=attrs.get('color', ''),
            declared_price=attrs.get('price'),
        )


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for creating orders via POST /orders/

    Request format:
    {
        "customer_info": {"name": "Ada", "email": "ada@example.com"},
        "items": [
            {"product": 1, "quantity": 2, "size": "M", "color": "Black"}
        ],
        "shipping_address": {...},
        "payment_method": "card",
        "total": 53.20
    }
    """
    customer_info = CustomerInfoSerializer(required=False)
    items = OrderItemInputSerializer(many=True)
    shipping_address = AddressSerializer()
    billing_address = AddressSerializer(required=False)
    payment_method = serializers.CharField(max_length=20)
    subtotal = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'), required=False)
    tax = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'), required=False)
    shipping = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'), required=False)
    total = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'), required=False)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")
        return value

    def validate_payment_method(self, value):
        method = value.strip().upper()
        if method not in Order.PaymentMethod.values:
            raise serializers.ValidationError(
                f"Valid payment method is required ({', '.join(Order.PaymentMethod.values)})"
            )
        return method

    def cart_lines(self):
        item_serializer = OrderItemInputSerializer()
        return [item_serializer.to_cart_line(item) for item in self.validated_data['items']]

    def declared_figures(self):
        """Client-computed breakdown, keyed like the order's money fields."""
        data = self.validated_data
        figures = {
            'subtotal': data.get('subtotal'),
            'tax': data.get('tax'),
            'shipping_cost': data.get('shipping'),
        }
        return {key: value for key, value in figures.items() if value is not None}


class OrderItemSerializer(serializers.ModelSerializer):
    product_id = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = OrderItem
        fields = [
            'id', 'product_id', 'name', 'unit_price', 'quantity',
            'size', 'color', 'image_url', 'line_total'
        ]


class OrderStatusHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusHistory
        fields = ['status', 'actor', 'note', 'created_at']


class OrderSerializer(serializers.ModelSerializer):
    """Full order representation with items and history."""
    items = OrderItemSerializer(many=True, read_only=True)
    status_history = OrderStatusHistorySerializer(many=True, read_only=True)
    customer_info = serializers.SerializerMethodField()
    total_items = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'status', 'payment_status', 'payment_method',
            'customer_info', 'items', 'total_items',
            'subtotal', 'tax', 'shipping_cost', 'discount', 'total',
            'shipping_address', 'billing_address', 'tracking_number',
            'cancellation_reason', 'status_history',
            'confirmed_at', 'shipped_at', 'delivered_at', 'cancelled_at',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_customer_info(self, obj):
        return {
            'name': obj.customer_name,
            'email': obj.customer_email,
            'phone': obj.customer_phone,
        }

    def get_total_items(self, obj):
        return sum(item.quantity for item in obj.items.all())


class OrderListSerializer(serializers.ModelSerializer):
    """Compact serializer for listing orders."""
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer_name', 'customer_email',
            'status', 'payment_status', 'total', 'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class OrderStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices)
    note = serializers.CharField(required=False, allow_blank=True, default='')
    tracking_number = serializers.CharField(max_length=100, required=False, allow_blank=True)


class OrderCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')
