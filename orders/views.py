"""
Order API Views.

Implements:
- POST /orders/ - Checkout (guest or authenticated)
- GET /orders/ - Own orders, or all orders for staff
- GET /orders/{id}/ - Order detail with items and history
- DELETE /orders/{id}/ - Administrative delete
- POST /orders/{id}/cancel/ - Cancel and restore stock
- PATCH /orders/{id}/status/ - Admin status change
- GET /orders/stats/ - Order statistics

Domain errors propagate to core.exceptions.api_exception_handler.
"""
import logging

from django.db.models import Q
from django.shortcuts import get_object_or_404
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import NotAuthorized
from core.rate_limiting import rate_limit
from .models import Order
from .serializers import (
    OrderCancelSerializer,
    OrderCreateSerializer,
    OrderListSerializer,
    OrderSerializer,
    OrderStatusUpdateSerializer,
)
from .services import (
    cancel_order,
    create_order,
    delete_order,
    get_order_stats,
    update_order_status,
)

logger = logging.getLogger(__name__)


def order_queryset():
    return Order.objects.select_related('user').prefetch_related('items', 'status_history')


class OrderListCreateView(generics.ListCreateAPIView):
    """
    GET: List orders (own orders; staff see all)
    POST: Place an order

    Query Parameters (GET):
        - status: Filter by status
        - search: Staff only, match order number, customer name or e-mail

    Request Body (POST): see OrderCreateSerializer
    """

    def get_permissions(self):
        if self.request.method == 'POST':
            return [permissions.AllowAny()]
        return [permissions.IsAuthenticated()]

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = Order.objects.prefetch_related('items')

        if not self.request.user.is_staff:
            queryset = queryset.filter(user=self.request.user)
        else:
            search = self.request.query_params.get('search', '').strip()
            if search:
                queryset = queryset.filter(
                    Q(order_number__icontains=search) |
                    Q(customer_name__icontains=search) |
                    Q(customer_email__icontains=search)
                )

        status_filter = self.request.query_params.get('status', '').lower()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        return queryset.order_by('-created_at')

    @rate_limit(max_requests=10, window_seconds=60)
    def create(self, request, *args, **kwargs):
        """
        Returns:
            - 201: Order placed
            - 400: Validation error or unknown size
            - 404: Product not found
            - 409: Insufficient stock
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        user = request.user if request.user.is_authenticated else None
        logger.info(
            f"Creating order for {user or 'guest'}: {len(data['items'])} items, "
            f"payment {data['payment_method']}"
        )

        order = create_order(
            serializer.cart_lines(),
            user=user,
            customer_info=data.get('customer_info'),
            shipping_address=dict(data['shipping_address']),
            billing_address=dict(data['billing_address']) if data.get('billing_address') else None,
            payment_method=data['payment_method'],
            declared_total=data.get('total'),
            declared_figures=serializer.declared_figures(),
        )

        order = order_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderAccessMixin:
    """Fetch an order the requesting user may see."""

    def get_order(self, pk) -> Order:
        order = get_object_or_404(order_queryset(), pk=pk)
        user = self.request.user
        if not user.is_staff and not order.is_owned_by(user):
            raise NotAuthorized("Not authorized to view this order")
        return order


class OrderDetailView(OrderAccessMixin, APIView):
    """
    GET: Retrieve order details with items and history.
    DELETE: Administrative delete (not allowed for delivered orders).
    """
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, pk):
        return Response(OrderSerializer(self.get_order(pk)).data)

    def delete(self, request, pk):
        order = get_object_or_404(Order, pk=pk)
        delete_order(order, requested_by=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)


class OrderCancelView(OrderAccessMixin, APIView):
    """POST: Cancel an order owned by the user (or any order for staff)."""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        serializer = OrderCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = self.get_order(pk)
        cancel_order(order, requested_by=request.user, reason=serializer.validated_data['reason'])

        order = order_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order).data)


class OrderStatusUpdateView(APIView):
    """
    PATCH/PUT: Admin status change.

    Request Body:
    {
        "status": "shipped",
        "note": "Handed to carrier",
        "tracking_number": "1Z999"
    }
    """
    permission_classes = [permissions.IsAdminUser]

    def patch(self, request, pk):
        serializer = OrderStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = get_object_or_404(Order, pk=pk)
        previous = order.status
        order = update_order_status(
            order,
            data['status'],
            requested_by=request.user,
            note=data.get('note', ''),
            tracking_number=data.get('tracking_number'),
        )
        logger.info(
            f"Admin {request.user.get_username()} changed order {order.order_number} "
            f"from {previous} to {order.status}"
        )

        order = order_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order).data)

    put = patch


class OrderStatsView(APIView):
    """GET: Order statistics for administrators."""
    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        return Response(get_order_stats())
