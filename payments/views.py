"""
Payment API Views.

Implements:
- POST /payments/stripe/intent/ - Create a PaymentIntent for an order
- POST /payments/stripe/webhook/ - Signed Stripe event delivery
- POST /payments/razorpay/order/ - Create a Razorpay order for an order
- POST /payments/razorpay/verify/ - Verify a Razorpay checkout result
"""
import logging

import stripe
from django.shortcuts import get_object_or_404
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import InvalidSignature, NotAuthorized, OrderError
from core.rate_limiting import rate_limit
from orders.models import Order
from orders.serializers import OrderSerializer
from orders.views import order_queryset
from .serializers import (
    RazorpayOrderSerializer,
    RazorpayVerifySerializer,
    StripeIntentSerializer,
)
from .services import (
    create_payment_intent,
    create_razorpay_order,
    handle_stripe_webhook,
    verify_razorpay_payment,
)

logger = logging.getLogger(__name__)


class StripeIntentView(APIView):
    """
    POST: Create a PaymentIntent for the order total.

    Request Body:
    {
        "order_id": 42,
        "currency": "usd"
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = StripeIntentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = get_object_or_404(Order, pk=data['order_id'])
        if not request.user.is_staff and not order.is_owned_by(request.user):
            raise NotAuthorized("Not authorized to pay for this order")

        try:
            intent = create_payment_intent(order, currency=data['currency'])
        except stripe.StripeError as e:
            logger.error(f"Stripe intent creation failed for order {order.order_number}: {e}")
            return Response(
                {'error': 'gateway_error', 'detail': 'Payment gateway unavailable'},
                status=status.HTTP_502_BAD_GATEWAY
            )

        return Response({
            'client_secret': intent['client_secret'],
            'payment_intent_id': intent['id'],
        })


@method_decorator(csrf_exempt, name='dispatch')
class StripeWebhookView(APIView):
    """
    POST: Stripe event delivery.

    Always acknowledges with 200 so the gateway stops retrying; verification
    and processing failures are logged instead.
    """
    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    def post(self, request):
        sig_header = request.META.get('HTTP_STRIPE_SIGNATURE', '')
        try:
            order = handle_stripe_webhook(request.body, sig_header)
            if order is not None:
                logger.info(
                    f"Stripe webhook applied to order {order.order_number}: {order.status}"
                )
        except InvalidSignature as e:
            logger.warning(f"Rejected Stripe webhook: {e}")
        except OrderError as e:
            logger.error(f"Stripe webhook could not be applied: {e}")
        except Exception:
            logger.exception("Unexpected error processing Stripe webhook")

        return Response({'received': True})


class RazorpayOrderView(APIView):
    """
    POST: Create a Razorpay order for the order total.

    Request Body:
    {
        "order_id": 42,
        "currency": "INR"
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = RazorpayOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = get_object_or_404(Order, pk=data['order_id'])
        if not request.user.is_staff and not order.is_owned_by(request.user):
            raise NotAuthorized("Not authorized to pay for this order")

        gateway_order = create_razorpay_order(order, currency=data['currency'])
        return Response({'success': True, 'data': gateway_order})


class RazorpayVerifyView(APIView):
    """
    POST: Verify a Razorpay payment and confirm the order.

    Request Body:
    {
        "order_id": 42,
        "razorpay_order_id": "order_ABC",
        "razorpay_payment_id": "pay_XYZ",
        "razorpay_signature": "<hex hmac>"
    }
    """
    permission_classes = [permissions.AllowAny]

    @rate_limit(max_requests=20, window_seconds=60)
    def post(self, request):
        serializer = RazorpayVerifySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            order = verify_razorpay_payment(
                data['order_id'],
                data['razorpay_order_id'],
                data['razorpay_payment_id'],
                data['razorpay_signature'],
            )
        except Order.DoesNotExist:
            return Response(
                {'success': False, 'message': 'Order not found'},
                status=status.HTTP_404_NOT_FOUND
            )
        except OrderError as e:
            logger.warning(f"Razorpay verification failed for order {data['order_id']}: {e}")
            return Response(
                {'success': False, 'message': e.message},
                status=e.status_code
            )

        order = order_queryset().get(pk=order.pk)
        return Response({'success': True, 'order': OrderSerializer(order).data})
