"""
Payment outcome handling.

Gateway callbacks are verified by the adapters in ``payments.gateways``;
this module maps a verified outcome onto the order's payment transition.
Verification always happens before any order row is touched.
"""
import logging
from typing import Dict, Optional

from django.db import transaction

from core.exceptions import InvalidSignature, OrderValidationError, PaymentGatewayError
from orders.models import Order
from orders.services import confirm_payment, mark_payment_failed
from .gateways import StripeGateway, get_razorpay_gateway, get_stripe_gateway, minor_units

logger = logging.getLogger(__name__)


def create_payment_intent(order: Order, currency: str = 'usd'):
    """
    Create (or re-create) a Stripe PaymentIntent for an order's total.

    The order id is used as the idempotency key, so retries from the
    client return the same intent.

    Raises:
        OrderValidationError: Order is not awaiting payment
        PaymentGatewayError: Stripe is not configured
        stripe.StripeError: The gateway call failed
    """
    if order.is_paid or order.is_terminal:
        raise OrderValidationError(
            f"Order {order.order_number} is not awaiting payment", field='order_id'
        )

    gateway = get_stripe_gateway()
    intent = gateway.create_intent(
        amount=order.total,
        currency=currency,
        metadata={'order_id': str(order.pk), 'order_number': order.order_number},
        idempotency_key=f"order-{order.pk}-{order.total}",
    )

    Order.objects.filter(pk=order.pk).update(payment_intent_id=intent['id'])
    order.payment_intent_id = intent['id']
    logger.info(f"Created payment intent {intent['id']} for order {order.order_number}")
    return intent


def handle_stripe_webhook(payload: bytes, sig_header: str) -> Optional[Order]:
    """
    Verify a Stripe webhook delivery and apply it to the matching order.

    Returns:
        The affected order, or None when the event is ignored

    Raises:
        InvalidSignature: Delivery failed verification
    """
    event = get_stripe_gateway().parse_webhook(payload, sig_header)

    if event.event_type not in (StripeGateway.SUCCEEDED, StripeGateway.FAILED):
        logger.info(f"Unhandled Stripe event type: {event.event_type}")
        return None

    order = Order.objects.filter(payment_intent_id=event.reference).first()
    if order is None:
        logger.warning(f"Stripe event {event.event_type} for unknown intent {event.reference}")
        return None

    if event.event_type == StripeGateway.SUCCEEDED:
        return confirm_payment(
            order,
            actor='gateway:stripe',
            note='Payment confirmed via Stripe webhook',
            gateway_payment_id=event.payment_id,
        )

    reason = event.failure_reason or 'Payment failed'
    return mark_payment_failed(
        order, actor='gateway:stripe', note=f"Stripe: {reason}"
    )


def create_razorpay_order(order: Order, currency: str = 'INR') -> Dict:
    """
    Create a Razorpay order for the order total and bind it to the order.

    Each call issues a new gateway order and replaces the previous binding,
    so only the latest gateway order can confirm the payment.

    Raises:
        OrderValidationError: Order is not awaiting payment
        PaymentGatewayError: The gateway call failed
    """
    if order.is_paid or order.is_terminal:
        raise OrderValidationError(
            f"Order {order.order_number} is not awaiting payment", field='order_id'
        )

    gateway = get_razorpay_gateway()
    gateway_order = gateway.create_order(
        amount=order.total,
        currency=currency,
        receipt=order.order_number,
        notes={'order_id': str(order.pk), 'order_number': order.order_number},
    )

    if gateway_order['amount'] != minor_units(order.total):
        logger.error(
            f"Razorpay order {gateway_order['id']} amount {gateway_order['amount']} "
            f"does not match order {order.order_number} total {order.total}"
        )
        raise PaymentGatewayError(
            'Gateway order amount does not match the order total', gateway='razorpay'
        )

    with transaction.atomic():
        locked = Order.objects.select_for_update().get(pk=order.pk)
        locked.gateway_order_id = gateway_order['id']
        locked.gateway_amount = gateway_order['amount']
        locked.save(update_fields=['gateway_order_id', 'gateway_amount', 'updated_at'])

    logger.info(f"Created Razorpay order {gateway_order['id']} for order {order.order_number}")
    return {
        'order_id': gateway_order['id'],
        'amount': gateway_order['amount'],
        'currency': gateway_order.get('currency', currency),
        'key': gateway.key_id,
    }


def verify_razorpay_payment(
    order_id: int,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> Order:
    """
    Verify a Razorpay checkout result and confirm the order.

    The gateway order must be the one created for this order by
    ``create_razorpay_order``; that binding is what ties the signed payment
    to the amount due. Nothing is written unless confirmation succeeds.

    Raises:
        InvalidSignature: Signature mismatch, or the gateway order was not
            issued for this order
        InvalidTransition: The order can no longer be confirmed
        Order.DoesNotExist: Unknown order id
    """
    event = get_razorpay_gateway().verify_payment(
        gateway_order_id, gateway_payment_id, signature
    )

    with transaction.atomic():
        order = Order.objects.select_for_update().get(pk=order_id)
        if not order.gateway_order_id or order.gateway_order_id != event.reference:
            logger.warning(
                f"Razorpay order mismatch for {order.order_number}: "
                f"bound {order.gateway_order_id}, received {event.reference}"
            )
            raise InvalidSignature('Gateway order was not issued for this order', gateway='razorpay')
        if order.gateway_amount != minor_units(order.total):
            logger.error(
                f"Razorpay amount {order.gateway_amount} bound to {order.order_number} "
                f"does not match total {order.total}"
            )
            raise InvalidSignature('Gateway order amount does not match this order', gateway='razorpay')

        return confirm_payment(
            order,
            actor='gateway:razorpay',
            note='Payment verified via Razorpay',
            gateway_payment_id=event.payment_id,
        )
