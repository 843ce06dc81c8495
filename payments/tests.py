"""
Tests for payment confirmation.

Test Cases:
1. Stripe webhook signature verification and event mapping
2. Razorpay signature verification and order binding
3. Repeated gateway callbacks confirm once
4. Payment endpoints
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import stripe
from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase

from catalog.tests import CUSTOMER, SHIPPING, make_product
from core.exceptions import (
    InvalidSignature,
    InvalidTransition,
    OrderValidationError,
    PaymentGatewayError,
)
from orders.cart import CartLine
from orders.models import Order
from orders.services import cancel_order, confirm_payment, create_order, update_order_status
from payments.gateways import RazorpayGateway, StripeGateway, minor_units
from payments.services import (
    create_payment_intent,
    create_razorpay_order,
    handle_stripe_webhook,
    verify_razorpay_payment,
)

User = get_user_model()

WEBHOOK_SECRET = 'whsec_test_secret'
RAZORPAY_SECRET = 'rzp_test_secret'


def stripe_event(event_type, intent_id, **intent_fields):
    return json.dumps({
        'id': 'evt_test',
        'type': event_type,
        'data': {'object': {'id': intent_id, 'object': 'payment_intent', **intent_fields}},
    })


def stripe_signature(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def razorpay_signature(gateway_order_id, gateway_payment_id, secret=RAZORPAY_SECRET):
    body = f"{gateway_order_id}|{gateway_payment_id}".encode('utf-8')
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def bind_gateway_order(order, gateway_order_id):
    """Record a gateway order as if create_razorpay_order had issued it."""
    Order.objects.filter(pk=order.pk).update(
        gateway_order_id=gateway_order_id, gateway_amount=minor_units(order.total)
    )


def gateway_response(data):
    response = MagicMock()
    response.json.return_value = data
    return response


class PaymentTestMixin:

    def make_order(self, user=None):
        product = make_product(sizes={'M': 5})
        order = create_order(
            [CartLine(product_id=product.id, quantity=1, size='M')],
            user=user,
            customer_info=CUSTOMER,
            shipping_address=SHIPPING,
            payment_method='CARD',
        )
        return order


class StripeGatewayTestCase(TestCase):

    def setUp(self):
        self.gateway = StripeGateway('sk_test', WEBHOOK_SECRET)

    def test_parse_signed_event(self):
        payload = stripe_event(StripeGateway.SUCCEEDED, 'pi_1', latest_charge='ch_1')

        event = self.gateway.parse_webhook(payload.encode('utf-8'), stripe_signature(payload))

        self.assertEqual(event.event_type, StripeGateway.SUCCEEDED)
        self.assertEqual(event.reference, 'pi_1')
        self.assertEqual(event.payment_id, 'ch_1')

    def test_tampered_payload_rejected(self):
        payload = stripe_event(StripeGateway.SUCCEEDED, 'pi_1')
        header = stripe_signature(payload)

        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook(payload.replace('pi_1', 'pi_2'), header)

    def test_wrong_secret_rejected(self):
        payload = stripe_event(StripeGateway.SUCCEEDED, 'pi_1')
        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook(payload, stripe_signature(payload, secret='whsec_other'))

    def test_stale_timestamp_rejected(self):
        payload = stripe_event(StripeGateway.SUCCEEDED, 'pi_1')
        header = stripe_signature(payload, timestamp=int(time.time()) - 3600)
        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook(payload, header)

    def test_missing_header_rejected(self):
        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook(b'{}', '')


class RazorpayGatewayTestCase(TestCase):

    def test_verify_payment(self):
        gateway = RazorpayGateway('rzp_key', RAZORPAY_SECRET)
        signature = razorpay_signature('order_A', 'pay_B')

        event = gateway.verify_payment('order_A', 'pay_B', signature)

        self.assertEqual(event.reference, 'order_A')
        self.assertEqual(event.payment_id, 'pay_B')

    def test_bad_signature(self):
        gateway = RazorpayGateway('rzp_key', RAZORPAY_SECRET)
        with self.assertRaises(InvalidSignature):
            gateway.verify_payment('order_A', 'pay_B', razorpay_signature('order_A', 'pay_C'))

    def test_unconfigured(self):
        gateway = RazorpayGateway('', '')
        self.assertFalse(gateway.is_configured())
        with self.assertRaises(InvalidSignature):
            gateway.verify_payment('order_A', 'pay_B', 'anything')
        with self.assertRaises(PaymentGatewayError):
            gateway.create_order(Decimal('10.00'), 'INR', 'ORD-1')

    @patch('payments.gateways.httpx.post')
    def test_create_order_posts_minor_units(self, mock_post):
        mock_post.return_value = gateway_response({'id': 'order_N', 'amount': 1999})
        gateway = RazorpayGateway('rzp_key', RAZORPAY_SECRET, api_url='https://rzp.test/v1')

        data = gateway.create_order(Decimal('19.99'), 'INR', 'ORD-1')

        self.assertEqual(data['id'], 'order_N')
        self.assertEqual(mock_post.call_args.args[0], 'https://rzp.test/v1/orders')
        self.assertEqual(mock_post.call_args.kwargs['json']['amount'], 1999)

    @patch('payments.gateways.httpx.post')
    def test_create_order_malformed_response(self, mock_post):
        mock_post.return_value = gateway_response({'error': 'nope'})
        gateway = RazorpayGateway('rzp_key', RAZORPAY_SECRET)

        with self.assertRaises(PaymentGatewayError):
            gateway.create_order(Decimal('19.99'), 'INR', 'ORD-1')


class StripeWebhookServiceTestCase(PaymentTestMixin, TestCase):

    def setUp(self):
        self.order = self.make_order()
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='pi_123')

    def deliver(self, event_type, intent_id='pi_123', **fields):
        payload = stripe_event(event_type, intent_id, **fields)
        return handle_stripe_webhook(payload.encode('utf-8'), stripe_signature(payload))

    def test_succeeded_confirms_once(self):
        self.deliver(StripeGateway.SUCCEEDED, latest_charge='ch_9')
        order = self.deliver(StripeGateway.SUCCEEDED, latest_charge='ch_9')

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.gateway_payment_id, 'ch_9')
        self.assertEqual(order.status_history.filter(status='confirmed').count(), 1)
        self.assertEqual(order.status_history.last().actor, 'gateway:stripe')

    def test_succeeded_after_admin_confirm(self):
        """
        Given: An administrator confirmed the order before the webhook arrived
        Then: The webhook records the payment without a second confirmation
        """
        admin = User.objects.create_superuser('root', 'root@example.com', 'pw')
        update_order_status(self.order, Order.Status.CONFIRMED, requested_by=admin)

        order = self.deliver(StripeGateway.SUCCEEDED, latest_charge='ch_late')

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.gateway_payment_id, 'ch_late')
        self.assertEqual(order.status_history.filter(status='confirmed').count(), 1)

    def test_failed_marks_payment_failed(self):
        order = self.deliver(
            StripeGateway.FAILED, last_payment_error={'message': 'Card declined'}
        )

        self.assertEqual(order.status, Order.Status.PAYMENT_FAILED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.FAILED)
        self.assertIn('Card declined', order.status_history.last().note)

    def test_other_event_ignored(self):
        self.assertIsNone(self.deliver('charge.refunded'))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_unknown_intent_logged(self):
        with self.assertLogs('payments.services', level='WARNING'):
            self.assertIsNone(self.deliver(StripeGateway.SUCCEEDED, intent_id='pi_unknown'))

    def test_bad_signature_leaves_order_untouched(self):
        payload = stripe_event(StripeGateway.SUCCEEDED, 'pi_123')

        with self.assertRaises(InvalidSignature):
            handle_stripe_webhook(payload.encode('utf-8'), 't=1,v1=deadbeef')

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.status_history.count(), 1)


class RazorpayServiceTestCase(PaymentTestMixin, TestCase):

    def setUp(self):
        self.order = self.make_order()
        bind_gateway_order(self.order, 'order_A')

    def test_valid_signature_confirms(self):
        order = verify_razorpay_payment(
            self.order.id, 'order_A', 'pay_B', razorpay_signature('order_A', 'pay_B')
        )

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.gateway_order_id, 'order_A')
        self.assertEqual(order.gateway_payment_id, 'pay_B')

    def test_repeat_verification_is_idempotent(self):
        signature = razorpay_signature('order_A', 'pay_B')
        verify_razorpay_payment(self.order.id, 'order_A', 'pay_B', signature)
        order = verify_razorpay_payment(self.order.id, 'order_A', 'pay_B', signature)

        self.assertEqual(order.status_history.filter(status='confirmed').count(), 1)

    def test_invalid_signature_no_mutation(self):
        with self.assertRaises(InvalidSignature):
            verify_razorpay_payment(self.order.id, 'order_A', 'pay_B', 'f' * 64)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.gateway_payment_id, '')

    def test_gateway_order_mismatch(self):
        with self.assertRaises(InvalidSignature):
            verify_razorpay_payment(
                self.order.id, 'order_Z', 'pay_B', razorpay_signature('order_Z', 'pay_B')
            )

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_unbound_order_rejected(self):
        """
        Given: A validly signed payment for a gateway order never issued
               for this order
        Then: Verification fails and the order is not confirmed
        """
        unbound = self.make_order()

        with self.assertRaises(InvalidSignature):
            verify_razorpay_payment(
                unbound.id, 'order_cheap', 'pay_B', razorpay_signature('order_cheap', 'pay_B')
            )

        unbound.refresh_from_db()
        self.assertEqual(unbound.status, Order.Status.PENDING)
        self.assertEqual(unbound.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(unbound.gateway_payment_id, '')

    def test_bound_amount_must_match_total(self):
        Order.objects.filter(pk=self.order.pk).update(gateway_amount=100)

        with self.assertRaises(InvalidSignature):
            verify_razorpay_payment(
                self.order.id, 'order_A', 'pay_B', razorpay_signature('order_A', 'pay_B')
            )

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_cancelled_order_not_confirmed(self):
        """
        Given: The order was cancelled after its gateway order was issued
        When: A validly signed payment arrives
        Then: InvalidTransition, and no payment fields are written
        """
        admin = User.objects.create_superuser('root', 'root@example.com', 'pw')
        cancel_order(self.order, requested_by=admin)

        with self.assertRaises(InvalidTransition):
            verify_razorpay_payment(
                self.order.id, 'order_A', 'pay_B', razorpay_signature('order_A', 'pay_B')
            )

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(self.order.gateway_payment_id, '')

    def test_verify_after_admin_confirm_records_payment(self):
        admin = User.objects.create_superuser('root', 'root@example.com', 'pw')
        update_order_status(self.order, Order.Status.CONFIRMED, requested_by=admin)

        order = verify_razorpay_payment(
            self.order.id, 'order_A', 'pay_B', razorpay_signature('order_A', 'pay_B')
        )

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.status_history.filter(status='confirmed').count(), 1)


class RazorpayOrderServiceTestCase(PaymentTestMixin, TestCase):

    def setUp(self):
        self.order = self.make_order()

    @patch('payments.gateways.httpx.post')
    def test_gateway_order_bound_to_order(self, mock_post):
        mock_post.return_value = gateway_response(
            {'id': 'order_RZ1', 'amount': minor_units(self.order.total), 'currency': 'INR'}
        )

        result = create_razorpay_order(self.order)

        self.assertEqual(result['order_id'], 'order_RZ1')
        self.assertEqual(result['amount'], minor_units(self.order.total))
        self.assertEqual(result['key'], 'rzp_test_key')
        self.assertTrue(mock_post.call_args.args[0].endswith('/orders'))
        body = mock_post.call_args.kwargs['json']
        self.assertEqual(body['amount'], minor_units(self.order.total))
        self.assertEqual(body['receipt'], self.order.order_number)
        self.assertEqual(mock_post.call_args.kwargs['auth'], ('rzp_test_key', 'rzp_test_secret'))

        self.order.refresh_from_db()
        self.assertEqual(self.order.gateway_order_id, 'order_RZ1')
        self.assertEqual(self.order.gateway_amount, minor_units(self.order.total))

    @patch('payments.gateways.httpx.post')
    def test_created_order_can_be_verified(self, mock_post):
        mock_post.return_value = gateway_response(
            {'id': 'order_RZ2', 'amount': minor_units(self.order.total), 'currency': 'INR'}
        )
        create_razorpay_order(self.order)

        order = verify_razorpay_payment(
            self.order.id, 'order_RZ2', 'pay_C', razorpay_signature('order_RZ2', 'pay_C')
        )

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)

    @patch('payments.gateways.httpx.post')
    def test_amount_disagreement_not_bound(self, mock_post):
        mock_post.return_value = gateway_response({'id': 'order_RZ3', 'amount': 1})

        with self.assertRaises(PaymentGatewayError):
            create_razorpay_order(self.order)

        self.order.refresh_from_db()
        self.assertIsNone(self.order.gateway_order_id)

    @patch('payments.gateways.httpx.post')
    def test_gateway_unreachable(self, mock_post):
        mock_post.side_effect = httpx.ConnectError('connection refused')

        with self.assertRaises(PaymentGatewayError):
            create_razorpay_order(self.order)

        self.order.refresh_from_db()
        self.assertIsNone(self.order.gateway_order_id)

    @patch('payments.gateways.httpx.post')
    def test_gateway_refusal(self, mock_post):
        request = httpx.Request('POST', 'https://api.razorpay.com/v1/orders')
        response = httpx.Response(400, request=request, text='{"error": "bad amount"}')
        mock_post.return_value = response

        with self.assertRaises(PaymentGatewayError):
            create_razorpay_order(self.order)

    def test_paid_order_refused(self):
        confirm_payment(self.order)
        self.order.refresh_from_db()

        with self.assertRaises(OrderValidationError):
            create_razorpay_order(self.order)


class PaymentIntentServiceTestCase(PaymentTestMixin, TestCase):

    @patch('payments.gateways.stripe.PaymentIntent.create')
    def test_intent_amount_in_cents(self, mock_create):
        mock_create.return_value = {'id': 'pi_new', 'client_secret': 'pi_new_secret'}
        order = self.make_order()

        create_payment_intent(order)

        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['amount'], int(order.total * 100))
        self.assertEqual(kwargs['currency'], 'usd')
        self.assertEqual(kwargs['metadata']['order_number'], order.order_number)
        order.refresh_from_db()
        self.assertEqual(order.payment_intent_id, 'pi_new')


class PaymentAPITestCase(PaymentTestMixin, APITestCase):

    def setUp(self):
        self.owner = User.objects.create_user('owner', 'owner@example.com', 'pw')
        self.stranger = User.objects.create_user('stranger', 'stranger@example.com', 'pw')
        self.order = self.make_order(user=self.owner)

    def test_webhook_always_acknowledges(self):
        response = self.client.post(
            '/api/payments/stripe/webhook/', data='{}', content_type='application/json',
            HTTP_STRIPE_SIGNATURE='t=1,v1=bad'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {'received': True})

    def test_webhook_confirms_order(self):
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='pi_api')
        payload = stripe_event(StripeGateway.SUCCEEDED, 'pi_api')

        response = self.client.post(
            '/api/payments/stripe/webhook/', data=payload, content_type='application/json',
            HTTP_STRIPE_SIGNATURE=stripe_signature(payload)
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)

    @patch('payments.gateways.httpx.post')
    def test_razorpay_order_endpoint(self, mock_post):
        mock_post.return_value = gateway_response(
            {'id': 'order_API', 'amount': minor_units(self.order.total), 'currency': 'INR'}
        )
        self.client.force_authenticate(self.owner)

        response = self.client.post('/api/payments/razorpay/order/',
                                    {'order_id': self.order.id}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['data']['order_id'], 'order_API')
        self.assertEqual(response.data['data']['amount'], minor_units(self.order.total))
        self.order.refresh_from_db()
        self.assertEqual(self.order.gateway_order_id, 'order_API')

    @patch('payments.gateways.httpx.post')
    def test_razorpay_order_forbidden_for_stranger(self, mock_post):
        self.client.force_authenticate(self.stranger)

        response = self.client.post('/api/payments/razorpay/order/',
                                    {'order_id': self.order.id}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        mock_post.assert_not_called()

    @patch('payments.gateways.httpx.post')
    def test_razorpay_order_gateway_down(self, mock_post):
        mock_post.side_effect = httpx.ConnectError('connection refused')
        self.client.force_authenticate(self.owner)

        response = self.client.post('/api/payments/razorpay/order/',
                                    {'order_id': self.order.id}, format='json')

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(response.data['error'], 'gateway_error')

    def test_razorpay_verify_unbound_order(self):
        response = self.client.post('/api/payments/razorpay/verify/', {
            'order_id': self.order.id,
            'razorpay_order_id': 'order_A',
            'razorpay_payment_id': 'pay_B',
            'razorpay_signature': razorpay_signature('order_A', 'pay_B'),
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data['success'])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_razorpay_verify_cancelled_order(self):
        bind_gateway_order(self.order, 'order_A')
        cancel_order(self.order, requested_by=self.owner)

        response = self.client.post('/api/payments/razorpay/verify/', {
            'order_id': self.order.id,
            'razorpay_order_id': 'order_A',
            'razorpay_payment_id': 'pay_B',
            'razorpay_signature': razorpay_signature('order_A', 'pay_B'),
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(response.data['success'])
        self.assertIn('cancelled', response.data['message'])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    def test_razorpay_verify(self):
        bind_gateway_order(self.order, 'order_A')
        response = self.client.post('/api/payments/razorpay/verify/', {
            'orderId': self.order.id,
            'razorpay_order_id': 'order_A',
            'razorpay_payment_id': 'pay_B',
            'razorpay_signature': razorpay_signature('order_A', 'pay_B'),
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['order']['status'], 'confirmed')

    def test_razorpay_verify_bad_signature(self):
        response = self.client.post('/api/payments/razorpay/verify/', {
            'order_id': self.order.id,
            'razorpay_order_id': 'order_A',
            'razorpay_payment_id': 'pay_B',
            'razorpay_signature': 'bad',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data, {'success': False, 'message': 'Invalid payment signature'})

    @patch('payments.gateways.stripe.PaymentIntent.create')
    def test_intent_endpoint(self, mock_create):
        mock_create.return_value = {'id': 'pi_x', 'client_secret': 'pi_x_secret'}
        self.client.force_authenticate(self.owner)

        response = self.client.post('/api/payments/stripe/intent/',
                                    {'order_id': self.order.id}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['client_secret'], 'pi_x_secret')

    def test_intent_endpoint_forbidden_for_stranger(self):
        self.client.force_authenticate(self.stranger)

        response = self.client.post('/api/payments/stripe/intent/',
                                    {'order_id': self.order.id}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    @patch('payments.gateways.stripe.PaymentIntent.create')
    def test_intent_gateway_error(self, mock_create):
        mock_create.side_effect = stripe.APIConnectionError('network down')
        self.client.force_authenticate(self.owner)

        response = self.client.post('/api/payments/stripe/intent/',
                                    {'order_id': self.order.id}, format='json')

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
