"""
Tests for order lifecycle logic.

Test Cases:
1. Order placed with current prices, totals and stock reservation
2. Failed checkout leaves no order and no stock change
3. Price snapshot survives later catalog edits
4. Create / reject / cancel stock round trip
5. Client total mismatch is logged, server total is charged
6. Transition graph, idempotent confirmation, cancellation rules
7. Admin status changes, delete, bulk actions and statistics
8. Celery tasks
9. REST endpoints
"""
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core import mail
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from catalog.models import ProductSize
from catalog.tests import CUSTOMER, SHIPPING, make_product
from core.exceptions import (
    InsufficientStock,
    InvalidTransition,
    NotAuthorized,
    OrderValidationError,
    ProductNotFound,
    SizeUnavailable,
)
from orders.cart import CartLine, compute_totals
from orders.models import Order, OrderStatusHistory
from orders.services import (
    advance_order,
    bulk_update_status,
    cancel_order,
    confirm_payment,
    create_order,
    delete_order,
    get_order_stats,
    mark_payment_failed,
    update_order_status,
)
from orders.tasks import generate_daily_order_report, send_order_confirmation

User = get_user_model()


def place(lines, **kwargs):
    kwargs.setdefault('customer_info', CUSTOMER)
    kwargs.setdefault('shipping_address', SHIPPING)
    kwargs.setdefault('payment_method', 'CARD')
    return create_order(lines, **kwargs)


def size_stock(product, size='M'):
    return ProductSize.objects.get(product=product, size=size).stock


class OrderCreationTestCase(TestCase):
    """Test cases for create_order."""

    def setUp(self):
        self.tee = make_product(name='Tee', price='20.00', sizes={'M': 3, 'L': 5})
        self.jacket = make_product(name='Jacket', price='75.00', sizes={'M': 2})

    def test_order_placed_with_sufficient_stock(self):
        """
        Given: Tee at 20.00 with 3 units in M
        When: Ordering 2 units
        Then: Order is pending, totals follow the pricing policy, stock reserved
        """
        order = place([CartLine(product_id=self.tee.id, quantity=2, size='M', color='Black')])

        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertTrue(order.order_number.startswith('ORD-'))

        # 2 * 20 = 40, tax 3.20, shipping 10
        self.assertEqual(order.subtotal, Decimal('40.00'))
        self.assertEqual(order.tax, Decimal('3.20'))
        self.assertEqual(order.shipping_cost, Decimal('10.00'))
        self.assertEqual(order.total, Decimal('53.20'))

        item = order.items.get()
        self.assertEqual(item.name, 'Tee')
        self.assertEqual(item.unit_price, Decimal('20.00'))
        self.assertEqual(item.line_total, Decimal('40.00'))
        self.assertEqual(item.color, 'Black')

        self.assertEqual(size_stock(self.tee), 1)
        self.tee.refresh_from_db()
        self.assertEqual(self.tee.stock, 6)

        history = list(order.status_history.values_list('status', 'actor'))
        self.assertEqual(history, [('pending', 'guest')])
        self.assertTrue(order.is_guest)

    def test_free_shipping_above_threshold(self):
        order = place([CartLine(product_id=self.jacket.id, quantity=2, size='M')])

        self.assertEqual(order.subtotal, Decimal('150.00'))
        self.assertEqual(order.shipping_cost, Decimal('0.00'))
        self.assertEqual(order.total, Decimal('162.00'))

    def test_sale_price_is_charged(self):
        self.tee.sale_price = Decimal('15.00')
        self.tee.save()

        order = place([CartLine(
            product_id=self.tee.id, quantity=1, size='M', declared_price=Decimal('20.00')
        )])

        self.assertEqual(order.items.get().unit_price, Decimal('15.00'))

    def test_authenticated_user_defaults(self):
        user = User.objects.create_user('grace', 'grace@example.com', 'pw')

        order = place(
            [CartLine(product_id=self.tee.id, quantity=1, size='L')],
            user=user, customer_info=None,
        )

        self.assertEqual(order.user, user)
        self.assertEqual(order.customer_email, 'grace@example.com')
        self.assertEqual(order.status_history.get().actor, 'grace')

    def test_payment_method_is_case_insensitive(self):
        order = place([CartLine(product_id=self.tee.id, quantity=1, size='M')],
                      payment_method='cod')
        self.assertEqual(order.payment_method, Order.PaymentMethod.COD)

    def test_monetary_identity(self):
        order = place([
            CartLine(product_id=self.tee.id, quantity=3, size='L'),
            CartLine(product_id=self.jacket.id, quantity=1, size='M'),
        ])

        identity = (order.subtotal + order.tax + order.shipping_cost - order.discount)
        self.assertLessEqual(abs(identity.quantize(Decimal('0.01')) - order.total),
                             Decimal('0.02'))
        self.assertEqual(
            sum(item.line_total for item in order.items.all()), order.subtotal
        )

    def test_discount_reduces_total(self):
        totals = compute_totals(Decimal('40.00'), Decimal('5.00'))
        self.assertEqual(totals.total, Decimal('48.20'))

    def test_multi_line_failure_rolls_back(self):
        """
        Given: First line fits, second exceeds stock
        When: Creating the order
        Then: InsufficientStock for line 2, no order, no stock change on line 1
        """
        lines = [
            CartLine(product_id=self.tee.id, quantity=2, size='M'),
            CartLine(product_id=self.jacket.id, quantity=5, size='M'),
        ]

        with self.assertRaises(InsufficientStock) as context:
            place(lines)

        self.assertEqual(context.exception.item_index, 1)
        self.assertEqual(context.exception.item_name, 'Jacket')
        self.assertEqual(context.exception.available, 2)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(size_stock(self.tee), 3)
        self.assertEqual(size_stock(self.jacket), 2)

    def test_unknown_product(self):
        with self.assertRaises(ProductNotFound) as context:
            place([
                CartLine(product_id=self.tee.id, quantity=1, size='M'),
                CartLine(product_id=99999, quantity=1, size='M'),
            ])
        self.assertEqual(context.exception.item_index, 1)
        self.assertEqual(size_stock(self.tee), 3)

    def test_inactive_product_is_not_found(self):
        self.tee.is_active = False
        self.tee.save()

        with self.assertRaises(ProductNotFound):
            place([CartLine(product_id=self.tee.id, quantity=1, size='M')])

    def test_unknown_size(self):
        with self.assertRaises(SizeUnavailable) as context:
            place([CartLine(product_id=self.tee.id, quantity=1, size='XXL')])
        self.assertEqual(context.exception.item_name, 'Tee')

    def test_validation_error_empty_items(self):
        with self.assertRaises(OrderValidationError) as context:
            place([])
        self.assertIn('at least one item', str(context.exception))

    def test_validation_error_invalid_quantity(self):
        with self.assertRaises(OrderValidationError):
            place([CartLine(product_id=self.tee.id, quantity=0, size='M')])

    def test_guest_requires_customer_info(self):
        with self.assertRaises(OrderValidationError) as context:
            place([CartLine(product_id=self.tee.id, quantity=1, size='M')],
                  customer_info={'name': 'No Email'})
        self.assertEqual(context.exception.field, 'customer_info')

    def test_unsupported_payment_method(self):
        with self.assertRaises(OrderValidationError):
            place([CartLine(product_id=self.tee.id, quantity=1, size='M')],
                  payment_method='BITCOIN')

    def test_total_mismatch_is_logged_and_server_total_charged(self):
        """
        Given: Client declares 55.00 for a cart the server prices at 53.20
        Then: Order is created at 53.20 and a mismatch warning is logged
        """
        with self.assertLogs('orders.cart', level='WARNING') as logs:
            order = place(
                [CartLine(product_id=self.tee.id, quantity=2, size='M')],
                declared_total=Decimal('55.00'),
            )

        self.assertEqual(order.total, Decimal('53.20'))
        self.assertTrue(any('Total calculation mismatch' in line for line in logs.output))

    def test_total_within_tolerance_is_not_logged(self):
        with self.assertNoLogs('orders.cart', level='WARNING'):
            place(
                [CartLine(product_id=self.tee.id, quantity=2, size='M')],
                declared_total=Decimal('53.21'),
            )

    def test_declared_breakdown_mismatch_is_logged(self):
        """
        Given: Client declares free shipping on a 40.00 subtotal
        Then: Shipping mismatch is logged, matching figures are not
        """
        with self.assertLogs('orders.cart', level='WARNING') as logs:
            order = place(
                [CartLine(product_id=self.tee.id, quantity=2, size='M')],
                declared_figures={
                    'subtotal': Decimal('40.00'),
                    'tax': Decimal('3.20'),
                    'shipping_cost': Decimal('0.00'),
                },
            )

        self.assertEqual(order.shipping_cost, Decimal('10.00'))
        self.assertEqual(len(logs.output), 1)
        self.assertIn('Shipping calculation mismatch', logs.output[0])


class PriceSnapshotTestCase(TestCase):

    def test_catalog_price_change_does_not_touch_orders(self):
        product = make_product(price='20.00')
        order = place([CartLine(product_id=product.id, quantity=1, size='M')])

        product.price = Decimal('99.00')
        product.save()
        product.delete()

        order.refresh_from_db()
        item = order.items.get()
        self.assertEqual(item.unit_price, Decimal('20.00'))
        self.assertIsNone(item.product_id)
        self.assertEqual(order.total, Decimal('31.60'))


class StockRoundTripTestCase(TestCase):
    """
    Product P has size M with stock 3.
    Order A takes 2, order B asks for 2 and is refused, cancelling A restores 3.
    """

    def setUp(self):
        self.product = make_product(name='P', sizes={'M': 3})
        self.lines = [CartLine(product_id=self.product.id, quantity=2, size='M')]

    def test_create_reject_cancel(self):
        order_a = place(self.lines)
        self.assertEqual(size_stock(self.product), 1)

        with self.assertRaises(InsufficientStock) as context:
            place(self.lines)
        self.assertEqual(context.exception.available, 1)
        self.assertEqual(size_stock(self.product), 1)

        admin = User.objects.create_superuser('root', 'root@example.com', 'pw')
        cancel_order(order_a, requested_by=admin, reason='Customer called')

        self.assertEqual(size_stock(self.product), 3)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 3)

    def test_cancel_with_deleted_size_still_completes(self):
        order = place(self.lines)
        ProductSize.objects.filter(product=self.product, size='M').delete()
        admin = User.objects.create_superuser('root', 'root@example.com', 'pw')

        with self.assertLogs('catalog.ledger', level='WARNING'):
            order = cancel_order(order, requested_by=admin)

        self.assertEqual(order.status, Order.Status.CANCELLED)


class OrderLifecycleTestCase(TestCase):
    """Test cases for status transitions."""

    def setUp(self):
        self.product = make_product(sizes={'M': 10})
        self.owner = User.objects.create_user('owner', 'owner@example.com', 'pw')
        self.stranger = User.objects.create_user('stranger', 'stranger@example.com', 'pw')
        self.admin = User.objects.create_superuser('root', 'root@example.com', 'pw')
        self.order = place(
            [CartLine(product_id=self.product.id, quantity=2, size='M')],
            user=self.owner,
        )

    def history(self):
        return list(
            OrderStatusHistory.objects.filter(order=self.order).values_list('status', flat=True)
        )

    def test_confirm_payment_is_idempotent(self):
        confirm_payment(self.order, actor='gateway:test')
        order = confirm_payment(self.order, actor='gateway:test')

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.history().count('confirmed'), 1)
        self.assertIsNotNone(order.confirmed_at)

    def test_confirm_after_shipping_is_ignored(self):
        confirm_payment(self.order)
        advance_order(self.order, Order.Status.PROCESSING)
        advance_order(self.order, Order.Status.SHIPPED)

        order = confirm_payment(self.order)

        self.assertEqual(order.status, Order.Status.SHIPPED)
        self.assertEqual(self.history().count('confirmed'), 1)

    def test_gateway_payment_after_admin_confirm(self):
        """
        Given: An administrator confirmed the order before payment arrived
        When: The gateway then reports the payment
        Then: Order is marked paid, status and history are untouched
        """
        update_order_status(self.order, Order.Status.CONFIRMED, requested_by=self.admin)

        order = confirm_payment(
            self.order, actor='gateway:stripe', gateway_payment_id='pi_late'
        )

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.gateway_payment_id, 'pi_late')
        self.assertEqual(self.history().count('confirmed'), 1)

    def test_gateway_payment_after_admin_moves_to_processing(self):
        update_order_status(self.order, Order.Status.CONFIRMED, requested_by=self.admin)
        update_order_status(self.order, Order.Status.PROCESSING, requested_by=self.admin)
        before = self.history()

        order = confirm_payment(self.order, actor='gateway:razorpay')

        self.assertEqual(order.status, Order.Status.PROCESSING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.history(), before)

    def test_confirm_refused_for_cancelled_order(self):
        cancel_order(self.order, requested_by=self.owner)

        with self.assertRaises(InvalidTransition):
            confirm_payment(self.order, actor='gateway:razorpay', gateway_payment_id='pay_1')

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(self.order.gateway_payment_id, '')

    def test_delivered_cannot_go_back(self):
        confirm_payment(self.order)
        for target in (Order.Status.PROCESSING, Order.Status.SHIPPED, Order.Status.DELIVERED):
            advance_order(self.order, target)
        self.order.refresh_from_db()
        before = (self.order.status, self.order.delivered_at, self.history())

        with self.assertRaises(InvalidTransition):
            update_order_status(self.order, Order.Status.CONFIRMED, requested_by=self.admin)

        self.order.refresh_from_db()
        self.assertEqual((self.order.status, self.order.delivered_at, self.history()), before)

    def test_skip_transition_refused(self):
        with self.assertRaises(InvalidTransition):
            advance_order(self.order, Order.Status.SHIPPED)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertIsNone(self.order.shipped_at)

    def test_timestamps_set_once(self):
        confirm_payment(self.order)
        advance_order(self.order, Order.Status.PROCESSING)
        order = advance_order(self.order, Order.Status.SHIPPED, tracking_number='1Z999')
        shipped_at = order.shipped_at

        self.assertEqual(order.tracking_number, '1Z999')
        self.assertIsNotNone(shipped_at)
        order = advance_order(order, Order.Status.DELIVERED)
        self.assertEqual(order.shipped_at, shipped_at)
        self.assertIsNotNone(order.delivered_at)

    def test_cod_delivery_marks_paid(self):
        order = place([CartLine(product_id=self.product.id, quantity=1, size='M')],
                      payment_method='COD')
        update_order_status(order, Order.Status.CONFIRMED, requested_by=self.admin)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)

        for target in (Order.Status.PROCESSING, Order.Status.SHIPPED, Order.Status.DELIVERED):
            order = update_order_status(order, target, requested_by=self.admin)

        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)

    def test_payment_failure_keeps_stock_and_allows_cancel(self):
        order = mark_payment_failed(self.order, note='Card declined')
        mark_payment_failed(order)

        self.assertEqual(order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.history().count('payment_failed'), 1)
        self.assertEqual(size_stock(self.product), 8)

        cancel_order(order, requested_by=self.owner)
        self.assertEqual(size_stock(self.product), 10)

    def test_payment_failure_can_be_retried(self):
        mark_payment_failed(self.order)
        order = confirm_payment(self.order)
        self.assertEqual(order.status, Order.Status.CONFIRMED)

    def test_stranger_cannot_cancel(self):
        with self.assertRaises(NotAuthorized):
            cancel_order(self.order, requested_by=self.stranger)
        self.assertEqual(size_stock(self.product), 8)

    def test_guest_order_only_cancelled_by_staff(self):
        guest_order = place([CartLine(product_id=self.product.id, quantity=1, size='M')])
        with self.assertRaises(NotAuthorized):
            cancel_order(guest_order, requested_by=None)

        order = cancel_order(guest_order, requested_by=self.admin)
        self.assertEqual(order.status_history.last().actor, 'admin:root')

    def test_cannot_cancel_shipped_order(self):
        confirm_payment(self.order)
        advance_order(self.order, Order.Status.PROCESSING)
        advance_order(self.order, Order.Status.SHIPPED)

        with self.assertRaises(InvalidTransition) as context:
            cancel_order(self.order, requested_by=self.owner)

        self.assertIn('cannot be cancelled', str(context.exception))
        self.assertEqual(size_stock(self.product), 8)

    def test_cannot_cancel_twice(self):
        cancel_order(self.order, requested_by=self.owner)
        with self.assertRaises(InvalidTransition):
            cancel_order(self.order, requested_by=self.owner)
        self.assertEqual(size_stock(self.product), 10)

    def test_refund_keeps_stock(self):
        confirm_payment(self.order)
        order = update_order_status(self.order, Order.Status.REFUNDED, requested_by=self.admin)

        self.assertEqual(order.status, Order.Status.REFUNDED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(size_stock(self.product), 8)

    def test_status_update_requires_staff(self):
        with self.assertRaises(NotAuthorized):
            update_order_status(self.order, Order.Status.CONFIRMED, requested_by=self.owner)

    def test_status_update_rejects_pending(self):
        order = confirm_payment(self.order)
        with self.assertRaises(InvalidTransition):
            update_order_status(order, Order.Status.PENDING, requested_by=self.admin)

    def test_status_update_rejects_unknown_status(self):
        with self.assertRaises(OrderValidationError):
            update_order_status(self.order, 'lost', requested_by=self.admin)


class AdminOperationsTestCase(TestCase):

    def setUp(self):
        self.product = make_product(sizes={'M': 10})
        self.admin = User.objects.create_superuser('root', 'root@example.com', 'pw')

    def test_delete_restores_reserved_stock(self):
        order = place([CartLine(product_id=self.product.id, quantity=4, size='M')])
        self.assertEqual(size_stock(self.product), 6)

        delete_order(order, requested_by=self.admin)

        self.assertFalse(Order.objects.exists())
        self.assertEqual(size_stock(self.product), 10)

    def test_delete_refused_for_delivered(self):
        order = place([CartLine(product_id=self.product.id, quantity=1, size='M')])
        confirm_payment(order)
        for target in (Order.Status.PROCESSING, Order.Status.SHIPPED, Order.Status.DELIVERED):
            advance_order(order, target)

        with self.assertRaises(InvalidTransition):
            delete_order(order, requested_by=self.admin)
        self.assertTrue(Order.objects.filter(pk=order.pk).exists())

    def test_bulk_update_collects_failures(self):
        first = place([CartLine(product_id=self.product.id, quantity=1, size='M')])
        second = place([CartLine(product_id=self.product.id, quantity=1, size='M')])
        cancel_order(second, requested_by=self.admin)

        result = bulk_update_status(
            Order.objects.order_by('id'), Order.Status.CONFIRMED, requested_by=self.admin
        )

        self.assertEqual(result['updated'], [first.order_number])
        self.assertEqual(result['failed'], [second.order_number])

    def test_order_stats(self):
        delivered = place([CartLine(product_id=self.product.id, quantity=1, size='M')])
        confirm_payment(delivered)
        for target in (Order.Status.PROCESSING, Order.Status.SHIPPED, Order.Status.DELIVERED):
            advance_order(delivered, target)
        place([CartLine(product_id=self.product.id, quantity=1, size='M')])

        stats = get_order_stats()

        self.assertEqual(stats['total_orders'], 2)
        self.assertEqual(stats['total_revenue'], str(delivered.total))
        statuses = {row['status']: row['count'] for row in stats['status_breakdown']}
        self.assertEqual(statuses, {'delivered': 1, 'pending': 1})
        self.assertEqual(len(stats['recent_orders']), 2)


class OrderTaskTestCase(TestCase):

    def setUp(self):
        self.product = make_product(sizes={'M': 5})
        self.order = place([CartLine(product_id=self.product.id, quantity=1, size='M')])

    def test_send_confirmation(self):
        result = send_order_confirmation.delay(self.order.id).get()

        self.assertEqual(result['status'], 'success')
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['ada@example.com'])
        self.assertIn(self.order.order_number, mail.outbox[0].subject)

    def test_confirmation_skipped_for_cancelled(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.CANCELLED)

        result = send_order_confirmation.delay(self.order.id).get()

        self.assertEqual(result['status'], 'skipped')
        self.assertEqual(len(mail.outbox), 0)

    def test_confirmation_missing_order(self):
        result = send_order_confirmation.delay(99999).get()
        self.assertEqual(result['status'], 'error')

    def test_confirmation_queued_on_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            place([CartLine(product_id=self.product.id, quantity=1, size='M')])

        self.assertEqual(len(mail.outbox), 1)

    def test_daily_report(self):
        yesterday = timezone.now() - timedelta(days=1)
        Order.objects.filter(pk=self.order.pk).update(created_at=yesterday)
        confirm_payment(self.order)

        stats = generate_daily_order_report()

        self.assertEqual(stats['total_orders'], 1)
        self.assertEqual(stats['confirmed_orders'], 1)
        self.assertEqual(stats['total_revenue'], str(self.order.total))
        self.assertEqual(stats['date'], yesterday.date().isoformat())


class OrderAPITestCase(APITestCase):
    """Test cases for the order endpoints."""

    def setUp(self):
        self.product = make_product(name='Tee', price='20.00', sizes={'M': 3})
        self.owner = User.objects.create_user('owner', 'owner@example.com', 'pw')
        self.stranger = User.objects.create_user('stranger', 'stranger@example.com', 'pw')
        self.admin = User.objects.create_superuser('root', 'root@example.com', 'pw')

    def payload(self, **overrides):
        data = {
            'customer_info': CUSTOMER,
            'items': [{'product': self.product.id, 'quantity': 2, 'size': 'M', 'price': '20.00'}],
            'shipping_address': SHIPPING,
            'payment_method': 'card',
            'total': '53.20',
        }
        data.update(overrides)
        return data

    def owned_order(self):
        return place([CartLine(product_id=self.product.id, quantity=1, size='M')],
                     user=self.owner)

    def test_guest_checkout(self):
        response = self.client.post('/api/orders/', self.payload(), format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['status'], 'pending')
        self.assertEqual(response.data['payment_method'], 'CARD')
        self.assertEqual(response.data['total'], '53.20')
        self.assertEqual(response.data['total_items'], 2)
        self.assertEqual(response.data['items'][0]['product_id'], self.product.id)
        self.assertEqual(size_stock(self.product), 1)

    def test_product_id_aliases(self):
        items = [{'productId': self.product.id, 'quantity': 1, 'size': 'M'}]
        data = self.payload(items=items)
        del data['total']
        response = self.client.post('/api/orders/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)

    def test_missing_product_id(self):
        items = [{'quantity': 1, 'size': 'M'}]
        response = self.client.post('/api/orders/', self.payload(items=items), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_insufficient_stock_response(self):
        items = [{'product_id': self.product.id, 'quantity': 5, 'size': 'M'}]
        response = self.client.post('/api/orders/', self.payload(items=items), format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'insufficient_stock')
        self.assertEqual(response.data['available'], 3)
        self.assertEqual(response.data['item_index'], 0)
        self.assertEqual(size_stock(self.product), 3)

    def test_guest_without_customer_info(self):
        data = self.payload()
        del data['customer_info']
        response = self.client.post('/api/orders/', data, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'validation_error')

    def test_list_shows_own_orders(self):
        mine = self.owned_order()
        place([CartLine(product_id=self.product.id, quantity=1, size='M')])

        self.client.force_authenticate(self.owner)
        response = self.client.get('/api/orders/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        numbers = [row['order_number'] for row in response.data['results']]
        self.assertEqual(numbers, [mine.order_number])

    def test_list_requires_login(self):
        response = self.client.get('/api/orders/')
        self.assertIn(response.status_code,
                      (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_staff_search(self):
        order = self.owned_order()
        self.client.force_authenticate(self.admin)

        response = self.client.get('/api/orders/', {'search': order.order_number[-9:]})

        self.assertEqual(response.data['count'], 1)

    def test_detail_forbidden_for_stranger(self):
        order = self.owned_order()
        self.client.force_authenticate(self.stranger)

        response = self.client.get(f'/api/orders/{order.id}/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error'], 'not_authorized')

    def test_owner_cancels(self):
        order = self.owned_order()
        self.client.force_authenticate(self.owner)

        response = self.client.post(f'/api/orders/{order.id}/cancel/',
                                    {'reason': 'Changed my mind'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'cancelled')
        self.assertEqual(response.data['cancellation_reason'], 'Changed my mind')
        self.assertEqual(size_stock(self.product), 3)

    def test_status_update_admin_only(self):
        order = self.owned_order()

        self.client.force_authenticate(self.owner)
        response = self.client.patch(f'/api/orders/{order.id}/status/',
                                     {'status': 'confirmed'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.admin)
        response = self.client.patch(f'/api/orders/{order.id}/status/',
                                     {'status': 'confirmed', 'note': 'Accepted'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'confirmed')

    def test_invalid_transition_response(self):
        order = self.owned_order()
        self.client.force_authenticate(self.admin)

        response = self.client.patch(f'/api/orders/{order.id}/status/',
                                     {'status': 'delivered'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'invalid_transition')

    def test_admin_delete(self):
        order = self.owned_order()
        self.client.force_authenticate(self.admin)

        response = self.client.delete(f'/api/orders/{order.id}/')

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(size_stock(self.product), 3)

    def test_owner_cannot_delete(self):
        order = self.owned_order()
        self.client.force_authenticate(self.owner)

        response = self.client.delete(f'/api/orders/{order.id}/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertTrue(Order.objects.filter(pk=order.pk).exists())

    def test_stats(self):
        self.owned_order()
        self.client.force_authenticate(self.admin)

        response = self.client.get('/api/orders/stats/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_orders'], 1)
