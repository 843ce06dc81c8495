"""
Tests for the inventory ledger.

Test Cases:
1. Decrement and increment keep the aggregate in sync
2. Decrement below zero is refused without side effects
3. Unknown product / size diagnosis
4. Stock release skips lines whose product or size is gone
5. Two checkouts racing for the last unit never oversell
"""
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase

from catalog.ledger import adjust_stock, release_stock
from catalog.models import Product, ProductImage, ProductSize
from core.exceptions import InsufficientStock, ProductNotFound, SizeUnavailable
from orders.cart import CartLine, normalize_cart
from orders.models import Order
from orders.services import create_order

SHIPPING = {
    'full_name': 'Ada Lovelace',
    'address': '12 Analytical Row',
    'city': 'London',
    'state': 'LDN',
    'zip_code': 'N1 9GU',
    'phone': '555-0100',
}
CUSTOMER = {'name': 'Ada Lovelace', 'email': 'ada@example.com'}


def make_product(name='Test Tee', price='20.00', sizes=None, **kwargs):
    product = Product.objects.create(name=name, price=Decimal(price), **kwargs)
    for position, (size, stock) in enumerate((sizes or {'M': 3}).items()):
        ProductSize.objects.create(product=product, size=size, stock=stock, position=position)
    product.recalculate_stock()
    return product


class LedgerTestCase(TestCase):
    """Test cases for adjust_stock."""

    def setUp(self):
        self.product = make_product(sizes={'S': 2, 'M': 5})

    def size_stock(self, size):
        return ProductSize.objects.get(product=self.product, size=size).stock

    def test_decrement_updates_size_and_aggregate(self):
        new_stock = adjust_stock(self.product.id, 'M', -3)

        self.assertEqual(new_stock, 2)
        self.assertEqual(self.size_stock('M'), 2)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)  # 2 (S) + 2 (M)

    def test_increment_restores_stock(self):
        adjust_stock(self.product.id, 'S', -2)
        adjust_stock(self.product.id, 'S', 2)

        self.assertEqual(self.size_stock('S'), 2)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 7)

    def test_exact_stock_reaches_zero(self):
        self.assertEqual(adjust_stock(self.product.id, 'S', -2), 0)
        self.assertTrue(ProductSize.objects.get(product=self.product, size='S').is_out_of_stock)

    def test_insufficient_stock_is_refused(self):
        with self.assertRaises(InsufficientStock) as context:
            adjust_stock(self.product.id, 'S', -3)

        self.assertEqual(context.exception.available, 2)
        self.assertEqual(context.exception.requested, 3)
        self.assertEqual(self.size_stock('S'), 2)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 7)

    def test_unknown_size(self):
        with self.assertRaises(SizeUnavailable):
            adjust_stock(self.product.id, 'XXL', -1)

    def test_unknown_product(self):
        with self.assertRaises(ProductNotFound):
            adjust_stock(99999, 'M', -1)


class ReleaseStockTestCase(TestCase):
    """Test cases for release_stock."""

    def setUp(self):
        self.product = make_product(sizes={'M': 1})

    def test_release_returns_units(self):
        items = [SimpleNamespace(product_id=self.product.id, size='M', quantity=2, name='Tee')]

        skipped = release_stock(items)

        self.assertEqual(skipped, [])
        self.assertEqual(ProductSize.objects.get(product=self.product, size='M').stock, 3)

    def test_release_skips_missing_product_and_size(self):
        items = [
            SimpleNamespace(product_id=None, size='M', quantity=1, name='Deleted'),
            SimpleNamespace(product_id=self.product.id, size='XL', quantity=1, name='Tee'),
            SimpleNamespace(product_id=self.product.id, size='M', quantity=1, name='Tee'),
        ]

        with self.assertLogs('catalog.ledger', level='WARNING'):
            skipped = release_stock(items)

        self.assertEqual(len(skipped), 2)
        self.assertEqual(ProductSize.objects.get(product=self.product, size='M').stock, 2)


class ProductModelTestCase(TestCase):

    def test_effective_price_prefers_sale_price(self):
        product = make_product(price='30.00', sale_price=Decimal('24.50'))
        self.assertEqual(product.effective_price, Decimal('24.50'))

    def test_primary_image_url(self):
        product = make_product()
        self.assertEqual(product.primary_image_url, '')

        ProductImage.objects.create(product=product, url='https://cdn.test/a.jpg', position=0)
        ProductImage.objects.create(
            product=product, url='https://cdn.test/b.jpg', is_primary=True, position=1
        )
        self.assertEqual(product.primary_image_url, 'https://cdn.test/b.jpg')


class LastUnitRaceTestCase(TestCase):
    """
    Two checkouts for the last unit.

    The first checkout normalizes its cart while the unit is still free;
    a second checkout then takes the unit before the first one reserves.
    The stale read must not let the first checkout through.
    """

    def setUp(self):
        self.product = make_product(name='Last One', sizes={'M': 1})
        self.lines = [CartLine(product_id=self.product.id, quantity=1, size='M')]

    def place(self):
        return create_order(
            self.lines,
            customer_info=CUSTOMER,
            shipping_address=SHIPPING,
            payment_method='CARD',
        )

    def test_exactly_one_checkout_wins(self):
        stale_cart = normalize_cart(self.lines)

        winner = self.place()

        with patch('orders.services.normalize_cart', return_value=stale_cart):
            with self.assertRaises(InsufficientStock) as context:
                self.place()

        self.assertEqual(context.exception.available, 0)
        self.assertEqual(context.exception.item_index, 0)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(Order.objects.get().pk, winner.pk)

        stock = ProductSize.objects.get(product=self.product, size='M').stock
        self.assertEqual(stock, 0)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 0)


class SeedDataCommandTestCase(TestCase):

    def test_seed_creates_products_with_sizes(self):
        call_command('seed_data', products=4, max_stock=5, stdout=StringIO())
        call_command('seed_data', products=2, max_stock=5, stdout=StringIO())

        self.assertEqual(Product.objects.count(), 6)
        for product in Product.objects.prefetch_related('sizes', 'images'):
            sizes = list(product.sizes.all())
            self.assertTrue(sizes)
            self.assertEqual(product.stock, sum(size.stock for size in sizes))
            self.assertTrue(product.primary_image_url)

    def test_seed_clear(self):
        make_product()
        call_command('seed_data', clear=True, products=1, stdout=StringIO())
        self.assertEqual(Product.objects.count(), 1)
