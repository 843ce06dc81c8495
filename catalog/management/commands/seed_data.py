"""
Management command to seed the database with a demo apparel catalog.

Generates:
- Products with list and optional sale prices
- Per-size stock rows for every product
- A primary image for every product

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import Max

from catalog.models import Product, ProductSize, ProductImage


class Command(BaseCommand):
    help = 'Seed the database with sample products, sizes and images'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=200,
            help='Number of products to create (default: 200)',
        )
        parser.add_argument(
            '--max-stock',
            type=int,
            default=50,
            help='Upper bound for the stock of each size (default: 50)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            products = self._create_products(options['products'])
            self._create_sizes(products, options['max_stock'])
            self._create_images(products)

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        """Clear all existing data."""
        from orders.models import Order

        Order.objects.all().delete()
        Product.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_products(self, count):
        """Create sample products with realistic data."""
        garments = [
            'Cotton T-Shirt', 'Denim Jeans', 'Wool Sweater', 'Rain Jacket',
            'Running Shoes', 'Linen Shirt', 'Chino Trousers', 'Casual Dress',
            'Sports Shorts', 'Winter Coat', 'Hooded Sweatshirt', 'Polo Shirt',
        ]
        adjectives = [
            'Premium', 'Classic', 'Modern', 'Vintage', 'Eco-Friendly',
            'Relaxed', 'Slim', 'Essential', 'Organic', 'Limited Edition',
        ]

        last_id = Product.objects.aggregate(last=Max('id'))['last'] or 0

        products = []
        for i in range(count):
            garment = random.choice(garments)
            name = f"{random.choice(adjectives)} {garment} #{i + 1}"
            price = Decimal(str(round(random.uniform(9, 180), 2)))
            sale_price = None
            if random.random() < 0.25:
                sale_price = (price * Decimal('0.8')).quantize(Decimal('0.01'))

            products.append(Product(
                name=name,
                description=f"{garment} cut for everyday wear.",
                price=price,
                sale_price=sale_price,
                is_active=random.random() > 0.05  # 95% active
            ))

        Product.objects.bulk_create(products)
        products = list(Product.objects.filter(id__gt=last_id))
        self.stdout.write(self.style.SUCCESS(f'Created {len(products)} products'))
        return products

    def _create_sizes(self, products, max_stock):
        """Create per-size stock for each product and sync the aggregate."""
        size_runs = [['XS', 'S', 'M', 'L', 'XL'], ['S', 'M', 'L'], ['38', '40', '42', '44']]

        rows = []
        for product in products:
            for position, size in enumerate(random.choice(size_runs)):
                rows.append(ProductSize(
                    product=product,
                    size=size,
                    stock=random.randint(0, max_stock),
                    position=position,
                ))
        ProductSize.objects.bulk_create(rows, batch_size=5000)

        for product in products:
            product.recalculate_stock()
        self.stdout.write(self.style.SUCCESS(f'Created {len(rows)} size rows'))

    def _create_images(self, products):
        images = [
            ProductImage(
                product=product,
                url=f"https://cdn.example.com/products/{product.pk}/main.jpg",
                is_primary=True,
            )
            for product in products
        ]
        ProductImage.objects.bulk_create(images)
        self.stdout.write(self.style.SUCCESS(f'Created {len(images)} images'))
