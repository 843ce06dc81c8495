"""
Catalog Models - the product data the checkout core reads and the
per-size stock counters it reserves and releases.

Models:
    - Product: Items available for sale, with list and sale price
    - ProductSize: Per-size stock counter (the inventory ledger rows)
    - ProductImage: Display images, snapshotted into order items
"""
from decimal import Decimal
from typing import Optional

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Sum


class Product(models.Model):
    """
    Product entity representing items available for sale.

    ``stock`` is the aggregate of all size counters and is recomputed by the
    ledger whenever a size counter moves.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display"
    )
    description = models.TextField(
        blank=True,
        default='',
        help_text="Optional product description"
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="List price (must be positive)"
    )
    sale_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Discounted price; overrides the list price when set"
    )
    stock = models.PositiveIntegerField(
        default=0,
        help_text="Sum of per-size stock"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['name', 'is_active'], name='product_name_active_idx'),
        ]

    def __str__(self):
        return f"{self.name} (${self.effective_price})"

    @property
    def effective_price(self) -> Decimal:
        """Price charged at checkout: the sale price when present."""
        if self.sale_price is not None:
            return self.sale_price
        return self.price

    @property
    def primary_image_url(self) -> str:
        images = list(self.images.all())
        for image in images:
            if image.is_primary:
                return image.url
        return images[0].url if images else ''

    def size_option(self, size: str) -> Optional['ProductSize']:
        """Find the size row for a label, using prefetched sizes when loaded."""
        for option in self.sizes.all():
            if option.size == size:
                return option
        return None

    def recalculate_stock(self) -> int:
        """Resync the aggregate stock column from the size rows."""
        total = self.sizes.aggregate(total=Sum('stock'))['total'] or 0
        Product.objects.filter(pk=self.pk).update(stock=total)
        self.stock = total
        return total


class ProductSize(models.Model):
    """
    Stock counter for one size of a product.

    Only ``catalog.ledger`` changes ``stock`` while orders are in flight;
    every change is a conditional UPDATE, never a read-modify-write.
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='sizes',
        help_text="Product this size belongs to"
    )
    size = models.CharField(
        max_length=20,
        help_text="Size label, e.g. S, M, L, 42"
    )
    stock = models.PositiveIntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Units available in this size"
    )
    position = models.PositiveSmallIntegerField(
        default=0,
        help_text="Display order of the size"
    )

    class Meta:
        verbose_name = 'Product Size'
        verbose_name_plural = 'Product Sizes'
        ordering = ['product', 'position', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['product', 'size'],
                name='unique_product_size'
            )
        ]

    def __str__(self):
        return f"{self.product.name} [{self.size}]: {self.stock} units"

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock == 0


class ProductImage(models.Model):
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='images'
    )
    url = models.CharField(max_length=500)
    is_primary = models.BooleanField(default=False)
    position = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ['product', 'position', 'id']

    def __str__(self):
        return self.url
