"""
Inventory ledger - atomic per-size stock adjustments.

Concurrent checkouts contend for the same size counters, so every change
is issued as one conditional UPDATE (``stock = stock + delta`` guarded by
``stock >= -delta``). Whichever request's UPDATE lands first wins; the
other matches zero rows and gets InsufficientStock.
"""
import logging
from typing import Iterable, List

from django.db import transaction
from django.db.models import F, OuterRef, Subquery, Sum
from django.db.models.functions import Coalesce

from core.exceptions import InsufficientStock, ProductNotFound, SizeUnavailable
from .models import Product, ProductSize

logger = logging.getLogger(__name__)


def _sync_aggregate_stock(product_id: int) -> None:
    totals = (
        ProductSize.objects.filter(product=OuterRef('pk'))
        .values('product')
        .annotate(total=Sum('stock'))
        .values('total')
    )
    Product.objects.filter(pk=product_id).update(stock=Coalesce(Subquery(totals), 0))


def adjust_stock(product_id: int, size: str, delta: int) -> int:
    """
    Atomically move the stock of one product size by ``delta``.

    Args:
        product_id: Product primary key
        size: Size label
        delta: Negative to reserve units, positive to release them

    Returns:
        The new stock level of the size

    Raises:
        ProductNotFound: No product with that id
        SizeUnavailable: The product has no such size
        InsufficientStock: A decrement would take stock below zero
    """
    with transaction.atomic():
        rows = ProductSize.objects.filter(product_id=product_id, size=size)
        if delta < 0:
            rows = rows.filter(stock__gte=-delta)
        updated = rows.update(stock=F('stock') + delta)

        if updated == 0:
            option = (
                ProductSize.objects.filter(product_id=product_id, size=size)
                .values_list('stock', flat=True)
                .first()
            )
            if option is None:
                if not Product.objects.filter(pk=product_id).exists():
                    raise ProductNotFound(product_id)
                raise SizeUnavailable(product_id, size)
            raise InsufficientStock(product_id, size, requested=-delta, available=option)

        _sync_aggregate_stock(product_id)
        new_stock = ProductSize.objects.values_list('stock', flat=True).get(
            product_id=product_id, size=size
        )

    logger.debug(f"Stock for product {product_id} size {size} moved by {delta}, now {new_stock}")
    return new_stock


def release_stock(items: Iterable) -> List:
    """
    Return the units held by order items to their size counters.

    Items whose product or size has since been removed are logged and
    skipped so the caller can always finish its own state change.

    Args:
        items: Objects with ``product_id``, ``size`` and ``quantity``

    Returns:
        The items that could not be restored
    """
    skipped = []
    for item in items:
        if item.product_id is None:
            logger.warning(
                f"Cannot restore {item.quantity}x {item.name} ({item.size}): product was deleted"
            )
            skipped.append(item)
            continue
        try:
            adjust_stock(item.product_id, item.size, item.quantity)
        except (ProductNotFound, SizeUnavailable) as e:
            logger.warning(f"Skipping stock restore for {item.quantity}x {item.size}: {e}")
            skipped.append(item)
    return skipped
