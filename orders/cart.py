"""
Cart normalization - turn client-declared cart lines into priced
order-item snapshots checked against live catalog state.

Client prices and totals are advisory: the charged amounts always come
from the product's current price.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from django.conf import settings

from catalog.models import Product
from core.exceptions import (
    InsufficientStock,
    OrderValidationError,
    ProductNotFound,
    SizeUnavailable,
)

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

FIGURE_LABELS = {
    'subtotal': 'Subtotal',
    'tax': 'Tax',
    'shipping_cost': 'Shipping',
}


def money(value) -> Decimal:
    """Round a monetary amount to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CartLine:
    """One line of a submitted cart, after field-name normalization."""
    product_id: int
    quantity: int
    size: str
    color: str = ''
    declared_price: Optional[Decimal] = None


@dataclass
class NormalizedLine:
    product: Product
    name: str
    unit_price: Decimal
    quantity: int
    size: str
    color: str
    image_url: str
    line_total: Decimal
    declared_price: Optional[Decimal] = None

    @property
    def product_id(self) -> int:
        return self.product.pk

    def as_item_fields(self) -> Dict:
        return {
            'product': self.product,
            'name': self.name,
            'unit_price': self.unit_price,
            'quantity': self.quantity,
            'size': self.size,
            'color': self.color,
            'image_url': self.image_url,
            'line_total': self.line_total,
        }


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal


@dataclass
class NormalizedCart:
    lines: List[NormalizedLine] = field(default_factory=list)
    totals: Optional[OrderTotals] = None
    declared_total: Optional[Decimal] = None

    @property
    def total_mismatch(self) -> bool:
        return self.declared_total is not None and not totals_agree(
            self.declared_total, self.totals.total
        )


def pricing_policy() -> Dict[str, Decimal]:
    return settings.ORDER_PRICING


def compute_totals(subtotal: Decimal, discount: Decimal = Decimal('0.00')) -> OrderTotals:
    """
    Apply the tax and shipping policy to a subtotal.

    Shipping is waived when the subtotal exceeds the free-shipping
    threshold. Each aggregate is rounded to cents.
    """
    policy = pricing_policy()
    subtotal = money(subtotal)
    discount = money(discount)
    tax = money(subtotal * policy['TAX_RATE'])
    if subtotal > policy['FREE_SHIPPING_THRESHOLD']:
        shipping_cost = money(0)
    else:
        shipping_cost = money(policy['SHIPPING_FEE'])
    total = money(subtotal + shipping_cost + tax - discount)
    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        shipping_cost=shipping_cost,
        discount=discount,
        total=total,
    )


def totals_agree(declared: Decimal, computed: Decimal) -> bool:
    tolerance = pricing_policy()['TOTAL_TOLERANCE']
    return abs(money(declared) - computed) <= tolerance


def _load_products(lines: Sequence[CartLine]) -> Dict[int, Product]:
    product_ids = {line.product_id for line in lines}
    return Product.objects.filter(
        id__in=product_ids, is_active=True
    ).prefetch_related('sizes', 'images').in_bulk()


def normalize_cart(
    lines: Sequence[CartLine],
    declared_total: Optional[Decimal] = None,
    discount: Decimal = Decimal('0.00'),
    declared_figures: Optional[Dict[str, Decimal]] = None,
) -> NormalizedCart:
    """
    Validate and price a cart against the current catalog.

    Args:
        lines: Cart lines in client order
        declared_total: Total the client computed, checked but never charged
        discount: Server-side discount to apply
        declared_figures: Client subtotal, tax and shipping_cost, checked
            the same way as the total

    Returns:
        NormalizedCart with one snapshot per line and authoritative totals

    Raises:
        OrderValidationError: Empty cart or malformed line
        ProductNotFound: Unknown or inactive product
        SizeUnavailable: Requested size not offered
        InsufficientStock: Not enough units in the requested size
    """
    if not lines:
        raise OrderValidationError("Order must contain at least one item", field='items')

    for idx, line in enumerate(lines):
        if not isinstance(line.quantity, int) or line.quantity < 1:
            raise OrderValidationError(
                f"Item {idx + 1}: quantity must be a positive integer",
                field=f'items[{idx}].quantity', item_index=idx,
            )
        if not line.size:
            raise OrderValidationError(
                f"Item {idx + 1}: size is required",
                field=f'items[{idx}].size', item_index=idx,
            )

    products = _load_products(lines)
    cart = NormalizedCart(declared_total=declared_total)
    subtotal = Decimal('0.00')

    for idx, line in enumerate(lines):
        product = products.get(line.product_id)
        if product is None:
            raise ProductNotFound(line.product_id, item_index=idx)

        option = product.size_option(line.size)
        if option is None:
            raise SizeUnavailable(product.pk, line.size, item_index=idx, item_name=product.name)

        if option.stock < line.quantity:
            raise InsufficientStock(
                product.pk, line.size,
                requested=line.quantity, available=option.stock,
                item_index=idx, item_name=product.name,
            )

        unit_price = money(product.effective_price)
        line_total = money(unit_price * line.quantity)
        subtotal += line_total

        if line.declared_price is not None and money(line.declared_price) != unit_price:
            logger.info(
                f"Item {idx + 1} ({product.name}): declared price {line.declared_price} "
                f"replaced by current price {unit_price}"
            )

        cart.lines.append(NormalizedLine(
            product=product,
            name=product.name,
            unit_price=unit_price,
            quantity=line.quantity,
            size=line.size,
            color=line.color,
            image_url=product.primary_image_url,
            line_total=line_total,
            declared_price=line.declared_price,
        ))

    cart.totals = compute_totals(subtotal, discount)

    for name, declared in (declared_figures or {}).items():
        computed = getattr(cart.totals, name)
        if not totals_agree(declared, computed):
            logger.warning(
                f"{FIGURE_LABELS[name]} calculation mismatch: "
                f"declared {money(declared)}, computed {computed}"
            )

    if cart.total_mismatch:
        logger.warning(
            f"Total calculation mismatch: declared {money(declared_total)}, "
            f"computed {cart.totals.total}, "
            f"difference {abs(money(declared_total) - cart.totals.total)}"
        )

    return cart
