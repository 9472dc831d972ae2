"""
Per-item money policies used when an order is assembled.

Tax and shipping are plain callables so a deployment can swap them without
touching the placement workflow:

    TaxPolicy(product, taxable_base) -> tax amount
    ShippingPolicy(product, quantity) -> shipping fee
"""
import uuid
from typing import Callable, Optional

import settings
from schemas import Product, Seller

TaxPolicy = Callable[[Product, float], float]
ShippingPolicy = Callable[[Product, int], float]


def money(value: float) -> float:
    return round(value + 0.0, 2)


def flat_rate_tax(rate_percent: float) -> TaxPolicy:
    """Percentage of the discounted line value; a product-level rate overrides the default."""

    def policy(product: Product, base: float) -> float:
        if not product.is_taxable:
            return 0.0
        rate = product.tax_rate_percent if product.tax_rate_percent is not None else rate_percent
        return money(max(base, 0) * rate / 100)

    return policy


def flat_shipping(per_item: float) -> ShippingPolicy:
    def policy(product: Product, quantity: int) -> float:
        return money((per_item or 0) * quantity)

    return policy


def weight_shipping(per_kg: float, minimum: float = 0) -> ShippingPolicy:
    # products without a weight fall back to the minimum fee
    def policy(product: Product, quantity: int) -> float:
        fee = (product.weight or 0) * quantity * per_kg
        return money(max(fee, minimum))

    return policy


def default_tax_policy() -> TaxPolicy:
    return flat_rate_tax(settings.TAX_RATE_PERCENT)


def default_shipping_policy() -> ShippingPolicy:
    return flat_shipping(settings.SHIPPING_PER_ITEM)


def commission_rate_for(seller: Optional[Seller]) -> float:
    if seller is not None and seller.commission_rate is not None:
        return seller.commission_rate
    return settings.COMMISSION_RATE


def tracking_number(order_id: str, seller_id: str) -> str:
    """TRK-<order tail>-<seller tail>-<random>; the tails tie the number to its sub-order."""
    return f"TRK-{order_id[-6:]}-{seller_id[-4:]}-{uuid.uuid4().hex[:8].upper()}".upper()
