"""Reads the product/seller state an order is priced and validated against."""
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import database
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Product, ProductStatus, Seller


@dataclass
class ProductSnapshot:
    product: Product
    seller: Seller
    quantity: int

    @property
    def price(self) -> float:
        return self.product.price


def check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError(f"Quantity must be a positive integer, got {quantity!r}")
    return quantity


def get_product(product_id: str, session=None) -> Product:
    doc = database.get_db()["product"].find_one({"_id": product_id}, session=session)
    if not doc:
        raise NotFoundError("Product", product_id)
    return Product.model_validate(doc)


def get_seller(seller_id: Optional[str], session=None) -> Optional[Seller]:
    if not seller_id:
        return None
    doc = database.get_db()["seller"].find_one({"_id": seller_id}, session=session)
    return Seller.model_validate(doc) if doc else None


def get_products(product_ids: Iterable[str], session=None) -> Dict[str, Product]:
    ids = list(dict.fromkeys(product_ids))
    docs = database.get_db()["product"].find({"_id": {"$in": ids}}, session=session)
    return {d["_id"]: Product.model_validate(d) for d in docs}


def ensure_available(product: Product, seller: Optional[Seller], quantity: int) -> None:
    """Raise unless the product can be sold in `quantity` right now."""
    if seller is None or not seller.is_verified:
        raise ConflictError(f"Seller for product {product.name} is not verified")
    if not product.in_stock or product.status != ProductStatus.approved:
        raise ConflictError(f"Product {product.name} is not available")
    if product.quantity < quantity:
        raise ConflictError(f"Insufficient stock for {product.name}")


def read_snapshot(requests: List[Tuple[str, int]], session=None) -> List[ProductSnapshot]:
    """
    Validate each (product_id, quantity) pair and return snapshots in request order.

    Quantities for the same product are summed before the stock check, so two
    lines of one product cannot pass separately and oversell together.
    """
    totals: "OrderedDict[str, int]" = OrderedDict()
    for product_id, quantity in requests:
        totals[product_id] = totals.get(product_id, 0) + check_quantity(quantity)

    products = get_products(totals.keys(), session=session)
    sellers: Dict[str, Optional[Seller]] = {}
    for product_id, wanted in totals.items():
        product = products.get(product_id)
        if product is None:
            raise NotFoundError("Product", product_id, message="A product in the order no longer exists")
        if product.seller not in sellers:
            sellers[product.seller] = get_seller(product.seller, session=session)
        ensure_available(product, sellers[product.seller], wanted)

    return [
        ProductSnapshot(product=products[pid], seller=sellers[products[pid].seller], quantity=qty)
        for pid, qty in requests
    ]
