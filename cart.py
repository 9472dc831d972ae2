"""Cart maintenance. One cart per user; the discount is recomputed on every change."""
import logging
from typing import List, Optional

import catalog
import coupons
import database
from errors import ConflictError, MarketplaceError, NotFoundError
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)


def _find(user_id: str) -> Optional[Cart]:
    doc = database.get_db()["cart"].find_one({"user": user_id})
    return Cart.model_validate(doc) if doc else None


def _store(cart: Cart, is_new: bool) -> Cart:
    if is_new:
        database.create_document("cart", cart)
    else:
        database.save_document("cart", cart)
    return cart


def _priced_lines(cart: Cart) -> List[coupons.PricedLine]:
    """Refresh item prices from the catalog and return them as priced lines."""
    products = catalog.get_products(i.product for i in cart.items)
    lines = []
    for item in cart.items:
        product = products.get(item.product)
        if product is not None:
            item.price = product.price
        lines.append(coupons.PricedLine(product=item.product, seller=item.seller, quantity=item.quantity,
                                        price=item.price, category=product.category if product else None))
    return lines


def recalculate(cart: Cart) -> Cart:
    """Re-quote the attached coupon. A coupon that no longer applies keeps its code at zero discount."""
    lines = _priced_lines(cart)
    cart.discount = 0
    if not cart.applied_coupon_code or not cart.items:
        return cart
    try:
        batch = coupons.load_coupons([cart.applied_coupon_code])
        cart.discount = coupons.quote_coupons(batch, lines, cart.user).total_discount
    except MarketplaceError as exc:
        logger.info("Cart coupon %s no longer applies for %s: %s", cart.applied_coupon_code, cart.user, exc.message)
    return cart


def get_cart(user_id: str) -> Cart:
    return _find(user_id) or Cart(user=user_id)


def add_item(user_id: str, product_id: str, quantity: int = 1) -> Cart:
    catalog.check_quantity(quantity)
    product = catalog.get_product(product_id)
    seller = catalog.get_seller(product.seller)

    cart = _find(user_id)
    is_new = cart is None
    cart = cart or Cart(user=user_id)
    existing = next((i for i in cart.items if i.product == product_id), None)
    merged = quantity + (existing.quantity if existing else 0)
    catalog.ensure_available(product, seller, merged)

    if existing:
        existing.quantity = merged
    else:
        cart.items.append(CartItem(product=product.id, seller=seller.id, quantity=quantity, price=product.price))
    return _store(recalculate(cart), is_new)


def update_item(user_id: str, item_id: str, quantity: int) -> Cart:
    catalog.check_quantity(quantity)
    cart = _find(user_id)
    item = next((i for i in cart.items if i.id == item_id), None) if cart else None
    if item is None:
        raise NotFoundError("Cart item", item_id)
    product = catalog.get_product(item.product)
    if product.quantity < quantity:
        raise ConflictError(f"Insufficient stock for {product.name}")
    item.quantity = quantity
    return _store(recalculate(cart), False)


def remove_item(user_id: str, item_id: str) -> Cart:
    cart = _find(user_id)
    if cart is None or not any(i.id == item_id for i in cart.items):
        raise NotFoundError("Cart item", item_id)
    cart.items = [i for i in cart.items if i.id != item_id]
    return _store(recalculate(cart), False)


def clear_cart(user_id: str) -> Cart:
    cart = _find(user_id)
    if cart is None:
        return Cart(user=user_id)
    cart.items = []
    cart.coupon = None
    cart.applied_coupon_code = None
    cart.discount = 0
    return _store(cart, False)


def apply_cart_coupon(user_id: str, code: str) -> Cart:
    """Attach a coupon to the cart. Unlike recalculate(), a coupon that does not apply is an error here."""
    cart = _find(user_id)
    if cart is None or not cart.items:
        raise NotFoundError("Cart", message="Cart is empty")
    coupon = coupons.load_coupons([code])[0]
    quote = coupons.quote_coupons([coupon], _priced_lines(cart), user_id)
    cart.coupon = coupon.id
    cart.applied_coupon_code = coupon.code
    cart.discount = quote.total_discount
    return _store(cart, False)


def remove_cart_coupon(user_id: str) -> Cart:
    cart = _find(user_id)
    if cart is None:
        raise NotFoundError("Cart", message="Cart is empty")
    cart.coupon = None
    cart.applied_coupon_code = None
    cart.discount = 0
    return _store(cart, False)
