"""
Order placement: a cart (or a single buy-now item) becomes one Order plus one
SubOrder per seller.

Everything between reading the cart and clearing it runs in one transaction.
All business checks happen before the first write; the conditional stock and
coupon writes come last, so a lost race aborts the whole placement. Payment
gateway calls are made only after the transaction has committed.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as SchemaError

import catalog
import coupons
import database
import ledger
import payments
import settings
import suborders
from errors import MarketplaceError, NotFoundError, ValidationError
from pricing import (
    ShippingPolicy,
    TaxPolicy,
    commission_rate_for,
    default_shipping_policy,
    default_tax_policy,
    money,
    tracking_number,
)
from schemas import Address, Cart, EscrowStatus, ItemStatus, Order, OrderItem, PaymentMethod, SubOrder, new_id

logger = logging.getLogger(__name__)

AddressInput = Union[Address, Mapping[str, Any], None]


# ---------------------- Input checks ----------------------

def parse_address(value: AddressInput) -> Address:
    if value is None:
        raise ValidationError("Complete shipping address is required")
    try:
        address = value if isinstance(value, Address) else Address.model_validate(dict(value))
    except (SchemaError, TypeError, ValueError):
        raise ValidationError("Complete shipping address is required")
    missing = address.missing_fields()
    if missing:
        raise ValidationError(f"Complete shipping address is required (missing: {', '.join(missing)})")
    return address


def parse_payment_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {value!r}")


def parse_item_addresses(entries: Optional[Sequence[Mapping[str, Any]]]) -> Dict[str, Address]:
    """[{seller, address}] -> {seller_id: Address}; per-seller shipping overrides."""
    overrides = {}
    for entry in entries or ():
        seller = entry.get("seller")
        if not seller:
            raise ValidationError("Each item address needs a seller")
        overrides[seller] = parse_address(entry.get("address"))
    return overrides


# ---------------------- Assembly ----------------------

def assemble_items(order_id: str, snapshots: List[catalog.ProductSnapshot], quote: coupons.DiscountQuote,
                   payment_method: PaymentMethod, overrides: Dict[str, Address],
                   tax_policy: TaxPolicy, shipping_policy: ShippingPolicy) -> List[OrderItem]:
    escrow = EscrowStatus.not_applicable if payment_method == PaymentMethod.cod else EscrowStatus.held
    items = []
    for index, snap in enumerate(snapshots):
        line = quote.lines[index]
        discount = quote.per_line[index]
        subtotal = money(max(line.base - discount, 0))
        tax = tax_policy(snap.product, subtotal)
        shipping = shipping_policy(snap.product, snap.quantity)
        rate = commission_rate_for(snap.seller)
        items.append(OrderItem(
            product=snap.product.id,
            seller=snap.seller.id,
            quantity=snap.quantity,
            price=line.price,
            discount=discount,
            subtotal=subtotal,
            tax_amount=tax,
            shipping_fee=shipping,
            tracking_number=tracking_number(order_id, snap.seller.id),
            shipping_address=overrides.get(snap.seller.id),
            applied_coupons=quote.coupon_ids_for(index),
            commission_rate=rate,
            commission_amount=money((subtotal + tax + shipping) * rate),
            escrow_status=escrow,
        ))
    return items


def _priced_lines(snapshots: List[catalog.ProductSnapshot]) -> List[coupons.PricedLine]:
    return [
        coupons.PricedLine(product=s.product.id, seller=s.seller.id, quantity=s.quantity,
                           price=s.price, category=s.product.category)
        for s in snapshots
    ]


def _build(user_id: str, requests: List[Tuple[str, int]], codes: Sequence[str], address: Address,
           method: PaymentMethod, overrides: Dict[str, Address], notes: Optional[str], session,
           tax_policy: Optional[TaxPolicy], shipping_policy: Optional[ShippingPolicy]):
    snapshots = catalog.read_snapshot(requests, session=session)
    batch = coupons.load_coupons(codes, session=session)
    quote = coupons.quote_coupons(batch, _priced_lines(snapshots), user_id)

    order_id = new_id()
    items = assemble_items(order_id, snapshots, quote, method, overrides,
                           tax_policy or default_tax_policy(), shipping_policy or default_shipping_policy())
    order = Order(
        id=order_id,
        user=user_id,
        items=items,
        applied_coupons=[q.coupon.id for q in quote.coupons],
        payment_method=method,
        shipping_address=address,
        tracking_numbers=list(dict.fromkeys(i.tracking_number for i in items)),
        notes=notes,
        currency=settings.CURRENCY,
    ).refresh_totals()
    rates = {s.seller.id: commission_rate_for(s.seller) for s in snapshots}
    return order, suborders.split_order(order, rates), snapshots, quote


def _persist(order: Order, subs: List[SubOrder], snapshots: List[catalog.ProductSnapshot],
             quote: coupons.DiscountQuote, session) -> None:
    database.create_document("order", order.refresh_totals(), session=session)
    suborders.insert_sub_orders(subs, session=session)
    for snap in snapshots:
        ledger.decrement_stock(snap.product.id, snap.quantity, session=session, name=snap.product.name)
    for applied in quote.coupons:
        ledger.record_coupon_usage(applied.coupon, order.user, session=session)


def _after_commit(order: Order, gateway) -> Order:
    logger.info("Order %s placed by %s: %d item(s), total %.2f", order.id, order.user,
                len(order.items), order.total_amount)
    if order.payment_method != PaymentMethod.cod:
        record = payments.open_payment(order, gateway)
        order.payment_order_id = record.payment_order_id
    return order


# ---------------------- Entry points ----------------------

@contextmanager
def _placement(user_id: str):
    try:
        with database.transaction() as session:
            yield session
    except MarketplaceError as exc:
        logger.info("Order placement for %s aborted (%s): %s", user_id, exc.kind, exc.message)
        raise


def load_cart(user_id: str, session=None) -> Optional[Cart]:
    doc = database.get_db()["cart"].find_one({"user": user_id}, session=session)
    return Cart.model_validate(doc) if doc else None


def create_order_from_cart(user_id: str, shipping_address: AddressInput, coupon_codes: Sequence[str] = (),
                           item_addresses: Sequence[Mapping[str, Any]] = (), payment_method="COD",
                           notes: Optional[str] = None, gateway=None, tax_policy: Optional[TaxPolicy] = None,
                           shipping_policy: Optional[ShippingPolicy] = None) -> Order:
    address = parse_address(shipping_address)
    method = parse_payment_method(payment_method)
    overrides = parse_item_addresses(item_addresses)

    with _placement(user_id) as session:
        cart = load_cart(user_id, session=session)
        if cart is None or not cart.items:
            raise NotFoundError("Cart", message="Cart is empty")
        codes = list(coupon_codes or ())
        if not codes and cart.applied_coupon_code:
            codes = [cart.applied_coupon_code]

        requests = [(i.product, i.quantity) for i in cart.items]
        order, subs, snapshots, quote = _build(user_id, requests, codes, address, method, overrides,
                                               notes, session, tax_policy, shipping_policy)
        order.cart = cart.id
        _persist(order, subs, snapshots, quote, session)
        database.get_db()["cart"].update_one(
            {"_id": cart.id},
            {"$set": {"items": [], "coupon": None, "applied_coupon_code": None, "discount": 0,
                      "updated_at": database.now_utc()}},
            session=session,
        )

    return _after_commit(order, gateway)


def buy_now(user_id: str, product_id: str, quantity: int, shipping_address: AddressInput,
            coupon_codes: Sequence[str] = (), payment_method="COD", notes: Optional[str] = None,
            gateway=None, tax_policy: Optional[TaxPolicy] = None,
            shipping_policy: Optional[ShippingPolicy] = None) -> Order:
    address = parse_address(shipping_address)
    method = parse_payment_method(payment_method)
    catalog.check_quantity(quantity)

    with _placement(user_id) as session:
        order, subs, snapshots, quote = _build(user_id, [(product_id, quantity)], list(coupon_codes or ()),
                                               address, method, {}, notes, session, tax_policy, shipping_policy)
        _persist(order, subs, snapshots, quote, session)

    return _after_commit(order, gateway)


# ---------------------- Read side ----------------------

def load_order(order_id: str, session=None, user_id: Optional[str] = None) -> Order:
    filt = {"_id": order_id}
    if user_id is not None:
        filt["user"] = user_id
    doc = database.get_db()["order"].find_one(filt, session=session)
    if not doc:
        raise NotFoundError("Order", order_id)
    return Order.model_validate(doc)


def save_order(order: Order, session=None) -> None:
    database.save_document("order", order.refresh_totals(), session=session)


def list_orders(user_id: str, status: Optional[str] = None) -> List[Order]:
    filt = {"user": user_id}
    if status:
        filt["order_status"] = status
    docs = database.get_documents("order", filt, sort=[("created_at", -1)])
    return [Order.model_validate(d) for d in docs]


def order_details(order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    order = load_order(order_id, user_id=user_id)
    return {"order": order, "sub_orders": suborders.load_sub_orders(order.id)}


def seller_sub_orders(seller_id: str) -> List[SubOrder]:
    docs = database.get_documents("suborder", {"seller": seller_id}, sort=[("created_at", -1)])
    return [SubOrder.model_validate(d) for d in docs]


# ---------------------- Admin ----------------------

def list_all_orders(status: Optional[str] = None, user_id: Optional[str] = None, seller_id: Optional[str] = None,
                    date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> List[Order]:
    filt: Dict[str, Any] = {}
    if status:
        filt["order_status"] = status
    if user_id:
        filt["user"] = user_id
    if seller_id:
        filt["items.seller"] = seller_id
    if date_from or date_to:
        filt["created_at"] = {}
        if date_from:
            filt["created_at"]["$gte"] = date_from
        if date_to:
            filt["created_at"]["$lte"] = date_to
    docs = database.get_documents("order", filt, sort=[("created_at", -1)])
    return [Order.model_validate(d) for d in docs]


def delete_order(order_id: str) -> None:
    """Remove an order and its sub-orders, putting back stock for every item not already cancelled."""
    with database.transaction() as session:
        order = load_order(order_id, session=session)
        for item in order.items:
            if item.status != ItemStatus.cancelled:
                ledger.restock(item.product, item.quantity, session=session)
        db = database.get_db()
        db["suborder"].delete_many({"order": order.id}, session=session)
        db["order"].delete_one({"_id": order.id}, session=session)
    logger.info("Order %s deleted by admin", order.id)
