"""
Coupon discount calculation and coupon administration.

The calculator (compute_coupon_discount / quote_coupons) is pure: it reads
nothing and writes nothing, so identical inputs always give identical quotes.
Usage counters are only touched by order placement, through the ledger.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError

import catalog
import database
import ledger
from errors import ConflictError, NotFoundError, ValidationError
from pricing import money
from schemas import AdminCreator, Coupon, CouponScope, DiscountType, SellerCreator

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_-]{1,31}$")


@dataclass(frozen=True)
class PricedLine:
    product: str
    seller: str
    quantity: int
    price: float
    category: Optional[str] = None

    @property
    def base(self) -> float:
        return self.price * self.quantity


@dataclass
class CouponQuote:
    coupon: Coupon
    lines: List[PricedLine]
    per_line: List[float]
    discount: float
    applicable_cart_value: float
    min_cart_not_met: bool = False

    def breakdown(self) -> List[Dict[str, Any]]:
        return [
            {"product": line.product, "discount": amount}
            for line, amount in zip(self.lines, self.per_line)
            if amount > 0
        ]

    @property
    def applicable_items(self) -> List[str]:
        return [line.product for line, amount in zip(self.lines, self.per_line) if amount > 0]


@dataclass
class DiscountQuote:
    lines: List[PricedLine]
    coupons: List[CouponQuote] = field(default_factory=list)
    per_line: List[float] = field(default_factory=list)

    @property
    def total_discount(self) -> float:
        return money(sum(self.per_line))

    @property
    def cart_total(self) -> float:
        return money(sum(line.base for line in self.lines))

    def coupon_ids_for(self, index: int) -> List[str]:
        return [q.coupon.id for q in self.coupons if q.per_line[index] > 0]


# ---------------------- Calculator ----------------------

def normalize_code(code) -> str:
    if not isinstance(code, str) or not CODE_PATTERN.match(code.strip().upper()):
        raise ValidationError(f"Invalid coupon code format: {code!r}")
    return code.strip().upper()


def _percentage(coupon: Coupon, base: float) -> float:
    return base * coupon.discount_value / 100


def _fixed(coupon: Coupon, base: float) -> float:
    return min(coupon.discount_value, base)


DISCOUNT_RULES: Dict[DiscountType, Callable[[Coupon, float], float]] = {
    DiscountType.percentage: _percentage,
    DiscountType.fixed: _fixed,
}


def _cap(coupon: Coupon, amount: float) -> float:
    if DiscountType(coupon.discount_type) == DiscountType.percentage and coupon.max_discount:
        return min(amount, coupon.max_discount)
    return amount


def allocate(amount: float, weights: Sequence[float]) -> List[float]:
    """Split `amount` pro rata over `weights`; the last share absorbs rounding."""
    shares = [0.0] * len(weights)
    total = sum(weights)
    if amount <= 0 or total <= 0:
        return shares
    last = max(i for i, w in enumerate(weights) if w > 0)
    remaining = money(amount)
    for i, weight in enumerate(weights):
        if weight <= 0:
            continue
        if i == last:
            shares[i] = money(max(remaining, 0))
        else:
            shares[i] = money(amount * weight / total)
            remaining = money(remaining - shares[i])
    return shares


def _line_eligible(coupon: Coupon, line: PricedLine) -> bool:
    if coupon.sellers and line.seller not in coupon.sellers:
        return False
    if coupon.scope == CouponScope.order:
        return True
    return (line.product in coupon.applicable_products
            or (line.category is not None and line.category in coupon.applicable_categories))


def _order_scope(coupon: Coupon, lines: List[PricedLine], eligible: List[int]) -> List[float]:
    weights = [line.base if i in eligible else 0.0 for i, line in enumerate(lines)]
    rule = DISCOUNT_RULES[DiscountType(coupon.discount_type)]
    return allocate(_cap(coupon, rule(coupon, sum(weights))), weights)


def _item_scope(coupon: Coupon, lines: List[PricedLine], eligible: List[int]) -> List[float]:
    rule = DISCOUNT_RULES[DiscountType(coupon.discount_type)]
    raw = [min(rule(coupon, line.base), line.base) if i in eligible else 0.0
           for i, line in enumerate(lines)]
    capped = _cap(coupon, sum(raw))
    if capped < sum(raw):
        return allocate(capped, raw)
    return [money(r) for r in raw]


SCOPE_RULES = {
    CouponScope.order: _order_scope,
    CouponScope.product: _item_scope,
    CouponScope.category: _item_scope,
}


def compute_coupon_discount(coupon: Coupon, lines: List[PricedLine]) -> CouponQuote:
    eligible = [i for i, line in enumerate(lines) if _line_eligible(coupon, line)]
    applicable = money(sum(lines[i].base for i in eligible))
    if coupon.min_cart_value and applicable < coupon.min_cart_value:
        return CouponQuote(coupon, lines, [0.0] * len(lines), 0.0, applicable, min_cart_not_met=True)

    per_line = SCOPE_RULES[coupon.scope](coupon, lines, eligible)
    return CouponQuote(coupon, lines, per_line, money(sum(per_line)), applicable)


def check_usable(coupon: Coupon, user_id: str, now: Optional[datetime] = None) -> None:
    now = now or database.now_utc()
    if not coupon.is_active:
        raise ConflictError(f"Coupon {coupon.code} is not active")
    expiry = database.as_utc(coupon.expiry_date)
    if expiry is not None and now > expiry:
        raise ConflictError(f"Coupon {coupon.code} has expired")
    if coupon.used_count >= coupon.max_usage:
        raise ConflictError(f"Coupon {coupon.code} usage limit reached")
    if coupon.usage_by(user_id) >= coupon.max_usage_per_user:
        raise ConflictError(f"You have already used coupon {coupon.code} the maximum allowed times")


def check_stacking(coupons: List[Coupon]) -> None:
    if sum(1 for c in coupons if not c.stackable) > 1:
        raise ConflictError("Only one non-stackable coupon can be used per order")
    limit = min(c.max_stack_per_order or len(coupons) for c in coupons)
    if len(coupons) > limit:
        raise ConflictError(f"Too many coupons for stack limits (max {limit})")


def quote_coupons(coupons: List[Coupon], lines: List[PricedLine], user_id: str,
                  now: Optional[datetime] = None) -> DiscountQuote:
    """Validate a coupon batch against priced lines and combine the discounts."""
    if not coupons:
        return DiscountQuote(lines, [], [0.0] * len(lines))

    check_stacking(coupons)
    quotes = []
    for coupon in coupons:
        check_usable(coupon, user_id, now)
        quote = compute_coupon_discount(coupon, lines)
        if quote.min_cart_not_met:
            raise ConflictError(f"Minimum cart value not met for coupon {coupon.code}")
        if quote.discount <= 0:
            raise ConflictError(f"Coupon {coupon.code} does not apply to your cart")
        quotes.append(quote)

    per_line = [
        money(min(sum(q.per_line[i] for q in quotes), line.base))
        for i, line in enumerate(lines)
    ]
    return DiscountQuote(lines, quotes, per_line)


# ---------------------- Lookups ----------------------

def get_coupon(coupon_id: str, session=None) -> Coupon:
    doc = database.get_db()["coupon"].find_one({"_id": coupon_id}, session=session)
    if not doc:
        raise NotFoundError("Coupon", coupon_id)
    return Coupon.model_validate(doc)


def load_coupons(codes: Sequence[str], session=None) -> List[Coupon]:
    normalized = list(dict.fromkeys(normalize_code(c) for c in codes))
    if not normalized:
        return []
    docs = database.get_db()["coupon"].find({"code": {"$in": normalized}}, session=session)
    by_code = {d["code"]: Coupon.model_validate(d) for d in docs}
    missing = [c for c in normalized if c not in by_code]
    if missing:
        raise NotFoundError("Coupon", ", ".join(missing), message=f"Coupons not found: {', '.join(missing)}")
    return [by_code[c] for c in normalized]


def lines_from_cart(cart_lines: Sequence[Mapping[str, Any]], session=None) -> List[PricedLine]:
    """Price client cart lines ({product_id, quantity}) at the current catalog price."""
    if not cart_lines:
        raise ValidationError("cart lines are required")
    quantities = [catalog.check_quantity(line.get("quantity")) for line in cart_lines]
    products = catalog.get_products([line.get("product_id") for line in cart_lines], session=session)
    lines = []
    for line, quantity in zip(cart_lines, quantities):
        product = products.get(line.get("product_id"))
        if product is None:
            raise NotFoundError("Product", line.get("product_id"))
        lines.append(PricedLine(product=product.id, seller=product.seller or "", quantity=quantity,
                                price=product.price, category=product.category))
    return lines


# ---------------------- Quotes ----------------------

def apply_coupon(user_id: str, code: str, cart_lines: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    lines = lines_from_cart(cart_lines)
    coupon = load_coupons([code])[0]
    quote = quote_coupons([coupon], lines, user_id)
    applied = quote.coupons[0]
    return {
        "code": coupon.code,
        "coupon_id": coupon.id,
        "discount": applied.discount,
        "breakdown": applied.breakdown(),
        "applicable_cart_value": applied.applicable_cart_value,
        "applicable_items": applied.applicable_items,
        "final_total": money(quote.cart_total - quote.total_discount),
    }


def apply_coupons(user_id: str, codes: Sequence[str], cart_lines: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    if not codes:
        raise ValidationError("codes must be a non-empty list")
    lines = lines_from_cart(cart_lines)
    quote = quote_coupons(load_coupons(codes), lines, user_id)
    return {
        "total_discount": quote.total_discount,
        "applied": [
            {"code": q.coupon.code, "coupon_id": q.coupon.id, "discount": q.discount, "breakdown": q.breakdown()}
            for q in quote.coupons
        ],
        "final_total": money(quote.cart_total - quote.total_discount),
    }


def _release(coupon_id: str, user_id: str, session) -> bool:
    doc = database.get_db()["coupon"].find_one({"_id": coupon_id}, session=session)
    if not doc:
        logger.warning("Cannot restore usage of missing coupon %s for user %s", coupon_id, user_id)
        return False
    return ledger.release_coupon_usage(Coupon.model_validate(doc), user_id, session=session)


def restore_coupon_usage(coupon_id: str, user_id: str, session=None) -> bool:
    """
    Give back one use of a coupon, e.g. after a cancellation or refund.

    Returns False when the coupon is gone or the user has no recorded use, so a
    deleted coupon never blocks the cancellation or refund that calls this.
    """
    if session is not None:
        return _release(coupon_id, user_id, session)
    with database.transaction() as own_session:
        return _release(coupon_id, user_id, own_session)


# ---------------------- Administration ----------------------

# usage counters belong to the ledger; edits never touch them
PROTECTED_FIELDS = {"id", "used_count", "user_usage", "created_by", "created_at", "updated_at"}


def _validated(data: Mapping[str, Any]) -> Coupon:
    try:
        coupon = Coupon.model_validate(data)
    except SchemaError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
        raise ValidationError(f"Invalid coupon fields: {fields}")
    if DiscountType(coupon.discount_type) == DiscountType.percentage and coupon.discount_value > 100:
        raise ValidationError("Percentage discount cannot exceed 100")
    return coupon


def _owned(coupon_id: str, seller_id: Optional[str]) -> Coupon:
    coupon = get_coupon(coupon_id)
    if seller_id is not None and seller_id not in coupon.sellers:
        raise NotFoundError("Coupon", coupon_id, message="Coupon not found or not yours")
    return coupon


def create_coupon(payload: Mapping[str, Any], created_by=None) -> Coupon:
    data = dict(payload)
    data["code"] = normalize_code(data.get("code"))
    data.pop("used_count", None)
    data.pop("user_usage", None)
    data["created_by"] = created_by or AdminCreator()
    coupon = _validated(data)

    coll = database.get_db()["coupon"]
    if coll.find_one({"code": coupon.code}):
        raise ConflictError(f"Coupon code {coupon.code} already exists")
    try:
        database.create_document("coupon", coupon)
    except DuplicateKeyError:
        raise ConflictError(f"Coupon code {coupon.code} already exists")
    logger.info("Coupon %s created by %s", coupon.code, coupon.created_by.kind)
    return coupon


def create_seller_coupon(seller_id: str, payload: Mapping[str, Any]) -> Coupon:
    if catalog.get_seller(seller_id) is None:
        raise NotFoundError("Seller profile", seller_id)
    data = dict(payload)
    data["sellers"] = [seller_id]
    if not data.get("applicable_products"):
        own = list(database.get_db()["product"].find({"seller": seller_id}, {"_id": 1, "category": 1}))
        data["applicable_products"] = [p["_id"] for p in own]
        data["applicable_categories"] = list(dict.fromkeys(p["category"] for p in own if p.get("category")))
    return create_coupon(data, created_by=SellerCreator(id=seller_id))


def update_coupon(coupon_id: str, changes: Mapping[str, Any], seller_id: Optional[str] = None) -> Coupon:
    """Edit coupon terms. A seller may only edit its own coupons and cannot rebind them to other sellers."""
    coupon = _owned(coupon_id, seller_id)
    data = {k: v for k, v in changes.items() if k in Coupon.model_fields and k not in PROTECTED_FIELDS}
    if seller_id is not None:
        data.pop("sellers", None)
    if "code" in data:
        data["code"] = normalize_code(data["code"])
    if not data:
        return coupon

    updated = _validated({**coupon.model_dump(), **data})
    coll = database.get_db()["coupon"]
    if updated.code != coupon.code and coll.find_one({"code": updated.code}):
        raise ConflictError(f"Coupon code {updated.code} already exists")

    dumped = updated.model_dump()
    fields = {k: dumped[k] for k in data}
    fields["updated_at"] = database.now_utc()
    try:
        coll.update_one({"_id": coupon.id}, {"$set": fields})
    except DuplicateKeyError:
        raise ConflictError(f"Coupon code {updated.code} already exists")
    logger.info("Coupon %s updated (%s)", updated.code, ", ".join(sorted(data)))
    return updated


def delete_coupon(coupon_id: str, seller_id: Optional[str] = None) -> Coupon:
    coupon = _owned(coupon_id, seller_id)
    database.get_db()["coupon"].delete_one({"_id": coupon.id})
    logger.info("Coupon %s deleted", coupon.code)
    return coupon


def toggle_coupon(coupon_id: str, seller_id: Optional[str] = None) -> Coupon:
    coupon = _owned(coupon_id, seller_id)
    coupon.is_active = not coupon.is_active
    database.get_db()["coupon"].update_one(
        {"_id": coupon.id}, {"$set": {"is_active": coupon.is_active, "updated_at": database.now_utc()}}
    )
    return coupon


def list_coupons(seller_id: Optional[str] = None) -> List[Coupon]:
    filt = {"sellers": seller_id} if seller_id else {}
    return [Coupon.model_validate(d) for d in database.get_documents("coupon", filt)]


def available_coupons(seller_id: Optional[str] = None, product_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> List[Coupon]:
    """Active, unexpired coupons with uses left, optionally narrowed to a seller or a product."""
    now = now or database.now_utc()
    found = []
    for doc in database.get_documents("coupon", {"is_active": True}):
        coupon = Coupon.model_validate(doc)
        expiry = database.as_utc(coupon.expiry_date)
        if (expiry is not None and expiry < now) or coupon.used_count >= coupon.max_usage:
            continue
        if seller_id and coupon.sellers and seller_id not in coupon.sellers:
            continue
        found.append(coupon)

    if product_id:
        product = catalog.get_product(product_id)
        found = [
            c for c in found
            if (not c.applicable_products or product.id in c.applicable_products)
            and (not c.applicable_categories or product.category in c.applicable_categories)
            and (not c.sellers or product.seller in c.sellers)
        ]
    return found
