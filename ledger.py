"""
Stock, coupon-usage and wallet writes.

Every write is a single conditional update so concurrent checkouts cannot
oversell or overuse. Callers own the transaction and pass its session.
"""
import logging
from typing import Optional

import database
from errors import ConflictError, TransactionAbortError
from pricing import money
from schemas import Coupon, CouponUsage, WalletTransaction

logger = logging.getLogger(__name__)


# ---------------------- Inventory ----------------------

def decrement_stock(product_id: str, quantity: int, session=None, name: Optional[str] = None) -> None:
    # the filter re-checks stock at write time, not just at the earlier read
    result = database.get_db()["product"].update_one(
        {"_id": product_id, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}},
        session=session,
    )
    if result.matched_count != 1:
        raise ConflictError(f"Insufficient stock for {name or product_id}")


def restock(product_id: str, quantity: int, session=None) -> None:
    database.get_db()["product"].update_one(
        {"_id": product_id}, {"$inc": {"quantity": quantity}}, session=session
    )
    logger.info("Restocked product %s by %d", product_id, quantity)


# ---------------------- Coupons ----------------------

def record_coupon_usage(coupon: Coupon, user_id: str, session=None) -> None:
    """Count one use of `coupon` by `user_id`. Compare-and-swap on used_count."""
    if coupon.used_count >= coupon.max_usage:
        raise ConflictError(f"Coupon {coupon.code} usage limit reached")
    if coupon.usage_by(user_id) >= coupon.max_usage_per_user:
        raise ConflictError(f"You have already used coupon {coupon.code} the maximum allowed times")

    usage = CouponUsage(user=user_id, used_at=database.now_utc())
    result = database.get_db()["coupon"].update_one(
        {"_id": coupon.id, "used_count": coupon.used_count},
        {"$inc": {"used_count": 1}, "$push": {"user_usage": usage.model_dump()}},
        session=session,
    )
    if result.matched_count != 1:
        raise TransactionAbortError(f"Coupon {coupon.code} was used concurrently, please retry")

    coupon.used_count += 1
    coupon.user_usage.append(usage)
    logger.info("Recorded usage of coupon %s by user %s (%d/%d)", coupon.code, user_id,
                coupon.used_count, coupon.max_usage)


def release_coupon_usage(coupon: Coupon, user_id: str, session=None) -> bool:
    """Undo the user's most recent use. Returns False when the user has none."""
    index = None
    for i, usage in enumerate(coupon.user_usage):
        if usage.user == user_id:
            index = i
    if index is None:
        return False

    remaining = coupon.user_usage[:index] + coupon.user_usage[index + 1:]
    used_count = max(coupon.used_count - 1, 0)
    result = database.get_db()["coupon"].update_one(
        {"_id": coupon.id, "used_count": coupon.used_count},
        {"$set": {"used_count": used_count, "user_usage": [u.model_dump() for u in remaining]}},
        session=session,
    )
    if result.matched_count != 1:
        raise TransactionAbortError(f"Coupon {coupon.code} changed concurrently, please retry")

    coupon.used_count = used_count
    coupon.user_usage = remaining
    logger.info("Restored usage of coupon %s for user %s", coupon.code, user_id)
    return True


# ---------------------- Buyer wallet ----------------------

def credit_wallet(user_id: str, amount: float, reference: str, session=None) -> bool:
    amount = money(amount)
    txn = WalletTransaction(type="refund", amount=amount, reference=reference, created_at=database.now_utc())
    result = database.get_db()["user"].update_one(
        {"_id": user_id},
        {"$inc": {"wallet.balance": amount}, "$push": {"wallet.transactions": txn.model_dump()}},
        session=session,
    )
    if result.matched_count != 1:
        logger.warning("No buyer record %s to credit %.2f for %s", user_id, amount, reference)
        return False
    logger.info("Credited %.2f to wallet of user %s for %s", amount, user_id, reference)
    return True
