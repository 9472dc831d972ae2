"""
Post-placement order lifecycle: fulfilment, cancellation, delivery, returns,
disputes and refunds.

Each operation is its own transaction scoped to one Order. Item state lives on
the Order; SubOrders mirror it and are re-synced on every save.
"""
import logging
from typing import Dict, List, Optional, Set

import catalog
import coupons
import database
import ledger
import orders
import suborders
from errors import ConflictError, NotFoundError, ValidationError
from pricing import money
from schemas import (
    CollectionStatus,
    Dispute,
    DisputeStatus,
    EscrowStatus,
    ItemStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PayoutStatus,
    ReturnRequest,
    ReturnStatus,
    SubOrder,
)

logger = logging.getLogger(__name__)

ITEM_TRANSITIONS: Dict[str, Set[str]] = {
    ItemStatus.pending.value: {ItemStatus.processing.value, ItemStatus.shipped.value},
    ItemStatus.processing.value: {ItemStatus.shipped.value},
    ItemStatus.shipped.value: {ItemStatus.delivered.value},
}

RETURN_TRANSITIONS: Dict[str, Set[str]] = {
    ReturnStatus.requested.value: {ReturnStatus.approved.value, ReturnStatus.rejected.value},
    ReturnStatus.approved.value: {ReturnStatus.received.value, ReturnStatus.rejected.value},
    ReturnStatus.received.value: {ReturnStatus.refunded.value},
}

ACTIVE_STATUSES = {ItemStatus.processing.value, ItemStatus.shipped.value, ItemStatus.delivered.value}
CLOSED_ORDER_STATUSES = {OrderStatus.cancelled.value, OrderStatus.refunded.value}


# ---------------------- Rollup ----------------------

def rollup_status(statuses: List[str], current: str) -> str:
    """Order-level status derived from item statuses."""
    if statuses and all(s == ItemStatus.delivered for s in statuses):
        return OrderStatus.completed.value
    if statuses and all(s == ItemStatus.cancelled for s in statuses):
        return OrderStatus.cancelled.value
    if any(s in ACTIVE_STATUSES for s in statuses):
        return OrderStatus.processing.value
    return current


def _mark_completed(order: Order, subs: List[SubOrder]) -> None:
    for item in order.items:
        if item.escrow_status == EscrowStatus.held:
            item.escrow_status = EscrowStatus.released.value
        item.payout_status = PayoutStatus.eligible.value
    for sub in subs:
        if sub.escrow_status == EscrowStatus.held:
            sub.escrow_status = EscrowStatus.released.value
        sub.payout_status = PayoutStatus.eligible.value


def _apply_rollup(order: Order, subs: List[SubOrder]) -> None:
    before = order.order_status
    order.order_status = rollup_status([i.status for i in order.items], before)
    for sub in subs:
        sub.sub_order_status = rollup_status([order.find_item(i.order_item_id).status for i in sub.items],
                                             sub.sub_order_status)
    if order.order_status != before:
        logger.info("Order %s moved %s -> %s", order.id, before, order.order_status)
        if order.order_status == OrderStatus.completed:
            _mark_completed(order, subs)


# ---------------------- Helpers ----------------------

def _load(order_id: str, session, user_id: Optional[str] = None):
    order = orders.load_order(order_id, session=session, user_id=user_id)
    return order, suborders.load_sub_orders(order.id, session=session)


def _save(order: Order, subs: List[SubOrder], session) -> None:
    suborders.sync_items(order, subs)
    orders.save_order(order, session=session)
    for sub in subs:
        suborders.save_sub_order(sub, session=session)


def _item(order: Order, item_id: str, seller_id: Optional[str] = None) -> OrderItem:
    item = order.find_item(item_id)
    if item is None or (seller_id is not None and item.seller != seller_id):
        raise NotFoundError("Order item", item_id)
    return item


def _check_open(order: Order) -> None:
    if order.order_status in CLOSED_ORDER_STATUSES:
        raise ConflictError(f"Order is {order.order_status}")


def _restore_coupons(order: Order, session) -> None:
    for coupon_id in order.applied_coupons:
        if not coupons.restore_coupon_usage(coupon_id, order.user, session=session):
            logger.info("No usage of coupon %s restored for order %s", coupon_id, order.id)


def _cancel_items(order: Order, session) -> None:
    for item in order.items:
        if item.status != ItemStatus.cancelled:
            ledger.restock(item.product, item.quantity, session=session)
            item.status = ItemStatus.cancelled.value
            item.payment_collection_status = CollectionStatus.cancelled.value
            if item.escrow_status == EscrowStatus.held:
                item.escrow_status = EscrowStatus.refunded.value


# ---------------------- Seller fulfilment ----------------------

def update_item_status(order_id: str, item_id: str, status: str, seller_id: Optional[str] = None) -> Order:
    try:
        target = ItemStatus(status).value
    except ValueError:
        raise ValidationError(f"Invalid item status: {status!r}")

    with database.transaction() as session:
        order, subs = _load(order_id, session)
        _check_open(order)
        item = _item(order, item_id, seller_id)
        if target not in ITEM_TRANSITIONS.get(item.status, set()):
            raise ConflictError(f"Cannot move item from {item.status} to {target}")
        item.status = target
        _apply_rollup(order, subs)
        _save(order, subs, session)
    return order


def add_tracking(order_id: str, seller_id: str, tracking_number: Optional[str] = None) -> Order:
    """Ship every pending or processing item the seller has in the order."""
    with database.transaction() as session:
        order, subs = _load(order_id, session)
        _check_open(order)
        shippable = [i for i in order.items if i.seller == seller_id
                     and i.status in (ItemStatus.pending, ItemStatus.processing)]
        if not shippable:
            raise ConflictError("No pending items to ship for this seller")
        for item in shippable:
            item.status = ItemStatus.shipped.value
            if tracking_number:
                item.tracking_number = tracking_number
        order.tracking_numbers = list(dict.fromkeys(i.tracking_number for i in order.items if i.tracking_number))
        _apply_rollup(order, subs)
        _save(order, subs, session)
    return order


def confirm_payment_collection(order_id: str, item_id: str, seller_id: str) -> Order:
    with database.transaction() as session:
        order, subs = _load(order_id, session)
        if order.payment_method != PaymentMethod.cod:
            raise ConflictError("Payment collection applies to cash on delivery orders only")
        item = _item(order, item_id, seller_id)
        if item.status != ItemStatus.delivered:
            raise ConflictError("Payment can only be collected for delivered items")
        if item.payment_collection_status != CollectionStatus.pending:
            raise ConflictError(f"Payment already {item.payment_collection_status}")
        item.payment_collection_status = CollectionStatus.collected.value
        if all(i.payment_collection_status in (CollectionStatus.collected, CollectionStatus.cancelled)
               for i in order.items):
            order.payment_status = PaymentStatus.paid.value
        _save(order, subs, session)
    return order


# ---------------------- Cancellation ----------------------

def cancel_order(order_id: str, user_id: str, reason: Optional[str] = None) -> Order:
    """Buyer cancels a whole order while nothing in it has moved past pending."""
    with database.transaction() as session:
        order, subs = _load(order_id, session, user_id=user_id)
        if order.order_status != OrderStatus.pending or any(
                i.status not in (ItemStatus.pending, ItemStatus.cancelled) for i in order.items):
            raise ConflictError("Only pending orders can be cancelled")
        _cancel_items(order, session)
        order.order_status = OrderStatus.cancelled.value
        order.cancellation_reason = reason or "Cancelled by buyer"
        for sub in subs:
            sub.sub_order_status = OrderStatus.cancelled.value
        _restore_coupons(order, session)
        _save(order, subs, session)
    logger.info("Order %s cancelled by buyer", order.id)
    return order


def cancel_item(order_id: str, item_id: str, user_id: Optional[str] = None, seller_id: Optional[str] = None,
                reason: Optional[str] = None) -> Order:
    """Cancel one pending item, as its buyer (user_id) or its seller (seller_id)."""
    if not user_id and not seller_id:
        raise ValidationError("A buyer or seller is required to cancel an item")

    with database.transaction() as session:
        order, subs = _load(order_id, session, user_id=user_id or None)
        item = _item(order, item_id, seller_id)
        if item.status != ItemStatus.pending:
            raise ConflictError("Only pending items can be cancelled")
        ledger.restock(item.product, item.quantity, session=session)
        item.status = ItemStatus.cancelled.value
        item.payment_collection_status = CollectionStatus.cancelled.value
        if item.escrow_status == EscrowStatus.held:
            item.escrow_status = EscrowStatus.refunded.value

        _apply_rollup(order, subs)
        if order.order_status == OrderStatus.cancelled:
            order.cancellation_reason = reason or ("Cancelled by seller" if seller_id else "Cancelled by buyer")
            _restore_coupons(order, session)
        _save(order, subs, session)
    return order


# ---------------------- Delivery ----------------------

def confirm_delivery(order_id: str, user_id: str) -> Order:
    with database.transaction() as session:
        order, subs = _load(order_id, session, user_id=user_id)
        if order.order_status != OrderStatus.processing:
            raise ConflictError("Only processing orders can be confirmed as delivered")
        if not all(i.status == ItemStatus.delivered for i in order.items):
            raise ConflictError("Not all items are delivered yet")
        order.order_status = OrderStatus.completed.value
        for sub in subs:
            sub.sub_order_status = OrderStatus.completed.value
        _mark_completed(order, subs)
        _save(order, subs, session)
    logger.info("Order %s delivery confirmed", order.id)
    return order


# ---------------------- Returns ----------------------

def request_return(order_id: str, item_id: str, user_id: str, quantity: int, reason: str) -> ReturnRequest:
    catalog.check_quantity(quantity)
    if not reason:
        raise ValidationError("Reason is required")

    with database.transaction() as session:
        order, subs = _load(order_id, session, user_id=user_id)
        item = _item(order, item_id)
        if item.status != ItemStatus.delivered:
            raise ConflictError("Only delivered items can be returned")
        if quantity > item.quantity:
            raise ValidationError(f"Cannot return {quantity} of {item.quantity} units")

        sub = next((s for s in subs if s.item_for(item.id) is not None), None)
        request = ReturnRequest(
            order=order.id,
            sub_order=sub.id if sub else None,
            item_id=item.id,
            buyer=user_id,
            seller=item.seller,
            quantity=quantity,
            reason=reason,
            refund_amount=money(item.subtotal / item.quantity * quantity),
        )
        database.create_document("returnrequest", request, session=session)
        item.status = ItemStatus.return_requested.value
        _save(order, subs, session)
    logger.info("Return %s requested on order %s (%d unit(s))", request.id, order.id, quantity)
    return request


def update_return_status(return_id: str, status: str, admin_note: Optional[str] = None) -> ReturnRequest:
    try:
        target = ReturnStatus(status).value
    except ValueError:
        raise ValidationError(f"Invalid return status: {status!r}")

    with database.transaction() as session:
        doc = database.get_db()["returnrequest"].find_one({"_id": return_id}, session=session)
        if not doc:
            raise NotFoundError("Return request", return_id)
        request = ReturnRequest.model_validate(doc)
        order, subs = _load(request.order, session)
        item = _item(order, request.item_id)
        if target not in RETURN_TRANSITIONS.get(request.status, set()):
            raise ConflictError(f"Cannot move return from {request.status} to {target}")
        # a cancelled or refunded order has already restocked and refunded its items
        if target != ReturnStatus.rejected and (order.order_status in CLOSED_ORDER_STATUSES
                                                or item.status != ItemStatus.return_requested):
            raise ConflictError(f"Return cannot proceed: order is {order.order_status}, item is {item.status}")

        if target == ReturnStatus.received:
            ledger.restock(item.product, request.quantity, session=session)
        elif target == ReturnStatus.refunded:
            item.status = ItemStatus.returned.value
            item.payment_collection_status = CollectionStatus.refunded.value
            if item.escrow_status == EscrowStatus.held:
                item.escrow_status = EscrowStatus.refunded.value
        elif target == ReturnStatus.rejected and item.status == ItemStatus.return_requested:
            item.status = ItemStatus.delivered.value

        request.status = target
        if admin_note:
            request.admin_note = admin_note
        database.save_document("returnrequest", request, session=session)
        _save(order, subs, session)
    logger.info("Return %s is now %s", request.id, target)
    return request


# ---------------------- Disputes ----------------------

def open_dispute(order_id: str, user_id: str, reason: str, item_id: Optional[str] = None) -> Dispute:
    if not reason:
        raise ValidationError("Reason is required")

    with database.transaction() as session:
        order, subs = _load(order_id, session, user_id=user_id)
        if order.order_status in (OrderStatus.pending, OrderStatus.cancelled):
            raise ConflictError(f"Cannot open a dispute on a {order.order_status} order")

        against, sub_id = None, None
        if item_id:
            item = _item(order, item_id)
            against = item.seller
            existing = database.get_db()["dispute"].find_one(
                {"order": order.id, "item_id": item_id, "opened_by": user_id}, session=session
            )
            if existing:
                raise ConflictError("You already opened a dispute for this product.")
            sub_id = next((s.id for s in subs if s.seller == against), None)

        dispute = Dispute(order=order.id, sub_order=sub_id, item_id=item_id, opened_by=user_id,
                          against_seller=against, reason=reason)
        database.create_document("dispute", dispute, session=session)
    logger.info("Dispute %s opened on order %s", dispute.id, order.id)
    return dispute


def resolve_dispute(dispute_id: str, outcome: str, resolution: Optional[str] = None) -> Dispute:
    allowed = (DisputeStatus.resolved_buyer.value, DisputeStatus.resolved_seller.value, DisputeStatus.cancelled.value)
    if outcome not in allowed:
        raise ValidationError(f"Invalid dispute outcome: {outcome!r}")

    with database.transaction() as session:
        doc = database.get_db()["dispute"].find_one({"_id": dispute_id}, session=session)
        if not doc:
            raise NotFoundError("Dispute", dispute_id)
        dispute = Dispute.model_validate(doc)
        if dispute.status not in (DisputeStatus.open, DisputeStatus.in_review):
            raise ConflictError(f"Dispute already {dispute.status}")

        dispute.status = outcome
        dispute.resolution = resolution or ""
        database.save_document("dispute", dispute, session=session)

        if outcome == DisputeStatus.resolved_buyer and dispute.item_id:
            order, subs = _load(dispute.order, session)
            item = _item(order, dispute.item_id)
            if item.status in (ItemStatus.delivered, ItemStatus.shipped):
                item.status = ItemStatus.returned.value
                item.payment_collection_status = CollectionStatus.refunded.value
                if item.escrow_status == EscrowStatus.held:
                    item.escrow_status = EscrowStatus.refunded.value
            _save(order, subs, session)
    logger.info("Dispute %s resolved as %s", dispute.id, outcome)
    return dispute


# ---------------------- Admin ----------------------

def refund_order(order_id: str, reason: Optional[str] = None) -> Order:
    with database.transaction() as session:
        order, subs = _load(order_id, session)
        if order.order_status not in (OrderStatus.pending, OrderStatus.processing, OrderStatus.completed):
            raise ConflictError("Refund not allowed in current order status")

        refunded = 0.0
        for item in order.items:
            if item.status in (ItemStatus.cancelled, ItemStatus.returned):
                continue
            if item.status in (ItemStatus.pending, ItemStatus.processing, ItemStatus.shipped):
                ledger.restock(item.product, item.quantity, session=session)
            item.status = ItemStatus.refunded.value
            item.payment_collection_status = CollectionStatus.refunded.value
            item.escrow_status = (EscrowStatus.not_applicable.value
                                  if item.escrow_status == EscrowStatus.not_applicable
                                  else EscrowStatus.refunded.value)
            refunded += item.subtotal

        order.order_status = OrderStatus.refunded.value
        order.payment_status = PaymentStatus.refunded.value
        order.refund_reason = reason or "Refunded by admin"
        for sub in subs:
            sub.sub_order_status = OrderStatus.refunded.value
            sub.payout_status = PayoutStatus.not_eligible.value
        _restore_coupons(order, session)
        _save(order, subs, session)
        if refunded > 0:
            ledger.credit_wallet(order.user, refunded, reference=order.id, session=session)
    logger.info("Order %s refunded (%.2f)", order.id, refunded)
    return order


def update_order_status(order_id: str, status: str, reason: Optional[str] = None) -> Order:
    """Admin override of the order-level status."""
    allowed = (OrderStatus.pending.value, OrderStatus.processing.value,
               OrderStatus.completed.value, OrderStatus.cancelled.value)
    if status not in allowed:
        raise ValidationError("Invalid order status")

    with database.transaction() as session:
        order, subs = _load(order_id, session)
        _check_open(order)
        if status == OrderStatus.cancelled:
            _cancel_items(order, session)
            order.cancellation_reason = reason or "Cancelled by admin"
            for sub in subs:
                sub.sub_order_status = OrderStatus.cancelled.value
            _restore_coupons(order, session)
        elif status == OrderStatus.completed:
            done = (ItemStatus.delivered, ItemStatus.returned, ItemStatus.cancelled)
            if not all(i.status in done for i in order.items):
                raise ConflictError("Not all items are delivered/returned/cancelled")
            for sub in subs:
                sub.sub_order_status = OrderStatus.completed.value
            _mark_completed(order, subs)
        order.order_status = status
        _save(order, subs, session)
    logger.info("Order %s set to %s by admin", order.id, status)
    return order
