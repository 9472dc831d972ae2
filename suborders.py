"""Splits an order into one SubOrder per seller and keeps the two in step."""
from collections import OrderedDict
from typing import Dict, List

import database
from schemas import Order, OrderItem, SubOrder, SubOrderItem


def _mirror(item: OrderItem) -> SubOrderItem:
    return SubOrderItem(
        order_item_id=item.id,
        product=item.product,
        quantity=item.quantity,
        price=item.price,
        discount=item.discount,
        subtotal=item.subtotal,
        tax_amount=item.tax_amount,
        shipping_fee=item.shipping_fee,
        status=item.status,
        tracking_number=item.tracking_number,
    )


def split_order(order: Order, commission_rates: Dict[str, float]) -> List[SubOrder]:
    """Group the order's items by seller, in first-seen order."""
    by_seller: "OrderedDict[str, List[OrderItem]]" = OrderedDict()
    for item in order.items:
        by_seller.setdefault(item.seller, []).append(item)

    sub_orders = []
    for seller_id, items in by_seller.items():
        sub = SubOrder(
            order=order.id,
            seller=seller_id,
            items=[_mirror(i) for i in items],
            commission_rate=commission_rates.get(seller_id, 0),
            escrow_status=items[0].escrow_status,
        )
        sub_orders.append(sub.refresh_totals())
    return sub_orders


def insert_sub_orders(sub_orders: List[SubOrder], session=None) -> None:
    for sub in sub_orders:
        database.create_document("suborder", sub.refresh_totals(), session=session)


def load_sub_orders(order_id: str, session=None) -> List[SubOrder]:
    docs = database.get_documents("suborder", {"order": order_id}, session=session)
    return [SubOrder.model_validate(d) for d in docs]


def save_sub_order(sub: SubOrder, session=None) -> None:
    database.save_document("suborder", sub.refresh_totals(), session=session)


def sync_items(order: Order, subs: List[SubOrder]) -> None:
    """Copy status and tracking from the order's items onto their mirrored entries."""
    items = {i.id: i for i in order.items}
    for sub in subs:
        for mirrored in sub.items:
            source = items.get(mirrored.order_item_id)
            if source is not None:
                mirrored.status = source.status
                mirrored.tracking_number = source.tracking_number
