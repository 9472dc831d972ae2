"""Tests for order placement: cart checkout, buy now, sub-orders and the ledger writes."""

import threading
from datetime import timedelta

import pytest

import database
import ledger
import lifecycle
import orders
from conftest import ADDRESS, coupon_doc, stock_of
from errors import ConflictError, NotFoundError, TransactionAbortError, ValidationError
from pricing import flat_rate_tax, flat_shipping, weight_shipping


def order_docs():
    return list(database.get_db()["order"].find())


def sub_order_docs():
    return list(database.get_db()["suborder"].find())


def cart_doc(user_id):
    return database.get_db()["cart"].find_one({"user": user_id})


class TestCreateOrderFromCart:
    def test_single_item_with_percentage_coupon(self, make_product, make_coupon, fill_cart):
        product = make_product(price=100, quantity=10)
        coupon = make_coupon()
        fill_cart("u1", [(product, 2)])

        order = orders.create_order_from_cart("u1", ADDRESS, coupon_codes=["SAVE10"])

        item = order.items[0]
        assert item.discount == 20
        assert item.subtotal == 180
        assert item.status == "pending"
        assert item.payment_collection_status == "pending"
        assert item.applied_coupons == [coupon.id]
        assert order.applied_coupons == [coupon.id]
        assert order.total_amount == 180
        assert stock_of(product) == 8

        doc = coupon_doc(coupon)
        assert doc["used_count"] == 1
        assert [u["user"] for u in doc["user_usage"]] == ["u1"]

        cart = cart_doc("u1")
        assert cart["items"] == []
        assert cart["discount"] == 0

    def test_max_discount_clamps_subtotal(self, make_product, make_coupon, fill_cart):
        product = make_product(price=100)
        make_coupon(max_discount=15)
        fill_cart("u1", [(product, 2)])
        order = orders.create_order_from_cart("u1", ADDRESS, coupon_codes=["SAVE10"])
        assert order.items[0].discount == 15
        assert order.items[0].subtotal == 185

    def test_totals_and_sub_orders(self, make_seller, make_product, make_coupon, fill_cart):
        first = make_product(name="Shoe", price=100)
        second = make_product(name="Hat", price=50, owner=make_seller(store_name="Hats", commission_rate=0.2))
        make_coupon()
        fill_cart("u1", [(first, 2), (second, 1)])

        order = orders.create_order_from_cart("u1", ADDRESS, coupon_codes=["SAVE10"],
                                              tax_policy=flat_rate_tax(18), shipping_policy=flat_shipping(50))

        assert [i.discount for i in order.items] == [20, 5]
        assert [i.tax_amount for i in order.items] == [32.4, 8.1]
        assert [i.shipping_fee for i in order.items] == [100, 50]
        assert order.merchandise_subtotal == 250
        assert order.discounts == 25
        assert order.taxes == 40.5
        assert order.shipping_fee == 150
        assert order.total_amount == 415.5

        doc = database.get_db()["order"].find_one({"_id": order.id})
        assert doc["total_amount"] == pytest.approx(
            doc["merchandise_subtotal"] + doc["taxes"] + doc["shipping_fee"] - doc["discounts"])

        subs = {s["seller"]: s for s in sub_order_docs()}
        assert len(subs) == 2
        shoe_sub = subs[first.seller]
        assert shoe_sub["order"] == order.id
        assert shoe_sub["total_amount"] == 312.4
        assert shoe_sub["commission_amount"] == 31.24
        assert shoe_sub["seller_earning"] == 281.16
        hat_sub = subs[second.seller]
        assert hat_sub["commission_rate"] == 0.2
        assert hat_sub["total_amount"] == 103.1
        assert hat_sub["seller_earning"] == pytest.approx(103.1 - 20.62)

    def test_sub_order_items_mirror_order_items(self, make_product, fill_cart):
        product = make_product()
        fill_cart("u1", [(product, 1)])
        order = orders.create_order_from_cart("u1", ADDRESS)
        mirrored = sub_order_docs()[0]["items"][0]
        assert mirrored["order_item_id"] == order.items[0].id
        assert mirrored["tracking_number"] == order.items[0].tracking_number
        assert order.tracking_numbers == [order.items[0].tracking_number]

    def test_cart_coupon_is_used_when_no_codes_given(self, make_product, make_coupon, fill_cart):
        product = make_product(price=100)
        coupon = make_coupon()
        fill_cart("u1", [(product, 2)], coupon=coupon)
        order = orders.create_order_from_cart("u1", ADDRESS)
        assert order.discounts == 20

    def test_item_address_override(self, seller, make_product, fill_cart):
        product = make_product()
        fill_cart("u1", [(product, 1)])
        other = dict(ADDRESS, city="Mysuru")
        order = orders.create_order_from_cart("u1", ADDRESS, item_addresses=[{"seller": seller.id, "address": other}])
        assert order.items[0].shipping_address.city == "Mysuru"
        assert order.shipping_address.city == "Bengaluru"

    def test_tax_exempt_items_and_product_tax_rate(self, make_product, fill_cart):
        book = make_product(name="Book", price=100, is_taxable=False)
        gold = make_product(name="Gold", price=200, tax_rate_percent=3)
        shirt = make_product(name="Shirt", price=50)
        fill_cart("u1", [(book, 1), (gold, 1), (shirt, 2)])

        order = orders.create_order_from_cart("u1", ADDRESS, tax_policy=flat_rate_tax(18))

        taxes = {i.product: i.tax_amount for i in order.items}
        assert taxes == {book.id: 0, gold.id: 6, shirt.id: 18}
        assert order.taxes == 24
        assert order.total_amount == 424

    def test_weight_based_shipping(self, make_product, fill_cart):
        heavy = make_product(name="Dumbbell", price=100, weight=2.5)
        light = make_product(name="Sticker", price=10, weight=0.01)
        unweighed = make_product(name="Voucher", price=10)
        fill_cart("u1", [(heavy, 2), (light, 1), (unweighed, 1)])

        order = orders.create_order_from_cart("u1", ADDRESS, shipping_policy=weight_shipping(per_kg=20, minimum=30))

        fees = {i.product: i.shipping_fee for i in order.items}
        assert fees == {heavy.id: 100, light.id: 30, unweighed.id: 30}
        assert order.shipping_fee == 160


class TestPlacementFailures:
    def test_incomplete_address(self, make_product, fill_cart):
        product = make_product()
        fill_cart("u1", [(product, 1)])
        with pytest.raises(ValidationError, match="Complete shipping address is required"):
            orders.create_order_from_cart("u1", dict(ADDRESS, zip=""))
        assert order_docs() == []
        assert stock_of(product) == 10

    def test_empty_cart(self):
        with pytest.raises(NotFoundError, match="Cart is empty"):
            orders.create_order_from_cart("u1", ADDRESS)

    def test_unverified_seller(self, make_seller, make_product, fill_cart):
        product = make_product(owner=make_seller(is_verified=False))
        fill_cart("u1", [(product, 1)])
        with pytest.raises(ConflictError, match="not verified"):
            orders.create_order_from_cart("u1", ADDRESS)

    def test_unapproved_product(self, make_product, fill_cart):
        product = make_product(status="pending")
        fill_cart("u1", [(product, 1)])
        with pytest.raises(ConflictError, match="not available"):
            orders.create_order_from_cart("u1", ADDRESS)

    def test_insufficient_stock(self, make_product, fill_cart):
        product = make_product(quantity=1)
        fill_cart("u1", [(product, 2)])
        with pytest.raises(ConflictError, match="Insufficient stock"):
            orders.create_order_from_cart("u1", ADDRESS)
        assert stock_of(product) == 1

    def test_repeated_product_lines_are_checked_together(self, make_product, fill_cart):
        product = make_product(quantity=3)
        fill_cart("u1", [(product, 2), (product, 2)])
        with pytest.raises(ConflictError, match="Insufficient stock"):
            orders.create_order_from_cart("u1", ADDRESS)
        assert stock_of(product) == 3

    def test_vanished_product(self, make_product, fill_cart):
        product = make_product()
        fill_cart("u1", [(product, 1)])
        database.get_db()["product"].delete_one({"_id": product.id})
        with pytest.raises(NotFoundError, match="no longer exists"):
            orders.create_order_from_cart("u1", ADDRESS)

    def test_invalid_coupon_leaves_cart_alone(self, make_product, make_coupon, fill_cart):
        product = make_product()
        make_coupon(min_cart_value=1000)
        fill_cart("u1", [(product, 1)])
        with pytest.raises(ConflictError, match="Minimum cart value"):
            orders.create_order_from_cart("u1", ADDRESS, coupon_codes=["SAVE10"])
        assert len(cart_doc("u1")["items"]) == 1
        assert stock_of(product) == 10
        assert order_docs() == []

    def test_unknown_payment_method(self, make_product, fill_cart):
        product = make_product()
        fill_cart("u1", [(product, 1)])
        with pytest.raises(ValidationError):
            orders.create_order_from_cart("u1", ADDRESS, payment_method="BARTER")


class TestAtomicity:
    def test_write_time_stock_failure_rolls_back_everything(self, monkeypatch, make_product, make_coupon,
                                                             fill_cart):
        first = make_product(name="First", quantity=5)
        second = make_product(name="Second", quantity=5)
        coupon = make_coupon()
        fill_cart("u1", [(first, 1), (second, 1)])
        real_decrement = ledger.decrement_stock

        def racing_decrement(product_id, quantity, session=None, name=None):
            # another checkout drains the second product after our read
            if product_id == second.id:
                database.get_db()["product"].update_one({"_id": second.id}, {"$set": {"quantity": 0}})
            return real_decrement(product_id, quantity, session=session, name=name)

        monkeypatch.setattr(ledger, "decrement_stock", racing_decrement)
        with pytest.raises(ConflictError, match="Insufficient stock for Second"):
            orders.create_order_from_cart("u1", ADDRESS, coupon_codes=["SAVE10"])

        assert order_docs() == []
        assert sub_order_docs() == []
        assert stock_of(first) == 5
        assert coupon_doc(coupon)["used_count"] == 0
        assert len(cart_doc("u1")["items"]) == 2

    def test_coupon_used_between_quote_and_write_aborts(self, monkeypatch, make_product, make_coupon, fill_cart):
        product = make_product(quantity=5)
        coupon = make_coupon()
        fill_cart("u1", [(product, 2)])
        real_record = ledger.record_coupon_usage

        def racing_record(quoted, user_id, session=None):
            # another checkout counts a use after our quote read used_count
            database.get_db()["coupon"].update_one({"_id": quoted.id}, {"$inc": {"used_count": 1}})
            return real_record(quoted, user_id, session=session)

        monkeypatch.setattr(ledger, "record_coupon_usage", racing_record)
        with pytest.raises(TransactionAbortError, match="used concurrently"):
            orders.create_order_from_cart("u1", ADDRESS, coupon_codes=["SAVE10"])

        assert order_docs() == []
        assert sub_order_docs() == []
        assert stock_of(product) == 5
        assert coupon_doc(coupon)["user_usage"] == []
        assert len(cart_doc("u1")["items"]) == 1

    def test_concurrent_checkouts_do_not_oversell(self, make_product, fill_cart):
        product = make_product(quantity=3)
        fill_cart("u1", [(product, 2)])
        fill_cart("u2", [(product, 2)])
        placed, failed = [], []
        barrier = threading.Barrier(2)

        def checkout(user_id):
            barrier.wait()
            try:
                placed.append(orders.create_order_from_cart(user_id, ADDRESS))
            except ConflictError as exc:
                failed.append(exc)

        threads = [threading.Thread(target=checkout, args=(u,)) for u in ("u1", "u2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(placed) == 1
        assert len(failed) == 1
        assert "Insufficient stock" in failed[0].message
        assert stock_of(product) == 1


class TestCouponUsageBound:
    def test_global_limit(self, make_product, make_coupon):
        product = make_product()
        coupon = make_coupon(max_usage=1)
        orders.buy_now("u1", product.id, 1, ADDRESS, coupon_codes=["SAVE10"])
        with pytest.raises(ConflictError, match="usage limit reached"):
            orders.buy_now("u2", product.id, 1, ADDRESS, coupon_codes=["SAVE10"])
        assert coupon_doc(coupon)["used_count"] == 1

    def test_per_user_limit(self, make_product, make_coupon):
        product = make_product()
        coupon = make_coupon(max_usage_per_user=1)
        orders.buy_now("u1", product.id, 1, ADDRESS, coupon_codes=["SAVE10"])
        with pytest.raises(ConflictError, match="maximum allowed times"):
            orders.buy_now("u1", product.id, 1, ADDRESS, coupon_codes=["SAVE10"])
        assert len(coupon_doc(coupon)["user_usage"]) == 1


class TestBuyNow:
    def test_single_item_order_leaves_cart(self, make_product, fill_cart):
        product = make_product(quantity=5)
        other = make_product(name="Other")
        fill_cart("u1", [(other, 1)])
        order = orders.buy_now("u1", product.id, 3, ADDRESS)
        assert len(order.items) == 1
        assert order.cart is None
        assert stock_of(product) == 2
        assert len(cart_doc("u1")["items"]) == 1

    def test_quantity_must_be_integer(self, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            orders.buy_now("u1", product.id, "2", ADDRESS)
        with pytest.raises(ValidationError):
            orders.buy_now("u1", product.id, 0, ADDRESS)

    def test_unknown_product(self):
        with pytest.raises(NotFoundError):
            orders.buy_now("u1", "missing", 1, ADDRESS)


class TestPrepaidPlacement:
    def test_gateway_order_opened_after_commit(self, make_product):
        product = make_product()

        class Gateway:
            def create_payment_order(self, amount, currency, reference):
                assert database.get_db()["order"].find_one({"_id": reference}) is not None
                return {"id": "order_TEST123", "status": "created"}

        order = orders.buy_now("u1", product.id, 1, ADDRESS, payment_method="CARD", gateway=Gateway())
        assert order.payment_order_id == "order_TEST123"
        assert order.items[0].escrow_status == "held"
        record = database.get_db()["paymentrecord"].find_one({"order": order.id})
        assert record["status"] == "pending"
        assert record["payment_order_id"] == "order_TEST123"

    def test_gateway_failure_keeps_order(self, make_product):
        product = make_product()

        class BrokenGateway:
            def create_payment_order(self, amount, currency, reference):
                raise RuntimeError("gateway down")

        order = orders.buy_now("u1", product.id, 1, ADDRESS, payment_method="WALLET", gateway=BrokenGateway())
        assert database.get_db()["order"].find_one({"_id": order.id}) is not None
        record = database.get_db()["paymentrecord"].find_one({"order": order.id})
        assert record["status"] == "failed"
        assert "gateway down" in record["failure_reason"]

    def test_cod_has_no_escrow(self, make_product):
        product = make_product()
        order = orders.buy_now("u1", product.id, 1, ADDRESS)
        assert order.items[0].escrow_status == "n/a"
        assert database.get_db()["paymentrecord"].count_documents({}) == 0


class TestReadModels:
    def test_my_orders_and_details(self, seller, make_product):
        product = make_product()
        first = orders.buy_now("u1", product.id, 1, ADDRESS)
        second = orders.buy_now("u1", product.id, 1, ADDRESS)
        orders.buy_now("u2", product.id, 1, ADDRESS)

        mine = orders.list_orders("u1")
        assert {o.id for o in mine} == {first.id, second.id}
        assert orders.list_orders("u1", status="completed") == []

        details = orders.order_details(first.id, "u1")
        assert details["order"].id == first.id
        assert [s.seller for s in details["sub_orders"]] == [seller.id]
        with pytest.raises(NotFoundError):
            orders.order_details(first.id, "u2")

        assert len(orders.seller_sub_orders(seller.id)) == 3


class TestAdminOrders:
    def test_filters(self, make_seller, make_product):
        hats = make_seller(store_name="Hats")
        shoe = make_product(name="Shoe")
        hat = make_product(name="Hat", owner=hats)
        first = orders.buy_now("u1", shoe.id, 1, ADDRESS)
        second = orders.buy_now("u2", hat.id, 1, ADDRESS)

        assert {o.id for o in orders.list_all_orders()} == {first.id, second.id}
        assert [o.id for o in orders.list_all_orders(user_id="u2")] == [second.id]
        assert [o.id for o in orders.list_all_orders(seller_id=hats.id)] == [second.id]
        assert orders.list_all_orders(status="cancelled") == []

        now = database.now_utc()
        assert len(orders.list_all_orders(date_from=now - timedelta(hours=1), date_to=now + timedelta(hours=1))) == 2
        assert orders.list_all_orders(date_from=now + timedelta(hours=1)) == []

    def test_delete_restocks_uncancelled_items(self, make_product, fill_cart):
        first = make_product(name="First", quantity=10)
        second = make_product(name="Second", quantity=10)
        fill_cart("u1", [(first, 2), (second, 3)])
        order = orders.create_order_from_cart("u1", ADDRESS)
        lifecycle.cancel_item(order.id, order.items[1].id, user_id="u1")
        assert stock_of(second) == 10

        orders.delete_order(order.id)
        assert order_docs() == []
        assert sub_order_docs() == []
        assert stock_of(first) == 10
        assert stock_of(second) == 10

    def test_delete_unknown_order(self):
        with pytest.raises(NotFoundError):
            orders.delete_order("missing")
