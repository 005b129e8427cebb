"""Tests for the cart engine."""

import math
from decimal import Decimal

import pytest
from pydantic import ValidationError

from cart import compute_totals, empty_cart
from errors import Conflict, Inactive, InsufficientStock, InvalidQuantity, NotFound


def _line(price, quantity):
    return {"item_id": "x", "product_id": "p", "price": price, "quantity": quantity, "total_price": price * quantity}


class TestComputeTotals:
    def test_sums_lines(self):
        totals = compute_totals([_line(100.0, 2), _line(25.5, 3)])
        assert totals["total_items"] == 5
        assert totals["total_amount"] == 276.5
        assert totals["final_amount"] == 276.5
        assert totals["discount_amount"] == 0

    def test_applies_discount(self):
        totals = compute_totals([_line(100.0, 2)], discount_amount=30)
        assert totals["final_amount"] == 170.0
        assert totals["discount_amount"] == 30.0

    @pytest.mark.parametrize("discount", [None, "ten", math.nan, math.inf, -5, True])
    def test_unusable_discount_falls_back_to_total(self, discount):
        totals = compute_totals([_line(40.0, 1)], discount_amount=discount)
        assert totals["discount_amount"] == 0
        assert totals["final_amount"] == totals["total_amount"] == 40.0

    @pytest.mark.parametrize("price,quantity", [(0.1, 3), (0.33, 3), (19.99, 7), (1234.56, 9)])
    def test_cart_total_is_exact_sum_of_lines(self, carts, make_product, price, quantity):
        cart = carts.add_item("user-1", make_product(price=price, stock=10), quantity)

        expected = Decimal(str(price)) * quantity
        assert Decimal(str(cart["items"][0]["total_price"])) == expected
        assert Decimal(str(cart["total_amount"])) == expected
        assert Decimal(str(cart["final_amount"])) == expected

    def test_no_items(self):
        totals = compute_totals([])
        assert totals == {"total_items": 0, "total_amount": 0, "discount_amount": 0.0, "final_amount": 0}


class TestAddItem:
    def test_creates_cart_on_first_add(self, carts, make_product):
        product_id = make_product(price=100.0, stock=5)
        cart = carts.add_item("user-1", product_id, 2)

        assert cart["user_id"] == "user-1"
        assert len(cart["items"]) == 1
        assert cart["items"][0]["price"] == 100.0
        assert cart["items"][0]["total_price"] == 200.0
        assert cart["total_amount"] == 200.0
        assert cart["total_items"] == 2
        assert cart["final_amount"] == 200.0

    def test_same_product_merges(self, carts, make_product):
        product_id = make_product(stock=10)
        carts.add_item("user-1", product_id, 2)
        cart = carts.add_item("user-1", product_id, 3)

        assert len(cart["items"]) == 1
        assert cart["items"][0]["quantity"] == 5
        assert cart["total_amount"] == 500.0

    def test_distinct_products_append(self, carts, make_product):
        first = make_product(name="A", price=10.0)
        second = make_product(name="B", price=20.0)
        carts.add_item("user-1", first, 1)
        cart = carts.add_item("user-1", second, 2)

        assert [i["product_id"] for i in cart["items"]] == [first, second]
        assert cart["total_amount"] == 50.0

    def test_uses_discounted_price_when_set(self, carts, make_product):
        product_id = make_product(price=100.0, discounted_price=80.0)
        cart = carts.add_item("user-1", product_id, 1)
        assert cart["items"][0]["price"] == 80.0

    def test_captured_price_is_not_re_resolved(self, carts, catalog, make_product):
        product_id = make_product(price=100.0, stock=10)
        carts.add_item("user-1", product_id, 1)
        catalog.products.update_one({}, {"$set": {"price": 150.0, "discounted_price": 150.0}})

        cart = carts.add_item("user-1", product_id, 1)
        assert cart["items"][0]["price"] == 100.0
        assert cart["total_amount"] == 200.0

    def test_exceeding_stock_leaves_cart_unchanged(self, carts, make_product):
        product_id = make_product(stock=5)
        before = carts.add_item("user-1", product_id, 4)

        with pytest.raises(InsufficientStock) as exc_info:
            carts.add_item("user-1", product_id, 2)
        assert exc_info.value.available == 5
        assert exc_info.value.requested == 6

        after = carts.find_cart("user-1")
        assert after["items"] == before["items"]
        assert after["total_amount"] == before["total_amount"]

    def test_missing_product(self, carts):
        with pytest.raises(NotFound):
            carts.add_item("user-1", "5f5f5f5f5f5f5f5f5f5f5f5f", 1)

    def test_inactive_product(self, carts, make_product):
        product_id = make_product(is_active=False)
        with pytest.raises(Inactive):
            carts.add_item("user-1", product_id, 1)
        assert carts.find_cart("user-1") is None

    def test_rejects_zero_quantity(self, carts, make_product):
        with pytest.raises(InvalidQuantity):
            carts.add_item("user-1", make_product(), 0)


class TestUpdateItem:
    def test_scenario_add_then_update(self, carts, make_product):
        product_id = make_product(price=100.0, stock=5)
        cart = carts.add_item("user-1", product_id, 2)
        assert cart["total_amount"] == 200.0

        cart = carts.update_item("user-1", cart["items"][0]["item_id"], 3)
        assert cart["total_amount"] == 300.0
        assert cart["total_items"] == 3

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_invalid_quantity(self, carts, make_product, quantity):
        cart = carts.add_item("user-1", make_product(), 1)
        with pytest.raises(InvalidQuantity):
            carts.update_item("user-1", cart["items"][0]["item_id"], quantity)

    def test_over_stock(self, carts, make_product):
        cart = carts.add_item("user-1", make_product(stock=3), 1)
        with pytest.raises(InsufficientStock):
            carts.update_item("user-1", cart["items"][0]["item_id"], 4)
        assert carts.find_cart("user-1")["items"][0]["quantity"] == 1

    def test_no_cart(self, carts):
        with pytest.raises(NotFound):
            carts.update_item("user-1", "missing", 1)

    def test_unknown_line(self, carts, make_product):
        carts.add_item("user-1", make_product(), 1)
        with pytest.raises(NotFound):
            carts.update_item("user-1", "missing", 1)


class TestRemoveAndClear:
    def test_remove_recomputes(self, carts, make_product):
        carts.add_item("user-1", make_product(name="A", price=10.0), 1)
        cart = carts.add_item("user-1", make_product(name="B", price=20.0), 1)

        cart = carts.remove_item("user-1", cart["items"][0]["item_id"])
        assert len(cart["items"]) == 1
        assert cart["total_amount"] == 20.0

    def test_removing_last_line_deletes_cart(self, carts, db, make_product):
        cart = carts.add_item("user-1", make_product(), 1)

        assert carts.remove_item("user-1", cart["items"][0]["item_id"]) is None
        assert db["cart"].count_documents({"user_id": "user-1"}) == 0
        assert carts.get_cart("user-1") == empty_cart()

    def test_remove_unknown_line(self, carts, make_product):
        carts.add_item("user-1", make_product(), 1)
        with pytest.raises(NotFound):
            carts.remove_item("user-1", "missing")

    def test_clear(self, carts, make_product):
        carts.add_item("user-1", make_product(), 1)
        carts.clear("user-1")
        assert carts.find_cart("user-1") is None

    def test_clear_without_cart(self, carts):
        with pytest.raises(NotFound):
            carts.clear("user-1")


class TestProjection:
    def test_get_cart_populates_products(self, carts, make_product):
        product_id = make_product(name="Speaker", images=["https://img/1.png"])
        carts.add_item("user-1", product_id, 1)

        cart = carts.get_cart("user-1")
        item = cart["items"][0]
        assert item["product"]["name"] == "Speaker"
        assert item["product"]["images"] == ["https://img/1.png"]
        assert isinstance(cart["_id"], str)

    def test_empty_projection_is_not_persisted(self, carts, db):
        assert carts.get_cart("nobody")["total_amount"] == 0
        assert db["cart"].count_documents({}) == 0


class TestConcurrency:
    def test_stale_write_is_rejected(self, carts, make_product):
        product_id = make_product(stock=10)
        carts.add_item("user-1", product_id, 1)
        stale = carts.find_cart("user-1")

        carts.add_item("user-1", product_id, 1)

        stale["items"][0]["quantity"] = 9
        stale["items"][0]["total_price"] = 900.0
        with pytest.raises(Conflict):
            carts._save(stale)
        assert carts.find_cart("user-1")["items"][0]["quantity"] == 2

    def test_malformed_line_is_not_persisted(self, carts, db):
        broken = {"item_id": "x", "product_id": "p", "quantity": 0, "price": 10.0, "total_price": 0.0}
        with pytest.raises(ValidationError):
            carts._save({"user_id": "user-1", "items": [broken]})
        assert db["cart"].count_documents({}) == 0

    def test_one_cart_per_user(self, carts, db, make_product):
        carts.add_item("user-1", make_product(), 1)
        with pytest.raises(Conflict):
            carts._save({"user_id": "user-1", "items": []})
        assert db["cart"].count_documents({"user_id": "user-1"}) == 1
