"""Unit tests for order composition, checkout and order lifecycle."""

from __future__ import annotations

import re

import pytest

import orders
from cart import add_to_cart, list_cart
from catalog import update_product
from coupons import AppliedCoupon
from errors import ConstraintError, DependencyError, NotFoundError, PermissionDeniedError, ValidationError
from orders import (
    compose_order,
    generate_order_number,
    get_order,
    list_orders,
    place_order,
    update_payment_status,
    update_status,
)
from pricing import price_line, resolve_price
from schemas import CartItem, Coupon, Product

ADDRESS = "12 Market Road, Coimbatore 641001"


def _priced(product: Product, quantity: float, **line_fields):
    return price_line(CartItem(user_id="user-1", product_id=product.id, quantity=quantity, **line_fields), product)


class TestComposeOrder:
    """Tests for compose_order."""

    def test_totals_and_snapshots(self) -> None:
        coconut = Product(id="p1", name="Coconut Oil", base_price=50.0)
        sesame = Product(id="p2", name="Sesame Oil", base_price=60.0, sale_price=25.0)
        lines = [_priced(coconut, 2), _priced(sesame, 2)]

        composed = compose_order("user-1", ADDRESS, lines, AppliedCoupon(code="SAVE20", discount_type="fixed", discount=20))

        assert composed.order.subtotal == 150.0
        assert composed.order.discount_amount == 20
        assert composed.order.final_amount == 130.0
        assert composed.order.coupon_code == "SAVE20"
        assert (composed.order.status, composed.order.payment_status) == ("pending", "pending")
        assert len(composed.items) == 2
        assert [i.unit_price for i in composed.items] == [
            resolve_price(coconut).unit_price,
            resolve_price(sesame).unit_price,
        ]
        assert all(i.order_id == composed.order.id for i in composed.items)

        coconut.base_price = 500.0
        sesame.sale_price = None
        assert [i.unit_price for i in composed.items] == [50.0, 25.0]
        assert [i.product_name for i in composed.items] == ["Coconut Oil", "Sesame Oil"]

    def test_option_labels_are_snapshotted(self) -> None:
        product = Product(id="p1", name="Mustard Oil", base_price=200.0, measurement_title="Litre")
        line = _priced(
            product,
            1,
            variant_selection={"label": "Red", "price": 120},
            variant_price=120.0,
            measurement_value='{"label": "1L", "price": 10}',
            measurement_price=10.0,
        )
        [item] = compose_order("user-1", ADDRESS, [line]).items

        assert item.unit_price == 130.0
        assert item.variant_selection == {"label": "Red", "image_url": None, "price": 120.0}
        assert item.measurement_value == "1L"
        assert item.measurement_title == "Litre"

    def test_empty_cart(self) -> None:
        with pytest.raises(ValidationError, match="Cart is empty"):
            compose_order("user-1", ADDRESS, [])

    @pytest.mark.parametrize("address", ["", "   ", "short", None])
    def test_address_too_short(self, address) -> None:
        line = _priced(Product(id="p1", name="Oil", base_price=10.0), 1)
        with pytest.raises(ValidationError, match="Address"):
            compose_order("user-1", address, [line])

    def test_order_number_format(self) -> None:
        assert re.fullmatch(r"ORD-\d{8}-\d{4}", generate_order_number())


class TestPlaceOrder:
    """Tests for place_order."""

    def test_checkout_with_coupon(self, store, customer, make_product) -> None:
        store.insert("coupon", Coupon(code="SAVE10", discount_value=10).model_dump(exclude={"id"}))
        add_to_cart(store, customer, make_product(name="A", base_price=100.0).id, 1)
        add_to_cart(store, customer, make_product(name="B", base_price=50.0).id, 2)

        order = place_order(store, customer, ADDRESS, "save10")

        assert order["subtotal"] == 200.0
        assert order["discount_amount"] == 20.0
        assert order["final_amount"] == 180.0
        assert order["coupon_code"] == "SAVE10"
        assert len(order["items"]) == 2
        assert store.query("order", {"user_id": customer.user_id})[0]["id"] == order["id"]
        assert len(store.query("order_item", {"order_id": order["id"]})) == 2
        assert list_cart(store, customer) == []

    def test_empty_cart_places_nothing(self, store, customer) -> None:
        with pytest.raises(ValidationError, match="Cart is empty"):
            place_order(store, customer, ADDRESS)
        assert store.query("order", {}) == []

    def test_rejected_coupon_keeps_cart(self, store, customer, make_product) -> None:
        add_to_cart(store, customer, make_product().id, 1)
        with pytest.raises(NotFoundError):
            place_order(store, customer, ADDRESS, "BOGUS")
        assert store.query("order", {}) == []
        assert len(list_cart(store, customer)) == 1

    def test_failed_items_roll_back_order(self, store, customer, make_product, monkeypatch) -> None:
        add_to_cart(store, customer, make_product().id, 1)
        real_insert = store.insert

        def flaky_insert(collection, record):
            if collection == "order_item":
                raise DependencyError("Data store unavailable")
            return real_insert(collection, record)

        monkeypatch.setattr(store, "insert", flaky_insert)
        with pytest.raises(DependencyError):
            place_order(store, customer, ADDRESS)

        assert store.query("order", {}) == []
        assert len(list_cart(store, customer)) == 1

    def test_failed_rollback_keeps_original_error(self, store, customer, make_product, monkeypatch) -> None:
        add_to_cart(store, customer, make_product(name="A").id, 1)
        add_to_cart(store, customer, make_product(name="B").id, 1)
        real_insert = store.insert
        real_delete = store.delete
        inserted_items = []

        def flaky_insert(collection, record):
            if collection == "order_item":
                if inserted_items:
                    raise DependencyError("Order items unavailable")
                inserted_items.append(record)
            return real_insert(collection, record)

        def flaky_delete(collection, record_id):
            if collection == "order_item":
                raise DependencyError("Delete failed")
            return real_delete(collection, record_id)

        monkeypatch.setattr(store, "insert", flaky_insert)
        monkeypatch.setattr(store, "delete", flaky_delete)
        with pytest.raises(DependencyError, match="Order items unavailable"):
            place_order(store, customer, ADDRESS)

        assert store.query("order", {}) == []
        assert len(list_cart(store, customer)) == 2

    def test_cart_clear_failure_still_returns_order(self, store, customer, make_product, monkeypatch) -> None:
        add_to_cart(store, customer, make_product().id, 1)
        real_delete = store.delete

        def flaky_delete(collection, record_id):
            if collection == "cart_item":
                raise DependencyError("Data store unavailable, please try again")
            return real_delete(collection, record_id)

        monkeypatch.setattr(store, "delete", flaky_delete)
        order = place_order(store, customer, ADDRESS)

        assert [o["id"] for o in store.query("order", {})] == [order["id"]]
        assert len(order["items"]) == 1
        assert len(list_cart(store, customer)) == 1

    def test_items_unaffected_by_later_catalog_edit(self, store, customer, admin, make_product) -> None:
        product = make_product(name="Coconut Oil", base_price=100.0)
        add_to_cart(store, customer, product.id, 2)
        order = place_order(store, customer, ADDRESS)

        update_product(store, admin, product.id, Product(name="Virgin Coconut Oil", base_price=180.0, sale_price=150.0))

        [item] = store.query("order_item", {"order_id": order["id"]})
        assert (item["product_name"], item["unit_price"], item["total_price"]) == ("Coconut Oil", 100.0, 200.0)
        assert get_order(store, customer, order["id"])["final_amount"] == 200.0

    def test_order_number_collision_is_retried(self, store, customer, make_product, monkeypatch) -> None:
        numbers = iter(["ORD-20260601-0001", "ORD-20260601-0001", "ORD-20260601-0002"])
        monkeypatch.setattr(orders, "generate_order_number", lambda: next(numbers))
        product = make_product()

        add_to_cart(store, customer, product.id, 1)
        first = place_order(store, customer, ADDRESS)
        add_to_cart(store, customer, product.id, 1)
        second = place_order(store, customer, ADDRESS)

        assert (first["order_number"], second["order_number"]) == ("ORD-20260601-0001", "ORD-20260601-0002")

    def test_order_number_exhaustion_is_a_conflict(self, store, customer, make_product, monkeypatch) -> None:
        monkeypatch.setattr(orders, "generate_order_number", lambda: "ORD-20260601-0001")
        product = make_product()
        add_to_cart(store, customer, product.id, 1)
        place_order(store, customer, ADDRESS)

        add_to_cart(store, customer, product.id, 1)
        with pytest.raises(ConstraintError, match="order number"):
            place_order(store, customer, ADDRESS)
        assert len(list_cart(store, customer)) == 1


@pytest.fixture
def placed(store, customer, make_product):
    add_to_cart(store, customer, make_product().id, 1)
    return place_order(store, customer, ADDRESS)


class TestOrderLifecycle:
    """Tests for status and payment transitions."""

    def test_happy_path(self, store, admin, placed) -> None:
        for status in ("confirmed", "processing", "shipped", "delivered"):
            update_status(store, admin, placed["id"], status)
        assert store.query("order", {"id": placed["id"]})[0]["status"] == "delivered"

    def test_cannot_skip_states(self, store, admin, placed) -> None:
        with pytest.raises(ConstraintError, match="from pending to shipped"):
            update_status(store, admin, placed["id"], "shipped")

    def test_cancel_from_non_terminal_only(self, store, admin, placed) -> None:
        update_status(store, admin, placed["id"], "confirmed")
        update_status(store, admin, placed["id"], "cancelled")
        with pytest.raises(ConstraintError):
            update_status(store, admin, placed["id"], "confirmed")

    def test_delivered_cannot_be_cancelled(self, store, admin, placed) -> None:
        for status in ("confirmed", "processing", "shipped", "delivered"):
            update_status(store, admin, placed["id"], status)
        with pytest.raises(ConstraintError):
            update_status(store, admin, placed["id"], "cancelled")

    def test_unknown_status(self, store, admin, placed) -> None:
        with pytest.raises(ValidationError):
            update_status(store, admin, placed["id"], "lost")

    def test_payment_machine(self, store, admin, placed) -> None:
        update_payment_status(store, admin, placed["id"], "paid")
        with pytest.raises(ConstraintError):
            update_payment_status(store, admin, placed["id"], "failed")
        update_payment_status(store, admin, placed["id"], "refunded")

    def test_machines_are_independent(self, store, admin, placed) -> None:
        update_payment_status(store, admin, placed["id"], "paid")
        order = update_status(store, admin, placed["id"], "cancelled")
        assert (order["status"], order["payment_status"]) == ("cancelled", "paid")

    def test_customer_cannot_change_status(self, store, customer, placed) -> None:
        with pytest.raises(PermissionDeniedError):
            update_status(store, customer, placed["id"], "confirmed")


class TestOrderQueries:
    """Tests for order listing and lookup."""

    def test_owner_sees_order_with_items(self, store, customer, placed) -> None:
        order = get_order(store, customer, placed["id"])
        assert order["order_number"] == placed["order_number"]
        assert len(order["items"]) == 1

    def test_other_customer_is_denied(self, store, other_customer, placed) -> None:
        with pytest.raises(PermissionDeniedError):
            get_order(store, other_customer, placed["id"])

    def test_listing_is_scoped(self, store, customer, other_customer, admin, placed) -> None:
        assert [o["id"] for o in list_orders(store, customer)] == [placed["id"]]
        assert list_orders(store, other_customer) == []
        assert len(list_orders(store, admin)) == 1

    def test_missing_order(self, store, admin) -> None:
        with pytest.raises(NotFoundError):
            get_order(store, admin, "missing")
