"""Tests for complete-order placement, rollback and the status lifecycle."""
import logging
import re
from datetime import datetime, timedelta

import pytest

from errors import ForbiddenError, InsufficientStockError, NotFoundError, PersistenceError, ValidationError
from inventory import StockLedger
from orders import generate_tracking_number, money, place_order, update_order_status
from repository import OrderItemRepository, PaymentRepository, ShippingRepository
from schemas import CompleteOrderRequest, OrderItemIn, OrderStatus, ShippingStatus


def order_request(customer, *lines, **overrides):
    data = {
        "customer_id": customer["id"],
        "items": [OrderItemIn(product_id=p["id"], quantity=q) for p, q in lines],
        "payment_method": "CreditCard",
        "shipping_address": "1 Main St",
        "carrier_name": "UPS",
    }
    data.update(overrides)
    return CompleteOrderRequest(**data)


def record_counts(store):
    return (
        store.orders.count(),
        store.order_items.count(),
        store.payments.count(),
        store.shipping.count(),
    )


def test_two_units_of_ten_dollar_product(store, customer, identity, make_product):
    product = make_product(price=10.0, stock=5)

    result = place_order(store, identity(customer), order_request(customer, (product, 2)))

    assert result["success"] is True
    assert result["order"]["total_amount"] == 20.0
    assert result["order"]["status"] == OrderStatus.PENDING
    assert len(result["order_items"]) == 1
    assert result["order_items"][0]["total_items_price"] == 20.0
    assert result["order_items"][0]["price"] == 10.0
    assert store.products.find(product["id"])["stock"] == 3


def test_totals_agree_across_items_and_payment(store, customer, identity, make_product):
    shirt = make_product("Shirt", price=19.99, stock=10)
    socks = make_product("Socks", price=5.25, stock=10)

    result = place_order(store, identity(customer), order_request(customer, (shirt, 3), (socks, 2)))

    items_total = sum(i["total_items_price"] for i in result["order_items"])
    assert result["order"]["total_amount"] == pytest.approx(70.47)
    assert items_total == pytest.approx(result["order"]["total_amount"])
    assert result["payment"]["amount"] == result["order"]["total_amount"]
    for item in result["order_items"]:
        assert item["total_items_price"] == pytest.approx(item["price"] * item["quantity"])


def test_totals_agree_to_the_cent(store, customer, identity, make_product):
    dime = make_product("Dime", price=0.10, stock=10)
    nickels = make_product("Nickels", price=0.20, stock=10)

    result = place_order(store, identity(customer), order_request(customer, (dime, 1), (nickels, 1)))

    # 0.1 + 0.2 is not 0.3 in binary floats; amounts agree once read as cents
    assert result["order"]["total_amount"] == 0.3
    assert money(sum(money(i["total_items_price"]) for i in result["order_items"])) == money(
        result["order"]["total_amount"]
    )
    assert money(result["payment"]["amount"]) == money(result["order"]["total_amount"])


def test_stock_reduced_for_every_item(store, customer, identity, make_product):
    a = make_product("A", stock=10)
    b = make_product("B", stock=4)

    place_order(store, identity(customer), order_request(customer, (a, 7), (b, 4)))

    assert store.products.find(a["id"])["stock"] == 3
    assert store.products.find(b["id"])["stock"] == 0


def test_client_price_is_never_used(store, customer, identity, make_product):
    product = make_product(price=10.0, stock=5)
    request = CompleteOrderRequest(
        customer_id=customer["id"],
        items=[{"product_id": product["id"], "quantity": 1, "price": 0.01}],
        payment_method="Cash",
        shipping_address="1 Main St",
        carrier_name="DHL",
    )

    result = place_order(store, identity(customer), request)

    assert result["order"]["total_amount"] == 10.0


def test_payment_and_shipping_records(store, customer, identity, make_product):
    product = make_product(stock=5)

    result = place_order(store, identity(customer), order_request(customer, (product, 1)))

    order_id = result["order"]["id"]
    assert result["payment"]["order_id"] == order_id
    assert result["payment"]["payment_method"] == "CreditCard"
    shipping = result["shipping"]
    assert shipping["order_id"] == order_id
    assert shipping["carrier_name"] == "UPS"
    assert shipping["shipping_status"] == ShippingStatus.PROCESSING
    assert shipping["actual_delivery_date"] is None
    assert re.fullmatch(r"TRACK-\d{8}-\d{6}", shipping["tracking_number"])
    lead = shipping["estimated_delivery_date"] - result["order"]["order_date"]
    assert timedelta(days=6, hours=23) < lead <= timedelta(days=7, seconds=1)


def test_requested_delivery_date_is_kept(store, customer, identity, make_product):
    product = make_product(stock=5)
    wanted = datetime(2030, 1, 15, 12, 0)

    result = place_order(
        store, identity(customer), order_request(customer, (product, 1), estimated_delivery_date=wanted)
    )

    assert result["shipping"]["estimated_delivery_date"] == wanted


def test_repeated_product_lines_are_merged(store, customer, identity, make_product):
    product = make_product(stock=5)

    result = place_order(store, identity(customer), order_request(customer, (product, 1), (product, 2)))

    assert len(result["order_items"]) == 1
    assert result["order_items"][0]["quantity"] == 3
    assert store.products.find(product["id"])["stock"] == 2


def test_merged_lines_are_checked_against_stock(store, customer, identity, make_product):
    product = make_product(stock=3)

    with pytest.raises(InsufficientStockError):
        place_order(store, identity(customer), order_request(customer, (product, 2), (product, 2)))


def test_admin_can_order_for_a_customer(store, customer, admin, identity, make_product):
    product = make_product(stock=5)

    result = place_order(store, identity(admin), order_request(customer, (product, 1)))

    assert result["order"]["customer_id"] == customer["id"]


def test_tracking_number_format():
    assert re.fullmatch(r"TRACK-20240305-\d{6}", generate_tracking_number(datetime(2024, 3, 5)))


# -----------------------------
# Validation
# -----------------------------
def test_insufficient_stock_creates_nothing(store, customer, identity, make_product):
    product = make_product("Lamp", stock=3)

    with pytest.raises(InsufficientStockError) as exc:
        place_order(store, identity(customer), order_request(customer, (product, 10)))

    assert exc.value.available == 3
    assert exc.value.requested == 10
    assert "Lamp" in exc.value.message
    assert record_counts(store) == (0, 0, 0, 0)
    assert store.products.find(product["id"])["stock"] == 3


def test_other_customer_is_forbidden(store, customer, other_customer, identity, make_product):
    product = make_product(stock=5)

    with pytest.raises(ForbiddenError):
        place_order(store, identity(other_customer), order_request(customer, (product, 1)))


def test_forbidden_is_checked_before_customer_exists(store, other_customer, identity, make_product):
    product = make_product(stock=5)
    ghost = {"id": "64b7f0c2a1b2c3d4e5f60718"}

    with pytest.raises(ForbiddenError):
        place_order(store, identity(other_customer), order_request(ghost, (product, 1)))


def test_unknown_customer(store, admin, identity, make_product):
    product = make_product(stock=5)
    ghost = {"id": "64b7f0c2a1b2c3d4e5f60718"}

    with pytest.raises(ValidationError, match="Customer not found"):
        place_order(store, identity(admin), order_request(ghost, (product, 1)))


def test_empty_cart(store, customer, identity):
    with pytest.raises(ValidationError, match="at least one item"):
        place_order(store, identity(customer), order_request(customer))


def test_zero_quantity(store, customer, identity, make_product):
    product = make_product(stock=5)

    with pytest.raises(ValidationError, match="Invalid quantity"):
        place_order(store, identity(customer), order_request(customer, (product, 0)))


def test_unknown_product(store, customer, identity):
    ghost = {"id": "64b7f0c2a1b2c3d4e5f60718"}

    with pytest.raises(ValidationError, match="does not exist"):
        place_order(store, identity(customer), order_request(customer, (ghost, 1)))


@pytest.mark.parametrize("field", ["payment_method", "shipping_address", "carrier_name"])
def test_blank_checkout_fields(store, customer, identity, make_product, field):
    product = make_product(stock=5)

    with pytest.raises(ValidationError, match="is required"):
        place_order(store, identity(customer), order_request(customer, (product, 1), **{field: "  "}))
    assert record_counts(store) == (0, 0, 0, 0)


def test_stock_is_checked_before_checkout_fields(store, customer, identity, make_product):
    product = make_product(stock=1)

    with pytest.raises(InsufficientStockError):
        place_order(store, identity(customer), order_request(customer, (product, 2), carrier_name=""))


# -----------------------------
# Rollback
# -----------------------------
def fail_with(message):
    def _fail(self, *args, **kwargs):
        raise PersistenceError(message)
    return _fail


def test_shipping_failure_rolls_back(store, customer, identity, make_product, monkeypatch):
    product = make_product(stock=5)
    monkeypatch.setattr(ShippingRepository, "create", fail_with("insert shipping: simulated outage"))

    with pytest.raises(PersistenceError):
        place_order(store, identity(customer), order_request(customer, (product, 2)))

    assert record_counts(store) == (0, 0, 0, 0)
    assert store.products.find(product["id"])["stock"] == 5


def test_payment_failure_rolls_back(store, customer, identity, make_product, monkeypatch):
    product = make_product(stock=5)
    monkeypatch.setattr(PaymentRepository, "create", fail_with("insert payment: simulated outage"))

    with pytest.raises(PersistenceError):
        place_order(store, identity(customer), order_request(customer, (product, 2)))

    assert record_counts(store) == (0, 0, 0, 0)


def test_items_failure_rolls_back(store, customer, identity, make_product, monkeypatch):
    product = make_product(stock=5)
    monkeypatch.setattr(OrderItemRepository, "create_many", fail_with("insert order items: simulated outage"))

    with pytest.raises(PersistenceError):
        place_order(store, identity(customer), order_request(customer, (product, 2)))

    assert record_counts(store) == (0, 0, 0, 0)
    assert store.products.find(product["id"])["stock"] == 5


def test_partial_items_insert_rolls_back(store, customer, identity, make_product, monkeypatch):
    shirt = make_product("Shirt", stock=5)
    socks = make_product("Socks", stock=5)

    def write_first_then_fail(self, items):
        # ordered bulk insert stopping after the first document
        first = next(iter(items))
        self.collection.insert_one(dict(first))
        raise PersistenceError("insert order items: batch write error after 1 document")

    monkeypatch.setattr(OrderItemRepository, "create_many", write_first_then_fail)

    with pytest.raises(PersistenceError):
        place_order(store, identity(customer), order_request(customer, (shirt, 1), (socks, 1)))

    assert record_counts(store) == (0, 0, 0, 0)
    assert store.products.find(shirt["id"])["stock"] == 5
    assert store.products.find(socks["id"])["stock"] == 5


def test_unexpected_error_becomes_persistence_error(store, customer, identity, make_product, monkeypatch):
    product = make_product(stock=5)

    def explode(self, *args, **kwargs):
        raise RuntimeError("driver went away")

    monkeypatch.setattr(ShippingRepository, "create", explode)

    with pytest.raises(PersistenceError):
        place_order(store, identity(customer), order_request(customer, (product, 1)))
    assert record_counts(store) == (0, 0, 0, 0)


def test_lost_stock_race_restores_earlier_decrements(store, customer, identity, make_product, monkeypatch):
    plenty = make_product("Plenty", stock=10)
    scarce = make_product("Scarce", stock=2)
    original = StockLedger.decrement

    def racing(self, product_id, quantity):
        if product_id == scarce["id"]:
            # another order took the last units after validation
            store.products.update(scarce["id"], {"stock": 0})
        return original(self, product_id, quantity)

    monkeypatch.setattr(StockLedger, "decrement", racing)

    with pytest.raises(InsufficientStockError) as exc:
        place_order(store, identity(customer), order_request(customer, (plenty, 4), (scarce, 2)))

    assert exc.value.available == 0
    assert store.products.find(plenty["id"])["stock"] == 10
    assert record_counts(store) == (0, 0, 0, 0)


def test_failed_compensation_is_logged_as_orphan(store, customer, identity, make_product, monkeypatch, caplog):
    product = make_product(stock=5)
    monkeypatch.setattr(ShippingRepository, "create", fail_with("insert shipping: simulated outage"))
    monkeypatch.setattr(PaymentRepository, "delete", fail_with("delete payment: simulated outage"))

    with caplog.at_level(logging.INFO, logger="orders"):
        with pytest.raises(PersistenceError):
            place_order(store, identity(customer), order_request(customer, (product, 1)))

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert "Orphaned payment" in critical[0].getMessage()
    # the orphan stays, everything else is still removed
    assert record_counts(store) == (0, 0, 1, 0)


# -----------------------------
# Status lifecycle
# -----------------------------
@pytest.fixture
def placed(store, customer, identity, make_product):
    product = make_product(stock=5)
    result = place_order(store, identity(customer), order_request(customer, (product, 2)))
    return result["order"], product


def test_customer_cancels_own_pending_order(store, customer, identity, placed):
    order, product = placed

    updated = update_order_status(store, identity(customer), order["id"], OrderStatus.CANCELLED)

    assert updated["status"] == OrderStatus.CANCELLED
    # cancelling does not restock
    assert store.products.find(product["id"])["stock"] == 3


def test_customer_cannot_cancel_someone_elses_order(store, other_customer, identity, placed):
    order, _ = placed

    with pytest.raises(ForbiddenError):
        update_order_status(store, identity(other_customer), order["id"], OrderStatus.CANCELLED)


@pytest.mark.parametrize("status", [OrderStatus.CANCELLED, OrderStatus.DELIVERED, OrderStatus.COMPLETED])
def test_customer_cannot_cancel_finished_order(store, customer, admin, identity, placed, status):
    order, _ = placed
    update_order_status(store, identity(admin), order["id"], status)

    with pytest.raises(ValidationError, match="cannot be cancelled"):
        update_order_status(store, identity(customer), order["id"], OrderStatus.CANCELLED)
    assert store.orders.find(order["id"])["status"] == status


def test_customer_can_cancel_while_processing(store, customer, admin, identity, placed):
    order, _ = placed
    update_order_status(store, identity(admin), order["id"], OrderStatus.PROCESSING)

    updated = update_order_status(store, identity(customer), order["id"], OrderStatus.CANCELLED)

    assert updated["status"] == OrderStatus.CANCELLED


def test_customer_may_only_cancel(store, customer, identity, placed):
    order, _ = placed

    with pytest.raises(ForbiddenError):
        update_order_status(store, identity(customer), order["id"], OrderStatus.SHIPPED)


def test_admin_sets_any_status(store, admin, identity, placed):
    order, _ = placed
    caller = identity(admin)

    update_order_status(store, caller, order["id"], OrderStatus.CANCELLED)
    updated = update_order_status(store, caller, order["id"], OrderStatus.PENDING)

    assert updated["status"] == OrderStatus.PENDING


@pytest.mark.parametrize("status", [0, 7, -1])
def test_status_out_of_range(store, admin, identity, placed, status):
    order, _ = placed

    with pytest.raises(ValidationError, match="between 1"):
        update_order_status(store, identity(admin), order["id"], status)


def test_status_of_unknown_order(store, admin, identity):
    with pytest.raises(NotFoundError):
        update_order_status(store, identity(admin), "64b7f0c2a1b2c3d4e5f60718", OrderStatus.SHIPPED)
