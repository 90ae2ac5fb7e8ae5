"""
Order placement and the order status lifecycle.

place_order() creates an order together with its items, payment and shipping
record. MongoDB offers no multi-document transaction on a standalone server,
so every step that succeeds pushes an undo action; when a later step fails
the undo actions run newest-first and the original failure is re-raised.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional, Tuple

from auth import Identity, authorize
from database import to_naive_utc, utcnow
from errors import (
    ForbiddenError,
    InsufficientStockError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    StoreError,
    ValidationError,
)
from inventory import StockLedger
from repository import Store
from schemas import CompleteOrderRequest, OrderStatus, ShippingStatus

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_DAYS = 7
CENT = Decimal("0.01")

# A customer may cancel an order unless it already reached one of these.
NOT_CANCELLABLE = {OrderStatus.CANCELLED, OrderStatus.DELIVERED, OrderStatus.COMPLETED}


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_tracking_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"TRACK-{now:%Y%m%d}-{random.randint(100000, 999999)}"


@dataclass
class PricedItem:
    product_id: str
    product_name: str
    quantity: int
    price: Decimal

    @property
    def total(self) -> Decimal:
        return self.price * self.quantity


# -----------------------------
# Validation
# -----------------------------
def _merge_items(request: CompleteOrderRequest) -> List[Tuple[str, int]]:
    merged: Dict[str, int] = {}
    for item in request.items:
        if item.quantity < 1:
            raise ValidationError(f"Invalid quantity for product {item.product_id}")
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return list(merged.items())


def validate_order(store: Store, caller: Identity, request: CompleteOrderRequest) -> List[PricedItem]:
    """Run the order checks in order and price every line from the product records."""
    authorize(caller, owner_id=request.customer_id)

    if not store.customers.exists(request.customer_id):
        raise ValidationError("Customer not found")

    if not request.items:
        raise ValidationError("Order must contain at least one item")

    lines = []
    for product_id, quantity in _merge_items(request):
        product = store.products.find(product_id)
        if product is None:
            raise ValidationError(f"Product with ID {product_id} does not exist")
        lines.append((product, quantity))

    for product, quantity in lines:
        if product.get("stock", 0) < quantity:
            raise InsufficientStockError(product["name"], product.get("stock", 0), quantity, product["id"])

    for field in ("payment_method", "shipping_address", "carrier_name"):
        if not getattr(request, field).strip():
            raise ValidationError(f"{field.replace('_', ' ').capitalize()} is required")

    return [
        PricedItem(product_id=product["id"], product_name=product["name"], quantity=quantity, price=money(product["price"]))
        for product, quantity in lines
    ]


# -----------------------------
# Placement
# -----------------------------
class OrderPlacement:
    """One attempt at creating a complete order; not reusable."""

    def __init__(self, store: Store, ledger: Optional[StockLedger] = None):
        self.store = store
        self.ledger = ledger or StockLedger(store.products)
        self._undo: List[Tuple[str, str, Callable[[], object]]] = []

    def run(self, caller: Identity, request: CompleteOrderRequest) -> dict:
        items = validate_order(self.store, caller, request)
        total = sum((item.total for item in items), Decimal("0.00"))
        logger.info("Placing order for customer %s: %d item(s), total %s", request.customer_id, len(items), total)

        try:
            order = self._create_order(request.customer_id, total)
            order_items = self._create_items(order["id"], items)
            payment = self._create_payment(order["id"], total, request.payment_method)
            shipping = self._create_shipping(order["id"], request)
            self._take_stock(items)
        except Exception as e:
            logger.error("Order placement for customer %s failed, rolling back: %s", request.customer_id, e)
            self.compensate()
            if isinstance(e, StoreError):
                raise
            raise PersistenceError(f"order placement for customer {request.customer_id}: {e}") from e

        logger.info("Order %s placed for customer %s", order["id"], request.customer_id)
        return {
            "success": True,
            "message": f"Order created successfully with {len(order_items)} item(s)",
            "order": order,
            "order_items": order_items,
            "payment": payment,
            "shipping": shipping,
        }

    def _create_order(self, customer_id: str, total: Decimal) -> dict:
        order = self.store.orders.create({
            "customer_id": customer_id,
            "order_date": utcnow(),
            "total_amount": float(total),
            "status": int(OrderStatus.PENDING),
        })
        self._push("order", order["id"], lambda: self.store.orders.delete(order["id"]))
        return order

    def _create_items(self, order_id: str, items: List[PricedItem]) -> List[dict]:
        # An ordered insert_many can fail after writing some documents.
        self._push("order_item", order_id, lambda: self.store.order_items.delete_for_order(order_id))
        return self.store.order_items.create_many(
            {
                "order_id": order_id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "price": float(item.price),
                "total_items_price": float(item.total),
            }
            for item in items
        )

    def _create_payment(self, order_id: str, total: Decimal, method: str) -> dict:
        payment = self.store.payments.create({
            "order_id": order_id,
            "amount": float(total),
            "payment_method": method.strip(),
            "transaction_date": utcnow(),
        })
        self._push("payment", payment["id"], lambda: self.store.payments.delete(payment["id"]))
        return payment

    def _create_shipping(self, order_id: str, request: CompleteOrderRequest) -> dict:
        now = utcnow()
        estimated = to_naive_utc(request.estimated_delivery_date) or now + timedelta(days=DEFAULT_DELIVERY_DAYS)
        shipping = self.store.shipping.create({
            "order_id": order_id,
            "carrier_name": request.carrier_name.strip(),
            "tracking_number": generate_tracking_number(now),
            "shipping_status": int(ShippingStatus.PROCESSING),
            "shipping_address": request.shipping_address.strip(),
            "estimated_delivery_date": estimated,
            "actual_delivery_date": None,
        })
        self._push("shipping", shipping["id"], lambda: self.store.shipping.delete(shipping["id"]))
        return shipping

    def _take_stock(self, items: List[PricedItem]) -> None:
        for item in items:
            if not self.ledger.decrement(item.product_id, item.quantity):
                product = self.store.products.find(item.product_id) or {}
                raise InsufficientStockError(item.product_name, product.get("stock", 0), item.quantity, item.product_id)
            self._push(
                "product stock",
                item.product_id,
                lambda item=item: self.ledger.restock(item.product_id, item.quantity),
            )

    def _push(self, collection: str, record_id: str, action: Callable[[], object]) -> None:
        self._undo.append((collection, record_id, action))

    def compensate(self) -> List[IntegrityError]:
        """Undo every completed step, newest first. Failures are logged, not raised."""
        failures = []
        while self._undo:
            collection, record_id, action = self._undo.pop()
            try:
                action()
                logger.info("Rolled back %s %s", collection, record_id)
            except Exception as e:
                failure = IntegrityError(collection, record_id, e)
                logger.critical("Data integrity: %s", failure.message)
                failures.append(failure)
        return failures


def place_order(store: Store, caller: Identity, request: CompleteOrderRequest) -> dict:
    return OrderPlacement(store).run(caller, request)


# -----------------------------
# Status lifecycle
# -----------------------------
def parse_status(value: int) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("Invalid order status. Must be between 1 (Pending) and 6 (Completed).")


def update_order_status(store: Store, caller: Identity, order_id: str, status: int) -> dict:
    """Change an order's status.

    Admins may set any status. Customers may only cancel their own order, and
    only before it is cancelled, delivered or completed. Cancelling does not
    put the items back in stock.
    """
    new_status = parse_status(status)
    order = store.orders.find(order_id)
    if order is None:
        raise NotFoundError(f"Order with ID {order_id} not found.")

    if not caller.is_admin:
        authorize(caller, owner_id=order["customer_id"])
        if new_status != OrderStatus.CANCELLED:
            raise ForbiddenError("Customers may only cancel their orders")
        current = OrderStatus(order["status"])
        if current in NOT_CANCELLABLE:
            raise ValidationError(f"Order cannot be cancelled while {current.label}")

    updated = store.orders.set_status(order_id, new_status)
    if updated is None:
        raise NotFoundError(f"Order with ID {order_id} not found.")
    logger.info("Order %s status %s -> %s by %s", order_id, order["status"], int(new_status), caller.customer_id)
    return updated


def delete_order(store: Store, order_id: str) -> bool:
    """Remove an order and every record it owns."""
    if not store.orders.exists(order_id):
        return False
    store.shipping.delete_for_order(order_id)
    store.payments.delete_for_order(order_id)
    store.order_items.delete_for_order(order_id)
    return store.orders.delete(order_id)
