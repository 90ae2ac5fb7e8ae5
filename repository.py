"""
Per-collection repositories over a pymongo Database.

Business rules (orders.py, inventory.py, main.py) only talk to these classes;
nothing outside this module builds MongoDB queries. Driver failures surface
as PersistenceError.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import utcnow
from errors import PersistenceError, ValidationError
from schemas import OrderStatus

logger = logging.getLogger(__name__)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def to_dict(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in d.items():
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


@contextmanager
def storage_call(action: str):
    try:
        yield
    except DuplicateKeyError as e:
        raise ValidationError(f"Duplicate record: {action}") from e
    except PyMongoError as e:
        logger.exception("Storage call failed: %s", action)
        raise PersistenceError(f"{action}: {e}") from e


class Repository:
    collection_name: str = ""

    def __init__(self, database: Database):
        self.collection = database[self.collection_name]

    def find(self, doc_id) -> Optional[dict]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        with storage_call(f"find {self.collection_name} {doc_id}"):
            return to_dict(self.collection.find_one({"_id": oid}))

    def exists(self, doc_id) -> bool:
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        with storage_call(f"check {self.collection_name} {doc_id}"):
            return self.collection.find_one({"_id": oid}, {"_id": 1}) is not None

    def list(self, filter_dict: Optional[dict] = None) -> List[dict]:
        with storage_call(f"list {self.collection_name}"):
            cursor = self.collection.find(filter_dict or {}).sort("created_at", DESCENDING)
            return [to_dict(d) for d in cursor]

    def count(self, filter_dict: Optional[dict] = None) -> int:
        with storage_call(f"count {self.collection_name}"):
            return self.collection.count_documents(filter_dict or {})

    def create(self, data: Dict[str, Any]) -> dict:
        doc = dict(data)
        doc["created_at"] = utcnow()
        doc["updated_at"] = doc["created_at"]
        with storage_call(f"insert {self.collection_name}"):
            result = self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return to_dict(doc)

    def update(self, doc_id, updates: Dict[str, Any]) -> Optional[dict]:
        """Apply a partial update; returns the new document, or None when it does not exist."""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        changes = dict(updates)
        changes["updated_at"] = utcnow()
        with storage_call(f"update {self.collection_name} {doc_id}"):
            doc = self.collection.find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        return to_dict(doc)

    def delete(self, doc_id) -> bool:
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        with storage_call(f"delete {self.collection_name} {doc_id}"):
            return self.collection.delete_one({"_id": oid}).deleted_count == 1


class CustomerRepository(Repository):
    collection_name = "customer"

    def find_by_username(self, username: str) -> Optional[dict]:
        with storage_call(f"find customer by username {username}"):
            return to_dict(self.collection.find_one({"username": username}))


class CategoryRepository(Repository):
    collection_name = "category"


class ProductRepository(Repository):
    collection_name = "product"

    def adjust_stock(self, product_id, delta: int, floor: Optional[int] = None) -> bool:
        """Add delta to stock in one update. With floor set, only applies when stock >= floor."""
        oid = to_object_id(product_id)
        if oid is None:
            return False
        query: Dict[str, Any] = {"_id": oid}
        if floor is not None:
            query["stock"] = {"$gte": floor}
        with storage_call(f"adjust stock of product {product_id} by {delta}"):
            result = self.collection.update_one(query, {"$inc": {"stock": delta}, "$set": {"updated_at": utcnow()}})
        return result.modified_count == 1


class ProductImageRepository(Repository):
    collection_name = "product_image"

    def for_product(self, product_id: str) -> List[dict]:
        with storage_call(f"list images of product {product_id}"):
            cursor = self.collection.find({"product_id": product_id}).sort(
                [("image_order", ASCENDING), ("created_at", ASCENDING)]
            )
            return [to_dict(d) for d in cursor]

    def delete_for_product(self, product_id: str) -> int:
        with storage_call(f"delete images of product {product_id}"):
            return self.collection.delete_many({"product_id": product_id}).deleted_count


class OrderRepository(Repository):
    collection_name = "order"

    def for_customer(self, customer_id: str) -> List[dict]:
        return self.list({"customer_id": customer_id})

    def set_status(self, order_id, status: OrderStatus) -> Optional[dict]:
        return self.update(order_id, {"status": int(status)})

    def stats(self) -> dict:
        with storage_call("aggregate order stats"):
            rows = list(self.collection.aggregate([
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$total_amount"}}},
            ]))
        by_status = {row["_id"]: row for row in rows}

        def count(status):
            row = by_status.get(int(status))
            return row["count"] if row else 0

        revenue = sum(row["revenue"] for key, row in by_status.items() if key != int(OrderStatus.CANCELLED))
        return {
            "total_orders": sum(row["count"] for row in rows),
            "pending_orders": count(OrderStatus.PENDING),
            "completed_orders": count(OrderStatus.COMPLETED),
            "cancelled_orders": count(OrderStatus.CANCELLED),
            "total_revenue": round(revenue, 2),
        }


class OrderItemRepository(Repository):
    """Order items are keyed by (order_id, product_id); the ObjectId is incidental."""

    collection_name = "order_item"

    def create_many(self, items: Iterable[Dict[str, Any]]) -> List[dict]:
        now = utcnow()
        docs = [{**item, "created_at": now, "updated_at": now} for item in items]
        if not docs:
            return []
        with storage_call(f"insert {len(docs)} order items"):
            result = self.collection.insert_many(docs)
        for doc, inserted_id in zip(docs, result.inserted_ids):
            doc["_id"] = inserted_id
        return [to_dict(d) for d in docs]

    def for_order(self, order_id: str) -> List[dict]:
        with storage_call(f"list items of order {order_id}"):
            return [to_dict(d) for d in self.collection.find({"order_id": order_id})]

    def delete_for_order(self, order_id: str) -> int:
        with storage_call(f"delete items of order {order_id}"):
            return self.collection.delete_many({"order_id": order_id}).deleted_count


class OrderRecordRepository(Repository):
    """Records owned one-to-one by an order."""

    def for_order(self, order_id: str) -> Optional[dict]:
        with storage_call(f"find {self.collection_name} of order {order_id}"):
            return to_dict(self.collection.find_one({"order_id": order_id}))

    def delete_for_order(self, order_id: str) -> int:
        with storage_call(f"delete {self.collection_name} of order {order_id}"):
            return self.collection.delete_many({"order_id": order_id}).deleted_count


class PaymentRepository(OrderRecordRepository):
    collection_name = "payment"


class ShippingRepository(OrderRecordRepository):
    collection_name = "shipping"


class ReviewRepository(Repository):
    collection_name = "review"

    def for_product(self, product_id: str) -> List[dict]:
        return self.list({"product_id": product_id})


class SessionRepository(Repository):
    collection_name = "session"

    def open(self, token: str, customer_id: str) -> dict:
        return self.create({"token": token, "customer_id": customer_id})

    def resolve(self, token: str) -> Optional[dict]:
        with storage_call("resolve session"):
            return to_dict(self.collection.find_one({"token": token}))

    def close(self, token: str) -> bool:
        with storage_call("close session"):
            return self.collection.delete_one({"token": token}).deleted_count == 1


class Store:
    """All repositories over one database."""

    def __init__(self, database: Database):
        self.database = database
        self.customers = CustomerRepository(database)
        self.categories = CategoryRepository(database)
        self.products = ProductRepository(database)
        self.product_images = ProductImageRepository(database)
        self.orders = OrderRepository(database)
        self.order_items = OrderItemRepository(database)
        self.payments = PaymentRepository(database)
        self.shipping = ShippingRepository(database)
        self.reviews = ReviewRepository(database)
        self.sessions = SessionRepository(database)
