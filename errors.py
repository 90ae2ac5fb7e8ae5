"""
Error types raised by the store's business rules.

Each error carries the HTTP status it maps to; main.py renders them as
{"detail": message}, the same shape FastAPI uses for HTTPException.
"""

from typing import Optional


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {"detail": self.public_message}


class ValidationError(StoreError):
    status_code = 400


class InsufficientStockError(ValidationError):
    def __init__(self, product_name: str, available: int, requested: int, product_id: Optional[str] = None):
        super().__init__(
            f"Insufficient stock for product '{product_name}'. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested

    def to_dict(self) -> dict:
        return {
            "detail": self.public_message,
            "product": self.product_name,
            "available": self.available,
            "requested": self.requested,
        }


class NotFoundError(StoreError):
    status_code = 404


class ForbiddenError(StoreError):
    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action"):
        super().__init__(message)


class PersistenceError(StoreError):
    """A storage call failed. The real cause is only written to the logs."""

    status_code = 500

    @property
    def public_message(self) -> str:
        return "An error occurred while processing the request"


class IntegrityError(StoreError):
    """A compensating delete failed and left an orphaned record behind."""

    def __init__(self, collection: str, record_id: str, cause: Exception):
        super().__init__(f"Orphaned {collection} record {record_id}: {cause}")
        self.collection = collection
        self.record_id = record_id
        self.cause = cause
