"""Stock checks and stock movements for products."""

import logging

from errors import ValidationError
from repository import ProductRepository

logger = logging.getLogger(__name__)


class StockLedger:
    def __init__(self, products: ProductRepository):
        self.products = products

    def check_available(self, product_id: str, quantity: int) -> bool:
        """True when the product exists and has at least `quantity` units in stock."""
        _require_positive(quantity)
        product = self.products.find(product_id)
        if product is None:
            return False
        return product.get("stock", 0) >= quantity

    def decrement(self, product_id: str, quantity: int) -> bool:
        """Take `quantity` units out of stock.

        The stock guard is part of the update filter, so two orders racing on
        the same product can never both succeed past the available count.
        Returns False when the product is missing or has too little stock.
        """
        _require_positive(quantity)
        ok = self.products.adjust_stock(product_id, -quantity, floor=quantity)
        if not ok:
            logger.warning("Stock decrement refused for product %s (requested %s)", product_id, quantity)
        return ok

    def restock(self, product_id: str, quantity: int) -> bool:
        _require_positive(quantity)
        ok = self.products.adjust_stock(product_id, quantity)
        if ok:
            logger.info("Restocked product %s by %s", product_id, quantity)
        return ok


def _require_positive(quantity: int) -> None:
    if quantity < 1:
        raise ValidationError(f"Quantity must be at least 1, got {quantity}")
