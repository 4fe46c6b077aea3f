"""
Error taxonomy for the storefront backend.

Every failure the order core can signal derives from ``StoreError`` so the
API layer can map them onto HTTP responses in one place.
"""
from typing import Any, Optional


class StoreError(Exception):
    """Base class for storefront failures."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotConnected(StoreError):
    status_code = 503

    def __init__(self, message: str = "Database not connected"):
        super().__init__(message)


class ProductNotFound(StoreError):
    status_code = 400

    def __init__(self, product_id: str):
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class OrderNotFound(StoreError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class TransactionConflict(StoreError):
    """Optimistic retries ran out; nothing was written, retry the call."""

    status_code = 409

    def __init__(self, message: str = "Transaction conflict, please retry"):
        super().__init__(message)


class InvalidTransition(StoreError):
    status_code = 409

    def __init__(self, order_id: str, current: str, requested: str):
        super().__init__(f"Order {order_id} cannot move from '{current}' to '{requested}'")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class EmptyOrder(StoreError):
    status_code = 400

    def __init__(self, message: str = "No items in order"):
        super().__init__(message)


class PaymentGatewayError(StoreError):
    status_code = 502

    def __init__(self, message: str, payload: Optional[Any] = None):
        super().__init__(message)
        self.payload = payload
