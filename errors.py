"""Domain exceptions for the storefront API.

Each class maps to one HTTP status in ``ERROR_STATUS_CODES``; ``main.py``
registers a single handler that turns any ``StoreError`` into a JSON body.
"""

from typing import Optional


class StoreError(Exception):
    """Base exception for all storefront errors."""

    pass


class NotFound(StoreError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity} not found"
        if entity_id:
            msg = f"{entity} not found: {entity_id}"
        super().__init__(msg)


class Forbidden(StoreError):
    """Raised when the caller neither owns the resource nor is an admin."""

    def __init__(self, message: str = "Not authorized to access this resource"):
        super().__init__(message)


class InvalidState(StoreError):
    """Raised when an operation is not legal in the current lifecycle state."""

    pass


class InsufficientStock(StoreError):
    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(f"Only {available} items available in stock (requested {requested})")


class InvalidQuantity(StoreError):
    def __init__(self, quantity):
        self.quantity = quantity
        super().__init__("Quantity must be at least 1")


class EmptyCart(StoreError):
    def __init__(self):
        super().__init__("Cart is empty. Cannot create order.")


class Inactive(StoreError):
    def __init__(self, entity: str = "Product"):
        super().__init__(f"{entity} is not available")


class InvalidSignature(StoreError):
    def __init__(self):
        super().__init__("Invalid payment signature")


class AlreadyPaid(StoreError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order is already paid: {order_id}")


class Required(StoreError):
    """Raised when a mandatory field is missing or empty."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"{field} is required")


class Conflict(StoreError):
    """Raised when a concurrent write won the race for the same document."""

    pass


class InvalidId(StoreError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid ID format: {value}")


class PaymentGatewayError(StoreError):
    """Raised when the remote payment gateway call fails."""

    pass


ERROR_STATUS_CODES = {
    NotFound: 404,
    Forbidden: 403,
    InvalidState: 400,
    InsufficientStock: 400,
    InvalidQuantity: 400,
    EmptyCart: 400,
    Inactive: 400,
    InvalidSignature: 400,
    AlreadyPaid: 400,
    Required: 400,
    InvalidId: 400,
    Conflict: 409,
    PaymentGatewayError: 502,
}
