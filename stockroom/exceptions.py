"""
Error taxonomy for stock, reservation and order operations.

Every error carries a human-readable ``message`` and a ``details`` dict
that the HTTP layer may expose. Internal fault detail (SQL, driver
messages) is never placed in ``details``.
"""
from typing import Any, Dict, List, Optional


class StockroomError(Exception):
    """Base exception for stockroom errors."""
    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InsufficientStockError(StockroomError):
    """Requested quantity exceeds what the product can give. Business-expected."""
    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Only {available} available",
            {"product_id": product_id, "requested": requested, "available": available},
        )


class NotFoundError(StockroomError):
    """Referenced product, reservation, order or alert does not exist."""
    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found: {identifier}",
            {"resource": resource, "id": str(identifier)},
        )


class ConcurrencyConflictError(StockroomError):
    """A concurrent write changed the stock row between read and update."""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Concurrent update detected for product {product_id}")


class PersistenceError(StockroomError):
    """The backing store is unreachable or rejected a write."""
    pass


class ValidationError(StockroomError):
    """Malformed payload, rejected before any stock mutation."""
    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message, {"errors": self.errors})


class InvalidTransitionError(ValidationError):
    """Order status change not reachable from the current status."""
    def __init__(self, current: str, requested: str, allowed: List[str]):
        self.current = current
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"Invalid status transition: {current} -> {requested}",
            [{"code": "INVALID_TRANSITION", "current": current, "requested": requested, "allowed": allowed}],
        )
