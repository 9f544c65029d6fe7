"""Business-rule exceptions raised by the engine components.

Each exception carries the :class:`~shop_ledger.constants.ErrorKind` it stands
for so the exposed operations in :mod:`shop_ledger.core_logic` can turn it into
a typed result without inspecting messages.
"""

from __future__ import annotations

from typing import Optional

from .constants import ErrorKind


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""

    kind: ErrorKind = ErrorKind.INVALID_STATE

    def __init__(self, message: str, *, product_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.product_id = product_id


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced product, order, or sale is unknown."""

    kind = ErrorKind.NOT_FOUND


class InvalidQuantityError(BusinessRuleViolation):
    """Raised for non-positive or malformed quantities and prices."""

    kind = ErrorKind.INVALID_QUANTITY


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a decrement would take a product below zero."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, product_id: str, *, requested: int, available: int, product_name: Optional[str] = None) -> None:
        label = f"'{product_name}' ({product_id})" if product_name else f"'{product_id}'"
        super().__init__(
            f"Insufficient stock for product {label}: requested {requested}, available {available}",
            product_id=product_id,
        )
        self.requested = requested
        self.available = available


class InvalidInputError(BusinessRuleViolation):
    """Raised for malformed non-numeric input such as a blank name."""

    kind = ErrorKind.INVALID_INPUT


class InvalidStateError(BusinessRuleViolation):
    """Raised when an entity is not in a state that permits the operation."""

    kind = ErrorKind.INVALID_STATE


class AlreadyPurchasedError(InvalidStateError):
    """Raised when a purchase transition is applied to a processed order."""

    kind = ErrorKind.ALREADY_PURCHASED


class EmptyTransactionError(BusinessRuleViolation):
    """Raised when a sale is submitted without any lines."""

    kind = ErrorKind.EMPTY_TRANSACTION


class LockTimeout(RuntimeError):
    """Raised when a product lock cannot be acquired within the timeout."""


__all__ = [
    "BusinessRuleViolation",
    "NotFoundError",
    "InvalidQuantityError",
    "InsufficientStockError",
    "InvalidInputError",
    "InvalidStateError",
    "AlreadyPurchasedError",
    "EmptyTransactionError",
    "LockTimeout",
]
