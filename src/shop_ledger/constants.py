"""Enumerations shared across Shop Ledger modules.

Centralises domain constants so that the data access layer (DAL), the engine
components, and the CLI rely on a single source of truth for identifiers that
end up persisted in the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_CURRENCY_LABEL = "IQD"
DEFAULT_TOP_PRODUCTS_LIMIT = 10
DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_UNIT = "piece"


class OrderState(str, Enum):
    """Lifecycle states of a shopping-list order."""

    PENDING = "Pending"
    PURCHASED = "Purchased"


class Granularity(str, Enum):
    """Bucket sizes supported by the analytics rollups."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class StockStatus(str, Enum):
    """Coarse stock level bands used by inventory listings."""

    LOW = "low"
    MEDIUM = "medium"
    HEALTHY = "healthy"


class ErrorKind(str, Enum):
    """Enumerate the business-rule failures an operation can report."""

    NOT_FOUND = "NotFound"
    INVALID_QUANTITY = "InvalidQuantity"
    INSUFFICIENT_STOCK = "InsufficientStock"
    ALREADY_PURCHASED = "AlreadyPurchased"
    INVALID_STATE = "InvalidState"
    EMPTY_TRANSACTION = "EmptyTransaction"
    INVALID_INPUT = "InvalidInput"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SHOPPING_ORDERS = "ShoppingOrders"
    SALES = "Sales"
    SALE_LINES = "SaleLines"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CURRENCY_LABEL",
    "DEFAULT_TOP_PRODUCTS_LIMIT",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_UNIT",
    "OrderState",
    "Granularity",
    "StockStatus",
    "ErrorKind",
    "SheetName",
]
