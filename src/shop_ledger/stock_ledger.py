"""Stock ledger: per-product available quantity under atomic update.

Reservations (sale decrements) and restocks go through
:meth:`WorkbookRepository.upsert_product_stock`, which checks and writes in one
step. On top of that the ledger hands out per-product locks so that callers
spanning several products (a multi-line sale) can hold all of them for the
duration of their unit of work. Locks are always taken in sorted product-id
order and before the repository lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional

from . import log
from .constants import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_UNIT,
    StockStatus,
)
from .data_manager import ProductRow
from .errors import InvalidInputError, InvalidQuantityError, InvalidStateError, LockTimeout
from .money import to_money
from .repository import WorkbookRepository, generate_id, utc_now


def require_positive_quantity(quantity: object) -> int:
    """Validate that a quantity is a whole number greater than zero.

    Raises:
        InvalidQuantityError: If ``quantity`` is not an ``int`` or is not
            strictly positive.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.warning("Quantity validation failed: %r is not a whole number", quantity)
        raise InvalidQuantityError(f"Quantity must be a whole number, got {quantity!r}")
    if quantity <= 0:
        log.warning("Quantity validation failed: %s", quantity)
        raise InvalidQuantityError("Quantity must be greater than zero")
    return quantity


def require_nonnegative_quantity(quantity: object) -> int:
    """Validate that a quantity is a whole number of zero or more."""

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantityError(f"Quantity must be a whole number, got {quantity!r}")
    if quantity < 0:
        log.warning("Quantity validation failed: %s", quantity)
        raise InvalidQuantityError("Quantity must not be negative")
    return quantity


def require_nonnegative_money(amount: Optional[Decimal]) -> Optional[Decimal]:
    """Validate and quantise an optional monetary amount.

    Raises:
        InvalidQuantityError: If ``amount`` is negative or malformed.
    """

    if amount is None:
        return None
    try:
        value = to_money(amount)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantityError(str(exc)) from exc
    if value < Decimal("0"):
        log.warning("Monetary value validation failed: %s", value)
        raise InvalidQuantityError("Amount must be zero or positive")
    return value


class StockLedger:
    """Owns product stock levels and the locks that guard them."""

    def __init__(
        self,
        repository: WorkbookRepository,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.lock_timeout = lock_timeout
        self.low_stock_threshold = low_stock_threshold
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}

    @property
    def active_locks(self) -> int:
        """Number of product locks currently held or waited on."""

        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, product_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.setdefault(product_id, threading.RLock())
            self._users[product_id] = self._users.get(product_id, 0) + 1
            return lock

    def _checkin(self, product_id: str) -> None:
        # the last holder or waiter drops the lock from the registry
        with self._registry_lock:
            remaining = self._users[product_id] - 1
            if remaining:
                self._users[product_id] = remaining
            else:
                del self._users[product_id]
                del self._locks[product_id]

    @contextmanager
    def locked(self, product_ids: Iterable[str]) -> Iterator[None]:
        """Hold the locks of every product in ``product_ids``.

        Locks are acquired in sorted id order so two callers touching
        overlapping product sets cannot deadlock. A lock only lives in the
        registry while somebody holds or waits for it.

        Raises:
            LockTimeout: If a lock is not acquired within ``lock_timeout``.
        """

        checked_out: List[str] = []
        acquired: List[threading.RLock] = []
        try:
            for product_id in sorted(set(product_ids)):
                lock = self._checkout(product_id)
                checked_out.append(product_id)
                if not lock.acquire(timeout=self.lock_timeout):
                    log.error("Timed out waiting for the lock of product '%s'", product_id)
                    raise LockTimeout(f"Timed out waiting for product '{product_id}'")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for product_id in reversed(checked_out):
                self._checkin(product_id)

    def get_product(self, product_id: str) -> ProductRow:
        return self.repository.get_product(product_id)

    def list_products(self) -> List[ProductRow]:
        return self.repository.list_products()

    def reserve(self, product_id: str, quantity: int) -> ProductRow:
        """Atomically take ``quantity`` units of a product out of stock.

        Raises:
            InvalidQuantityError: If ``quantity`` is not a positive integer.
            NotFoundError: If the product does not exist.
            InsufficientStockError: If ``quantity`` exceeds available stock.
        """

        require_positive_quantity(quantity)
        with self.locked([product_id]):
            product = self.repository.upsert_product_stock(product_id, -quantity)
        log.info(
            "Reserved %d of product '%s' (remaining=%d)",
            quantity,
            product_id,
            product.stock_quantity,
        )
        return product

    def restock(
        self,
        product_id: str,
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        unit_price: Optional[Decimal] = None,
        *,
        product_name: Optional[str] = None,
        category: str = "",
        unit: str = DEFAULT_UNIT,
    ) -> ProductRow:
        """Add ``quantity`` units to a product, creating it when absent.

        ``unit_cost`` and ``unit_price`` refresh the catalog prices when given.
        ``product_name``, ``category`` and ``unit`` only matter when the id is
        unknown; the name then defaults to the id. An unknown id whose name
        matches an existing product (ignoring case and spacing) restocks that
        product instead of creating a duplicate.

        Raises:
            InvalidQuantityError: If ``quantity`` is negative or a price is
                negative.
        """

        require_nonnegative_quantity(quantity)
        cost = require_nonnegative_money(unit_cost)
        price = require_nonnegative_money(unit_price)
        name = product_name or product_id
        target = self._restock_target(product_id, name)
        with self.locked([target]):
            product = self.apply_restock(
                target,
                quantity,
                cost,
                price,
                product_name=name,
                category=category,
                unit=unit,
            )
        return product

    def _restock_target(self, product_id: str, product_name: str) -> str:
        if self.repository.find_product(product_id) is not None:
            return product_id
        match = self.repository.find_product_by_name(product_name)
        return match.product_id if match is not None else product_id

    def apply_restock(
        self,
        product_id: str,
        quantity: int,
        unit_cost: Optional[Decimal],
        unit_price: Optional[Decimal],
        *,
        product_name: str,
        category: str,
        unit: str,
    ) -> ProductRow:
        """Restock without taking the product lock; the caller must hold it."""

        with self.repository.transaction():
            product_id = self._restock_target(product_id, product_name)
            template = ProductRow(
                product_id=product_id,
                product_name=product_name,
                category=category,
                purchase_price=unit_cost if unit_cost is not None else Decimal("0.00"),
                selling_price=unit_price if unit_price is not None else Decimal("0.00"),
                stock_quantity=0,
                unit=unit,
            )
            product = self.repository.upsert_product_stock(
                product_id,
                quantity,
                new_cost=unit_cost,
                new_price=unit_price,
                template=template,
            )
        log.info(
            "Restocked %d of product '%s' (available=%d)",
            quantity,
            product_id,
            product.stock_quantity,
        )
        return product

    def add_product(
        self,
        product_name: str,
        *,
        category: str = "",
        purchase_price: Decimal = Decimal("0.00"),
        selling_price: Decimal = Decimal("0.00"),
        stock_quantity: int = 0,
        unit: str = DEFAULT_UNIT,
        product_id: Optional[str] = None,
    ) -> ProductRow:
        """Register a product directly in the catalog.

        Raises:
            InvalidInputError: If the name is blank.
            InvalidQuantityError: If the stock or a price is negative.
            InvalidStateError: If the id or name is already taken.
        """

        if not product_name or not product_name.strip():
            raise InvalidInputError("Product name must not be blank")
        require_nonnegative_quantity(stock_quantity)
        stamp = utc_now()
        record = ProductRow(
            product_id=product_id or generate_id("P", when=stamp),
            product_name=product_name.strip(),
            category=category.strip(),
            purchase_price=require_nonnegative_money(purchase_price),
            selling_price=require_nonnegative_money(selling_price),
            stock_quantity=stock_quantity,
            unit=unit,
            created_at_iso=stamp.isoformat(),
            updated_at_iso=stamp.isoformat(),
        )
        with self.locked([record.product_id]):
            self.repository.insert_product(record)
        log.info("Added product '%s' (%s) with stock %d", record.product_id, record.product_name, stock_quantity)
        return record

    def update_catalog(
        self,
        product_id: str,
        *,
        product_name: Optional[str] = None,
        category: Optional[str] = None,
        unit: Optional[str] = None,
    ) -> ProductRow:
        """Edit descriptive product fields; stock and prices are untouched.

        Sale lines keep the name and category captured when they were sold.

        Raises:
            NotFoundError: If the product does not exist.
            InvalidStateError: If the new name belongs to another product.
        """

        fields = {}
        if product_name is not None:
            if not product_name.strip():
                raise InvalidInputError("Product name must not be blank")
            clash = self.repository.find_product_by_name(product_name)
            if clash is not None and clash.product_id != product_id:
                raise InvalidStateError(f"Product name already exists: {product_name}")
            fields["product_name"] = product_name.strip()
        if category is not None:
            fields["category"] = category.strip()
        if unit is not None:
            fields["unit"] = unit
        with self.locked([product_id]):
            if not fields:
                return self.repository.get_product(product_id)
            fields["updated_at_iso"] = utc_now().isoformat()
            product = self.repository.update_product_fields(product_id, **fields)
        log.info("Updated catalog entry '%s'", product_id)
        return product

    def stock_status(self, product: ProductRow) -> StockStatus:
        """Classify a product's stock into low / medium / healthy bands."""

        if product.stock_quantity < self.low_stock_threshold:
            return StockStatus.LOW
        if product.stock_quantity < self.low_stock_threshold * 3:
            return StockStatus.MEDIUM
        return StockStatus.HEALTHY

    def low_stock(self, threshold: Optional[int] = None) -> List[ProductRow]:
        """Return products below ``threshold``, lowest stock first."""

        limit = self.low_stock_threshold if threshold is None else threshold
        products = [product for product in self.list_products() if product.stock_quantity < limit]
        return sorted(products, key=lambda product: (product.stock_quantity, product.product_name))
