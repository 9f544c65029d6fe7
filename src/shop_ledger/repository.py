"""Transactional repository over the master workbook.

The engine components never touch worksheets directly. They go through a
:class:`WorkbookRepository`, which exposes the narrow read/write contract the
stock ledger, order lifecycle, sale transaction, and analytics engine need:

* product lookups and the conditional, atomic stock update
  (:meth:`WorkbookRepository.upsert_product_stock`);
* the all-or-nothing sale insert (:meth:`WorkbookRepository.insert_sale_transaction`);
* order reads and state updates;
* committed sale queries for analytics.

Every access happens under one re-entrant lock, so readers only ever observe
committed units of work. :meth:`WorkbookRepository.transaction` groups several
writes into a unit of work: each write registers an undo action, and if the
block raises, the undo actions run in reverse order before the error
propagates.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .data_manager import OrderRow, ProductRow, SaleLineRow, SaleRow
from .errors import InsufficientStockError, InvalidStateError, NotFoundError

_PRODUCT_FIELDS = {
    "product_name": "ProductName",
    "category": "Category",
    "purchase_price": "PurchasePrice",
    "selling_price": "SellingPrice",
    "stock_quantity": "StockQuantity",
    "unit": "Unit",
    "updated_at_iso": "UpdatedAt",
}

_ORDER_FIELDS = {
    "item_name": "ItemName",
    "category": "Category",
    "quantity": "Quantity",
    "notes": "Notes",
    "purchase_price": "PurchasePrice",
    "selling_price": "SellingPrice",
    "state": "State",
    "purchased_at_iso": "PurchasedAt",
}


@dataclass(frozen=True)
class SaleLineSnapshot:
    """A committed sale line paired with its product's current cost basis."""

    line: SaleLineRow
    purchase_price: Decimal


@dataclass(frozen=True)
class SaleRecord:
    """A committed sale header with its line snapshots."""

    sale: SaleRow
    lines: tuple[SaleLineSnapshot, ...]

    @property
    def sale_date(self) -> date:
        return date.fromisoformat(self.sale.sale_date_iso)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""

    return datetime.now(UTC)


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant identifier.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}{6 hex chars}``. The
    timestamp keeps identifiers roughly chronological; the random suffix keeps
    concurrent requests within the same microsecond apart.
    """

    when = when or utc_now()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6].upper()}"


def normalize_name(name: str) -> str:
    """Normalise a product or item name for matching."""

    return " ".join(name.split()).casefold()


def _to_row_fields(mapping: Mapping[str, str], fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(mapping)
    if unknown:
        raise KeyError(f"Unknown fields: {', '.join(sorted(unknown))}")
    return {mapping[name]: value for name, value in fields.items()}


class WorkbookRepository:
    """Persistence collaborator backed by an ``openpyxl`` workbook."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._lock = threading.RLock()
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._undo: Optional[List[Callable[[], None]]] = None

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["WorkbookRepository"]:
        """Run the enclosed writes as one all-or-nothing unit of work.

        Nested calls join the outermost unit of work; only the outermost
        block rolls back.
        """

        with self._lock:
            outermost = self._undo is None
            if outermost:
                self._undo = []
            try:
                yield self
            except BaseException:
                if outermost:
                    self._rollback()
                raise
            finally:
                if outermost:
                    self._undo = None

    def _record_undo(self, action: Callable[[], None]) -> None:
        if self._undo is not None:
            self._undo.append(action)

    def _rollback(self) -> None:
        """Run every undo action, newest first.

        A failing undo is logged and the remaining ones still run; the error
        that aborted the unit of work is the one the caller sees.
        """

        actions = self._undo or []
        if actions:
            log.warning("Rolling back unit of work (%d pending writes)", len(actions))
        failures = 0
        for action in reversed(actions):
            try:
                action()
            except Exception:
                failures += 1
                log.exception("Undo action failed during rollback")
        if failures:
            log.error("Rollback finished with %d failed undo actions; the workbook may be inconsistent", failures)
        self._invalidate_cache("products", "orders", "sales", "lines")

    def save(self, destination: Path) -> None:
        """Write the workbook to ``destination`` between units of work."""

        with self._lock:
            data_manager.save_workbook(self.workbook, destination=destination)

    # ------------------------------------------------------------------
    # Cache buckets
    # ------------------------------------------------------------------

    def _get_cache_bucket(self, name: str) -> Dict[str, Any]:
        bucket = self._cache.get(name)
        if bucket is None:
            log.debug("Initializing cache bucket '%s'", name)
            bucket = {}
            self._cache[name] = bucket
        return bucket

    def _invalidate_cache(self, *names: str) -> None:
        for name in names:
            self._cache.pop(name, None)

    def _products(self) -> Dict[str, Any]:
        bucket = self._get_cache_bucket("products")
        if "all" not in bucket:
            all_products = list(data_manager.iter_products(self.workbook))
            bucket["all"] = all_products
            bucket["by_id"] = {product.product_id: product for product in all_products}
            bucket["by_name"] = {normalize_name(product.product_name): product for product in all_products}
            log.debug("Populated products cache with %d entries", len(all_products))
        return bucket

    def _orders(self) -> Dict[str, Any]:
        bucket = self._get_cache_bucket("orders")
        if "all" not in bucket:
            all_orders = list(data_manager.iter_orders(self.workbook))
            bucket["all"] = all_orders
            bucket["by_id"] = {order.order_id: order for order in all_orders}
            log.debug("Populated orders cache with %d entries", len(all_orders))
        return bucket

    def _sales(self) -> Dict[str, Any]:
        bucket = self._get_cache_bucket("sales")
        if "all" not in bucket:
            all_sales = list(data_manager.iter_sales(self.workbook))
            bucket["all"] = all_sales
            bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
            log.debug("Populated sales cache with %d entries", len(all_sales))
        return bucket

    def _lines(self) -> Dict[str, List[SaleLineRow]]:
        bucket = self._get_cache_bucket("lines")
        if "by_sale" not in bucket:
            by_sale: Dict[str, List[SaleLineRow]] = {}
            for line in data_manager.iter_sale_lines(self.workbook):
                by_sale.setdefault(line.sale_id, []).append(line)
            bucket["by_sale"] = by_sale
        return bucket["by_sale"]

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def get_product(self, product_id: str) -> ProductRow:
        """Resolve a product by id.

        Raises:
            NotFoundError: If no product carries ``product_id``.
        """

        with self._lock:
            try:
                return self._products()["by_id"][product_id]
            except KeyError as exc:
                log.warning("Product lookup failed for id '%s'", product_id)
                raise NotFoundError(f"Unknown product id: {product_id}", product_id=product_id) from exc

    def find_product(self, product_id: str) -> Optional[ProductRow]:
        with self._lock:
            return self._products()["by_id"].get(product_id)

    def find_product_by_name(self, name: str) -> Optional[ProductRow]:
        """Return the product whose name matches ``name`` ignoring case and spacing."""

        with self._lock:
            return self._products()["by_name"].get(normalize_name(name))

    def list_products(self) -> List[ProductRow]:
        with self._lock:
            return list(self._products()["all"])

    def insert_product(self, record: ProductRow) -> ProductRow:
        """Append a new product.

        Raises:
            InvalidStateError: If the id or the normalised name is already taken.
        """

        with self.transaction():
            products = self._products()
            if record.product_id in products["by_id"]:
                raise InvalidStateError(f"Product id already exists: {record.product_id}", product_id=record.product_id)
            if normalize_name(record.product_name) in products["by_name"]:
                raise InvalidStateError(f"Product name already exists: {record.product_name}")
            data_manager.append_product(self.workbook, record)
            self._record_undo(
                lambda: data_manager.delete_row(self.workbook, data_manager.PRODUCTS_SHEET, "ProductID", record.product_id)
            )
            self._invalidate_cache("products")
        return record

    def update_product_fields(self, product_id: str, **fields: Any) -> ProductRow:
        """Overwrite selected product attributes and return the updated row."""

        with self.transaction():
            current = self.get_product(product_id)
            updated = replace(current, **fields)
            data_manager.update_product(
                self.workbook, product_id, field_values=_to_row_fields(_PRODUCT_FIELDS, fields)
            )
            previous = {name: getattr(current, name) for name in fields}
            self._record_undo(
                lambda: data_manager.update_product(
                    self.workbook, product_id, field_values=_to_row_fields(_PRODUCT_FIELDS, previous)
                )
            )
            self._invalidate_cache("products")
        return updated

    def upsert_product_stock(
        self,
        product_id: str,
        delta: int,
        *,
        new_cost: Optional[Decimal] = None,
        new_price: Optional[Decimal] = None,
        template: Optional[ProductRow] = None,
    ) -> ProductRow:
        """Apply ``delta`` to a product's stock as one conditional update.

        The availability check and the write happen under the repository lock,
        so two callers can never both pass the check against the same stock.
        When the product is missing and ``template`` is given, the product is
        created from the template with ``delta`` as its initial stock.

        Raises:
            NotFoundError: If the product is missing and no template is given.
            InsufficientStockError: If the update would take stock below zero.
        """

        with self.transaction():
            existing = self._products()["by_id"].get(product_id)
            stamp = utc_now().isoformat()
            if existing is None:
                if template is None:
                    log.warning("Stock update failed: unknown product '%s'", product_id)
                    raise NotFoundError(f"Unknown product id: {product_id}", product_id=product_id)
                if delta < 0:
                    raise InsufficientStockError(product_id, requested=-delta, available=0)
                created = replace(
                    template,
                    product_id=product_id,
                    stock_quantity=delta,
                    purchase_price=new_cost if new_cost is not None else template.purchase_price,
                    selling_price=new_price if new_price is not None else template.selling_price,
                    created_at_iso=template.created_at_iso or stamp,
                    updated_at_iso=stamp,
                )
                return self.insert_product(created)

            new_quantity = existing.stock_quantity + delta
            if new_quantity < 0:
                log.warning(
                    "Rejected stock decrement for '%s': requested %d, available %d",
                    product_id,
                    -delta,
                    existing.stock_quantity,
                )
                raise InsufficientStockError(
                    product_id,
                    requested=-delta,
                    available=existing.stock_quantity,
                    product_name=existing.product_name,
                )
            fields: Dict[str, Any] = {"stock_quantity": new_quantity, "updated_at_iso": stamp}
            if new_cost is not None:
                fields["purchase_price"] = new_cost
            if new_price is not None:
                fields["selling_price"] = new_price
            return self.update_product_fields(product_id, **fields)

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def insert_sale_transaction(self, header: SaleRow, lines: Sequence[SaleLineRow]) -> SaleRow:
        """Persist a sale header, its lines, and the matching stock decrements.

        Demand is summed per product before any write, so either every
        decrement fits the available stock and everything is written, or an
        :class:`InsufficientStockError` is raised and nothing is.

        Raises:
            ValueError: If the header total does not equal the sum of the lines.
            NotFoundError: If a line references an unknown product.
            InsufficientStockError: If any product lacks stock.
        """

        line_total = sum((line.total_price for line in lines), Decimal("0.00"))
        if line_total != header.total_amount:
            raise ValueError(
                f"Sale total {header.total_amount} does not match line total {line_total}"
            )

        demand: Dict[str, int] = {}
        for line in lines:
            demand[line.product_id] = demand.get(line.product_id, 0) + line.quantity

        with self.transaction():
            for product_id in sorted(demand):
                product = self.get_product(product_id)
                if demand[product_id] > product.stock_quantity:
                    log.warning(
                        "Rejected sale '%s': product '%s' requested %d, available %d",
                        header.sale_id,
                        product_id,
                        demand[product_id],
                        product.stock_quantity,
                    )
                    raise InsufficientStockError(
                        product_id,
                        requested=demand[product_id],
                        available=product.stock_quantity,
                        product_name=product.product_name,
                    )

            data_manager.append_sale(self.workbook, header)
            self._record_undo(lambda: data_manager.delete_sale(self.workbook, header.sale_id))
            for line in lines:
                data_manager.append_sale_line(self.workbook, line)
            self._invalidate_cache("sales", "lines")

            for product_id in sorted(demand):
                self.upsert_product_stock(product_id, -demand[product_id])
        return header

    def get_sale(self, sale_id: str) -> SaleRecord:
        """Return one committed sale with its lines.

        Raises:
            NotFoundError: If ``sale_id`` is unknown.
        """

        with self._lock:
            try:
                sale = self._sales()["by_id"][sale_id]
            except KeyError as exc:
                raise NotFoundError(f"Unknown sale id: {sale_id}") from exc
            return self._build_record(sale)

    def query_sales(self, start: Optional[date] = None, end: Optional[date] = None) -> List[SaleRecord]:
        """Return committed sales whose sale date lies in ``[start, end]``.

        Either bound may be ``None`` for an open range. Records come back
        ordered by sale date, then creation time.
        """

        with self._lock:
            records = []
            for sale in self._sales()["all"]:
                sale_day = date.fromisoformat(sale.sale_date_iso)
                if start is not None and sale_day < start:
                    continue
                if end is not None and sale_day > end:
                    continue
                records.append(self._build_record(sale))
        records.sort(key=lambda record: (record.sale.sale_date_iso, record.sale.created_at_iso))
        return records

    def _build_record(self, sale: SaleRow) -> SaleRecord:
        products = self._products()["by_id"]
        snapshots = []
        for line in self._lines().get(sale.sale_id, []):
            product = products.get(line.product_id)
            cost = product.purchase_price if product is not None else Decimal("0.00")
            snapshots.append(SaleLineSnapshot(line=line, purchase_price=cost))
        return SaleRecord(sale=sale, lines=tuple(snapshots))

    # ------------------------------------------------------------------
    # Shopping orders
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> OrderRow:
        """Resolve a shopping order by id.

        Raises:
            NotFoundError: If no order carries ``order_id``.
        """

        with self._lock:
            try:
                return self._orders()["by_id"][order_id]
            except KeyError as exc:
                log.warning("Order lookup failed for id '%s'", order_id)
                raise NotFoundError(f"Unknown order id: {order_id}") from exc

    def list_orders(self, state: Optional[str] = None) -> List[OrderRow]:
        with self._lock:
            orders = self._orders()["all"]
            if state is None:
                return list(orders)
            return [order for order in orders if order.state == state]

    def insert_order(self, record: OrderRow) -> OrderRow:
        with self.transaction():
            if record.order_id in self._orders()["by_id"]:
                raise InvalidStateError(f"Order id already exists: {record.order_id}")
            data_manager.append_order(self.workbook, record)
            self._record_undo(lambda: data_manager.delete_order(self.workbook, record.order_id))
            self._invalidate_cache("orders")
        return record

    def update_order_fields(self, order_id: str, **fields: Any) -> OrderRow:
        """Overwrite selected order attributes and return the updated row."""

        with self.transaction():
            current = self.get_order(order_id)
            updated = replace(current, **fields)
            data_manager.update_order(self.workbook, order_id, field_values=_to_row_fields(_ORDER_FIELDS, fields))
            previous = {name: getattr(current, name) for name in fields}
            self._record_undo(
                lambda: data_manager.update_order(
                    self.workbook, order_id, field_values=_to_row_fields(_ORDER_FIELDS, previous)
                )
            )
            self._invalidate_cache("orders")
        return updated

    def update_order_state(self, order_id: str, new_state: str, purchased_at: Optional[datetime]) -> OrderRow:
        """Record a lifecycle transition and its purchase timestamp."""

        return self.update_order_fields(
            order_id,
            state=new_state,
            purchased_at_iso=purchased_at.isoformat() if purchased_at is not None else None,
        )

    def delete_order(self, order_id: str) -> OrderRow:
        with self.transaction():
            current = self.get_order(order_id)
            data_manager.delete_order(self.workbook, order_id)
            self._record_undo(lambda: data_manager.append_order(self.workbook, current))
            self._invalidate_cache("orders")
        return current


__all__ = [
    "SaleLineSnapshot",
    "SaleRecord",
    "WorkbookRepository",
    "generate_id",
    "normalize_name",
    "utc_now",
]
