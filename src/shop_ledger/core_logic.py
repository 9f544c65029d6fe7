"""Business logic entry points for Shop Ledger.

This module wires the engine components (stock ledger, order lifecycle, sale
transaction, analytics engine) onto a loaded workbook and exposes the
operations front-ends call. The exposed operations never raise for business
rule violations: they return an :class:`OperationResult` carrying either the
value or the error kind and message. Infrastructure failures (missing files,
corrupted rows, lock timeouts) still propagate as exceptions.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence

from filelock import FileLock, Timeout
from openpyxl.workbook import Workbook

from . import data_manager, log, set_console_level
from .analytics import AnalyticsEngine
from .constants import DEFAULT_UNIT, EXPECTED_SCHEMA_VERSION, ErrorKind, Granularity, OrderState
from .errors import BusinessRuleViolation, LockTimeout
from .order_lifecycle import OrderCommand, OrderLifecycle, PurchaseSummary, summarize_purchases
from .repository import SaleRecord, WorkbookRepository
from .sales import SaleLineCommand, SaleTransaction
from .stock_ledger import StockLedger


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, workbook, and the engine components built on top of it."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    repository: WorkbookRepository
    ledger: StockLedger
    orders: OrderLifecycle
    sales: SaleTransaction
    analytics: AnalyticsEngine


class OperationStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an exposed operation.

    On success ``value`` holds the operation's return value. On failure
    ``error`` names the :class:`~shop_ledger.constants.ErrorKind`, ``message``
    is the human-readable reason, and ``product_id`` identifies the offending
    product for stock failures.
    """

    status: OperationStatus
    value: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    product_id: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(status=OperationStatus.SUCCESS, value=value)

    @classmethod
    def failure(cls, violation: BusinessRuleViolation) -> "OperationResult":
        return cls(
            status=OperationStatus.FAILURE,
            error=violation.kind,
            message=str(violation),
            product_id=violation.product_id,
        )

    @property
    def is_success(self) -> bool:
        return self.status is OperationStatus.SUCCESS


def build_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Assemble the engine components around an open workbook."""

    repository = WorkbookRepository(workbook)
    ledger = StockLedger(
        repository,
        lock_timeout=settings.lock_timeout_seconds,
        low_stock_threshold=settings.low_stock_threshold,
    )
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        repository=repository,
        ledger=ledger,
        orders=OrderLifecycle(repository, ledger),
        sales=SaleTransaction(repository, ledger),
        analytics=AnalyticsEngine(repository, default_limit=settings.top_products_limit),
    )


def load_settings(config_path: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Locate and parse ``config.ini``, then apply its console log level."""
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    set_console_level(settings.log_level)
    return settings


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    The context is not protected against other processes writing the same
    workbook; front-ends that save should go through :func:`exclusive_session`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully wired context ready for the exposed operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """
    settings = load_settings(config_path)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook)


def workbook_lock(settings: data_manager.ConfigSettings) -> FileLock:
    """Inter-process lock guarding ``settings.data_file``."""
    lock_file = settings.data_file.with_name(f"{settings.data_file.name}.lock")
    return FileLock(str(lock_file), timeout=settings.lock_timeout_seconds)


@contextmanager
def exclusive_session(config_path: Optional[Path] = None) -> Iterator[RuntimeContext]:
    """Hold the workbook's lock file from load until the block exits.

    Every process that loads, changes, and saves the workbook inside a session
    sees the writes of the sessions before it, so two sales can never both
    pass the stock check against the same on-disk quantity.

    Raises:
        LockTimeout: If another process keeps the workbook locked longer than
            ``LockTimeoutSeconds``.
    """
    settings = load_settings(config_path)
    lock = workbook_lock(settings)
    try:
        lock.acquire()
    except Timeout as exc:
        log.error("Timed out waiting for the workbook lock '%s'", lock.lock_file)
        raise LockTimeout(f"Workbook '{settings.data_file}' is in use by another process") from exc
    try:
        workbook = data_manager.open_workbook(settings.data_file)
        log.info("Opened exclusive session on workbook '%s'", settings.data_file)
        yield build_context(settings, workbook)
    finally:
        lock.release()


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook to the configured data file."""
    context.repository.save(context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, discarding unsaved changes.

    A new context is returned; its components start with empty caches and
    fresh locks.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(context.settings, workbook)


def _run(operation: str, action: Callable[[], Any]) -> OperationResult:
    try:
        value = action()
    except BusinessRuleViolation as violation:
        log.warning("%s rejected [%s]: %s", operation, violation.kind.value, violation)
        return OperationResult.failure(violation)
    return OperationResult.success(value)


# ----------------------------------------------------------------------
# Exposed operations
# ----------------------------------------------------------------------


def submit_sale(
    context: RuntimeContext,
    sale_date: Optional[date],
    lines: Sequence[SaleLineCommand],
) -> OperationResult:
    """Commit a multi-line sale; the value is a :class:`~shop_ledger.sales.CommittedSale`."""
    return _run("submit_sale", lambda: context.sales.commit(sale_date, lines))


def mark_order_purchased(context: RuntimeContext, order_id: str) -> OperationResult:
    """Purchase a pending order; the value is the updated order row."""
    return _run("mark_order_purchased", lambda: context.orders.mark_purchased(order_id))


def get_analytics(
    context: RuntimeContext,
    start: Optional[date],
    end: Optional[date],
    granularity: Granularity = Granularity.DAILY,
    *,
    limit: Optional[int] = None,
    zero_fill: bool = False,
) -> OperationResult:
    """Build an :class:`~shop_ledger.analytics.AnalyticsReport` for ``[start, end]``."""
    return _run(
        "get_analytics",
        lambda: context.analytics.report(start, end, granularity, limit=limit, zero_fill=zero_fill),
    )


def add_product(
    context: RuntimeContext,
    product_name: str,
    *,
    category: str = "",
    purchase_price: Decimal = Decimal("0.00"),
    selling_price: Decimal = Decimal("0.00"),
    stock_quantity: int = 0,
    unit: str = DEFAULT_UNIT,
    product_id: Optional[str] = None,
) -> OperationResult:
    return _run(
        "add_product",
        lambda: context.ledger.add_product(
            product_name,
            category=category,
            purchase_price=purchase_price,
            selling_price=selling_price,
            stock_quantity=stock_quantity,
            unit=unit,
            product_id=product_id,
        ),
    )


def restock_product(
    context: RuntimeContext,
    product_id: str,
    quantity: int,
    unit_cost: Optional[Decimal] = None,
    unit_price: Optional[Decimal] = None,
) -> OperationResult:
    return _run("restock_product", lambda: context.ledger.restock(product_id, quantity, unit_cost, unit_price))


def create_order(context: RuntimeContext, command: OrderCommand) -> OperationResult:
    return _run("create_order", lambda: context.orders.create_order(command))


def update_order(context: RuntimeContext, order_id: str, **fields: Any) -> OperationResult:
    return _run("update_order", lambda: context.orders.update_order(order_id, **fields))


def delete_order(context: RuntimeContext, order_id: str) -> OperationResult:
    return _run("delete_order", lambda: context.orders.delete_order(order_id))


# ----------------------------------------------------------------------
# Read helpers
# ----------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    return context.ledger.list_products()


def list_orders(context: RuntimeContext, state: Optional[OrderState] = None) -> List[data_manager.OrderRow]:
    return context.orders.list_orders(state)


def purchase_history(
    context: RuntimeContext,
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    category: Optional[str] = None,
    search: Optional[str] = None,
) -> tuple[List[data_manager.OrderRow], PurchaseSummary]:
    """Filtered purchased orders together with their cost and profit totals."""
    orders = context.orders.purchase_history(start, end, category=category, search=search)
    return orders, summarize_purchases(orders)


def list_sales(context: RuntimeContext, start: Optional[date] = None, end: Optional[date] = None) -> List[SaleRecord]:
    return context.sales.list_sales(start, end)
