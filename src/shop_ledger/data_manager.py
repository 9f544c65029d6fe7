"""Data access layer for Shop Ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.

Monetary columns are written as text so that :class:`~decimal.Decimal` values
survive a save/load cycle without passing through binary floating point.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import DEFAULT_CONSOLE_LEVEL, log, resolve_level
from .constants import (
    DEFAULT_CURRENCY_LABEL,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_TOP_PRODUCTS_LIMIT,
    DEFAULT_UNIT,
    OrderState,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
ORDERS_SHEET = SheetName.SHOPPING_ORDERS.value
SALES_SHEET = SheetName.SALES.value
SALE_LINES_SHEET = SheetName.SALE_LINES.value

# Column layout of every managed sheet, in worksheet order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "Category",
        "PurchasePrice",
        "SellingPrice",
        "StockQuantity",
        "Unit",
        "CreatedAt",
        "UpdatedAt",
    ],
    ORDERS_SHEET: [
        "OrderID",
        "ItemName",
        "Category",
        "Quantity",
        "Notes",
        "PurchasePrice",
        "SellingPrice",
        "State",
        "PurchasedAt",
        "CreatedAt",
    ],
    SALES_SHEET: [
        "SaleID",
        "SaleDate",
        "CreatedAt",
        "TotalAmount",
    ],
    SALE_LINES_SHEET: [
        "LineID",
        "SaleID",
        "ProductID",
        "ProductName",
        "Category",
        "Unit",
        "Quantity",
        "UnitPrice",
        "TotalPrice",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    currency_label: str = DEFAULT_CURRENCY_LABEL
    top_products_limit: int = DEFAULT_TOP_PRODUCTS_LIMIT
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    log_level: str = DEFAULT_CONSOLE_LEVEL


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    category: str
    purchase_price: Decimal
    selling_price: Decimal
    stock_quantity: int
    unit: str = DEFAULT_UNIT
    created_at_iso: str = ""
    updated_at_iso: str = ""


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``ShoppingOrders`` sheet."""

    order_id: str
    item_name: str
    category: str
    quantity: int
    notes: Optional[str]
    purchase_price: Optional[Decimal]
    selling_price: Optional[Decimal]
    state: str
    purchased_at_iso: Optional[str]
    created_at_iso: str

    @property
    def is_pending(self) -> bool:
        return self.state == OrderState.PENDING.value


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    sale_date_iso: str
    created_at_iso: str
    total_amount: Decimal


@dataclass(frozen=True)
class SaleLineRow:
    """In-memory view of a row from the ``SaleLines`` sheet."""

    line_id: str
    sale_id: str
    product_id: str
    product_name: str
    category: str
    unit: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries are optional
    and fall back to the package constants. Relative ``DataFile`` paths are
    expanded against ``base_path`` (or the current working directory) and
    resolved to an absolute form.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a numeric default cannot be parsed or is out of range,
            or ``[Logging] ConsoleLevel`` is not a standard level name.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    currency_label = parser.get("Defaults", "CurrencyLabel", fallback=DEFAULT_CURRENCY_LABEL)
    top_products_limit = parser.getint("Defaults", "TopProductsLimit", fallback=DEFAULT_TOP_PRODUCTS_LIMIT)
    low_stock_threshold = parser.getint("Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    lock_timeout = parser.getfloat("Defaults", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if top_products_limit <= 0 or low_stock_threshold < 0 or lock_timeout <= 0:
        raise ValueError("Configuration [Defaults] values must be positive")
    log_level = parser.get("Logging", "ConsoleLevel", fallback=DEFAULT_CONSOLE_LEVEL).strip().upper()
    resolve_level(log_level)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        currency_label=currency_label,
        top_products_limit=top_products_limit,
        low_stock_threshold=low_stock_threshold,
        lock_timeout_seconds=lock_timeout,
        log_level=log_level,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If one of the managed sheets is missing from the file.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook '{data_file}' is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is first written to a temporary file in the destination
    directory and then moved over the target, so a crash mid-save never leaves
    a truncated workbook behind.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".xlsx", dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        tmp_path.replace(dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    """Iterate over the ``ShoppingOrders`` worksheet and yield typed records."""

    for raw in _iter_raw_rows(workbook, ORDERS_SHEET):
        yield deserialize_order(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale headers from the ``Sales`` worksheet in insertion order."""

    for raw in _iter_raw_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_lines(workbook: Workbook) -> Iterable[SaleLineRow]:
    """Stream sale lines from the ``SaleLines`` worksheet in insertion order."""

    for raw in _iter_raw_rows(workbook, SALE_LINES_SHEET):
        yield deserialize_sale_line(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_order(workbook: Workbook, record: OrderRow) -> None:
    """Append a shopping order to the ``ShoppingOrders`` worksheet."""

    workbook[ORDERS_SHEET].append(serialize_order(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header to the ``Sales`` worksheet."""

    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_line(workbook: Workbook, record: SaleLineRow) -> None:
    """Append a sale line to the ``SaleLines`` worksheet."""

    workbook[SALE_LINES_SHEET].append(serialize_sale_line(record))


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, field_values: Mapping[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=_to_cell(value))


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing product.

    The function locates the row whose ``ProductID`` matches ``product_id``,
    validates that each requested field exists in the header row, and then
    writes the provided values into the corresponding cells. Decimal values are
    stored as text, like every other monetary column.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values)


def update_order(workbook: Workbook, order_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing shopping order.

    Raises:
        KeyError: If the order or any referenced column cannot be found.
    """

    _update_row(workbook, ORDERS_SHEET, "OrderID", order_id, field_values)


def delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> None:
    """Remove the first row of ``sheet_name`` whose ``key_column`` matches.

    Raises:
        KeyError: If no row matches.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")
    workbook[sheet_name].delete_rows(row_index)


def delete_order(workbook: Workbook, order_id: str) -> None:
    """Remove the row holding ``order_id`` from the ``ShoppingOrders`` sheet.

    Raises:
        KeyError: If the order cannot be found.
    """

    delete_row(workbook, ORDERS_SHEET, "OrderID", order_id)


def delete_sale(workbook: Workbook, sale_id: str) -> None:
    """Remove a sale header and all of its lines.

    Only used to undo a unit of work that failed before it committed; sales
    are immutable once committed.
    """

    row_index = locate_row(workbook, SALES_SHEET, "SaleID", sale_id)
    if row_index is not None:
        workbook[SALES_SHEET].delete_rows(row_index)
    lines_sheet = workbook[SALE_LINES_SHEET]
    key_col = _header_map(lines_sheet)["SaleID"]
    # Delete bottom-up so earlier indices stay valid.
    for row_idx in range(lines_sheet.max_row, 1, -1):
        if lines_sheet.cell(row=row_idx, column=key_col).value == sale_id:
            lines_sheet.delete_rows(row_idx)


def _header_map(sheet) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _to_cell(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


def _optional_money_cell(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.category,
        str(record.purchase_price),
        str(record.selling_price),
        record.stock_quantity,
        record.unit,
        record.created_at_iso,
        record.updated_at_iso,
    ]


def serialize_order(record: OrderRow) -> list[object]:
    """Convert an order dataclass into the worksheet column ordering."""

    return [
        record.order_id,
        record.item_name,
        record.category,
        record.quantity,
        record.notes,
        _optional_money_cell(record.purchase_price),
        _optional_money_cell(record.selling_price),
        record.state,
        record.purchased_at_iso,
        record.created_at_iso,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale header into the worksheet column ordering."""

    return [record.sale_id, record.sale_date_iso, record.created_at_iso, str(record.total_amount)]


def serialize_sale_line(record: SaleLineRow) -> list[object]:
    """Convert a sale line into the worksheet column ordering."""

    return [
        record.line_id,
        record.sale_id,
        record.product_id,
        record.product_name,
        record.category,
        record.unit,
        record.quantity,
        str(record.unit_price),
        str(record.total_price),
    ]


def _decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw not in (None, "") else Decimal(default)


def _optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw not in (None, "") else None


def _int(raw: object) -> int:
    if raw in (None, ""):
        return 0
    value = Decimal(str(raw))
    if value != value.to_integral_value():
        raise ValueError(f"Expected a whole quantity, found {raw!r}")
    return int(value)


def _text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw not in (None, "") else None


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row[:width])
    values.extend([None] * (width - len(values)))
    return values


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric columns are normalised into :class:`~decimal.Decimal` and ``int``
    values, identifiers and names are coerced to ``str`` to avoid surprises
    caused by Excel interpreting numbers.
    """

    (
        product_id,
        product_name,
        category,
        purchase_raw,
        selling_raw,
        stock_raw,
        unit,
        created_at,
        updated_at,
    ) = _pad(raw_row, len(SHEET_COLUMNS[PRODUCTS_SHEET]))

    return ProductRow(
        product_id=str(product_id),
        product_name=_text(product_name),
        category=_text(category),
        purchase_price=_decimal(purchase_raw),
        selling_price=_decimal(selling_raw),
        stock_quantity=_int(stock_raw),
        unit=_text(unit) or DEFAULT_UNIT,
        created_at_iso=_text(created_at),
        updated_at_iso=_text(updated_at),
    )


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    """Convert a raw worksheet row into a strongly typed order record."""

    (
        order_id,
        item_name,
        category,
        quantity_raw,
        notes,
        purchase_raw,
        selling_raw,
        state,
        purchased_at,
        created_at,
    ) = _pad(raw_row, len(SHEET_COLUMNS[ORDERS_SHEET]))

    return OrderRow(
        order_id=str(order_id),
        item_name=_text(item_name),
        category=_text(category),
        quantity=_int(quantity_raw),
        notes=_optional_text(notes),
        purchase_price=_optional_decimal(purchase_raw),
        selling_price=_optional_decimal(selling_raw),
        state=_text(state) or OrderState.PENDING.value,
        purchased_at_iso=_optional_text(purchased_at),
        created_at_iso=_text(created_at),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a sale header."""

    sale_id, sale_date, created_at, total_raw = _pad(raw_row, len(SHEET_COLUMNS[SALES_SHEET]))
    return SaleRow(
        sale_id=str(sale_id),
        sale_date_iso=_text(sale_date)[:10],
        created_at_iso=_text(created_at),
        total_amount=_decimal(total_raw),
    )


def deserialize_sale_line(raw_row: Sequence[object]) -> SaleLineRow:
    """Convert a raw worksheet row into a sale line."""

    (
        line_id,
        sale_id,
        product_id,
        product_name,
        category,
        unit,
        quantity_raw,
        unit_price_raw,
        total_raw,
    ) = _pad(raw_row, len(SHEET_COLUMNS[SALE_LINES_SHEET]))

    return SaleLineRow(
        line_id=str(line_id),
        sale_id=str(sale_id),
        product_id=str(product_id),
        product_name=_text(product_name),
        category=_text(category),
        unit=_text(unit) or DEFAULT_UNIT,
        quantity=_int(quantity_raw),
        unit_price=_decimal(unit_price_raw),
        total_price=_decimal(total_raw),
    )
