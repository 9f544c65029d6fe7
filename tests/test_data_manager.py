"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shop_ledger import constants, data_manager


def _product(product_id: str = "P1", **overrides) -> data_manager.ProductRow:
    values = {
        "product_id": product_id,
        "product_name": "Brake Pad",
        "category": "Brakes",
        "purchase_price": Decimal("20.00"),
        "selling_price": Decimal("35.00"),
        "stock_quantity": 4,
        "unit": "piece",
        "created_at_iso": "2024-03-01T09:00:00+00:00",
        "updated_at_iso": "2024-03-01T09:00:00+00:00",
    }
    values.update(overrides)
    return data_manager.ProductRow(**values)


def _order(order_id: str = "O1", **overrides) -> data_manager.OrderRow:
    values = {
        "order_id": order_id,
        "item_name": "Air Filter",
        "category": "Filters",
        "quantity": 5,
        "notes": None,
        "purchase_price": None,
        "selling_price": Decimal("12.50"),
        "state": constants.OrderState.PENDING.value,
        "purchased_at_iso": None,
        "created_at_iso": "2024-03-01T09:00:00+00:00",
    }
    values.update(overrides)
    return data_manager.OrderRow(**values)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery walks up from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile=shop_data.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_path


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Corner Parts"
    assert parser.get("Defaults", "CurrencyLabel") == "IQD"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, top_limit=5)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.shop_name == "Corner Parts"
    assert settings.top_products_limit == 5
    assert settings.low_stock_threshold == 10
    assert settings.lock_timeout_seconds == 5.0


def test_parse_settings_applies_defaults_when_section_missing(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=data.xlsx\nShopName=Shop\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.currency_label == constants.DEFAULT_CURRENCY_LABEL
    assert settings.top_products_limit == constants.DEFAULT_TOP_PRODUCTS_LIMIT
    assert settings.low_stock_threshold == constants.DEFAULT_LOW_STOCK_THRESHOLD
    assert settings.log_level == "WARNING"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_non_positive_limits(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nShopName=Shop\nSchemaVersion=1.0.0\n"
        "[Defaults]\nTopProductsLimit=0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_reads_console_level(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nShopName=Shop\nSchemaVersion=1.0.0\n"
        "[Logging]\nConsoleLevel = info \n"
    )

    assert data_manager.parse_settings(parser, base_path=tmp_path).log_level == "INFO"


def test_parse_settings_rejects_unknown_console_level(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nShopName=Shop\nSchemaVersion=1.0.0\n"
        "[Logging]\nConsoleLevel=chatty\n"
    )
    with pytest.raises(ValueError, match="Unknown log level"):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(data_manager.SHEET_COLUMNS) <= set(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_rejects_missing_sheets(tmp_path):
    path = tmp_path / "foreign.xlsx"
    openpyxl.Workbook().save(path)
    with pytest.raises(KeyError):
        data_manager.open_workbook(path)


def test_save_workbook_persists_changes_without_leftovers(master_workbook_path):
    """save_workbook writes through a temporary sibling and replaces the target."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_products(reloaded)) == [_product()]
    assert sorted(p.name for p in master_workbook_path.parent.iterdir()) == [master_workbook_path.name]


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not workbook
    assert list(data_manager.iter_products(refreshed)) == []


def test_money_columns_are_stored_as_text(master_workbook_path):
    """Decimal amounts must survive a save/load cycle exactly."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product(purchase_price=Decimal("0.10"), selling_price=Decimal("0.30")))
    data_manager.save_workbook(workbook, master_workbook_path)

    raw = openpyxl.load_workbook(master_workbook_path)[data_manager.PRODUCTS_SHEET]
    row = next(raw.iter_rows(min_row=2, values_only=True))
    assert row[3] == "0.10"
    assert row[4] == "0.30"


def test_update_product_writes_selected_columns(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())

    data_manager.update_product(
        workbook,
        "P1",
        field_values={"StockQuantity": 9, "SellingPrice": Decimal("40.00")},
    )

    [product] = data_manager.iter_products(workbook)
    assert product.stock_quantity == 9
    assert product.selling_price == Decimal("40.00")
    assert product.purchase_price == Decimal("20.00")


def test_update_product_unknown_column_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())
    with pytest.raises(KeyError):
        data_manager.update_product(workbook, "P1", field_values={"Colour": "red"})


def test_update_product_unknown_row_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_product(workbook, "missing", field_values={"StockQuantity": 1})


def test_order_round_trip_keeps_missing_prices(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_order(workbook, _order())

    [order] = data_manager.iter_orders(workbook)

    assert order.purchase_price is None
    assert order.selling_price == Decimal("12.50")
    assert order.is_pending


def test_delete_order_removes_row(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_order(workbook, _order("O1"))
    data_manager.append_order(workbook, _order("O2", item_name="Oil"))

    data_manager.delete_order(workbook, "O1")

    assert [order.order_id for order in data_manager.iter_orders(workbook)] == ["O2"]


def test_delete_sale_removes_header_and_lines(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for sale_id in ("S1", "S2"):
        data_manager.append_sale(
            workbook,
            data_manager.SaleRow(sale_id, "2024-03-01", "2024-03-01T10:00:00+00:00", Decimal("70.00")),
        )
        for index in range(2):
            data_manager.append_sale_line(
                workbook,
                data_manager.SaleLineRow(
                    f"{sale_id}-L{index}", sale_id, "P1", "Brake Pad", "Brakes", "piece", 1,
                    Decimal("35.00"), Decimal("35.00"),
                ),
            )

    data_manager.delete_sale(workbook, "S1")

    assert [sale.sale_id for sale in data_manager.iter_sales(workbook)] == ["S2"]
    assert {line.sale_id for line in data_manager.iter_sale_lines(workbook)} == {"S2"}


def test_locate_row_returns_excel_index(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product("P1"))
    data_manager.append_product(workbook, _product("P2", product_name="Oil"))

    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P2") == 3
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P9") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "Nope", "P1")


def test_deserialize_product_normalizes_excel_values():
    """Numbers typed into Excel by hand are coerced to the expected types."""

    product = data_manager.deserialize_product([101, "Spark Plug", None, 2.5, "4", 7.0, None])

    assert product.product_id == "101"
    assert product.category == ""
    assert product.purchase_price == Decimal("2.5")
    assert product.stock_quantity == 7
    assert product.unit == constants.DEFAULT_UNIT


def test_deserialize_rejects_fractional_quantity():
    with pytest.raises(ValueError):
        data_manager.deserialize_product(["P1", "Oil", "", "1", "2", 1.5])


def test_deserialize_sale_trims_datetime_to_day():
    sale = data_manager.deserialize_sale(["S1", "2024-03-01 00:00:00", "2024-03-01T08:00:00", "10"])
    assert sale.sale_date_iso == "2024-03-01"
    assert sale.total_amount == Decimal("10")
