"""Tests for the runtime context and the exposed operations."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

import shop_ledger
from shop_ledger import core_logic, data_manager
from shop_ledger.constants import ErrorKind, Granularity, OrderState
from shop_ledger.errors import LockTimeout
from shop_ledger.order_lifecycle import OrderCommand
from shop_ledger.sales import SaleLineCommand


def _add(context, name: str, *, stock: int, price: str, cost: str = "0") -> str:
    result = core_logic.add_product(
        context,
        name,
        purchase_price=Decimal(cost),
        selling_price=Decimal(price),
        stock_quantity=stock,
    )
    assert result.is_success
    return result.value.product_id


def test_load_runtime_context_wires_components(runtime_context):
    context = runtime_context

    assert context.settings.shop_name == "Corner Parts"
    assert context.ledger.repository is context.repository
    assert context.orders.ledger is context.ledger
    assert context.sales.ledger is context.ledger
    assert context.analytics.default_limit == 10


def test_load_runtime_context_missing_workbook(config_factory):
    bundle = config_factory()
    bundle.workbook_path.unlink()
    with pytest.raises(FileNotFoundError):
        core_logic.load_runtime_context(bundle.config_path)


def test_ensure_schema_version_rejects_mismatch(runtime_context):
    context = replace(runtime_context, settings=replace(runtime_context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(context)


def test_submit_sale_success(runtime_context):
    pads = _add(runtime_context, "Brake Pad", stock=5, price="35")
    rotor = _add(runtime_context, "Rotor", stock=2, price="200")

    result = core_logic.submit_sale(
        runtime_context,
        date(2024, 3, 1),
        [SaleLineCommand(pads, 2), SaleLineCommand(rotor, 1)],
    )

    assert result.is_success
    assert result.status is core_logic.OperationStatus.SUCCESS
    assert result.value.total_amount == Decimal("270.00")


def test_submit_sale_insufficient_stock_returns_failure(runtime_context):
    pads = _add(runtime_context, "Brake Pad", stock=5, price="35")

    result = core_logic.submit_sale(runtime_context, date(2024, 3, 1), [SaleLineCommand(pads, 6)])

    assert not result.is_success
    assert result.error is ErrorKind.INSUFFICIENT_STOCK
    assert result.product_id == pads
    assert "Brake Pad" in result.message
    assert runtime_context.ledger.get_product(pads).stock_quantity == 5


def test_submit_sale_empty_returns_failure(runtime_context):
    result = core_logic.submit_sale(runtime_context, None, [])
    assert result.error is ErrorKind.EMPTY_TRANSACTION


def test_mark_order_purchased_twice(runtime_context):
    created = core_logic.create_order(
        runtime_context,
        OrderCommand(item_name="Air Filter", quantity=10, purchase_price=Decimal("25"), selling_price=Decimal("35")),
    )
    order_id = created.value.order_id

    first = core_logic.mark_order_purchased(runtime_context, order_id)
    second = core_logic.mark_order_purchased(runtime_context, order_id)

    assert first.is_success
    assert first.value.state == OrderState.PURCHASED.value
    assert second.error is ErrorKind.ALREADY_PURCHASED
    [product] = core_logic.list_products(runtime_context)
    assert product.stock_quantity == 10


def test_mark_order_purchased_unknown(runtime_context):
    assert core_logic.mark_order_purchased(runtime_context, "O404").error is ErrorKind.NOT_FOUND


def test_order_edit_operations(runtime_context):
    created = core_logic.create_order(runtime_context, OrderCommand(item_name="Oil", quantity=2))
    order_id = created.value.order_id

    updated = core_logic.update_order(runtime_context, order_id, quantity=3)
    invalid = core_logic.update_order(runtime_context, order_id, quantity=0)
    deleted = core_logic.delete_order(runtime_context, order_id)

    assert updated.value.quantity == 3
    assert invalid.error is ErrorKind.INVALID_QUANTITY
    assert deleted.is_success
    assert core_logic.list_orders(runtime_context) == []


def test_create_order_blank_name(runtime_context):
    result = core_logic.create_order(runtime_context, OrderCommand(item_name="", quantity=1))
    assert result.error is ErrorKind.INVALID_INPUT


def test_restock_product_operation(runtime_context):
    oil = _add(runtime_context, "Oil", stock=1, price="8")

    result = core_logic.restock_product(runtime_context, oil, 4, Decimal("5"))

    assert result.value.stock_quantity == 5
    assert core_logic.restock_product(runtime_context, oil, -1).error is ErrorKind.INVALID_QUANTITY


def test_get_analytics_operation(runtime_context):
    oil = _add(runtime_context, "Oil", stock=10, price="8", cost="5")
    core_logic.submit_sale(runtime_context, date(2024, 3, 1), [SaleLineCommand(oil, 2)])

    result = core_logic.get_analytics(runtime_context, date(2024, 3, 1), date(2024, 3, 31), Granularity.MONTHLY)

    assert result.is_success
    assert result.value.total_revenue == Decimal("16.00")
    assert result.value.total_profit == Decimal("6.00")
    assert core_logic.get_analytics(runtime_context, date(2024, 3, 2), date(2024, 3, 1)).error is ErrorKind.INVALID_INPUT


def test_purchase_history_returns_summary(runtime_context):
    created = core_logic.create_order(
        runtime_context,
        OrderCommand(item_name="Air Filter", quantity=10, purchase_price=Decimal("25"), selling_price=Decimal("35")),
    )
    core_logic.mark_order_purchased(runtime_context, created.value.order_id)

    orders, summary = core_logic.purchase_history(runtime_context)

    assert len(orders) == 1
    assert summary.total_cost == Decimal("250.00")
    assert summary.expected_profit == Decimal("100.00")


def test_persist_and_refresh_round_trip(runtime_context):
    _add(runtime_context, "Oil", stock=3, price="8")

    core_logic.persist_context(runtime_context)
    reloaded = core_logic.refresh_context(runtime_context)

    assert reloaded.workbook is not runtime_context.workbook
    assert [product.product_name for product in core_logic.list_products(reloaded)] == ["Oil"]
    on_disk = data_manager.open_workbook(runtime_context.settings.data_file)
    assert len(list(data_manager.iter_products(on_disk))) == 1


def test_refresh_discards_unsaved_changes(runtime_context):
    _add(runtime_context, "Oil", stock=3, price="8")

    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.list_products(reloaded) == []


def test_restock_product_matches_existing_name(runtime_context):
    fuse = _add(runtime_context, "Fuse", stock=2, price="1")

    result = core_logic.restock_product(runtime_context, "fuse", 3)

    assert result.is_success
    assert result.value.product_id == fuse
    assert [product.stock_quantity for product in core_logic.list_products(runtime_context)] == [5]


def test_load_settings_applies_console_level(config_factory):
    bundle = config_factory(extra="\n[Logging]\nConsoleLevel = debug\n")
    [console] = [handler for handler in shop_ledger.log.handlers if handler.name == "shop_ledger.console"]
    try:
        settings = core_logic.load_settings(bundle.config_path)

        assert settings.log_level == "DEBUG"
        assert console.level == logging.DEBUG
    finally:
        shop_ledger.set_console_level(shop_ledger.DEFAULT_CONSOLE_LEVEL)


# ----------------------------------------------------------------------
# Sessions shared by several loads of the same workbook
# ----------------------------------------------------------------------


def test_exclusive_sessions_never_oversell_across_loads(config_file):
    with core_logic.exclusive_session(config_file) as context:
        oil = _add(context, "Oil", stock=5, price="8")
        core_logic.persist_context(context)

    barrier = threading.Barrier(2)

    def sell_everything(_: int) -> core_logic.OperationResult:
        barrier.wait()
        with core_logic.exclusive_session(config_file) as context:
            result = core_logic.submit_sale(context, date(2024, 3, 1), [SaleLineCommand(oil, 5)])
            if result.is_success:
                core_logic.persist_context(context)
            return result

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(sell_everything, range(2)))

    assert sorted(result.is_success for result in results) == [False, True]
    assert [result.error for result in results if not result.is_success] == [ErrorKind.INSUFFICIENT_STOCK]
    stored = core_logic.load_runtime_context(config_file)
    assert len(core_logic.list_sales(stored)) == 1
    assert stored.ledger.get_product(oil).stock_quantity == 0


def test_exclusive_session_times_out_while_workbook_is_locked(config_factory):
    bundle = config_factory(lock_timeout=0.2)
    settings = core_logic.load_settings(bundle.config_path)

    with core_logic.workbook_lock(settings):
        with pytest.raises(LockTimeout):
            with core_logic.exclusive_session(bundle.config_path):
                pass
