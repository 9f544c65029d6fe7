"""Read-side analytics over the committed sale history.

The module-level functions are pure: they take a sequence of
:class:`~shop_ledger.repository.SaleRecord` objects and derive rollups,
rankings, and totals without touching storage. :class:`AnalyticsEngine` is the
thin wrapper that pulls a committed snapshot for a date window out of the
repository and feeds it through them.

Buckets are keyed by the sale's calendar ``sale_date`` (the seller's local
day), never by the creation timestamp. Profit per line is
``(unit_price - purchase_price) * quantity`` using the product's current
purchase price as cost basis; losses are netted into the same totals.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import DEFAULT_TOP_PRODUCTS_LIMIT, Granularity
from .data_manager import SaleLineRow
from .errors import InvalidInputError
from .money import ZERO, to_money
from .repository import SaleRecord, WorkbookRepository

UNCATEGORIZED = "Uncategorized"


@dataclass(frozen=True)
class RollupBucket:
    """Revenue and profit of one time bucket."""

    period_start: date
    sales: Decimal
    profit: Decimal
    transaction_count: int


@dataclass(frozen=True)
class ProductRanking:
    product_name: str
    quantity: int
    revenue: Decimal


@dataclass(frozen=True)
class CategoryPerformance:
    category: str
    revenue: Decimal
    profit: Decimal
    revenue_share: Decimal


@dataclass(frozen=True)
class LossEntry:
    product_name: str
    quantity: int
    loss: Decimal


@dataclass(frozen=True)
class AnalyticsReport:
    """Everything the analytics view shows for one window."""

    start: Optional[date]
    end: Optional[date]
    granularity: Granularity
    rollup: Tuple[RollupBucket, ...]
    top_products: Tuple[ProductRanking, ...]
    category_performance: Tuple[CategoryPerformance, ...]
    total_revenue: Decimal
    total_profit: Decimal
    transaction_count: int
    average_order_value: Decimal


def profit_per_line(line: SaleLineRow, purchase_price: Decimal) -> Decimal:
    """Profit of one sale line; negative when sold below cost."""

    return (line.unit_price - purchase_price) * line.quantity


def _record_profit(record: SaleRecord) -> Decimal:
    return sum((profit_per_line(item.line, item.purchase_price) for item in record.lines), ZERO)


def _check_window(start: Optional[date], end: Optional[date]) -> None:
    if start is not None and end is not None and start > end:
        raise InvalidInputError(f"Start date {start} is after end date {end}")


def within_window(records: Iterable[SaleRecord], start: Optional[date], end: Optional[date]) -> List[SaleRecord]:
    """Keep the records whose sale date lies in the inclusive ``[start, end]``."""

    _check_window(start, end)
    return [
        record
        for record in records
        if (start is None or record.sale_date >= start) and (end is None or record.sale_date <= end)
    ]


def period_start(day: date, granularity: Granularity) -> date:
    """First day of the bucket containing ``day``; weeks start on Monday."""

    if granularity is Granularity.DAILY:
        return day
    if granularity is Granularity.WEEKLY:
        return day - timedelta(days=day.weekday())
    if granularity is Granularity.MONTHLY:
        return day.replace(day=1)
    return date(day.year, 1, 1)


def next_period(start: date, granularity: Granularity) -> date:
    if granularity is Granularity.DAILY:
        return start + timedelta(days=1)
    if granularity is Granularity.WEEKLY:
        return start + timedelta(days=7)
    if granularity is Granularity.MONTHLY:
        if start.month == 12:
            return date(start.year + 1, 1, 1)
        return date(start.year, start.month + 1, 1)
    return date(start.year + 1, 1, 1)


def period_window(anchor: date, granularity: Granularity) -> Tuple[date, date]:
    """The inclusive calendar window of the period containing ``anchor``."""

    start = period_start(anchor, granularity)
    return start, next_period(start, granularity) - timedelta(days=1)


def trailing_window(days: int, today: Optional[date] = None) -> Tuple[date, date]:
    """The last ``days`` calendar days, today included."""

    if days <= 0:
        raise InvalidInputError("Window length must be positive")
    end = today or date.today()
    return end - timedelta(days=days - 1), end


def period_rollup(
    records: Sequence[SaleRecord],
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    granularity: Granularity = Granularity.DAILY,
    zero_fill: bool = False,
) -> List[RollupBucket]:
    """Group sales into time buckets and sum revenue and profit per bucket.

    Buckets without sales are omitted unless ``zero_fill`` is set, in which
    case every bucket between ``start`` and ``end`` (or the first and last
    sale when a bound is missing) is returned.
    """

    selected = within_window(records, start, end)
    totals: Dict[date, List] = {}
    for record in selected:
        key = period_start(record.sale_date, granularity)
        bucket = totals.setdefault(key, [ZERO, ZERO, 0])
        bucket[0] += record.sale.total_amount
        bucket[1] += _record_profit(record)
        bucket[2] += 1

    if zero_fill:
        lower = start or (min(record.sale_date for record in selected) if selected else None)
        upper = end or (max(record.sale_date for record in selected) if selected else None)
        if lower is not None and upper is not None:
            cursor = period_start(lower, granularity)
            while cursor <= upper:
                totals.setdefault(cursor, [ZERO, ZERO, 0])
                cursor = next_period(cursor, granularity)

    return [
        RollupBucket(period_start=key, sales=value[0], profit=value[1], transaction_count=value[2])
        for key, value in sorted(totals.items())
    ]


def daily_rollup(
    records: Sequence[SaleRecord],
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    zero_fill: bool = False,
) -> List[RollupBucket]:
    return period_rollup(records, start, end, granularity=Granularity.DAILY, zero_fill=zero_fill)


def top_products(records: Sequence[SaleRecord], limit: int = DEFAULT_TOP_PRODUCTS_LIMIT) -> List[ProductRanking]:
    """Rank products by revenue, ties broken by name, truncated to ``limit``.

    Lines are grouped by the product name captured at sale time.
    """

    if limit < 0:
        raise InvalidInputError("Limit must not be negative")
    grouped: Dict[str, List] = {}
    for record in records:
        for item in record.lines:
            entry = grouped.setdefault(item.line.product_name, [0, ZERO])
            entry[0] += item.line.quantity
            entry[1] += item.line.total_price
    ranking = [ProductRanking(product_name=name, quantity=value[0], revenue=value[1]) for name, value in grouped.items()]
    ranking.sort(key=lambda entry: (-entry.revenue, entry.product_name))
    return ranking[:limit]


def category_performance(records: Sequence[SaleRecord]) -> List[CategoryPerformance]:
    """Revenue, profit, and revenue share (percent) per category, by revenue."""

    grouped: Dict[str, List[Decimal]] = {}
    for record in records:
        for item in record.lines:
            entry = grouped.setdefault(item.line.category or UNCATEGORIZED, [ZERO, ZERO])
            entry[0] += item.line.total_price
            entry[1] += profit_per_line(item.line, item.purchase_price)
    overall = sum((value[0] for value in grouped.values()), ZERO)
    results = []
    for category, (revenue, profit) in grouped.items():
        share = ZERO
        if overall:
            share = (revenue * 100 / overall).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        results.append(CategoryPerformance(category=category, revenue=revenue, profit=profit, revenue_share=share))
    results.sort(key=lambda entry: (-entry.revenue, entry.category))
    return results


def total_revenue(records: Sequence[SaleRecord]) -> Decimal:
    return sum((record.sale.total_amount for record in records), ZERO)


def total_profit(records: Sequence[SaleRecord]) -> Decimal:
    return sum((_record_profit(record) for record in records), ZERO)


def average_order_value(records: Sequence[SaleRecord]) -> Decimal:
    """Mean sale total; zero when there are no sales."""

    if not records:
        return ZERO
    return to_money(total_revenue(records) / len(records))


def loss_breakdown(records: Sequence[SaleRecord]) -> List[LossEntry]:
    """Per product, the quantity and total loss of lines sold below cost."""

    grouped: Dict[str, List] = {}
    for record in records:
        for item in record.lines:
            profit = profit_per_line(item.line, item.purchase_price)
            if profit >= 0:
                continue
            entry = grouped.setdefault(item.line.product_name, [0, ZERO])
            entry[0] += item.line.quantity
            entry[1] += profit
    losses = [LossEntry(product_name=name, quantity=value[0], loss=value[1]) for name, value in grouped.items()]
    losses.sort(key=lambda entry: (entry.loss, entry.product_name))
    return losses


def build_report(
    records: Sequence[SaleRecord],
    start: Optional[date],
    end: Optional[date],
    *,
    granularity: Granularity = Granularity.DAILY,
    limit: int = DEFAULT_TOP_PRODUCTS_LIMIT,
    zero_fill: bool = False,
) -> AnalyticsReport:
    """Assemble every analytics view for one window from ``records``."""

    selected = within_window(records, start, end)
    return AnalyticsReport(
        start=start,
        end=end,
        granularity=granularity,
        rollup=tuple(period_rollup(selected, start, end, granularity=granularity, zero_fill=zero_fill)),
        top_products=tuple(top_products(selected, limit)),
        category_performance=tuple(category_performance(selected)),
        total_revenue=total_revenue(selected),
        total_profit=total_profit(selected),
        transaction_count=len(selected),
        average_order_value=average_order_value(selected),
    )


class AnalyticsEngine:
    """Run the analytics functions against committed repository state."""

    def __init__(self, repository: WorkbookRepository, *, default_limit: int = DEFAULT_TOP_PRODUCTS_LIMIT) -> None:
        self.repository = repository
        self.default_limit = default_limit

    def _snapshot(self, start: Optional[date], end: Optional[date]) -> List[SaleRecord]:
        _check_window(start, end)
        return self.repository.query_sales(start, end)

    def daily_rollup(self, start: date, end: date, *, zero_fill: bool = False) -> List[RollupBucket]:
        return daily_rollup(self._snapshot(start, end), start, end, zero_fill=zero_fill)

    def period_rollup(
        self,
        start: date,
        end: date,
        granularity: Granularity,
        *,
        zero_fill: bool = False,
    ) -> List[RollupBucket]:
        return period_rollup(self._snapshot(start, end), start, end, granularity=granularity, zero_fill=zero_fill)

    def top_products(self, start: date, end: date, limit: Optional[int] = None) -> List[ProductRanking]:
        return top_products(self._snapshot(start, end), self.default_limit if limit is None else limit)

    def category_performance(self, start: date, end: date) -> List[CategoryPerformance]:
        return category_performance(self._snapshot(start, end))

    def average_order_value(self, start: date, end: date) -> Decimal:
        return average_order_value(self._snapshot(start, end))

    def loss_breakdown(self, start: date, end: date) -> List[LossEntry]:
        return loss_breakdown(self._snapshot(start, end))

    def report(
        self,
        start: Optional[date],
        end: Optional[date],
        granularity: Granularity = Granularity.DAILY,
        *,
        limit: Optional[int] = None,
        zero_fill: bool = False,
    ) -> AnalyticsReport:
        """Build the full analytics report for ``[start, end]``."""

        records = self._snapshot(start, end)
        report = build_report(
            records,
            start,
            end,
            granularity=granularity,
            limit=self.default_limit if limit is None else limit,
            zero_fill=zero_fill,
        )
        log.debug(
            "Built %s analytics report for %s..%s over %d sale(s)",
            granularity.value,
            start,
            end,
            report.transaction_count,
        )
        return report
