"""Multi-line sale transactions that never oversell stock.

A sale is validated, priced, and then written together with its stock
decrements in one repository unit of work while the locks of every product it
touches are held. Committed sales are immutable: there is no update path, a
correction is a new sale.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import log
from .data_manager import ProductRow, SaleLineRow, SaleRow
from .errors import EmptyTransactionError
from .money import ZERO, to_money
from .repository import SaleRecord, WorkbookRepository, generate_id, utc_now
from .stock_ledger import StockLedger, require_nonnegative_money, require_positive_quantity


@dataclass(frozen=True)
class SaleLineCommand:
    """One requested line of a sale.

    ``unit_price`` defaults to the product's current selling price.
    """

    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class CommittedSale:
    """A sale header together with the lines written for it."""

    sale: SaleRow
    lines: tuple[SaleLineRow, ...]

    @property
    def sale_id(self) -> str:
        return self.sale.sale_id

    @property
    def total_amount(self) -> Decimal:
        return self.sale.total_amount


def build_sale_line(
    sale_id: str,
    product: ProductRow,
    quantity: int,
    unit_price: Decimal,
    *,
    when: datetime,
) -> SaleLineRow:
    """Materialise one sale line, snapshotting the product's name and category."""

    price = to_money(unit_price)
    return SaleLineRow(
        line_id=generate_id("L", when=when),
        sale_id=sale_id,
        product_id=product.product_id,
        product_name=product.product_name,
        category=product.category,
        unit=product.unit,
        quantity=quantity,
        unit_price=price,
        total_price=to_money(price * quantity),
    )


class SaleTransaction:
    """Validate and commit sales against the stock ledger."""

    def __init__(self, repository: WorkbookRepository, ledger: StockLedger) -> None:
        self.repository = repository
        self.ledger = ledger

    def commit(
        self,
        sale_date: Optional[date],
        lines: Sequence[SaleLineCommand],
        *,
        when: Optional[datetime] = None,
    ) -> CommittedSale:
        """Commit a sale and decrement stock for every line, all or nothing.

        Args:
            sale_date (date | None): Calendar day the sale belongs to in the
                seller's local time. Defaults to today.
            lines (Sequence[SaleLineCommand]): Requested lines. The same
                product may appear more than once; its quantities are summed
                for the stock check.
            when (datetime | None): Creation timestamp, defaults to now (UTC).

        Returns:
            CommittedSale: The persisted header (with its generated id and
                total) and lines.

        Raises:
            EmptyTransactionError: If ``lines`` is empty.
            InvalidQuantityError: If a quantity is not a positive integer or a
                price is negative.
            NotFoundError: If a line references an unknown product.
            InsufficientStockError: If any product lacks stock; nothing is
                written in that case.
        """

        if not lines:
            log.warning("Rejected sale without lines")
            raise EmptyTransactionError("A sale needs at least one line")
        prices: List[Optional[Decimal]] = []
        for line in lines:
            require_positive_quantity(line.quantity)
            prices.append(require_nonnegative_money(line.unit_price))

        created = when or utc_now()
        sale_day = sale_date or date.today()
        sale_id = generate_id("S", when=created)
        product_ids = {line.product_id for line in lines}

        with self.ledger.locked(product_ids):
            with self.repository.transaction():
                products: Dict[str, ProductRow] = {
                    product_id: self.repository.get_product(product_id) for product_id in sorted(product_ids)
                }
                rows = []
                for line, price in zip(lines, prices):
                    product = products[line.product_id]
                    rows.append(
                        build_sale_line(
                            sale_id,
                            product,
                            line.quantity,
                            price if price is not None else product.selling_price,
                            when=created,
                        )
                    )
                total = sum((row.total_price for row in rows), ZERO)
                header = SaleRow(
                    sale_id=sale_id,
                    sale_date_iso=sale_day.isoformat(),
                    created_at_iso=created.isoformat(),
                    total_amount=total,
                )
                self.repository.insert_sale_transaction(header, rows)

        log.info(
            "Committed sale '%s' dated %s with %d line(s), total=%s",
            sale_id,
            header.sale_date_iso,
            len(rows),
            total,
        )
        return CommittedSale(sale=header, lines=tuple(rows))

    def get_sale(self, sale_id: str) -> SaleRecord:
        return self.repository.get_sale(sale_id)

    def list_sales(self, start: Optional[date] = None, end: Optional[date] = None) -> List[SaleRecord]:
        """Committed sales dated within ``[start, end]``, oldest first."""

        return self.repository.query_sales(start, end)
