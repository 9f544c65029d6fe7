"""Shopping-list orders and their one-way ``Pending -> Purchased`` transition.

Marking an order purchased restocks the product named after the order's item
(creating it when needed) and stamps the order in a single repository unit of
work: either both the stock increase and the state change are written, or
neither is.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from . import log
from .constants import DEFAULT_UNIT, OrderState
from .data_manager import OrderRow
from .errors import AlreadyPurchasedError, InvalidInputError, InvalidStateError
from .money import ZERO
from .repository import WorkbookRepository, generate_id, normalize_name, utc_now
from .stock_ledger import (
    StockLedger,
    require_nonnegative_money,
    require_positive_quantity,
)


EDITABLE_ORDER_FIELDS = ("item_name", "category", "quantity", "notes", "purchase_price", "selling_price")


@dataclass(frozen=True)
class OrderCommand:
    """User intent for adding an item to the shopping list."""

    item_name: str
    quantity: int
    category: str = ""
    notes: Optional[str] = None
    purchase_price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None


@dataclass(frozen=True)
class PurchaseSummary:
    """Totals over a set of purchased orders."""

    order_count: int
    total_quantity: int
    total_cost: Decimal
    expected_profit: Decimal


def _purchase_day(order: OrderRow) -> Optional[date]:
    if not order.purchased_at_iso:
        return None
    # Purchase timestamps are stored in UTC; filter on the seller's local day.
    return datetime.fromisoformat(order.purchased_at_iso).astimezone().date()


def summarize_purchases(orders: Iterable[OrderRow]) -> PurchaseSummary:
    """Total purchase cost and expected profit of ``orders``.

    Missing prices count as zero.
    """

    count = 0
    quantity = 0
    cost = ZERO
    profit = ZERO
    for order in orders:
        purchase_price = order.purchase_price or ZERO
        selling_price = order.selling_price or ZERO
        count += 1
        quantity += order.quantity
        cost += purchase_price * order.quantity
        profit += (selling_price - purchase_price) * order.quantity
    return PurchaseSummary(order_count=count, total_quantity=quantity, total_cost=cost, expected_profit=profit)


class OrderLifecycle:
    """Create, edit, and purchase shopping-list orders."""

    def __init__(self, repository: WorkbookRepository, ledger: StockLedger) -> None:
        self.repository = repository
        self.ledger = ledger

    def _validated_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - set(EDITABLE_ORDER_FIELDS)
        if unknown:
            raise InvalidInputError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        cleaned = dict(fields)
        if "item_name" in cleaned:
            name = cleaned["item_name"]
            if not name or not str(name).strip():
                raise InvalidInputError("Item name must not be blank")
            cleaned["item_name"] = str(name).strip()
        if "category" in cleaned:
            cleaned["category"] = (cleaned["category"] or "").strip()
        if "quantity" in cleaned:
            require_positive_quantity(cleaned["quantity"])
        for price_field in ("purchase_price", "selling_price"):
            if price_field in cleaned:
                cleaned[price_field] = require_nonnegative_money(cleaned[price_field])
        return cleaned

    def create_order(self, command: OrderCommand, *, when: Optional[datetime] = None) -> OrderRow:
        """Add a new ``Pending`` order to the shopping list.

        Raises:
            InvalidInputError: If the item name is blank.
            InvalidQuantityError: If the quantity is not positive or a price is
                negative.
        """

        fields = self._validated_fields(
            {
                "item_name": command.item_name,
                "category": command.category,
                "quantity": command.quantity,
                "notes": command.notes,
                "purchase_price": command.purchase_price,
                "selling_price": command.selling_price,
            }
        )
        created = when or utc_now()
        record = OrderRow(
            order_id=generate_id("O", when=created),
            state=OrderState.PENDING.value,
            purchased_at_iso=None,
            created_at_iso=created.isoformat(),
            **fields,
        )
        self.repository.insert_order(record)
        log.info("Created order '%s' for %d x '%s'", record.order_id, record.quantity, record.item_name)
        return record

    def get_order(self, order_id: str) -> OrderRow:
        return self.repository.get_order(order_id)

    def list_orders(self, state: Optional[OrderState] = None) -> List[OrderRow]:
        """Return orders in creation order, optionally filtered by state."""

        return self.repository.list_orders(state.value if state is not None else None)

    def update_order(self, order_id: str, **fields: Any) -> OrderRow:
        """Edit a pending order.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidStateError: If the order has already been purchased.
            InvalidInputError: If a field is not editable or a name is blank.
            InvalidQuantityError: If quantity or prices are invalid.
        """

        cleaned = self._validated_fields(fields)
        with self.repository.transaction():
            order = self.repository.get_order(order_id)
            if not order.is_pending:
                log.warning("Rejected edit of purchased order '%s'", order_id)
                raise InvalidStateError(f"Order '{order_id}' was already purchased and can no longer be edited")
            if not cleaned:
                return order
            updated = self.repository.update_order_fields(order_id, **cleaned)
        log.info("Updated order '%s' (%s)", order_id, ", ".join(sorted(cleaned)))
        return updated

    def delete_order(self, order_id: str) -> OrderRow:
        """Remove a pending order from the shopping list.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidStateError: If the order has already been purchased.
        """

        with self.repository.transaction():
            order = self.repository.get_order(order_id)
            if not order.is_pending:
                log.warning("Rejected deletion of purchased order '%s'", order_id)
                raise InvalidStateError(f"Order '{order_id}' was already purchased and can no longer be deleted")
            self.repository.delete_order(order_id)
        log.info("Deleted order '%s'", order_id)
        return order

    def mark_purchased(self, order_id: str, *, when: Optional[datetime] = None) -> OrderRow:
        """Move an order to ``Purchased`` and restock its product.

        The product is matched by item name (case and spacing insensitive);
        when none exists a new one is created with the order's category and
        prices. Prices missing on the order count as zero for a new product and
        leave an existing product's prices untouched.

        Raises:
            NotFoundError: If the order does not exist.
            AlreadyPurchasedError: If the order is not pending.
        """

        order = self.repository.get_order(order_id)
        if not order.is_pending:
            log.warning("Rejected purchase of order '%s': already processed", order_id)
            raise AlreadyPurchasedError(f"Order '{order_id}' has already been purchased")

        purchased_at = when or utc_now()
        existing = self.repository.find_product_by_name(order.item_name)
        product_id = existing.product_id if existing is not None else generate_id("P", when=purchased_at)

        with self.ledger.locked([product_id]):
            with self.repository.transaction():
                order = self.repository.get_order(order_id)
                if not order.is_pending:
                    log.warning("Rejected purchase of order '%s': already processed", order_id)
                    raise AlreadyPurchasedError(f"Order '{order_id}' has already been purchased")
                current = self.repository.find_product_by_name(order.item_name)
                if current is not None:
                    product_id = current.product_id
                product = self.ledger.apply_restock(
                    product_id,
                    order.quantity,
                    order.purchase_price,
                    order.selling_price,
                    product_name=order.item_name,
                    category=order.category,
                    unit=current.unit if current is not None else DEFAULT_UNIT,
                )
                updated = self.repository.update_order_state(order_id, OrderState.PURCHASED.value, purchased_at)

        log.info(
            "Order '%s' purchased: product '%s' now holds %d",
            order_id,
            product.product_id,
            product.stock_quantity,
        )
        return updated

    def purchase_history(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        *,
        category: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[OrderRow]:
        """Purchased orders, newest first, filtered by purchase day and text.

        ``category`` must match exactly; ``search`` is a case-insensitive
        substring match against the item name or the category.
        """

        needle = normalize_name(search) if search else None
        results = []
        for order in self.repository.list_orders(OrderState.PURCHASED.value):
            day = _purchase_day(order)
            if start is not None and (day is None or day < start):
                continue
            if end is not None and (day is None or day > end):
                continue
            if category is not None and order.category != category:
                continue
            if needle and needle not in normalize_name(order.item_name) and needle not in normalize_name(order.category):
                continue
            results.append(order)
        return sorted(results, key=lambda order: order.purchased_at_iso or "", reverse=True)
