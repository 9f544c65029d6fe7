"""Decimal helpers for monetary amounts and their display format."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from .constants import DEFAULT_CURRENCY_LABEL

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, str]


def to_money(value: Optional[MoneyLike]) -> Decimal:
    """Coerce ``value`` into a two-place :class:`~decimal.Decimal`.

    ``None`` and blank strings become ``0.00``. Floats are rejected because
    they would smuggle binary rounding errors into totals.

    Raises:
        TypeError: If ``value`` is a float.
        ValueError: If ``value`` is not a valid decimal literal.
    """

    if value is None:
        return ZERO
    if isinstance(value, float):
        raise TypeError("Monetary amounts must not be floats")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return ZERO
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal, label: str = DEFAULT_CURRENCY_LABEL) -> str:
    """Render ``amount`` with thousands separators, at most two decimals."""

    quantized = to_money(amount)
    if quantized == quantized.to_integral_value():
        text = f"{quantized:,.0f}"
    else:
        text = f"{quantized:,.2f}".rstrip("0")
    return f"{text} {label}"
