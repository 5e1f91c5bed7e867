"""Conversion between decimal currency amounts and integer cents."""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")

AmountLike = Union[Decimal, str, int, float]


class AmountError(ValueError):
    """Raised when a value cannot be read as a currency amount."""

    pass


def to_decimal(amount: AmountLike) -> Decimal:
    """
    Parse an amount into a Decimal quantized to cents.

    Floats go through str() so 0.1 stays 0.10 rather than its binary expansion.
    """
    if isinstance(amount, bool):
        raise AmountError(f"Invalid amount: {amount!r}")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise AmountError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise AmountError(f"Invalid amount: {amount!r}")
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: AmountLike) -> int:
    """Convert a major-unit amount (e.g. euros) to integer cents, rounding half up."""
    return int(to_decimal(amount) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back into a two-place Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)
