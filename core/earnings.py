"""Clip earnings: views / 1000 x CPM, kept exact in Decimal and rounded to cents."""
from decimal import ROUND_HALF_UP, Decimal

from core.money import CENT

THOUSAND = Decimal(1000)


def compute_earnings(views: int, cpm_rate: Decimal) -> Decimal:
    """
    Earnings in major units for a view count at a CPM rate.

    Args:
        views: Non-negative view count
        cpm_rate: Amount paid per thousand views

    Returns:
        Decimal: Earnings rounded half up to cents

    Raises:
        ValueError: If views or the rate are negative
    """
    if views < 0:
        raise ValueError("Views cannot be negative")
    rate = Decimal(str(cpm_rate))
    if rate < 0:
        raise ValueError("CPM rate cannot be negative")
    return (Decimal(views) / THOUSAND * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_earnings_cents(views: int, cpm_rate: Decimal) -> int:
    return int(compute_earnings(views, cpm_rate) * 100)


def meets_view_requirement(views: int, required_views: int) -> bool:
    return views >= required_views
