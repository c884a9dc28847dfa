"""
Formatting helpers for customer-facing money strings.
Amounts are integer cents; formatting never goes through float.
"""
from typing import Optional


def money(cents: Optional[int]) -> str:
    """
    Format integer cents as dollars.

    Examples:
        money(5184) -> "$51.84"
        money(-1200) -> "-$12.00"
        money(None) -> "-"
    """
    if cents is None:
        return "-"
    sign = "-" if cents < 0 else ""
    dollars, remainder = divmod(abs(int(cents)), 100)
    return f"{sign}${dollars:,}.{remainder:02d}"


def discount_label(discount_type_value: str, discount_value: int) -> str:
    """'20% off' or '$5.00 off'."""
    if discount_type_value == 'percentage':
        return f"{discount_value}% off"
    return f"{money(discount_value)} off"
