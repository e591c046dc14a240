"""
Pricing calculations.

Providers carry a single blended price per 1K tokens. Costs are computed in
Decimal and always rounded UP so estimates never under-count spend.
"""

from decimal import Decimal, ROUND_UP
from typing import Union

COST_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert a price or cost to Decimal without float artifacts.

    Raises:
        ValueError: If the value is negative or not numeric
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid monetary value: {value!r}")
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value))
        except ArithmeticError:
            raise ValueError(f"Invalid monetary value: {value!r}")
    else:
        raise ValueError(f"Invalid monetary value: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Invalid monetary value: {value!r}")
    if result < 0:
        raise ValueError(f"Monetary value cannot be negative: {value!r}")
    return result


def calculate_cost(price_per_1k_tokens: Number, tokens: int) -> Decimal:
    """Calculate cost for a token count with conservative rounding.

    Args:
        price_per_1k_tokens: Blended price per 1K tokens
        tokens: Token count

    Returns:
        Cost rounded UP to 4 decimal places

    Raises:
        ValueError: If tokens is negative or the price is invalid
    """
    if tokens < 0:
        raise ValueError("tokens cannot be negative")

    price = to_decimal(price_per_1k_tokens)
    cost = (Decimal(tokens) / Decimal("1000")) * price
    return cost.quantize(COST_QUANTUM, rounding=ROUND_UP)
