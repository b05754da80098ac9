"""
Token to credit conversion.

Credits are a display unit for plan allocations (1 credit = 10,000 tokens).
They are independent of dollar cost and never feed the ledger.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

TOKENS_PER_CREDIT = 10_000

_CREDIT_PRECISION = Decimal("0.01")


def round_credits(value: Union[Decimal, int, float]) -> float:
    """Round a credit amount to 2 decimal places, half-up."""
    return float(Decimal(str(value)).quantize(_CREDIT_PRECISION, rounding=ROUND_HALF_UP))


def tokens_to_credits(tokens: int) -> float:
    """Convert a raw token total to credits.

    Args:
        tokens: Token count (must be >= 0)

    Returns:
        Credits rounded half-up to 2 decimal places
    """
    if tokens < 0:
        raise ValueError("tokens cannot be negative")
    return round_credits(Decimal(tokens) / Decimal(TOKENS_PER_CREDIT))


def credits_to_tokens(credits: Union[float, Decimal]) -> int:
    """Convert credits back to tokens."""
    if credits < 0:
        raise ValueError("credits cannot be negative")
    return int((Decimal(str(credits)) * TOKENS_PER_CREDIT).to_integral_value(rounding=ROUND_HALF_UP))
