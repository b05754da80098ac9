"""
Balance guardrails.

Maps an account balance to the action the metering loop must take.

Enforcement Order:
1. Minimum balance - Pause billable services before charging further
2. Warning balance - Notify the user once while usage continues
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, auto

from .exceptions import InsufficientBalanceError
from .pricing import LOW_BALANCE_WARNING_THRESHOLD, MINIMUM_BALANCE_THRESHOLD


class BalanceAction(Enum):
    """Available balance actions in order of severity."""
    ALLOW = auto()  # Bill normally
    WARN = auto()   # Bill, and send a low-balance warning if not already sent
    PAUSE = auto()  # Pause the resource and skip billing


@dataclass(frozen=True)
class BalanceThresholds:
    """USD floors that drive warnings and pauses."""
    minimum: Decimal = MINIMUM_BALANCE_THRESHOLD
    warning: Decimal = LOW_BALANCE_WARNING_THRESHOLD

    def __post_init__(self):
        """Validate threshold ordering."""
        if self.minimum < 0:
            raise ValueError("minimum threshold must be >= 0")
        if self.warning < self.minimum:
            raise ValueError("warning threshold must be >= minimum threshold")


def evaluate_balance(balance: Decimal, thresholds: BalanceThresholds) -> BalanceAction:
    """Return the most severe action the balance triggers.

    Args:
        balance: Current account balance in USD (may be negative)
        thresholds: Minimum and warning floors

    Returns:
        BalanceAction.PAUSE below the minimum, WARN below the warning
        threshold, ALLOW otherwise
    """
    if balance < thresholds.minimum:
        return BalanceAction.PAUSE
    if balance < thresholds.warning:
        return BalanceAction.WARN
    return BalanceAction.ALLOW


def require_balance(
    balance: Decimal,
    estimated_cost: Decimal,
    thresholds: BalanceThresholds = BalanceThresholds(),
) -> None:
    """Check a balance before starting usage.

    The balance after the estimated cost must stay at or above the minimum
    threshold.

    Raises:
        InsufficientBalanceError: If the usage would leave the balance below the minimum
    """
    if estimated_cost < 0:
        raise ValueError("estimated_cost cannot be negative")
    required = estimated_cost + thresholds.minimum
    if balance < required:
        raise InsufficientBalanceError(balance, required)
