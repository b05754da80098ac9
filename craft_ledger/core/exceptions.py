"""
Exception hierarchy for the ledger and metering engine.

Insufficient balance is not raised by the Ledger itself; callers check
thresholds before starting usage (see guardrails.require_balance).
Duplicate idempotency keys are not errors either.
"""


class CraftLedgerError(Exception):
    """Base class for all ledger and metering errors."""


class PricingNotFound(CraftLedgerError):
    """Raised when the catalog has no entry for a model or resource."""

    def __init__(self, resource_id: str):
        super().__init__(f"Pricing not found: {resource_id}")
        self.resource_id = resource_id


class UserNotFound(CraftLedgerError):
    """Raised when a ledger operation references an unknown user."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class LedgerConflictError(CraftLedgerError):
    """Raised when a ledger transaction keeps conflicting after retries."""


class InsufficientBalanceError(CraftLedgerError):
    """Raised by pre-usage balance checks, never by the Ledger."""

    def __init__(self, balance, required):
        super().__init__(
            f"Insufficient balance: ${balance:.2f} available, ${required:.2f} required"
        )
        self.balance = balance
        self.required = required


class ConfigurationError(CraftLedgerError):
    """Raised when runtime configuration is missing or inconsistent."""
