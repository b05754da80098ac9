"""
Balance top-ups and referral credits.

Payment confirmations enter the balance only through the Ledger, keyed by
the checkout id so a redelivered payment event is recorded once.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from craft_ledger.storage.models import TransactionType
from craft_ledger.storage.repository import AccountRepository

from .ledger import Amount, Ledger, LedgerResult, quantize_money
from .pricing import LOW_BALANCE_WARNING_THRESHOLD

logger = structlog.get_logger(__name__)


def record_topup(
    ledger: Ledger,
    accounts: AccountRepository,
    user_id: str,
    amount: Amount,
    checkout_id: str,
    platform_fee: Amount = Decimal("0"),
    total_charged: Optional[Amount] = None,
    currency: str = "usd",
    warning_threshold: Decimal = LOW_BALANCE_WARNING_THRESHOLD,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """Credit a completed checkout to the user's balance.

    Args:
        ledger: Ledger to credit through
        accounts: Account store, used to clear the low-balance warning flag
        user_id: Account to credit
        amount: Credited amount in USD (excluding the platform fee)
        checkout_id: Payment provider checkout id, used as idempotency key
        platform_fee: Fee charged on top of ``amount``
        total_charged: Amount actually charged; defaults to amount + fee
        currency: Currency of the charge

    Returns:
        LedgerResult; ``duplicate`` is True if the checkout was already recorded

    Raises:
        ValueError: If amount is not positive or checkout_id is empty
        UserNotFound: If the user does not exist
    """
    if not checkout_id:
        raise ValueError("checkout_id is required")
    value = quantize_money(amount)
    if value <= 0:
        raise ValueError("top-up amount must be > 0")
    fee = quantize_money(platform_fee)
    charged = quantize_money(total_charged) if total_charged is not None else value + fee

    result = ledger.credit(
        user_id,
        value,
        TransactionType.TOPUP,
        f"Balance top-up: ${value:.2f}",
        metadata={
            "checkoutId": checkout_id,
            "platformFee": str(fee),
            "totalCharged": str(charged),
            "currency": currency.lower(),
        },
        idempotency_key=f"checkout:{checkout_id}",
        now=now,
    )

    if not result.duplicate and result.balance_after >= warning_threshold:
        user = accounts.get_user(user_id)
        if user is not None and user.low_balance_warned_at is not None:
            accounts.clear_low_balance_warned_at(user_id)
            logger.info("low_balance_warning_cleared", user_id=user_id)

    logger.info(
        "topup_recorded",
        user_id=user_id,
        checkout_id=checkout_id,
        amount=str(value),
        duplicate=result.duplicate,
    )
    return result


def record_referral_credit(
    ledger: Ledger,
    user_id: str,
    amount: Amount,
    referral_id: str,
    referred_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """Credit a referral bonus once per referral."""
    if not referral_id:
        raise ValueError("referral_id is required")
    value = quantize_money(amount)
    if value <= 0:
        raise ValueError("referral credit must be > 0")

    metadata = {"referralId": referral_id}
    if referred_user_id:
        metadata["referredUserId"] = referred_user_id

    return ledger.credit(
        user_id,
        value,
        TransactionType.REFERRAL_CREDIT,
        f"Referral credit: ${value:.2f}",
        metadata=metadata,
        idempotency_key=f"referral:{referral_id}",
        now=now,
    )
