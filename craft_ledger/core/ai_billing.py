"""
AI usage billing.

Prices one AI call, debits it and writes its audit record in the same
ledger transaction.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from craft_ledger.storage.db import utcnow
from craft_ledger.storage.models import AIUsageRecord, TransactionType
from craft_ledger.storage.repository import UsageRepository, insert_ai_usage_record

from .calculator import CostBreakdown, calculate_cost, requires_long_context
from .ledger import Ledger, LedgerResult, quantize_money
from .pricing import PRICING_CATALOG, PricingCatalog
from .usage import CostModifiers, UsageReport

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AIBillingResult:
    """Breakdown of a billed call and the ledger outcome (None if nothing was charged)."""
    breakdown: CostBreakdown
    amount: Decimal
    ledger_result: Optional[LedgerResult] = None

    @property
    def duplicate(self) -> bool:
        return self.ledger_result is not None and self.ledger_result.duplicate


def bill_ai_usage(
    ledger: Ledger,
    user_id: str,
    model_id: str,
    usage: UsageReport,
    modifiers: Optional[CostModifiers] = None,
    request_id: Optional[str] = None,
    project_id: Optional[str] = None,
    catalog: PricingCatalog = PRICING_CATALOG,
    now: Optional[datetime] = None,
) -> AIBillingResult:
    """Debit the cost of one AI call.

    When ``modifiers`` is omitted, long-context pricing applies whenever the
    input exceeds the model's long-context threshold.

    Args:
        ledger: Ledger to debit through
        user_id: Account to charge
        model_id: Model identifier, e.g. ``openai/gpt-5.1``
        usage: Normalized usage of the call
        modifiers: Pricing modifiers
        request_id: Provider response id; makes the debit idempotent
        project_id: Optional project the call belongs to

    Raises:
        PricingNotFound: If the model has no pricing
        UserNotFound: If the user does not exist
    """
    created_at = now or utcnow()
    if modifiers is None:
        entry = catalog.get_pricing(model_id, created_at)
        modifiers = CostModifiers(is_long_context=requires_long_context(entry, usage))

    breakdown = calculate_cost(model_id, usage, modifiers, catalog, at=created_at)
    amount = quantize_money(breakdown.total_cost)

    def audit_record(transaction_id: Optional[str]) -> AIUsageRecord:
        return AIUsageRecord(
            user_id=user_id,
            model_id=model_id,
            provider=breakdown.provider,
            usage=usage.to_dict(),
            breakdown=breakdown.to_dict(),
            total_cost=amount,
            created_at=created_at,
            transaction_id=transaction_id,
            project_id=project_id,
            request_id=request_id,
        )

    if amount == 0:
        # Nothing to debit; the counters are still kept for the audit trail
        UsageRepository(ledger.db_path).add_record(audit_record(None))
        return AIBillingResult(breakdown=breakdown, amount=amount)

    def write_audit(conn: sqlite3.Connection, transaction_id: str) -> None:
        insert_ai_usage_record(conn, audit_record(transaction_id))

    result = ledger.debit(
        user_id,
        amount,
        TransactionType.AI_USAGE,
        f"AI usage: {model_id}",
        metadata={
            "modelId": model_id,
            "provider": breakdown.provider,
            "inputTokens": usage.input_tokens,
            "outputTokens": usage.output_tokens,
            "cacheReadTokens": usage.cache_read_tokens,
            "projectId": project_id,
            "discounts": list(breakdown.applied_discounts),
        },
        idempotency_key=f"ai:{request_id}" if request_id else None,
        within_transaction=write_audit,
        now=created_at,
    )
    logger.info(
        "ai_usage_billed",
        user_id=user_id,
        model_id=model_id,
        amount=str(amount),
        duplicate=result.duplicate,
    )
    return AIBillingResult(breakdown=breakdown, amount=amount, ledger_result=result)
