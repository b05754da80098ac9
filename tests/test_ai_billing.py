"""
Unit tests for AI usage billing.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from craft_ledger.core.ai_billing import bill_ai_usage
from craft_ledger.core.exceptions import PricingNotFound
from craft_ledger.core.ledger import Ledger
from craft_ledger.core.pricing import PricingCatalog, PricingEntry
from craft_ledger.core.usage import CostModifiers, UsageReport
from craft_ledger.storage.models import TransactionType
from craft_ledger.storage.repository import AccountRepository, UsageRepository, initialize_schema

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
SONNET = "anthropic/claude-sonnet-4.5"


class TestBillAIUsage:
    """Test debiting AI calls with audit records."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = Ledger(self.db_path, clock=lambda: NOW)
        self.user = AccountRepository(self.db_path).create_user("dev@example.com")
        self.ledger.credit(self.user.id, Decimal("10"), TransactionType.TOPUP, "Top-up")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_debit_and_audit_record(self):
        usage = UsageReport(input_tokens=1_000_000, output_tokens=100_000)

        result = bill_ai_usage(
            self.ledger, self.user.id, SONNET, usage,
            request_id="msg_1", project_id="proj-1", now=NOW,
        )

        assert result.amount == Decimal("4.50")
        assert not result.duplicate
        assert self.ledger.get_balance(self.user.id) == Decimal("5.50")

        records = UsageRepository(self.db_path).get_recent_records(user_id=self.user.id)
        assert len(records) == 1
        assert records[0].transaction_id == result.ledger_result.transaction_id
        assert records[0].request_id == "msg_1"
        assert records[0].project_id == "proj-1"
        assert records[0].usage["input_tokens"] == 1_000_000

    def test_same_request_billed_once(self):
        usage = UsageReport(input_tokens=1000, output_tokens=1000)

        bill_ai_usage(self.ledger, self.user.id, SONNET, usage, request_id="msg_1")
        again = bill_ai_usage(self.ledger, self.user.id, SONNET, usage, request_id="msg_1")

        assert again.duplicate
        assert len(self.ledger.get_transactions(self.user.id, type=TransactionType.AI_USAGE)) == 1
        assert len(UsageRepository(self.db_path).get_recent_records()) == 1

    def test_long_context_detected(self):
        usage = UsageReport(input_tokens=250_000, output_tokens=0)

        result = bill_ai_usage(self.ledger, self.user.id, SONNET, usage)

        assert result.amount == Decimal("1.50")
        assert "long-context premium" in result.breakdown.applied_discounts

    def test_explicit_modifiers_respected(self):
        usage = UsageReport(input_tokens=1_000_000, output_tokens=0)

        result = bill_ai_usage(
            self.ledger, self.user.id, SONNET, usage, modifiers=CostModifiers(is_batch_mode=True)
        )

        assert result.amount == Decimal("1.50")

    def test_zero_cost_keeps_audit_record_only(self):
        result = bill_ai_usage(
            self.ledger, self.user.id, SONNET, UsageReport(), request_id="msg_free", now=NOW
        )
        bill_ai_usage(self.ledger, self.user.id, SONNET, UsageReport(), request_id="msg_free", now=NOW)

        assert result.amount == 0
        assert result.ledger_result is None
        assert self.ledger.get_transactions(self.user.id, type=TransactionType.AI_USAGE) == []
        records = UsageRepository(self.db_path).get_recent_records(user_id=self.user.id)
        assert len(records) == 1
        assert records[0].request_id == "msg_free"
        assert records[0].transaction_id is None
        assert records[0].total_cost == Decimal("0")

    def test_priced_by_version_in_effect_at_call_time(self):
        catalog = PricingCatalog([
            PricingEntry(resource_id="acme/model", provider="acme", input=Decimal("1.00")),
            PricingEntry(
                resource_id="acme/model",
                provider="acme",
                version=2,
                effective_from=datetime(2025, 6, 1, tzinfo=timezone.utc),
                input=Decimal("100.00"),
            ),
        ])
        usage = UsageReport(input_tokens=1_000_000)

        before = bill_ai_usage(self.ledger, self.user.id, "acme/model", usage, catalog=catalog, now=NOW)

        assert before.amount == Decimal("1.00")
        assert self.ledger.get_balance(self.user.id) == Decimal("9.00")

    def test_unknown_model(self):
        with pytest.raises(PricingNotFound):
            bill_ai_usage(self.ledger, self.user.id, "acme/unknown", UsageReport(input_tokens=10))
