"""
Unit tests for top-ups and referral credits.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from craft_ledger.core.exceptions import UserNotFound
from craft_ledger.core.ledger import Ledger
from craft_ledger.core.topups import record_referral_credit, record_topup
from craft_ledger.storage.models import TransactionType
from craft_ledger.storage.repository import AccountRepository, initialize_schema

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestRecordTopup:
    """Test crediting payments."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.accounts = AccountRepository(self.db_path)
        self.ledger = Ledger(self.db_path, clock=lambda: NOW)
        self.user = self.accounts.create_user("dev@example.com")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_topup_credits_balance(self):
        result = record_topup(
            self.ledger, self.accounts, self.user.id, Decimal("25.00"), "cs_123",
            platform_fee=Decimal("1.25"),
        )

        assert result.balance_after == Decimal("25.00")
        transaction = self.ledger.find_by_idempotency_key("checkout:cs_123")
        assert transaction.type == TransactionType.TOPUP
        assert transaction.metadata == {
            "checkoutId": "cs_123",
            "platformFee": "1.250000",
            "totalCharged": "26.250000",
            "currency": "usd",
        }

    def test_redelivered_checkout_credited_once(self):
        record_topup(self.ledger, self.accounts, self.user.id, Decimal("10"), "cs_dup")
        second = record_topup(self.ledger, self.accounts, self.user.id, Decimal("10"), "cs_dup")

        assert second.duplicate
        assert self.ledger.get_balance(self.user.id) == Decimal("10")

    def test_topup_clears_warning_flag(self):
        self.accounts.set_low_balance_warned_at(self.user.id, NOW)
        record_topup(self.ledger, self.accounts, self.user.id, Decimal("5"), "cs_1")
        assert self.accounts.get_user(self.user.id).low_balance_warned_at is None

    def test_small_topup_keeps_warning_flag(self):
        self.accounts.set_low_balance_warned_at(self.user.id, NOW)
        record_topup(self.ledger, self.accounts, self.user.id, Decimal("0.50"), "cs_1")
        assert self.accounts.get_user(self.user.id).low_balance_warned_at == NOW

    def test_invalid_topups(self):
        with pytest.raises(ValueError):
            record_topup(self.ledger, self.accounts, self.user.id, Decimal("0"), "cs_1")
        with pytest.raises(ValueError):
            record_topup(self.ledger, self.accounts, self.user.id, Decimal("5"), "")

    def test_unknown_user(self):
        with pytest.raises(UserNotFound):
            record_topup(self.ledger, self.accounts, "missing", Decimal("5"), "cs_1")


class TestReferralCredit:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = Ledger(self.db_path)
        self.user = AccountRepository(self.db_path).create_user("dev@example.com")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_referral_credited_once(self):
        record_referral_credit(self.ledger, self.user.id, Decimal("5"), "ref-1", referred_user_id="u2")
        again = record_referral_credit(self.ledger, self.user.id, Decimal("5"), "ref-1")

        assert again.duplicate
        transaction = self.ledger.find_by_idempotency_key("referral:ref-1")
        assert transaction.type == TransactionType.REFERRAL_CREDIT
        assert transaction.metadata == {"referralId": "ref-1", "referredUserId": "u2"}
        assert self.ledger.get_balance(self.user.id) == Decimal("5")

    def test_referral_requires_id(self):
        with pytest.raises(ValueError):
            record_referral_credit(self.ledger, self.user.id, Decimal("5"), "")
