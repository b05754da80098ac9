"""
Unit tests for the metering orchestrator.

Tests low-balance pausing, warning debounce, idempotent billing, per-resource
failure isolation and the run budget.
"""

import itertools
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from craft_ledger.config.loader import MeteringConfig, RunConfig
from craft_ledger.core.ledger import Ledger
from craft_ledger.core.metering import JobReport, MeteringOrchestrator, floor_hour
from craft_ledger.core.pricing import PricingCatalog, PricingEntry
from craft_ledger.storage.models import ResourceKind, ResourceStatus, TransactionType
from craft_ledger.storage.repository import (
    AccountRepository,
    ResourceRepository,
    initialize_schema,
)

from tests.fakes import RecordingNotifier, RecordingPauser

NOW = datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc)
CREATED = NOW - timedelta(days=1)


class MeteringTestCase:
    """Shared fixture: a database, a ledger and an orchestrator."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.accounts = AccountRepository(self.db_path)
        self.resources = ResourceRepository(self.db_path)
        self.ledger = Ledger(self.db_path, clock=lambda: NOW)
        self.notifier = RecordingNotifier()
        self.pauser = RecordingPauser()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def orchestrator(self, config: MeteringConfig = MeteringConfig(), **kwargs):
        return MeteringOrchestrator(
            self.ledger,
            self.accounts,
            self.resources,
            self.notifier,
            self.pauser,
            config=config,
            clock=lambda: NOW,
            **kwargs,
        )

    def make_user(self, balance: str, email: str = "dev@example.com"):
        user = self.accounts.create_user(email, now=CREATED)
        if Decimal(balance) > 0:
            self.ledger.credit(
                user.id, Decimal(balance), TransactionType.TOPUP, "Top-up",
                idempotency_key=f"checkout:{email}", now=CREATED,
            )
        return user

    def add_sandbox(self, user, resource_id: str = "sbx-1"):
        return self.resources.add_resource(
            user.id, ResourceKind.SANDBOX, resource_id, resource_id=resource_id, now=CREATED
        )


class TestLowBalancePause(MeteringTestCase):
    """Balance below the minimum pauses without billing."""

    def test_end_to_end_pause(self):
        user = self.make_user("0.05")
        self.add_sandbox(user)

        report = self.orchestrator().run_hourly(NOW)

        resource = self.resources.get_resource("sbx-1")
        assert resource.status == ResourceStatus.PAUSED_LOW_BALANCE
        assert resource.paused_at == NOW
        assert self.pauser.paused == ["sbx-1"]
        assert self.notifier.kinds() == ["paused"]
        assert self.ledger.get_balance(user.id) == Decimal("0.05")
        assert report.paused_count == 1
        assert report.billed_count == 0
        assert report.error_count == 0

    def test_paused_resource_not_paused_again(self):
        user = self.make_user("0.05")
        self.add_sandbox(user)
        orchestrator = self.orchestrator()

        orchestrator.run_hourly(NOW)
        orchestrator.run_hourly(NOW + timedelta(hours=1))

        assert self.pauser.paused == ["sbx-1"]
        assert self.notifier.kinds() == ["paused"]

    def test_pause_after_debit(self):
        """A debit that crosses the minimum pauses right away."""
        user = self.make_user("0.15")
        self.add_sandbox(user)

        report = self.orchestrator().run_hourly(NOW)

        assert self.ledger.get_balance(user.id) == Decimal("0.05")
        assert self.notifier.kinds() == ["low_balance", "paused"]
        assert self.resources.get_resource("sbx-1").status == ResourceStatus.PAUSED_LOW_BALANCE
        assert report.billed_count == 1
        assert report.paused_count == 1

    def test_pause_failure_is_reported(self):
        self.pauser.fail = True
        user = self.make_user("0.05")
        self.add_sandbox(user)

        report = self.orchestrator().run_hourly(NOW)

        assert self.resources.get_resource("sbx-1").status == ResourceStatus.ACTIVE
        assert self.notifier.sent == []
        assert report.error_count == 1
        assert "pause failed" in report.errors[0]["error"]

    def test_email_failure_does_not_block_pause(self):
        self.notifier.fail = True
        user = self.make_user("0.05")
        self.add_sandbox(user)

        report = self.orchestrator().run_hourly(NOW)

        assert self.resources.get_resource("sbx-1").status == ResourceStatus.PAUSED_LOW_BALANCE
        assert report.error_count == 0


class TestHourlyBilling(MeteringTestCase):
    """Test hourly compute charges."""

    def test_bills_last_full_hour(self):
        user = self.make_user("10.00")
        self.add_sandbox(user)

        report = self.orchestrator().run_hourly(NOW)

        assert self.ledger.get_balance(user.id) == Decimal("9.90")
        usage = self.ledger.get_transactions(user.id, type=TransactionType.SANDBOX_USAGE)
        assert len(usage) == 1
        window_start = floor_hour(NOW) - timedelta(hours=1)
        assert usage[0].idempotency_key == f"sandbox:sbx-1:{window_start.isoformat()}"
        assert usage[0].metadata["minutes"] == 60
        assert report.total_amount == Decimal("0.10")
        assert report.resume_after is None
        assert not report.timed_out

    def test_rerun_never_double_charges(self):
        user = self.make_user("10.00")
        self.add_sandbox(user)
        orchestrator = self.orchestrator()

        orchestrator.run_hourly(NOW)
        second = orchestrator.run_hourly(NOW + timedelta(minutes=20))

        assert self.ledger.get_balance(user.id) == Decimal("9.90")
        assert second.processed_count == 1
        assert second.billed_count == 0
        assert self.ledger.reconcile(user.id).is_consistent

    def test_database_compute(self):
        user = self.make_user("10.00")
        self.resources.add_resource(
            user.id, ResourceKind.DATABASE, "db", resource_id="db-1", now=CREATED
        )

        self.orchestrator().run_hourly(NOW)

        usage = self.ledger.get_transactions(user.id, type=TransactionType.DATABASE_USAGE)
        assert usage[0].amount == Decimal("-0.01344")

    def test_paused_mid_window_billed_for_partial_hour(self):
        user = self.make_user("10.00")
        self.add_sandbox(user)
        window_start = floor_hour(NOW) - timedelta(hours=1)
        self.resources.mark_paused("sbx-1", window_start + timedelta(minutes=30), ResourceStatus.PAUSED)

        self.orchestrator().run_hourly(NOW)

        usage = self.ledger.get_transactions(user.id, type=TransactionType.SANDBOX_USAGE)
        assert usage[0].metadata["minutes"] == 30
        assert usage[0].amount == Decimal("-0.05")

    def test_resumed_mid_window_billed_from_resume(self):
        user = self.make_user("10.00")
        self.add_sandbox(user)
        window_start = floor_hour(NOW) - timedelta(hours=1)
        self.resources.mark_paused("sbx-1", window_start - timedelta(hours=3))
        self.resources.resume("sbx-1", window_start + timedelta(minutes=45))

        self.orchestrator().run_hourly(NOW)

        usage = self.ledger.get_transactions(user.id, type=TransactionType.SANDBOX_USAGE)
        assert usage[0].metadata["minutes"] == 15
        assert usage[0].amount == Decimal("-0.025")

    def test_priced_by_rate_in_effect_for_window(self):
        window_end = floor_hour(NOW)
        catalog = PricingCatalog([
            PricingEntry(resource_id="e2b/sandbox", provider="e2b", hourly=Decimal("0.10")),
            PricingEntry(
                resource_id="e2b/sandbox",
                provider="e2b",
                version=2,
                effective_from=window_end,
                hourly=Decimal("1.00"),
            ),
        ])
        user = self.make_user("10.00")
        self.add_sandbox(user)

        self.orchestrator(catalog=catalog).run_hourly(NOW)

        assert self.ledger.get_balance(user.id) == Decimal("9.90")

    def test_created_after_window_not_billed(self):
        user = self.make_user("10.00")
        self.resources.add_resource(
            user.id, ResourceKind.SANDBOX, "new", resource_id="new", now=floor_hour(NOW)
        )

        report = self.orchestrator().run_hourly(NOW)

        assert report.processed_count == 1
        assert report.billed_count == 0
        assert self.ledger.get_balance(user.id) == Decimal("10.00")

    def test_deployment_not_billed_hourly(self):
        user = self.make_user("10.00")
        self.resources.add_resource(
            user.id, ResourceKind.DEPLOYMENT, "app", resource_id="app-1", now=CREATED
        )

        report = self.orchestrator().run_hourly(NOW)
        assert report.processed_count == 0


class TestWarnings(MeteringTestCase):
    """Test the debounced low-balance warning."""

    def test_warning_sent_once(self):
        user = self.make_user("0.50")
        self.add_sandbox(user)
        orchestrator = self.orchestrator()

        first = orchestrator.run_hourly(NOW)
        orchestrator.run_hourly(NOW + timedelta(hours=1))

        assert self.notifier.kinds() == ["low_balance"]
        assert first.warning_count == 1
        assert self.accounts.get_user(user.id).low_balance_warned_at == NOW

    def test_warning_cleared_after_recovery(self):
        user = self.make_user("0.50")
        self.add_sandbox(user)
        orchestrator = self.orchestrator()
        orchestrator.run_hourly(NOW)

        self.ledger.credit(user.id, Decimal("10"), TransactionType.ADJUSTMENT, "Goodwill credit")
        orchestrator.run_hourly(NOW + timedelta(hours=1))
        assert self.accounts.get_user(user.id).low_balance_warned_at is None

    def test_failed_warning_is_retried(self):
        self.notifier.fail = True
        user = self.make_user("0.50")
        self.add_sandbox(user)
        orchestrator = self.orchestrator()

        first = orchestrator.run_hourly(NOW)

        assert first.error_count == 0
        assert first.warning_count == 0
        assert self.accounts.get_user(user.id).low_balance_warned_at is None

        self.notifier.fail = False
        second = orchestrator.run_hourly(NOW + timedelta(hours=1))

        assert second.warning_count == 1
        assert self.notifier.kinds() == ["low_balance", "low_balance"]
        assert self.accounts.get_user(user.id).low_balance_warned_at == NOW + timedelta(hours=1)


class TestFailureIsolation(MeteringTestCase):
    """One failing resource must not affect the others."""

    def test_single_failure_isolated(self):
        user = self.make_user("100.00")
        for i in range(10):
            self.add_sandbox(user, resource_id=f"sbx-{i:02d}")

        original_debit = self.ledger.debit

        def flaky_debit(user_id, amount, type, description, **kwargs):
            if "sbx-05" in kwargs.get("idempotency_key", ""):
                raise RuntimeError("provider timeout")
            return original_debit(user_id, amount, type, description, **kwargs)

        with patch.object(self.ledger, "debit", side_effect=flaky_debit):
            report = self.orchestrator().run_hourly(NOW)

        assert report.processed_count == 10
        assert report.billed_count == 9
        assert report.error_count == 1
        assert report.errors == [{"resource_id": "sbx-05", "error": "provider timeout"}]
        assert self.ledger.get_balance(user.id) == Decimal("99.10")

    def test_missing_owner_reported(self):
        user = self.make_user("10.00")
        self.add_sandbox(user)

        with patch.object(self.accounts, "get_user", return_value=None):
            report = self.orchestrator().run_hourly(NOW)

        assert report.error_count == 1
        assert "not found" in report.errors[0]["error"]

    def test_parallel_workers(self):
        users = [self.make_user("10.00", email=f"user{i}@example.com") for i in range(4)]
        for i, user in enumerate(users):
            self.add_sandbox(user, resource_id=f"sbx-{i}")

        config = MeteringConfig(run=RunConfig(max_workers=4))
        report = self.orchestrator(config).run_hourly(NOW)

        assert report.billed_count == 4
        for user in users:
            assert self.ledger.get_balance(user.id) == Decimal("9.90")


class TestRunBudget(MeteringTestCase):
    """Test that an exhausted budget skips resources and resumes cleanly."""

    def test_skips_and_resumes(self):
        user = self.make_user("10.00")
        for i in range(4):
            self.add_sandbox(user, resource_id=f"sbx-{i}")

        config = MeteringConfig(run=RunConfig(budget_seconds=2.5))
        timer = itertools.count().__next__
        report = self.orchestrator(config, timer=timer).run_hourly(NOW)

        assert report.processed_count == 2
        assert report.skipped == ["sbx-2", "sbx-3"]
        assert report.resume_after == "sbx-1"
        assert report.timed_out

        resumed = self.orchestrator().run_hourly(NOW, resume_after=report.resume_after)
        assert resumed.processed_count == 2
        assert resumed.billed_count == 2
        assert self.ledger.get_balance(user.id) == Decimal("9.60")


class TestDailyBilling(MeteringTestCase):
    """Test daily storage and runtime charges."""

    def test_database_storage_uses_measurement(self):
        user = self.make_user("10.00")
        self.resources.add_resource(
            user.id, ResourceKind.DATABASE, "db", resource_id="db-1",
            database_storage_gb=Decimal("3"), now=CREATED,
        )

        report = self.orchestrator().run_daily(NOW)

        storage = self.ledger.get_transactions(user.id, type=TransactionType.STORAGE_USAGE)
        keys = {t.idempotency_key: t for t in storage}
        assert set(keys) == {"database-storage:db-1:2025-03-01", "file-storage:db-1:2025-03-01"}
        assert keys["database-storage:db-1:2025-03-01"].amount == Decimal("-0.0125")
        assert keys["file-storage:db-1:2025-03-01"].metadata["estimated"] is True
        assert report.job == "daily"

    def test_deployment_runtime(self):
        user = self.make_user("10.00")
        self.resources.add_resource(
            user.id, ResourceKind.DEPLOYMENT, "app", resource_id="app-1", now=CREATED
        )

        self.orchestrator().run_daily(NOW)
        self.orchestrator().run_daily(NOW + timedelta(hours=3))

        runtime = self.ledger.get_transactions(user.id, type=TransactionType.RUNTIME_USAGE)
        assert len(runtime) == 1
        assert runtime[0].idempotency_key == "runtime:app-1:2025-03-01"

    def test_daily_runs_with_hourly_at_billing_hour(self):
        user = self.make_user("10.00")
        self.resources.add_resource(
            user.id, ResourceKind.DATABASE, "db", resource_id="db-1", now=CREATED
        )
        midnight = datetime(2025, 3, 2, 0, 10, tzinfo=timezone.utc)

        report = self.orchestrator().run_hourly(midnight)

        assert isinstance(report.daily, JobReport)
        assert report.total_processed == 2
        assert "daily" in report.to_dict()

    def test_no_daily_outside_billing_hour(self):
        self.make_user("10.00")
        assert self.orchestrator().run_hourly(NOW).daily is None
