"""
Top-up expiration sweep.

Purchased balance expires a fixed number of days after the top-up. The
sweep expires each eligible top-up through ``Ledger.expire_topup`` and
emails the owner; it also reports and announces upcoming expirations.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import structlog

from craft_ledger.config.loader import MeteringConfig
from craft_ledger.storage.db import utcnow
from craft_ledger.storage.models import BalanceTransaction
from craft_ledger.storage.repository import AccountRepository, TransactionRepository

from .collaborators import Notifier
from .ledger import Ledger
from .metering import JobReport

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExpiringCredits:
    """Unexpired top-ups of one user that expire within a window."""
    user_id: str
    total: Decimal
    earliest_expiry: Optional[datetime]
    topups: List[BalanceTransaction] = field(default_factory=list)


class ExpirationSweep:
    """Expires top-ups older than the configured lifetime."""

    def __init__(
        self,
        ledger: Ledger,
        accounts: AccountRepository,
        notifier: Notifier,
        config: MeteringConfig = MeteringConfig(),
        clock: Callable[[], datetime] = utcnow,
        transactions: Optional[TransactionRepository] = None,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.notifier = notifier
        self.config = config
        self._clock = clock
        self.transactions = transactions or TransactionRepository(ledger.db_path)

    @property
    def lifetime(self) -> timedelta:
        return timedelta(days=self.config.expiration.topup_lifetime_days)

    def run(self, now: Optional[datetime] = None) -> JobReport:
        """Expire every top-up created at or before ``now - lifetime``.

        Each top-up is its own atomic unit; a failure is recorded in the
        report and the sweep moves on.
        """
        now = now or self._clock()
        report = JobReport(job="expiration", started_at=self._clock())
        topups = self.transactions.list_expirable_topups(now - self.lifetime)
        logger.info("expiration_run_started", candidates=len(topups))

        for topup in topups:
            try:
                result = self.ledger.expire_topup(topup.id, now)
            except Exception as e:
                logger.error("expiration_failed", topup_id=topup.id, error=str(e))
                report.record_error(topup.id, str(e))
                continue
            if result is None:
                continue  # expired by a concurrent sweep

            report.processed_count += 1
            report.total_amount += result.expired_amount
            if result.expired_amount > 0:
                try:
                    self._notify_expired(result.user_id, result.expired_amount)
                except Exception as e:
                    logger.error("expiry_notice_failed", topup_id=topup.id, error=str(e))
                    report.record_error(topup.id, f"notice failed: {e}")

        report.finished_at = self._clock()
        logger.info(
            "expiration_run_finished",
            processed=report.processed_count,
            errors=report.error_count,
            total_amount=str(report.total_amount),
        )
        return report

    def credits_expiring_soon(
        self,
        user_id: str,
        days_ahead: int = 30,
        now: Optional[datetime] = None,
    ) -> ExpiringCredits:
        """Top-ups of a user that expire within ``days_ahead`` days."""
        now = now or self._clock()
        topups = self._expiring_between(now, now + timedelta(days=days_ahead), user_id)
        return self._summarize(user_id, topups)

    def notify_expiring_soon(self, now: Optional[datetime] = None) -> JobReport:
        """Email every user with top-ups expiring within the notice window."""
        now = now or self._clock()
        report = JobReport(job="expiry_notice", started_at=self._clock())
        horizon = now + timedelta(days=self.config.expiration.expiry_notice_days)

        by_user: "OrderedDict[str, List[BalanceTransaction]]" = OrderedDict()
        for topup in self._expiring_between(now, horizon):
            by_user.setdefault(topup.user_id, []).append(topup)

        for user_id, topups in by_user.items():
            expiring = self._summarize(user_id, topups)
            try:
                user = self.accounts.get_user(user_id)
            except Exception as e:
                logger.error("expiry_notice_failed", user_id=user_id, error=str(e))
                report.record_error(user_id, str(e))
                continue
            if user is None:
                report.record_error(user_id, f"User {user_id} not found")
                continue
            try:
                self.notifier.send_credits_expiring_soon(
                    user.email, expiring.total, expiring.earliest_expiry
                )
            except Exception as e:
                logger.warning("email_failed", kind="credits_expiring_soon", user_id=user_id, error=str(e))
                report.record_error(user_id, str(e))
                continue
            report.processed_count += 1
            report.total_amount += expiring.total

        report.finished_at = self._clock()
        return report

    def expiration_stats(self, now: Optional[datetime] = None) -> Dict[str, Decimal]:
        """Amounts expiring in the next 7 and 30 days, and expired in the last 30."""
        now = now or self._clock()
        expiring_7 = self._expiring_between(now, now + timedelta(days=7))
        expiring_30 = self._expiring_between(now, now + timedelta(days=30))
        expired = self.transactions.list_expired_since(now - timedelta(days=30))
        return {
            "expiring_next_7_days": sum((t.amount for t in expiring_7), Decimal("0")),
            "expiring_next_30_days": sum((t.amount for t in expiring_30), Decimal("0")),
            "expired_last_30_days": sum(
                (t.expired_amount or Decimal("0") for t in expired), Decimal("0")
            ),
        }

    def _expiring_between(
        self, start: datetime, end: datetime, user_id: Optional[str] = None
    ) -> List[BalanceTransaction]:
        # A top-up expires at created_at + lifetime
        return self.transactions.list_unexpired_topups(
            created_after=start - self.lifetime,
            created_before=end - self.lifetime,
            user_id=user_id,
        )

    def _summarize(self, user_id: str, topups: List[BalanceTransaction]) -> ExpiringCredits:
        earliest = min((t.created_at for t in topups), default=None)
        return ExpiringCredits(
            user_id=user_id,
            total=sum((t.amount for t in topups), Decimal("0")),
            earliest_expiry=earliest + self.lifetime if earliest else None,
            topups=list(topups),
        )

    def _notify_expired(self, user_id: str, amount: Decimal) -> None:
        user = self.accounts.get_user(user_id)
        if user is None:
            return
        try:
            self.notifier.send_token_expiry_notice(user.email, amount)
        except Exception as e:
            logger.warning("email_failed", kind="token_expiry", user_id=user_id, error=str(e))
