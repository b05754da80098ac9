"""
Infrastructure metering orchestrator.

Runs the hourly and daily billing jobs. For each billable resource it
checks the owner's balance, pauses or warns as needed, converts measured
or estimated usage to an InfraCharge and debits it through the Ledger.

Processing Order per resource:
1. Balance below minimum - pause the resource, email the user, skip billing
2. Balance below warning - email once (debounced by low_balance_warned_at)
3. Bill the window with an idempotency key, so reruns never double charge
4. Balance dropped below minimum after the debit - pause immediately
"""

import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from craft_ledger.config.loader import MeteringConfig
from craft_ledger.storage.db import utcnow
from craft_ledger.storage.models import (
    MonitoredResource,
    ResourceKind,
    ResourceStatus,
    TransactionType,
    UserAccount,
)
from craft_ledger.storage.repository import AccountRepository, ResourceRepository

from .collaborators import Notifier, ResourcePauser
from .exceptions import UserNotFound
from .guardrails import BalanceAction, evaluate_balance
from .infrastructure import (
    InfraCharge,
    billable_minutes,
    daily_storage_cost,
    database_compute_cost,
    runtime_cost,
    sandbox_cost,
)
from .ledger import Ledger, quantize_money
from .pricing import PRICING_CATALOG, PricingCatalog

logger = structlog.get_logger(__name__)

HOURLY_KINDS = (ResourceKind.SANDBOX, ResourceKind.DATABASE)
DAILY_KINDS = (ResourceKind.DATABASE, ResourceKind.DEPLOYMENT)


def floor_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class PlannedCharge:
    """One debit the orchestrator intends to make for a resource."""
    type: TransactionType
    charge: InfraCharge
    idempotency_key: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResourceOutcome:
    """What happened to one resource during a run."""
    resource_id: str
    amount: Decimal = Decimal("0")
    billed: bool = False
    paused: bool = False
    warned: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class JobReport:
    """Summary of one metering or expiration run."""
    job: str
    started_at: datetime
    processed_count: int = 0
    error_count: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    billed_count: int = 0
    paused_count: int = 0
    warning_count: int = 0
    skipped: List[str] = field(default_factory=list)
    resume_after: Optional[str] = None
    total_amount: Decimal = Decimal("0")
    finished_at: Optional[datetime] = None
    timed_out: bool = False
    daily: Optional["JobReport"] = None

    def record_error(self, resource_id: str, error: str) -> None:
        self.errors.append({"resource_id": resource_id, "error": error})
        self.error_count = len(self.errors)

    def add_outcome(self, outcome: ResourceOutcome) -> None:
        self.processed_count += 1
        self.total_amount += outcome.amount
        if outcome.billed:
            self.billed_count += 1
        if outcome.paused:
            self.paused_count += 1
        if outcome.warned:
            self.warning_count += 1
        for error in outcome.errors:
            self.record_error(error["resource_id"], error["error"])

    @property
    def total_processed(self) -> int:
        return self.processed_count + (self.daily.total_processed if self.daily else 0)

    @property
    def all_errors(self) -> List[Dict[str, str]]:
        return self.errors + (self.daily.all_errors if self.daily else [])

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "job": self.job,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "errors": list(self.errors),
            "billed_count": self.billed_count,
            "paused_count": self.paused_count,
            "warning_count": self.warning_count,
            "skipped": list(self.skipped),
            "resume_after": self.resume_after,
            "total_amount": str(self.total_amount),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "timed_out": self.timed_out,
        }
        if self.daily is not None:
            data["daily"] = self.daily.to_dict()
        return data


class MeteringOrchestrator:
    """Bills infrastructure resources against prepaid balances."""

    def __init__(
        self,
        ledger: Ledger,
        accounts: AccountRepository,
        resources: ResourceRepository,
        notifier: Notifier,
        pauser: ResourcePauser,
        config: MeteringConfig = MeteringConfig(),
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
        catalog: PricingCatalog = PRICING_CATALOG,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.resources = resources
        self.notifier = notifier
        self.pauser = pauser
        self.config = config
        self._clock = clock
        self._timer = timer
        self.catalog = catalog

    def run_hourly(self, now: Optional[datetime] = None, resume_after: Optional[str] = None) -> JobReport:
        """Bill compute for the last full hour.

        The window is ``[floor_hour(now) - 1h, floor_hour(now))``. At the
        configured daily billing hour the daily job runs as well and its
        report is attached as ``report.daily``.
        """
        now = now or self._clock()
        window_end = floor_hour(now)
        window_start = window_end - timedelta(hours=1)

        resources = self.resources.list_billable(
            HOURLY_KINDS, paused_since=window_start, after_id=resume_after
        )
        report = self._run(
            "hourly",
            resources,
            lambda resource: self.hourly_charges(resource, window_start, window_end),
            now,
        )

        if window_end.hour == self.config.schedule.daily_billing_hour:
            report.daily = self.run_daily(now)
        return report

    def run_daily(self, now: Optional[datetime] = None, resume_after: Optional[str] = None) -> JobReport:
        """Bill one day of storage and runtime for active databases and deployments."""
        now = now or self._clock()
        resources = self.resources.list_billable(DAILY_KINDS, after_id=resume_after)
        day = now.date().isoformat()
        return self._run(
            "daily",
            resources,
            lambda resource: self.daily_charges(resource, day, priced_at=now),
            now,
        )

    def hourly_charges(
        self, resource: MonitoredResource, window_start: datetime, window_end: datetime
    ) -> List[PlannedCharge]:
        # last_active_at moves forward when a paused resource is resumed
        minutes = billable_minutes(
            window_start,
            window_end,
            resource.paused_at,
            active_since=resource.last_active_at or resource.created_at,
        )
        if minutes == 0:
            return []

        if resource.kind == ResourceKind.SANDBOX:
            charge = sandbox_cost(minutes, self.catalog, at=window_start)
            type = TransactionType.SANDBOX_USAGE
        elif resource.kind == ResourceKind.DATABASE:
            charge = database_compute_cost(minutes, self.catalog, at=window_start)
            type = TransactionType.DATABASE_USAGE
        else:
            return []

        return [
            PlannedCharge(
                type=type,
                charge=charge,
                idempotency_key=f"{resource.kind.value}:{resource.id}:{window_start.isoformat()}",
                metadata={
                    "resourceId": resource.id,
                    "resourceKind": resource.kind.value,
                    "minutes": minutes,
                    "windowStart": window_start.isoformat(),
                    "windowEnd": window_end.isoformat(),
                },
            )
        ]

    def daily_charges(
        self, resource: MonitoredResource, day: str, priced_at: Optional[datetime] = None
    ) -> List[PlannedCharge]:
        estimates = self.config.estimates
        planned = []

        if resource.kind == ResourceKind.DATABASE:
            sizes = (
                ("database", "database-storage", resource.database_storage_gb, estimates.database_storage_gb),
                ("file", "file-storage", resource.file_storage_gb, estimates.file_storage_gb),
            )
            for storage_type, charge_name, measured, estimate in sizes:
                size = measured if measured is not None else estimate
                planned.append(PlannedCharge(
                    type=TransactionType.STORAGE_USAGE,
                    charge=daily_storage_cost(storage_type, size, catalog=self.catalog, at=priced_at),
                    idempotency_key=f"{charge_name}:{resource.id}:{day}",
                    metadata={
                        "resourceId": resource.id,
                        "storageType": storage_type,
                        "sizeGb": str(size),
                        "estimated": measured is None,
                        "date": day,
                    },
                ))

        elif resource.kind == ResourceKind.DEPLOYMENT:
            planned.append(PlannedCharge(
                type=TransactionType.RUNTIME_USAGE,
                charge=runtime_cost(
                    estimates.runtime_cpu_hours,
                    estimates.runtime_memory_gb_hours,
                    estimates.runtime_invocations,
                    catalog=self.catalog,
                    at=priced_at,
                ),
                idempotency_key=f"runtime:{resource.id}:{day}",
                metadata={"resourceId": resource.id, "estimated": True, "date": day},
            ))

        return planned

    def bill_resource(
        self,
        resource: MonitoredResource,
        charges: Callable[[MonitoredResource], List[PlannedCharge]],
        now: Optional[datetime] = None,
    ) -> ResourceOutcome:
        """Run the balance checks and debits for one resource.

        Raises:
            UserNotFound: If the resource's owner does not exist
        """
        now = now or self._clock()
        outcome = ResourceOutcome(resource_id=resource.id)
        thresholds = self.config.thresholds

        user = self.accounts.get_user(resource.user_id)
        if user is None:
            raise UserNotFound(resource.user_id)

        action = evaluate_balance(user.account_balance, thresholds)
        if action == BalanceAction.PAUSE:
            if resource.status == ResourceStatus.ACTIVE:
                self._pause(resource, user, user.account_balance, now, outcome)
            logger.info(
                "metering_skipped_low_balance",
                resource_id=resource.id,
                user_id=user.id,
                balance=str(user.account_balance),
            )
            return outcome

        if action == BalanceAction.WARN:
            if user.low_balance_warned_at is None:
                outcome.warned = self._warn(user, now)
        elif user.low_balance_warned_at is not None:
            self.accounts.clear_low_balance_warned_at(user.id)
            logger.info("low_balance_warning_cleared", user_id=user.id)

        balance_after = None
        for planned in charges(resource):
            amount = quantize_money(planned.charge.cost)
            if amount == 0:
                continue
            result = self.ledger.debit(
                user.id,
                amount,
                planned.type,
                planned.charge.description,
                metadata=planned.metadata,
                idempotency_key=planned.idempotency_key,
                now=now,
            )
            if result.duplicate:
                continue
            outcome.billed = True
            outcome.amount += amount
            balance_after = result.balance_after

        if (
            balance_after is not None
            and balance_after < thresholds.minimum
            and resource.status == ResourceStatus.ACTIVE
        ):
            self._pause(resource, user, balance_after, now, outcome)

        return outcome

    def _run(
        self,
        job: str,
        resources: List[MonitoredResource],
        charges: Callable[[MonitoredResource], List[PlannedCharge]],
        now: datetime,
    ) -> JobReport:
        report = JobReport(job=job, started_at=self._clock())
        deadline = self._timer() + self.config.run.budget_seconds
        logger.info("metering_run_started", job=job, resources=len(resources))

        groups: "OrderedDict[str, List[MonitoredResource]]" = OrderedDict()
        for resource in resources:
            groups.setdefault(resource.user_id, []).append(resource)

        def process(group: List[MonitoredResource]) -> List[Tuple[str, Optional[ResourceOutcome]]]:
            results: List[Tuple[str, Optional[ResourceOutcome]]] = []
            for resource in group:
                if self._timer() >= deadline:
                    results.append((resource.id, None))
                    continue
                results.append((resource.id, self._bill_safely(resource, charges, now)))
            return results

        if self.config.run.max_workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=self.config.run.max_workers) as pool:
                batches = list(pool.map(process, groups.values()))
        else:
            batches = [process(group) for group in groups.values()]

        outcomes: Dict[str, Optional[ResourceOutcome]] = {}
        for batch in batches:
            outcomes.update(batch)

        # Resources are reported in id order so a resumed run continues deterministically
        reached_gap = False
        for resource in resources:
            outcome = outcomes[resource.id]
            if outcome is None:
                report.skipped.append(resource.id)
                reached_gap = True
                continue
            report.add_outcome(outcome)
            if not reached_gap:
                report.resume_after = resource.id

        if report.skipped:
            report.timed_out = True
        else:
            report.resume_after = None

        report.finished_at = self._clock()
        logger.info(
            "metering_run_finished",
            job=job,
            processed=report.processed_count,
            billed=report.billed_count,
            paused=report.paused_count,
            errors=report.error_count,
            skipped=len(report.skipped),
            total_amount=str(report.total_amount),
        )
        return report

    def _bill_safely(
        self,
        resource: MonitoredResource,
        charges: Callable[[MonitoredResource], List[PlannedCharge]],
        now: datetime,
    ) -> ResourceOutcome:
        try:
            return self.bill_resource(resource, charges, now)
        except Exception as e:
            logger.error(
                "metering_resource_failed",
                resource_id=resource.id,
                user_id=resource.user_id,
                error=str(e),
            )
            return ResourceOutcome(
                resource_id=resource.id,
                errors=[{"resource_id": resource.id, "error": str(e)}],
            )

    def _pause(
        self,
        resource: MonitoredResource,
        user: UserAccount,
        balance: Decimal,
        now: datetime,
        outcome: ResourceOutcome,
    ) -> None:
        try:
            self.pauser.pause(resource)
        except Exception as e:
            logger.error("resource_pause_failed", resource_id=resource.id, error=str(e))
            outcome.errors.append({"resource_id": resource.id, "error": f"pause failed: {e}"})
            return

        self.resources.mark_paused(resource.id, now, ResourceStatus.PAUSED_LOW_BALANCE)
        outcome.paused = True
        logger.info(
            "resource_paused_low_balance",
            resource_id=resource.id,
            user_id=user.id,
            balance=str(balance),
        )
        try:
            self.notifier.send_service_paused(user.email, resource.name, balance)
        except Exception as e:
            logger.warning("email_failed", kind="service_paused", user_id=user.id, error=str(e))

    def _warn(self, user: UserAccount, now: datetime) -> bool:
        """Send the low-balance email; the debounce flag is set only once it went out."""
        try:
            self.notifier.send_low_balance_warning(user.email, user.account_balance)
        except Exception as e:
            logger.warning("email_failed", kind="low_balance_warning", user_id=user.id, error=str(e))
            return False
        self.accounts.set_low_balance_warned_at(user.id, now)
        logger.info("low_balance_warned", user_id=user.id, balance=str(user.account_balance))
        return True
