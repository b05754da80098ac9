"""
Infrastructure cost calculation.

Sandbox, database, storage, egress, runtime and deployment charges. Pure
functions over the pricing catalog; each returns an InfraCharge priced by
the rate version in effect at ``at`` (the catalog clock when omitted).
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from .pricing import PRICING_CATALOG, PricingCatalog

Number = Union[int, float, Decimal]

ZERO = Decimal("0")
MINUTES_PER_HOUR = Decimal("60")
ONE_MILLION = Decimal("1000000")
MAX_BILLABLE_MINUTES = 60

SANDBOX = "e2b/sandbox"
DATABASE_COMPUTE = "supabase/compute"
EGRESS = "supabase/egress"
RUNTIME_CPU = "vercel/runtime-cpu"
RUNTIME_MEMORY = "vercel/runtime-memory"
INVOCATIONS = "vercel/invocations"
DEPLOYMENT = "vercel/deployment"

STORAGE_RESOURCES = {
    "database": "supabase/database-storage",
    "file": "supabase/file-storage",
    "r2": "r2/storage",
}


@dataclass(frozen=True)
class InfraCharge:
    """A single infrastructure charge in USD."""
    resource_type: str
    quantity: Decimal
    unit: str
    cost: Decimal
    description: str


def _dec(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _non_negative(name: str, value: Number) -> Decimal:
    amount = _dec(value)
    if amount < 0:
        raise ValueError(f"{name} cannot be negative")
    return amount


def _minutes_cost(
    resource_id: str, minutes: Decimal, catalog: PricingCatalog, at: Optional[datetime]
) -> Decimal:
    entry = catalog.get_pricing(resource_id, at)
    if entry.per_minute is not None:
        return minutes * entry.per_minute
    return minutes * (entry.hourly or ZERO) / MINUTES_PER_HOUR


def billable_minutes(
    window_start: datetime,
    window_end: datetime,
    paused_at: Optional[datetime] = None,
    active_since: Optional[datetime] = None,
) -> int:
    """Minutes a resource was active inside a billing window.

    The active span is clipped to the window, started no earlier than
    ``active_since`` and ended at ``paused_at``. Partial minutes round up;
    the result never exceeds one hour. A resource paused at or before the
    window start is not billed.
    """
    if window_end <= window_start:
        raise ValueError("window_end must be after window_start")

    start = window_start
    if active_since is not None and active_since > start:
        start = active_since
    end = window_end
    if paused_at is not None and paused_at < end:
        end = paused_at
    if end <= start:
        return 0

    minutes = math.ceil((end - start).total_seconds() / 60)
    return min(minutes, MAX_BILLABLE_MINUTES)


def sandbox_cost(
    minutes: Number,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> InfraCharge:
    """Cost of running an E2B sandbox for ``minutes``."""
    quantity = _non_negative("minutes", minutes)
    cost = _minutes_cost(SANDBOX, quantity, catalog, at)
    return InfraCharge(
        resource_type="sandbox",
        quantity=quantity,
        unit="minutes",
        cost=cost,
        description=f"E2B sandbox usage: {quantity} minutes",
    )


def database_compute_cost(
    minutes: Number,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> InfraCharge:
    """Cost of database compute for ``minutes``."""
    quantity = _non_negative("minutes", minutes)
    cost = _minutes_cost(DATABASE_COMPUTE, quantity, catalog, at)
    return InfraCharge(
        resource_type="database",
        quantity=quantity,
        unit="minutes",
        cost=cost,
        description=f"Database compute: {quantity} minutes",
    )


def _storage_entry(storage_type: str, catalog: PricingCatalog, at: Optional[datetime]):
    try:
        resource_id = STORAGE_RESOURCES[storage_type]
    except KeyError:
        raise ValueError(f"Unknown storage type: {storage_type}")
    return catalog.get_pricing(resource_id, at)


def daily_storage_cost(
    storage_type: str,
    size_gb: Number,
    days_in_month: int = 30,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> InfraCharge:
    """One day of storage: the monthly GB rate divided across the month."""
    if days_in_month <= 0:
        raise ValueError("days_in_month must be > 0")
    quantity = _non_negative("size_gb", size_gb)
    entry = _storage_entry(storage_type, catalog, at)
    cost = quantity * (entry.gb_month or ZERO) / Decimal(days_in_month)
    return InfraCharge(
        resource_type="storage",
        quantity=quantity,
        unit="GB-day",
        cost=cost,
        description=f"Daily {storage_type} storage: {quantity} GB",
    )


def storage_cost(
    storage_type: str,
    size_gb: Number,
    operations: int = 0,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> InfraCharge:
    """Monthly storage cost plus per-operation charges where the provider has them."""
    quantity = _non_negative("size_gb", size_gb)
    ops = _non_negative("operations", operations)
    entry = _storage_entry(storage_type, catalog, at)
    cost = quantity * (entry.gb_month or ZERO)
    if ops and entry.per_million_ops is not None:
        cost += ops / ONE_MILLION * entry.per_million_ops
    return InfraCharge(
        resource_type="storage",
        quantity=quantity,
        unit="GB-month",
        cost=cost,
        description=f"{storage_type} storage: {quantity} GB",
    )


def egress_cost(
    gb: Number,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> InfraCharge:
    quantity = _non_negative("gb", gb)
    entry = catalog.get_pricing(EGRESS, at)
    return InfraCharge(
        resource_type="egress",
        quantity=quantity,
        unit="GB",
        cost=quantity * (entry.per_gb or ZERO),
        description=f"Bandwidth egress: {quantity} GB",
    )


def runtime_cost(
    cpu_hours: Number,
    memory_gb_hours: Number,
    invocations: int,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> InfraCharge:
    """Serverless runtime: active CPU, provisioned memory and invocations."""
    cpu = _non_negative("cpu_hours", cpu_hours)
    memory = _non_negative("memory_gb_hours", memory_gb_hours)
    calls = _non_negative("invocations", invocations)

    cost = (
        cpu * (catalog.get_pricing(RUNTIME_CPU, at).hourly or ZERO)
        + memory * (catalog.get_pricing(RUNTIME_MEMORY, at).hourly or ZERO)
        + calls / ONE_MILLION * (catalog.get_pricing(INVOCATIONS, at).per_million_ops or ZERO)
    )
    return InfraCharge(
        resource_type="runtime",
        quantity=cpu,
        unit="cpu-hours",
        cost=cost,
        description=(
            f"Runtime: {cpu} CPU hours, {memory} GB-hours, {calls} invocations"
        ),
    )


def deployment_cost(
    catalog: PricingCatalog = PRICING_CATALOG, at: Optional[datetime] = None
) -> InfraCharge:
    entry = catalog.get_pricing(DEPLOYMENT, at)
    return InfraCharge(
        resource_type="deployment",
        quantity=Decimal("1"),
        unit="deployment",
        cost=entry.per_unit or ZERO,
        description="Deployment",
    )
