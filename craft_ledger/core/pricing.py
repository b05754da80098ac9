"""
Pricing catalog and rate management.

Static, versioned price tables for AI models and infrastructure resources,
plus plan allocation tables and balance thresholds. Rates are never mutated
in place: a price change is registered as a new version of the entry.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional

from .credits import TOKENS_PER_CREDIT, round_credits, tokens_to_credits
from .exceptions import PricingNotFound


CATALOG_EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Balance floors in USD
MINIMUM_BALANCE_THRESHOLD = Decimal("0.10")
LOW_BALANCE_WARNING_THRESHOLD = Decimal("1.00")


@dataclass(frozen=True)
class PricingEntry:
    """Rates for one billable model or infrastructure resource.

    Token rates are USD per million tokens. ``image_output`` is per image,
    ``audio_second``/``video_second`` per generated second. Infrastructure
    rates are per hour, per GB-month, per GB, per million operations or
    per unit.
    """
    resource_id: str
    provider: str
    version: int = 1
    effective_from: datetime = CATALOG_EPOCH
    input: Decimal = Decimal("0")
    output: Decimal = Decimal("0")
    input_long_context: Optional[Decimal] = None
    output_long_context: Optional[Decimal] = None
    long_context_threshold: Optional[int] = None
    cache_creation: Optional[Decimal] = None
    cache_creation_long_context: Optional[Decimal] = None
    cache_read: Optional[Decimal] = None
    cache_read_long_context: Optional[Decimal] = None
    audio_input: Optional[Decimal] = None
    video_input: Optional[Decimal] = None
    image_input: Optional[Decimal] = None
    audio_output: Optional[Decimal] = None
    image_output: Optional[Decimal] = None
    audio_second: Optional[Decimal] = None
    video_second: Optional[Decimal] = None
    hourly: Optional[Decimal] = None
    per_minute: Optional[Decimal] = None
    gb_month: Optional[Decimal] = None
    per_gb: Optional[Decimal] = None
    per_million_ops: Optional[Decimal] = None
    per_unit: Optional[Decimal] = None

    def __post_init__(self):
        """Validate identifier shape and that no rate is negative."""
        if "/" not in self.resource_id:
            raise ValueError(
                f"resource_id must look like '<provider>/<resource>': {self.resource_id}"
            )
        if self.version < 1:
            raise ValueError("version must be >= 1")
        for name, value in self.__dict__.items():
            if isinstance(value, Decimal) and value < 0:
                raise ValueError(f"{name} cannot be negative for {self.resource_id}")


@dataclass(frozen=True)
class PlanAllocation:
    """Monthly token allowance of a subscription plan."""
    name: str
    price_monthly: Optional[Decimal]
    monthly_tokens: Optional[int]  # None means unlimited
    database_storage_gb: Optional[Decimal] = None

    @property
    def monthly_credits(self) -> Optional[float]:
        if self.monthly_tokens is None:
            return None
        return tokens_to_credits(self.monthly_tokens)

    @property
    def daily_credit_grant(self) -> Optional[float]:
        """Credits granted per day, assuming a 30 day month."""
        if self.monthly_tokens is None:
            return None
        return round_credits(Decimal(self.monthly_tokens) / TOKENS_PER_CREDIT / 30)


class PricingCatalog:
    """Versioned pricing lookup keyed by ``<provider>/<resource>``.

    A version applies from its ``effective_from`` onwards; a version dated
    in the future is registered but not charged until then.
    """

    def __init__(
        self,
        entries: Optional[List[PricingEntry]] = None,
        tool_rates: Optional[Mapping[str, Mapping[str, Decimal]]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._versions: Dict[str, List[PricingEntry]] = {}
        self._tool_rates: Dict[str, Dict[str, Decimal]] = {
            provider: dict(rates) for provider, rates in (tool_rates or {}).items()
        }
        self._clock = clock
        for entry in entries or []:
            self.register(entry)

    def register(self, entry: PricingEntry) -> None:
        """Add a pricing entry version.

        Raises:
            ValueError: If this version of the resource is already registered
        """
        versions = self._versions.setdefault(entry.resource_id, [])
        if any(v.version == entry.version for v in versions):
            raise ValueError(
                f"Pricing version {entry.version} already registered for {entry.resource_id}"
            )
        versions.append(entry)
        versions.sort(key=lambda v: (v.effective_from, v.version))

    def get_pricing(self, resource_id: str, at: Optional[datetime] = None) -> PricingEntry:
        """Get pricing for a model or resource.

        Args:
            resource_id: Identifier such as ``anthropic/claude-sonnet-4.5``
            at: Point in time the usage happened; defaults to the catalog clock.
                The newest version effective at that time is returned

        Returns:
            PricingEntry for the resource

        Raises:
            PricingNotFound: If the resource is unknown (or had no price yet at ``at``)
        """
        if at is None:
            at = self._clock()

        effective = None
        for version in self._versions.get(resource_id, []):
            if version.effective_from <= at:
                effective = version
        if effective is None:
            raise PricingNotFound(resource_id)
        return effective

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._versions

    def resource_ids(self) -> List[str]:
        return sorted(self._versions)

    def tool_rate(self, provider: str, tool: str) -> Optional[Decimal]:
        """USD per 1,000 invocations of a server-side tool, or None if not billed."""
        return self._tool_rates.get(provider, {}).get(tool)


# Server-side tool prices per 1,000 calls. Tools missing here cost nothing extra.
TOOL_RATES_PER_1K: Dict[str, Dict[str, Decimal]] = {
    "anthropic": {
        "web_search": Decimal("10.00"),
        "web_fetch": Decimal("0"),
    },
    "openai": {
        "web_search": Decimal("10.00"),
    },
    "google": {
        "web_search": Decimal("35.00"),
    },
    "x-ai": {
        "web_search": Decimal("5.00"),
        "x_search": Decimal("5.00"),
        "code_execution": Decimal("5.00"),
        "document_search": Decimal("5.00"),
    },
}


_MODEL_ENTRIES = [
    # Anthropic
    PricingEntry(
        resource_id="anthropic/claude-sonnet-4.5",
        provider="anthropic",
        input=Decimal("3.00"),
        output=Decimal("15.00"),
        input_long_context=Decimal("6.00"),
        output_long_context=Decimal("22.50"),
        long_context_threshold=200_000,
        cache_creation=Decimal("3.75"),
        cache_creation_long_context=Decimal("7.50"),
        cache_read=Decimal("0.30"),
        cache_read_long_context=Decimal("0.60"),
    ),
    PricingEntry(
        resource_id="anthropic/claude-haiku-4.5",
        provider="anthropic",
        input=Decimal("1.00"),
        output=Decimal("5.00"),
        cache_creation=Decimal("1.25"),
        cache_read=Decimal("0.10"),
    ),
    PricingEntry(
        resource_id="anthropic/claude-opus-4.1",
        provider="anthropic",
        input=Decimal("15.00"),
        output=Decimal("75.00"),
        cache_creation=Decimal("18.75"),
        cache_read=Decimal("1.50"),
    ),
    # OpenAI
    PricingEntry(
        resource_id="openai/gpt-5.1",
        provider="openai",
        input=Decimal("1.25"),
        output=Decimal("10.00"),
        cache_read=Decimal("0.125"),
    ),
    PricingEntry(
        resource_id="openai/gpt-5-mini",
        provider="openai",
        input=Decimal("0.25"),
        output=Decimal("2.00"),
        cache_read=Decimal("0.025"),
    ),
    PricingEntry(
        resource_id="openai/gpt-4o-audio-preview",
        provider="openai",
        input=Decimal("2.50"),
        output=Decimal("10.00"),
        audio_input=Decimal("40.00"),
        audio_output=Decimal("80.00"),
    ),
    # Google
    PricingEntry(
        resource_id="google/gemini-2.5-flash",
        provider="google",
        input=Decimal("0.30"),
        output=Decimal("2.50"),
        cache_read=Decimal("0.03"),
        audio_input=Decimal("1.00"),
    ),
    PricingEntry(
        resource_id="google/gemini-3-pro-preview",
        provider="google",
        input=Decimal("2.00"),
        output=Decimal("12.00"),
        input_long_context=Decimal("4.00"),
        output_long_context=Decimal("18.00"),
        long_context_threshold=200_000,
        cache_read=Decimal("0.20"),
        cache_read_long_context=Decimal("0.40"),
    ),
    PricingEntry(
        resource_id="google/gemini-2.5-flash-image",
        provider="google",
        input=Decimal("0.30"),
        output=Decimal("2.50"),
        image_output=Decimal("0.039"),
    ),
    PricingEntry(
        resource_id="google/veo-3.1",
        provider="google",
        video_second=Decimal("0.40"),
        audio_second=Decimal("0"),
    ),
    # xAI
    PricingEntry(
        resource_id="x-ai/grok-code-fast-1",
        provider="x-ai",
        input=Decimal("0.20"),
        output=Decimal("1.50"),
        cache_read=Decimal("0.02"),
    ),
    PricingEntry(
        resource_id="x-ai/grok-4.1-fast",
        provider="x-ai",
        input=Decimal("0.20"),
        output=Decimal("0.50"),
        cache_read=Decimal("0.05"),
    ),
]


_INFRASTRUCTURE_ENTRIES = [
    PricingEntry(resource_id="e2b/sandbox", provider="e2b", hourly=Decimal("0.10")),
    PricingEntry(resource_id="supabase/compute", provider="supabase", hourly=Decimal("0.01344")),
    PricingEntry(
        resource_id="supabase/database-storage", provider="supabase", gb_month=Decimal("0.125")
    ),
    PricingEntry(
        resource_id="supabase/file-storage", provider="supabase", gb_month=Decimal("0.021")
    ),
    PricingEntry(resource_id="supabase/egress", provider="supabase", per_gb=Decimal("0.09")),
    PricingEntry(
        resource_id="r2/storage",
        provider="r2",
        gb_month=Decimal("0.015"),
        per_million_ops=Decimal("4.50"),
    ),
    PricingEntry(resource_id="vercel/runtime-cpu", provider="vercel", hourly=Decimal("0.128")),
    PricingEntry(
        resource_id="vercel/runtime-memory", provider="vercel", hourly=Decimal("0.0106")
    ),
    PricingEntry(
        resource_id="vercel/invocations", provider="vercel", per_million_ops=Decimal("0.60")
    ),
    PricingEntry(resource_id="vercel/deployment", provider="vercel", per_unit=Decimal("0")),
]


# Fixed catalog - no dynamic fetching, no default fallback rates
PRICING_CATALOG = PricingCatalog(
    entries=_MODEL_ENTRIES + _INFRASTRUCTURE_ENTRIES,
    tool_rates=TOOL_RATES_PER_1K,
)


PLAN_ALLOCATIONS: Dict[str, PlanAllocation] = {
    "FREE": PlanAllocation(
        name="Free",
        price_monthly=Decimal("0"),
        monthly_tokens=1_000_000,
        database_storage_gb=Decimal("0.5"),
    ),
    "PRO": PlanAllocation(
        name="Pro",
        price_monthly=Decimal("150"),
        monthly_tokens=10_000_000,
        database_storage_gb=Decimal("5"),
    ),
    "ENTERPRISE": PlanAllocation(
        name="Enterprise",
        price_monthly=None,
        monthly_tokens=None,
    ),
}


def get_plan_allocation(plan: str) -> PlanAllocation:
    """Look up a plan by name (case-insensitive).

    Raises:
        ValueError: If the plan is unknown
    """
    try:
        return PLAN_ALLOCATIONS[plan.upper()]
    except KeyError:
        raise ValueError(f"Unknown plan: {plan}")
