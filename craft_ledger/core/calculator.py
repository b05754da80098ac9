"""
AI usage cost calculation.

Maps a canonical UsageReport plus modifiers to an itemized CostBreakdown in
USD. Deterministic for a given pricing time: no I/O, no randomness. All
arithmetic is Decimal and nothing is rounded here; rounding happens at
display time and when the ledger quantizes the final amount.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .pricing import PRICING_CATALOG, PricingCatalog, PricingEntry
from .usage import CacheDuration, CostModifiers, UsageReport

ZERO = Decimal("0")
ONE_MILLION = Decimal("1000000")
ONE_THOUSAND = Decimal("1000")

BATCH_DISCOUNT = Decimal("0.5")
ONE_HOUR_CACHE_MULTIPLIER = Decimal("2")
# Cache reads default to 90% off the input rate when a model has no explicit rate
DEFAULT_CACHE_READ_FRACTION = Decimal("0.1")

# Tools with their own line item; every other priced tool lands in other_tools_cost
_WEB_SEARCH = "web_search"
_CODE_EXECUTION = "code_execution"


@dataclass(frozen=True)
class CostBreakdown:
    """Itemized cost of one AI call."""
    model_id: str
    provider: str
    input_cost: Decimal = ZERO
    output_cost: Decimal = ZERO
    cache_creation_cost: Decimal = ZERO
    cache_read_cost: Decimal = ZERO
    audio_input_cost: Decimal = ZERO
    video_input_cost: Decimal = ZERO
    image_input_cost: Decimal = ZERO
    image_output_cost: Decimal = ZERO
    audio_output_cost: Decimal = ZERO
    video_output_cost: Decimal = ZERO
    reasoning_cost: Decimal = ZERO
    web_search_cost: Decimal = ZERO
    code_execution_cost: Decimal = ZERO
    other_tools_cost: Decimal = ZERO
    total_token_cost: Decimal = ZERO
    total_tool_cost: Decimal = ZERO
    total_cost: Decimal = ZERO
    applied_discounts: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        """JSON-friendly representation for audit records."""
        data: Dict[str, object] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                data[f.name] = str(value)
            elif isinstance(value, tuple):
                data[f.name] = list(value)
            else:
                data[f.name] = value
        return data


@dataclass(frozen=True)
class _Rates:
    """Effective per-million rates after modifiers."""
    input: Decimal
    output: Decimal
    cache_creation: Optional[Decimal]
    cache_read: Decimal
    audio_input: Decimal
    video_input: Decimal
    image_input: Decimal
    audio_output: Decimal
    discounts: Tuple[str, ...]


def _apply_modifiers(entry: PricingEntry, modifiers: CostModifiers) -> _Rates:
    input_rate = entry.input
    output_rate = entry.output
    cache_creation = entry.cache_creation
    cache_read = entry.cache_read
    discounts = []

    # Long context swaps rates only where the catalog defines them
    if modifiers.is_long_context:
        swapped = False
        if entry.input_long_context is not None:
            input_rate = entry.input_long_context
            swapped = True
        if entry.output_long_context is not None:
            output_rate = entry.output_long_context
            swapped = True
        if entry.cache_creation_long_context is not None:
            cache_creation = entry.cache_creation_long_context
        if entry.cache_read_long_context is not None:
            cache_read = entry.cache_read_long_context
        if swapped:
            discounts.append("long-context premium")

    # Batch halves input and output after any long-context swap
    if modifiers.is_batch_mode:
        input_rate = input_rate * BATCH_DISCOUNT
        output_rate = output_rate * BATCH_DISCOUNT
        discounts.append("batch 50%")

    if modifiers.cache_duration == CacheDuration.ONE_HOUR and input_rate:
        cache_creation = input_rate * ONE_HOUR_CACHE_MULTIPLIER
        discounts.append("1-hour cache")

    if cache_read is None:
        cache_read = input_rate * DEFAULT_CACHE_READ_FRACTION

    return _Rates(
        input=input_rate,
        output=output_rate,
        cache_creation=cache_creation,
        cache_read=cache_read,
        audio_input=entry.audio_input if entry.audio_input is not None else input_rate,
        video_input=entry.video_input if entry.video_input is not None else input_rate,
        image_input=entry.image_input if entry.image_input is not None else input_rate,
        audio_output=entry.audio_output if entry.audio_output is not None else output_rate,
        discounts=tuple(discounts),
    )


def _per_million(tokens: int, rate: Optional[Decimal]) -> Decimal:
    if not tokens or rate is None:
        return ZERO
    return Decimal(tokens) / ONE_MILLION * rate


def requires_long_context(entry: PricingEntry, usage: UsageReport) -> bool:
    """True when the input size crosses the entry's long-context threshold."""
    threshold = entry.long_context_threshold
    return threshold is not None and usage.input_tokens > threshold


def calculate_cost(
    resource_id: str,
    usage: UsageReport,
    modifiers: Optional[CostModifiers] = None,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> CostBreakdown:
    """Calculate the itemized cost of an AI call.

    Args:
        resource_id: Model identifier, e.g. ``anthropic/claude-sonnet-4.5``
        usage: Normalized usage counters
        modifiers: Batch / long-context / cache-duration modifiers
        catalog: Pricing catalog to read rates from
        at: When the call happened; rates are the version in effect then

    Returns:
        CostBreakdown with ``total_cost == total_token_cost + total_tool_cost``

    Raises:
        PricingNotFound: If the catalog has no entry for ``resource_id``
    """
    entry = catalog.get_pricing(resource_id, at)
    rates = _apply_modifiers(entry, modifiers or CostModifiers())

    # Cached input is billed only at the cache-read rate, never twice
    regular_input = max(usage.input_tokens - usage.cache_read_tokens, 0)

    input_cost = _per_million(regular_input, rates.input)
    cache_read_cost = _per_million(usage.cache_read_tokens, rates.cache_read)
    cache_creation_cost = _per_million(usage.cache_creation_tokens, rates.cache_creation)
    output_cost = _per_million(usage.output_tokens, rates.output)
    reasoning_cost = _per_million(usage.reasoning_tokens, rates.output)
    audio_input_cost = _per_million(usage.audio_input_tokens, rates.audio_input)
    video_input_cost = _per_million(usage.video_input_tokens, rates.video_input)
    image_input_cost = _per_million(usage.image_input_tokens, rates.image_input)

    audio_output_cost = _per_million(usage.audio_output_tokens, rates.audio_output)
    if usage.audio_seconds_generated and entry.audio_second is not None:
        audio_output_cost += Decimal(str(usage.audio_seconds_generated)) * entry.audio_second

    video_output_cost = ZERO
    if usage.video_seconds_generated and entry.video_second is not None:
        video_output_cost = Decimal(str(usage.video_seconds_generated)) * entry.video_second

    image_output_cost = ZERO
    if usage.images_generated and entry.image_output is not None:
        image_output_cost = Decimal(usage.images_generated) * entry.image_output

    web_search_cost = ZERO
    code_execution_cost = ZERO
    other_tools_cost = ZERO
    for tool, calls in sorted(usage.server_tool_calls.items()):
        rate = catalog.tool_rate(entry.provider, tool)
        if rate is None or not calls:
            continue  # unknown tools are not billed
        cost = Decimal(calls) / ONE_THOUSAND * rate
        if tool == _WEB_SEARCH:
            web_search_cost += cost
        elif tool == _CODE_EXECUTION:
            code_execution_cost += cost
        else:
            other_tools_cost += cost

    total_token_cost = (
        input_cost
        + output_cost
        + cache_creation_cost
        + cache_read_cost
        + audio_input_cost
        + video_input_cost
        + image_input_cost
        + image_output_cost
        + audio_output_cost
        + video_output_cost
        + reasoning_cost
    )
    total_tool_cost = web_search_cost + code_execution_cost + other_tools_cost

    return CostBreakdown(
        model_id=resource_id,
        provider=entry.provider,
        input_cost=input_cost,
        output_cost=output_cost,
        cache_creation_cost=cache_creation_cost,
        cache_read_cost=cache_read_cost,
        audio_input_cost=audio_input_cost,
        video_input_cost=video_input_cost,
        image_input_cost=image_input_cost,
        image_output_cost=image_output_cost,
        audio_output_cost=audio_output_cost,
        video_output_cost=video_output_cost,
        reasoning_cost=reasoning_cost,
        web_search_cost=web_search_cost,
        code_execution_cost=code_execution_cost,
        other_tools_cost=other_tools_cost,
        total_token_cost=total_token_cost,
        total_tool_cost=total_tool_cost,
        total_cost=total_token_cost + total_tool_cost,
        applied_discounts=rates.discounts,
    )


_DISPLAY_FIELDS = (
    ("input_cost", "Input"),
    ("cache_read_cost", "Cache Read"),
    ("cache_creation_cost", "Cache Write"),
    ("output_cost", "Output"),
    ("reasoning_cost", "Reasoning"),
    ("audio_input_cost", "Audio Input"),
    ("video_input_cost", "Video Input"),
    ("image_input_cost", "Image Input"),
    ("image_output_cost", "Image Gen"),
    ("audio_output_cost", "Audio Gen"),
    ("video_output_cost", "Video Gen"),
    ("web_search_cost", "Web Search"),
    ("code_execution_cost", "Code Exec"),
    ("other_tools_cost", "Other Tools"),
)


def format_cost_breakdown(breakdown: CostBreakdown) -> str:
    """Human-readable one-line summary, e.g. ``Input: $0.0300 | Total: $0.0300``."""
    parts = []
    for attr, label in _DISPLAY_FIELDS:
        value = getattr(breakdown, attr)
        if value > 0:
            parts.append(f"{label}: ${value:.4f}")
    parts.append(f"Total: ${breakdown.total_cost:.4f}")
    return " | ".join(parts)


def estimate_cost(
    resource_id: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cached_tokens: int = 0,
    catalog: PricingCatalog = PRICING_CATALOG,
    at: Optional[datetime] = None,
) -> Decimal:
    """Rough pre-call estimate from expected token counts.

    ``input_tokens`` here excludes ``cached_tokens``.
    """
    entry = catalog.get_pricing(resource_id, at)
    cost = _per_million(input_tokens, entry.input) + _per_million(output_tokens, entry.output)
    if cached_tokens and entry.cache_read is not None:
        cost += _per_million(cached_tokens, entry.cache_read)
    return cost
