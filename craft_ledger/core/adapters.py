"""
Provider usage adapters.

Anthropic, OpenAI, Google and xAI report the same concepts under
incompatible field names. Each adapter maps one raw usage payload (a dict,
or an SDK object exposing the same attributes) into a UsageReport.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from .usage import UsageReport


def _get(raw: Any, key: str, default: Any = None) -> Any:
    """Read a field from a dict or an SDK response object."""
    if raw is None:
        return default
    if isinstance(raw, Mapping):
        value = raw.get(key, default)
    else:
        value = getattr(raw, key, default)
    return default if value is None else value


def _int(raw: Any, key: str) -> int:
    return int(_get(raw, key, 0) or 0)


def _tool_calls(raw: Any) -> Dict[str, int]:
    calls: Dict[str, int] = {}
    if raw is None:
        return calls
    items = raw.items() if isinstance(raw, Mapping) else vars(raw).items()
    for name, count in items:
        if not count:
            continue
        # "web_search_requests" -> "web_search"
        tool = name[: -len("_requests")] if name.endswith("_requests") else name
        calls[tool] = calls.get(tool, 0) + int(count)
    return calls


def normalize_anthropic(raw: Any) -> UsageReport:
    """Anthropic ``usage`` block.

    ``input_tokens`` excludes cache reads and cache writes, so cache reads are
    added back to obtain the total input the calculator expects.
    """
    cache_read = _int(raw, "cache_read_input_tokens")
    return UsageReport(
        input_tokens=_int(raw, "input_tokens") + cache_read,
        output_tokens=_int(raw, "output_tokens"),
        cache_creation_tokens=_int(raw, "cache_creation_input_tokens"),
        cache_read_tokens=cache_read,
        server_tool_calls=_tool_calls(_get(raw, "server_tool_use")),
    )


def normalize_openai(raw: Any) -> UsageReport:
    """OpenAI chat completions ``usage`` block.

    Reasoning tokens are already part of ``completion_tokens``; they are
    split out so they appear as their own line item at the output rate.
    """
    prompt_details = _get(raw, "prompt_tokens_details")
    completion_details = _get(raw, "completion_tokens_details")
    reasoning = _int(completion_details, "reasoning_tokens")
    audio_out = _int(completion_details, "audio_tokens")
    completion = _int(raw, "completion_tokens")
    return UsageReport(
        input_tokens=_int(raw, "prompt_tokens") - _int(prompt_details, "audio_tokens"),
        output_tokens=max(completion - reasoning - audio_out, 0),
        cache_read_tokens=_int(prompt_details, "cached_tokens"),
        reasoning_tokens=reasoning,
        audio_input_tokens=_int(prompt_details, "audio_tokens"),
        audio_output_tokens=audio_out,
        server_tool_calls=_tool_calls(_get(raw, "server_tool_use")),
    )


def normalize_google(raw: Any) -> UsageReport:
    """Gemini ``usage_metadata`` block."""
    return UsageReport(
        input_tokens=_int(raw, "prompt_token_count"),
        output_tokens=_int(raw, "candidates_token_count"),
        cache_read_tokens=_int(raw, "cached_content_token_count"),
        reasoning_tokens=_int(raw, "thoughts_token_count"),
        images_generated=_int(raw, "images_generated"),
        server_tool_calls=_tool_calls(_get(raw, "server_tool_use")),
    )


def normalize_xai(raw: Any) -> UsageReport:
    """xAI (Grok) ``usage`` block, OpenAI-like with its own cache/tool fields."""
    prompt_details = _get(raw, "prompt_tokens_details")
    completion_details = _get(raw, "completion_tokens_details")
    cached = _int(raw, "cached_prompt_tokens") or _int(prompt_details, "cached_tokens")
    reasoning = _int(raw, "reasoning_tokens") or _int(completion_details, "reasoning_tokens")
    tools = _get(raw, "server_side_tool_usage") or _get(raw, "server_tool_use")
    return UsageReport(
        input_tokens=_int(raw, "prompt_tokens"),
        output_tokens=_int(raw, "completion_tokens"),
        cache_read_tokens=cached,
        reasoning_tokens=reasoning,
        server_tool_calls=_tool_calls(tools),
    )


_ADAPTERS: Dict[str, Callable[[Any], UsageReport]] = {
    "anthropic": normalize_anthropic,
    "openai": normalize_openai,
    "google": normalize_google,
    "x-ai": normalize_xai,
}


def normalize_usage(provider: str, raw: Any) -> UsageReport:
    """Normalize a provider usage payload.

    Args:
        provider: Provider prefix of the model id (``anthropic``, ``openai``,
            ``google`` or ``x-ai``)
        raw: Usage dict or SDK usage object

    Raises:
        ValueError: If the provider has no adapter
    """
    adapter: Optional[Callable[[Any], UsageReport]] = _ADAPTERS.get(provider)
    if adapter is None:
        raise ValueError(f"Unsupported provider: {provider}")
    return adapter(raw)
