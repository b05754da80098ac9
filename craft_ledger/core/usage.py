"""
Canonical usage report for one AI call.

Every provider response is normalized into this shape at the boundary
(see adapters.py) so the calculator has a single code path.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class CacheDuration(Enum):
    """Prompt cache lifetime requested at write time."""
    FIVE_MINUTES = "5min"
    ONE_HOUR = "1hour"


@dataclass(frozen=True)
class UsageReport:
    """Raw counters reported for a single AI call.

    ``input_tokens`` is the total input including cache reads;
    ``cache_read_tokens`` is the cached portion of it and is billed
    separately. Reasoning tokens are reported on top of ``output_tokens``;
    audio, video and image input tokens are not part of ``input_tokens``.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    reasoning_tokens: int = 0
    audio_input_tokens: int = 0
    video_input_tokens: int = 0
    image_input_tokens: int = 0
    audio_output_tokens: int = 0
    images_generated: int = 0
    audio_seconds_generated: float = 0
    video_seconds_generated: float = 0
    server_tool_calls: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        """Reject negative counters and freeze the tool-call map."""
        for name, value in self.__dict__.items():
            if name == "server_tool_calls":
                continue
            if value < 0:
                raise ValueError(f"{name} cannot be negative")
        for tool, calls in self.server_tool_calls.items():
            if calls < 0:
                raise ValueError(f"server_tool_calls[{tool}] cannot be negative")
        object.__setattr__(
            self, "server_tool_calls", MappingProxyType(dict(self.server_tool_calls))
        )

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens (reasoning included when reported separately)."""
        return self.input_tokens + self.output_tokens + self.reasoning_tokens

    def to_dict(self) -> dict:
        data = {k: v for k, v in self.__dict__.items() if k != "server_tool_calls"}
        data["server_tool_calls"] = dict(self.server_tool_calls)
        return data


@dataclass(frozen=True)
class CostModifiers:
    """Pricing modifiers applied to rates before any line item is computed."""
    is_batch_mode: bool = False
    is_long_context: bool = False
    cache_duration: CacheDuration = CacheDuration.FIVE_MINUTES
