"""
Unit tests for provider usage adapters.
"""

from types import SimpleNamespace

import pytest

from craft_ledger.core.adapters import normalize_usage


class TestAnthropicAdapter:
    """Anthropic reports input excluding cache reads."""

    def test_cache_reads_added_back(self):
        usage = normalize_usage("anthropic", {
            "input_tokens": 6_000,
            "output_tokens": 500,
            "cache_creation_input_tokens": 1_000,
            "cache_read_input_tokens": 4_000,
        })
        assert usage.input_tokens == 10_000
        assert usage.cache_read_tokens == 4_000
        assert usage.cache_creation_tokens == 1_000
        assert usage.output_tokens == 500

    def test_server_tool_use(self):
        usage = normalize_usage("anthropic", {
            "input_tokens": 10,
            "output_tokens": 5,
            "server_tool_use": {"web_search_requests": 3},
        })
        assert dict(usage.server_tool_calls) == {"web_search": 3}

    def test_sdk_object(self):
        raw = SimpleNamespace(
            input_tokens=100,
            output_tokens=20,
            cache_creation_input_tokens=None,
            cache_read_input_tokens=None,
            server_tool_use=None,
        )
        usage = normalize_usage("anthropic", raw)
        assert usage.input_tokens == 100
        assert usage.cache_read_tokens == 0


class TestOpenAIAdapter:
    """OpenAI reports reasoning inside completion tokens."""

    def test_reasoning_split_from_output(self):
        usage = normalize_usage("openai", {
            "prompt_tokens": 2_000,
            "completion_tokens": 800,
            "prompt_tokens_details": {"cached_tokens": 1_500},
            "completion_tokens_details": {"reasoning_tokens": 300},
        })
        assert usage.input_tokens == 2_000
        assert usage.cache_read_tokens == 1_500
        assert usage.reasoning_tokens == 300
        assert usage.output_tokens == 500

    def test_audio_tokens(self):
        usage = normalize_usage("openai", {
            "prompt_tokens": 1_000,
            "completion_tokens": 400,
            "prompt_tokens_details": {"audio_tokens": 200},
            "completion_tokens_details": {"audio_tokens": 100},
        })
        assert usage.input_tokens == 800
        assert usage.audio_input_tokens == 200
        assert usage.audio_output_tokens == 100
        assert usage.output_tokens == 300


class TestGoogleAdapter:

    def test_field_mapping(self):
        usage = normalize_usage("google", {
            "prompt_token_count": 5_000,
            "candidates_token_count": 1_000,
            "cached_content_token_count": 2_000,
            "thoughts_token_count": 250,
        })
        assert usage.input_tokens == 5_000
        assert usage.output_tokens == 1_000
        assert usage.cache_read_tokens == 2_000
        assert usage.reasoning_tokens == 250


class TestXAIAdapter:

    def test_field_mapping(self):
        usage = normalize_usage("x-ai", {
            "prompt_tokens": 3_000,
            "completion_tokens": 600,
            "cached_prompt_tokens": 1_000,
            "reasoning_tokens": 150,
            "server_side_tool_usage": {"web_search": 2, "x_search": 1},
        })
        assert usage.input_tokens == 3_000
        assert usage.cache_read_tokens == 1_000
        assert usage.reasoning_tokens == 150
        assert dict(usage.server_tool_calls) == {"web_search": 2, "x_search": 1}


class TestDispatch:

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unsupported provider: mistral"):
            normalize_usage("mistral", {})

    def test_negative_counters_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            normalize_usage("google", {"prompt_token_count": -1})
