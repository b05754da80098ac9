"""
Unit tests for SDK layer.

Tests OpenAI client wrapper behavior and usage billing.
"""

import os
import shutil
import tempfile
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from craft_ledger.core.exceptions import PricingNotFound
from craft_ledger.core.ledger import Ledger
from craft_ledger.sdk import MeteredOpenAI
from craft_ledger.storage.models import TransactionType
from craft_ledger.storage.repository import AccountRepository, UsageRepository, initialize_schema


def _response(response_id: str = "chatcmpl-1", usage=None):
    response = Mock()
    response.id = response_id
    response.usage = usage if usage is not None else {
        "prompt_tokens": 1000,
        "completion_tokens": 500,
        "total_tokens": 1500,
    }
    return response


class TestMeteredOpenAI:
    """Test MeteredOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = Ledger(self.db_path)
        self.user = AccountRepository(self.db_path).create_user("dev@example.com")
        self.ledger.credit(self.user.id, Decimal("10"), TransactionType.TOPUP, "Top-up")
        self.openai = Mock()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _client(self, model: str = "gpt-5.1", **kwargs):
        return MeteredOpenAI(model, self.user.id, self.ledger, client=self.openai, **kwargs)

    def test_init_strips_provider_prefix(self):
        client = self._client("openai/gpt-5.1")
        assert client.model == "gpt-5.1"
        assert client.model_id == "openai/gpt-5.1"

    @patch('craft_ledger.sdk.openai_client.OpenAI')
    def test_init_default_client(self, mock_openai_class):
        """Test a default OpenAI client is created when none is passed."""
        client = MeteredOpenAI("gpt-5.1", self.user.id, self.ledger)
        assert client.client is mock_openai_class.return_value

    def test_init_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            self._client("")

    def test_init_missing_user(self):
        with pytest.raises(ValueError, match="user_id is required"):
            MeteredOpenAI("gpt-5.1", "  ", self.ledger, client=self.openai)

    def test_init_unpriced_model(self):
        with pytest.raises(PricingNotFound):
            self._client("gpt-0-unknown")

    def test_chat_bills_usage(self):
        """Test a completion debits the balance and writes an audit record."""
        self.openai.chat.completions.create.return_value = _response()
        client = self._client(project_id="proj-1")

        response = client.chat([{"role": "user", "content": "Hello"}], temperature=0.2)

        assert response.id == "chatcmpl-1"
        self.openai.chat.completions.create.assert_called_once_with(
            model="gpt-5.1",
            messages=[{"role": "user", "content": "Hello"}],
            temperature=0.2,
            max_tokens=None,
        )
        assert client.last_billing.amount == Decimal("0.00625")
        assert self.ledger.get_balance(self.user.id) == Decimal("9.99375")

        records = UsageRepository(self.db_path).get_recent_records(user_id=self.user.id)
        assert records[0].request_id == "chatcmpl-1"
        assert records[0].project_id == "proj-1"

    def test_chat_reasoning_tokens_split_out(self):
        self.openai.chat.completions.create.return_value = _response(usage={
            "prompt_tokens": 100,
            "completion_tokens": 300,
            "prompt_tokens_details": {"cached_tokens": 0},
            "completion_tokens_details": {"reasoning_tokens": 200},
        })
        client = self._client()

        client.chat([{"role": "user", "content": "Think"}])

        breakdown = client.last_billing.breakdown
        assert breakdown.output_cost == Decimal("100") * Decimal("10.00") / Decimal("1000000")
        assert breakdown.reasoning_cost == Decimal("200") * Decimal("10.00") / Decimal("1000000")

    def test_same_response_billed_once(self):
        self.openai.chat.completions.create.return_value = _response("chatcmpl-same")
        client = self._client()

        client.chat([{"role": "user", "content": "Hello"}])
        client.chat([{"role": "user", "content": "Hello"}])

        assert client.last_billing.duplicate
        assert len(self.ledger.get_transactions(self.user.id, type=TransactionType.AI_USAGE)) == 1

    def test_chat_empty_messages(self):
        with pytest.raises(ValueError, match="messages is required"):
            self._client().chat([])

    def test_chat_missing_usage(self):
        response = _response()
        response.usage = None
        self.openai.chat.completions.create.return_value = response

        with pytest.raises(ValueError, match="missing usage"):
            self._client().chat([{"role": "user", "content": "Hello"}])

        assert self.ledger.get_balance(self.user.id) == Decimal("10")

    def test_api_error_propagates(self):
        self.openai.chat.completions.create.side_effect = RuntimeError("rate limited")

        with pytest.raises(RuntimeError, match="rate limited"):
            self._client().chat([{"role": "user", "content": "Hello"}])
