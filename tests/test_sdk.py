"""
Unit tests for SDK layer.

Tests the billed gateway chat client and its ledger charges.
"""

import os
import shutil
import tempfile
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from credit_meter.core.errors import InvalidAmount
from credit_meter.core.pricing import PricingPolicy
from credit_meter.sdk.gateway_client import GatewayChatClient
from credit_meter.storage.db import Database
from credit_meter.storage.repository import CreditRepository

MESSAGES = [{"role": "user", "content": "Hello"}]


def _response(cost, response_id="gen_123", extra=None):
    usage = SimpleNamespace(
        prompt_tokens=100,
        completion_tokens=50,
        total_tokens=150,
        cost=cost,
        model_extra=extra or {}
    )
    return SimpleNamespace(id=response_id, usage=usage)


class TestGatewayChatClient:
    """Test GatewayChatClient wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.database = Database(os.path.join(self.temp_dir, "test.db"))
        self.database.initialize_schema()
        self.repository = CreditRepository(self.database)
        self.repository.apply_credit_delta("user_1", 5_000_000, "credit", "Top-up")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _client(self, mock_openai_class, response, **kwargs):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = response
        mock_openai_class.return_value = mock_client
        return GatewayChatClient(self.repository, "user_1", "openai/gpt-4o-mini", **kwargs)

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        mock_openai_class.return_value = Mock()

        client = GatewayChatClient(
            self.repository, "user_1", "openai/gpt-4o-mini",
            base_url="https://gateway.example/v1", api_key="key"
        )

        assert client.model == "openai/gpt-4o-mini"
        assert client.policy == PricingPolicy()
        assert client.last_charge is None
        mock_openai_class.assert_called_once_with(base_url="https://gateway.example/v1", api_key="key")

    def test_init_missing_user_or_model(self):
        """Test initialization fails without a user or model."""
        with pytest.raises(ValueError, match="user_id is required"):
            GatewayChatClient(self.repository, "", "m")
        with pytest.raises(ValueError, match="model is required"):
            GatewayChatClient(self.repository, "user_1", None)

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_chat_charges_reported_cost(self, mock_openai_class):
        """Test a completion is charged with markup and recorded."""
        response = _response("0.01")
        client = self._client(mock_openai_class, response)

        result = client.chat(MESSAGES, conversation_id="conv_1", temperature=0)

        assert result is response
        client.client.chat.completions.create.assert_called_once_with(
            model="openai/gpt-4o-mini", messages=MESSAGES, temperature=0
        )
        assert client.last_charge.balance_microcents == 3_850_000
        entry = self.repository.list_credit_ledger("user_1")[0]
        assert entry.external_id == "gen_123"
        assert entry.metadata["usage"]["input_tokens"] == 100
        assert entry.metadata["usage"]["total_tokens"] == 150
        assert entry.metadata["modelId"] == "openai/gpt-4o-mini"

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_cost_from_model_extra(self, mock_openai_class):
        client = self._client(mock_openai_class, _response(None, extra={"cost": 0.02}))
        client.chat(MESSAGES)
        assert client.last_charge.pricing.base_microcents == 2_000_000

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_missing_cost_is_not_billed(self, mock_openai_class):
        client = self._client(mock_openai_class, _response(None))
        client.chat(MESSAGES)
        assert client.last_charge is None
        assert self.repository.get_credit_account("user_1").balance_microcents == 5_000_000

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_custom_policy(self, mock_openai_class):
        client = self._client(mock_openai_class, _response("0.01"), policy=PricingPolicy(markup_bps=0))
        client.chat(MESSAGES)
        assert client.last_charge.balance_microcents == 4_000_000

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_malformed_cost_raises(self, mock_openai_class):
        client = self._client(mock_openai_class, _response("not-a-number"))
        with pytest.raises(InvalidAmount):
            client.chat(MESSAGES)

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_api_errors_propagate_without_charge(self, mock_openai_class):
        """Test gateway failures are not swallowed and nothing is billed."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = RuntimeError("gateway down")
        mock_openai_class.return_value = mock_client
        client = GatewayChatClient(self.repository, "user_1", "m")

        with pytest.raises(RuntimeError, match="gateway down"):
            client.chat(MESSAGES)
        assert len(self.repository.list_credit_ledger("user_1")) == 1

    @patch('credit_meter.sdk.gateway_client.OpenAI')
    def test_empty_messages_raise(self, mock_openai_class):
        mock_openai_class.return_value = Mock()
        client = GatewayChatClient(self.repository, "user_1", "m")
        with pytest.raises(ValueError, match="messages is required"):
            client.chat([])
