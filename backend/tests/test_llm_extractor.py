"""
Tests for LLM-based transaction extraction with a mocked Anthropic client.

No real API calls are made: anthropic.Anthropic is patched in every test
that reaches the network layer.
"""

import json
from unittest.mock import MagicMock, Mock

import pytest

from app.models.transaction import Category
from app.services import llm_client
from app.services.llm_extractor import (
    ExtractionStatus,
    build_prompt,
    extract_via_llm,
    interpret_response,
)


def _mock_anthropic(mocker, text: str) -> MagicMock:
    """Patch anthropic.Anthropic so messages.create returns `text`."""
    mock_response = Mock()
    mock_response.content = [Mock(text=text)]
    mock_client = MagicMock()
    mock_client.messages.create.return_value = mock_response
    mocker.patch("anthropic.Anthropic", return_value=mock_client)
    return mock_client


@pytest.fixture()
def api_key(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-anthropic-key")
    monkeypatch.delenv("ANTHROPIC_MODEL", raising=False)


GRAB_RESPONSE = {
    "amount": 38000,
    "currency": "VND",
    "merchant": "Phở Hòa",
    "transactionDate": "2025-11-19T18:38:00+07:00",
    "transactionType": "GrabFood",
    "category": "Food",
}


class TestBuildPrompt:
    def test_prompt_is_sanitized(self):
        prompt = build_prompt(
            "Receipt for buyer@example.com",
            "<p>Call 0901234567</p><p>Total ₫38,000</p>",
        )
        assert "buyer@example.com" not in prompt
        assert "0901234567" not in prompt
        assert "[EMAIL]" in prompt
        assert "[PHONE]" in prompt
        assert "Total ₫38,000" in prompt

    def test_body_is_truncated(self):
        prompt = build_prompt("s", "x" * 5000)
        assert "x" * 1000 in prompt
        assert "x" * 1001 not in prompt

    def test_json_braces_in_template_survive(self):
        prompt = build_prompt("s", "b")
        assert '{"skip": true}' in prompt


class TestInterpretResponse:
    def test_valid_transaction(self):
        outcome = interpret_response(json.dumps(GRAB_RESPONSE), "Your Grab E-Receipt")

        assert outcome.status == ExtractionStatus.TRANSACTION
        tx = outcome.transaction
        assert tx.amount == 38000
        assert tx.currency == "VND"
        assert tx.merchant == "Phở Hòa"
        assert tx.category == Category.FOOD
        assert tx.transaction_type == "GrabFood"
        assert tx.email_subject == "Your Grab E-Receipt"

    def test_skip_is_reported(self):
        outcome = interpret_response('{"skip": true}', "Order for Later")
        assert outcome.status == ExtractionStatus.SKIP
        assert outcome.transaction is None

    def test_unknown_category_coerced_to_other(self):
        data = dict(GRAB_RESPONSE, category="Groceries")
        outcome = interpret_response(json.dumps(data), "")
        assert outcome.transaction.category == Category.OTHER

    def test_invalid_json_is_unparseable(self):
        outcome = interpret_response("I could not find a transaction.", "")
        assert outcome.status == ExtractionStatus.UNPARSEABLE
        assert outcome.reason == "invalid_json"

    def test_missing_amount_is_unparseable(self):
        data = {k: v for k, v in GRAB_RESPONSE.items() if k != "amount"}
        outcome = interpret_response(json.dumps(data), "")
        assert outcome.status == ExtractionStatus.UNPARSEABLE

    def test_zero_amount_is_unparseable(self):
        outcome = interpret_response(json.dumps(dict(GRAB_RESPONSE, amount=0)), "")
        assert outcome.status == ExtractionStatus.UNPARSEABLE

    def test_amount_string_is_parsed(self):
        outcome = interpret_response(json.dumps(dict(GRAB_RESPONSE, amount="38,000")), "")
        assert outcome.transaction.amount == 38000

    def test_markdown_fence_is_stripped(self):
        fenced = "```json\n" + json.dumps(GRAB_RESPONSE) + "\n```"
        outcome = interpret_response(fenced, "")
        assert outcome.status == ExtractionStatus.TRANSACTION

    def test_naive_date_gets_business_offset(self):
        data = dict(GRAB_RESPONSE, transactionDate="2025-11-19T18:38:00")
        outcome = interpret_response(json.dumps(data), "")
        assert outcome.transaction.transaction_date == "2025-11-19T18:38:00+07:00"

    def test_currency_upper_cased(self):
        outcome = interpret_response(json.dumps(dict(GRAB_RESPONSE, currency="vnd")), "")
        assert outcome.transaction.currency == "VND"


class TestExtractViaLlm:
    def test_not_configured_without_api_key(self, monkeypatch, mocker):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        constructor = mocker.patch("anthropic.Anthropic")

        outcome = extract_via_llm("subject", "body")

        assert outcome.status == ExtractionStatus.UNPARSEABLE
        assert outcome.reason == "llm_not_configured"
        constructor.assert_not_called()

    def test_successful_call(self, api_key, mocker):
        mock_client = _mock_anthropic(mocker, json.dumps(GRAB_RESPONSE))

        outcome = extract_via_llm("Your Grab E-Receipt", "Tổng cộng ₫38,000")

        assert outcome.status == ExtractionStatus.TRANSACTION
        mock_client.messages.create.assert_called_once()
        call_kwargs = mock_client.messages.create.call_args[1]
        assert call_kwargs["model"] == llm_client.MODEL
        assert call_kwargs["max_tokens"] == llm_client.MAX_TOKENS
        assert call_kwargs["temperature"] == llm_client.TEMPERATURE

    def test_model_override_from_env(self, api_key, monkeypatch, mocker):
        monkeypatch.setenv("ANTHROPIC_MODEL", "claude-haiku-4-5")
        mock_client = _mock_anthropic(mocker, json.dumps(GRAB_RESPONSE))

        extract_via_llm("s", "b")

        assert mock_client.messages.create.call_args[1]["model"] == "claude-haiku-4-5"

    def test_api_error_is_unparseable(self, api_key, mocker):
        mock_client = MagicMock()
        mock_client.messages.create.side_effect = Exception("503 overloaded")
        mocker.patch("anthropic.Anthropic", return_value=mock_client)

        outcome = extract_via_llm("s", "b")

        assert outcome.status == ExtractionStatus.UNPARSEABLE
        assert outcome.reason == "llm_error"

    def test_empty_response_is_unparseable(self, api_key, mocker):
        _mock_anthropic(mocker, "   ")

        outcome = extract_via_llm("s", "b")

        assert outcome.status == ExtractionStatus.UNPARSEABLE
        assert outcome.reason == "empty_response"
