"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

import pytest
from decimal import Decimal

from xint_guard.core.pricing import (
    EndpointPricing,
    PricingTable,
    calculate_token_cost,
)
from xint_guard.core.request import ApiRequest
from xint_guard.core.token_counter import TokenUsage, estimate_prompt_tokens


def chat(content="x" * 400, model="grok-3-mini", **params):
    params.update(model=model, messages=[{"role": "user", "content": content}])
    return ApiRequest(kind="chat_completion", params=params)


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_prompt_estimate_rounds_up(self):
        assert estimate_prompt_tokens([{"role": "user", "content": "abcde"}]) == 2
        assert estimate_prompt_tokens([{"role": "user", "content": "abcd"}]) == 1

    def test_prompt_estimate_empty(self):
        assert estimate_prompt_tokens([]) == 0


class TestPricingTable:
    """Test pricing table lookups."""

    def test_default_endpoint_pricing(self):
        table = PricingTable()
        assert table.get_endpoint_pricing("search_recent").per_item == Decimal("0.005")
        assert table.get_endpoint_pricing("trends").per_request == Decimal("0.010")

    def test_unsupported_endpoint_raises_error(self):
        with pytest.raises(ValueError, match="Unsupported endpoint: spaces"):
            PricingTable().get_endpoint_pricing("spaces")

    def test_unsupported_model_raises_error(self):
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PricingTable().get_model_pricing("unknown-model")

    def test_overrides_leave_original_untouched(self):
        table = PricingTable()
        cheaper = table.with_overrides({"search_recent": EndpointPricing(per_item=Decimal("0.001"))})

        assert cheaper.get_endpoint_pricing("search_recent").per_item == Decimal("0.001")
        assert table.get_endpoint_pricing("search_recent").per_item == Decimal("0.005")
        assert cheaper.get_endpoint_pricing("user_lookup") == table.get_endpoint_pricing("user_lookup")


class TestEstimate:
    """Test pre-call estimates."""

    def test_search_estimate_uses_max_results(self):
        request = ApiRequest(kind="search_recent", params={"query": "python", "max_results": 10})
        assert PricingTable().estimate(request) == Decimal("0.05")

    def test_single_item_default(self):
        request = ApiRequest(kind="user_lookup", params={"username": "jack"})
        assert PricingTable().estimate(request) == Decimal("0.01")

    def test_per_request_endpoint(self):
        request = ApiRequest(kind="trends", params={"woeid": 1, "max_results": 50})
        assert PricingTable().estimate(request) == Decimal("0.01")

    def test_chat_estimate(self):
        # 100 prompt tokens at $0.30/1M + 100 completion tokens at $0.50/1M
        assert PricingTable().estimate(chat(max_tokens=100)) == Decimal("0.00008")

    def test_chat_estimate_default_max_tokens(self):
        # 1 prompt token + 1024 completion tokens, rounded up to the micro-dollar
        assert PricingTable().estimate(chat(content="abcd")) == Decimal("0.000513")

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unsupported endpoint"):
            PricingTable().estimate(ApiRequest(kind="spaces"))


class TestActual:
    """Test post-call cost from the response."""

    def test_search_charges_returned_items(self):
        request = ApiRequest(kind="search_recent", params={"query": "python", "max_results": 10})
        payload = {"data": [{"id": "1"}, {"id": "2"}, {"id": "3"}]}

        assert PricingTable().actual(request, payload) == Decimal("0.015")

    def test_empty_search_is_free(self):
        request = ApiRequest(kind="search_recent", params={"query": "python"})
        assert PricingTable().actual(request, {"meta": {"result_count": 0}}) == Decimal("0")

    def test_single_object_payload(self):
        request = ApiRequest(kind="tweet_lookup", params={"id": "20"})
        assert PricingTable().actual(request, {"data": {"id": "20"}}) == Decimal("0.005")

    def test_chat_uses_reported_usage(self):
        payload = {"model": "grok-3", "usage": {"prompt_tokens": 1000, "completion_tokens": 1000}}
        # 1000 * $3/1M + 1000 * $15/1M
        assert PricingTable().actual(chat(model="grok-3"), payload) == Decimal("0.018")

    def test_chat_unknown_response_model_falls_back(self):
        payload = {"model": "grok-3-mini-2025-04", "usage": {"prompt_tokens": 1000000, "completion_tokens": 0}}
        assert PricingTable().actual(chat(), payload) == Decimal("0.30")

    def test_chat_without_usage_is_zero(self):
        assert PricingTable().actual(chat(), None) == Decimal("0")


class TestTokenCost:
    """Test token cost accuracy and rounding."""

    def test_exact_cost(self):
        pricing = PricingTable().get_model_pricing("grok-3")
        usage = TokenUsage(prompt_tokens=1000000, completion_tokens=1000000)
        assert calculate_token_cost(pricing, usage) == Decimal("18.00")

    def test_rounding_up_behavior(self):
        """Verify costs round UP (conservative bias)."""
        pricing = PricingTable().get_model_pricing("grok-3-mini")
        usage = TokenUsage(prompt_tokens=1, completion_tokens=0)
        # 1/1M * $0.30 = $0.0000003 -> rounds UP to $0.000001
        assert calculate_token_cost(pricing, usage) == Decimal("0.000001")

    def test_zero_tokens_cost(self):
        pricing = PricingTable().get_model_pricing("grok-4")
        assert calculate_token_cost(pricing, TokenUsage(0, 0)) == Decimal("0")
