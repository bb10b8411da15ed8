"""
Pricing calculations and rate management.

Estimates the cost of a request before it is sent and computes what it
actually cost from the response.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_UP
from typing import Any, Dict, Mapping

from .request import ApiRequest
from .token_counter import TokenUsage, estimate_prompt_tokens

# Costs are tracked to the micro-dollar and always rounded up
COST_QUANTUM = Decimal("0.000001")

DEFAULT_MAX_TOKENS = 1024


@dataclass(frozen=True)
class EndpointPricing:
    """X API pay-per-use pricing for one endpoint."""
    per_request: Decimal = Decimal("0")
    per_item: Decimal = Decimal("0")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for an xAI model."""
    prompt_cost_per_1m: Decimal  # Cost per 1M prompt tokens
    completion_cost_per_1m: Decimal  # Cost per 1M completion tokens


DEFAULT_ENDPOINT_PRICES: Dict[str, EndpointPricing] = {
    "search_recent": EndpointPricing(per_item=Decimal("0.005")),
    "search_all": EndpointPricing(per_item=Decimal("0.005")),
    "tweet_lookup": EndpointPricing(per_item=Decimal("0.005")),
    "thread": EndpointPricing(per_item=Decimal("0.005")),
    "user_lookup": EndpointPricing(per_item=Decimal("0.010")),
    "user_tweets": EndpointPricing(per_item=Decimal("0.005")),
    "trends": EndpointPricing(per_request=Decimal("0.010")),
    "bookmarks": EndpointPricing(per_item=Decimal("0.005")),
    "likes": EndpointPricing(per_item=Decimal("0.005")),
}

DEFAULT_MODEL_PRICES: Dict[str, ModelPricing] = {
    "grok-3-mini": ModelPricing(
        prompt_cost_per_1m=Decimal("0.30"),
        completion_cost_per_1m=Decimal("0.50")
    ),
    "grok-3": ModelPricing(
        prompt_cost_per_1m=Decimal("3.00"),
        completion_cost_per_1m=Decimal("15.00")
    ),
    "grok-4": ModelPricing(
        prompt_cost_per_1m=Decimal("3.00"),
        completion_cost_per_1m=Decimal("15.00")
    ),
}

CHAT_KIND = "chat_completion"


def _round_up(amount: Decimal) -> Decimal:
    return amount.quantize(COST_QUANTUM, rounding=ROUND_UP)


def _count_items(payload: Any) -> int:
    """Number of billable objects in an X API payload."""
    if not isinstance(payload, Mapping):
        return 0
    data = payload.get("data")
    if isinstance(data, list):
        return len(data)
    return 1 if data else 0


@dataclass(frozen=True)
class PricingTable:
    """Prices for every request kind the gateway can send."""
    endpoints: Dict[str, EndpointPricing] = field(
        default_factory=lambda: dict(DEFAULT_ENDPOINT_PRICES)
    )
    models: Dict[str, ModelPricing] = field(
        default_factory=lambda: dict(DEFAULT_MODEL_PRICES)
    )

    def get_endpoint_pricing(self, kind: str) -> EndpointPricing:
        """Get pricing for an X API endpoint.

        Raises:
            ValueError: If the endpoint is not priced
        """
        if kind not in self.endpoints:
            raise ValueError(f"Unsupported endpoint: {kind}")
        return self.endpoints[kind]

    def get_model_pricing(self, model: str) -> ModelPricing:
        """Get pricing for an xAI model.

        Raises:
            ValueError: If the model is not supported
        """
        if model not in self.models:
            raise ValueError(f"Unsupported model: {model}")
        return self.models[model]

    def with_overrides(self, overrides: Mapping[str, EndpointPricing]) -> "PricingTable":
        endpoints = dict(self.endpoints)
        endpoints.update(overrides)
        return PricingTable(endpoints=endpoints, models=dict(self.models))

    def estimate(self, request: ApiRequest) -> Decimal:
        """Cost to admit before sending `request`."""
        if request.kind == CHAT_KIND:
            params = request.params
            usage = TokenUsage(
                prompt_tokens=estimate_prompt_tokens(params.get("messages", [])),
                completion_tokens=int(params.get("max_tokens") or DEFAULT_MAX_TOKENS)
            )
            return calculate_token_cost(self.get_model_pricing(params.get("model", "")), usage)

        pricing = self.get_endpoint_pricing(request.kind)
        items = int(request.params.get("max_results") or 1)
        return _round_up(pricing.per_request + pricing.per_item * items)

    def actual(self, request: ApiRequest, payload: Any) -> Decimal:
        """Cost incurred by `request` given the payload it returned."""
        if request.kind == CHAT_KIND:
            if not isinstance(payload, Mapping):
                payload = {}
            usage_block = payload.get("usage") or {}
            usage = TokenUsage(
                prompt_tokens=int(usage_block.get("prompt_tokens") or 0),
                completion_tokens=int(usage_block.get("completion_tokens") or 0)
            )
            model = payload.get("model") or request.params.get("model", "")
            if model not in self.models:
                model = request.params.get("model", "")
            return calculate_token_cost(self.get_model_pricing(model), usage)

        pricing = self.get_endpoint_pricing(request.kind)
        return _round_up(pricing.per_request + pricing.per_item * _count_items(payload))


def calculate_token_cost(pricing: ModelPricing, usage: TokenUsage) -> Decimal:
    """Calculate total cost for token usage with conservative rounding.

    Returns:
        Total cost rounded UP to the micro-dollar
    """
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000000")) * pricing.prompt_cost_per_1m
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000000")) * pricing.completion_cost_per_1m
    return _round_up(prompt_cost + completion_cost)
