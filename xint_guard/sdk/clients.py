"""
Guarded API clients.

Build normalized requests and run them through a RequestGateway, so every
call is budget-checked, cached where allowed, and recorded in the ledger.
"""

from typing import Any, Dict, List, Optional

from ..core.gateway import RequestGateway
from ..core.items import Item, parse_items
from ..core.pricing import CHAT_KIND
from ..core.request import ApiRequest, GatewayResponse


class GuardedXClient:
    """X API client whose calls all pass through the gateway."""

    def __init__(self, gateway: RequestGateway):
        self.gateway = gateway

    def search(
        self,
        query: str,
        max_results: int = 10,
        since_id: Optional[str] = None,
        fast: bool = False,
    ) -> List[Item]:
        """Search recent tweets.

        Args:
            query: X search query (required)
            max_results: Results per page, 10-100
            since_id: Only return tweets newer than this id
            fast: Use the short-lived "fast" cache category

        Raises:
            ValueError: If query is empty
            BudgetExceeded, TransportError, PersistenceFailure: From the gateway
        """
        if not query or not query.strip():
            raise ValueError("query is required and cannot be empty")

        request = ApiRequest(
            kind="search_recent",
            params={"query": query, "max_results": max_results, "since_id": since_id},
            category="fast" if fast else "standard",
        )
        return parse_items(self.gateway.execute(request).payload)

    def user(self, username: str) -> GatewayResponse:
        """Look up a user profile by username."""
        username = (username or "").lstrip("@").strip()
        if not username:
            raise ValueError("username is required and cannot be empty")
        return self.gateway.execute(
            ApiRequest(kind="user_lookup", params={"username": username}, category="profile")
        )

    def tweet(self, tweet_id: str) -> GatewayResponse:
        """Fetch a single tweet by id."""
        if not str(tweet_id or "").strip():
            raise ValueError("tweet_id is required and cannot be empty")
        return self.gateway.execute(
            ApiRequest(kind="tweet_lookup", params={"id": str(tweet_id).strip()})
        )


class GuardedGrok:
    """xAI chat completions routed through the gateway.

    Completions are cached under the "analysis" category, so repeating an
    identical prompt within the TTL costs nothing.
    """

    def __init__(self, gateway: RequestGateway, model: str = "grok-3-mini"):
        """Initialize guarded Grok client.

        Raises:
            ValueError: If model is missing/empty or not priced
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        gateway.pricing.get_model_pricing(model)

        self.gateway = gateway
        self.model = model

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cacheable: bool = True,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Create a chat completion.

        Returns:
            The completion as a dict (as returned by the API)

        Raises:
            ValueError: If messages is empty
            BudgetExceeded, TransportError, PersistenceFailure: From the gateway
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        params = dict(kwargs)
        params.update({
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        request = ApiRequest(kind=CHAT_KIND, params=params, category="analysis", cacheable=cacheable)
        return self.gateway.execute(request).payload
