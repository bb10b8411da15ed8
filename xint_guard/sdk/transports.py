"""
Outbound transports for the X API and the xAI API.

Transports only move bytes. Budget, caching and cost accounting happen in
the gateway, which is the only caller of `send`.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx
from openai import OpenAI, OpenAIError

from ..core.errors import TransportError
from ..core.pricing import CHAT_KIND
from ..core.request import ApiRequest

logger = logging.getLogger(__name__)

X_API_BASE_URL = "https://api.x.com/2"
XAI_BASE_URL = "https://api.x.ai/v1"

TWEET_FIELDS = "created_at,public_metrics,author_id,conversation_id"
USER_FIELDS = "username,name,public_metrics,verified"

# kind -> path template; {placeholders} are taken from request params
X_ENDPOINTS: Dict[str, str] = {
    "search_recent": "/tweets/search/recent",
    "search_all": "/tweets/search/all",
    "tweet_lookup": "/tweets/{id}",
    "thread": "/tweets/search/recent",
    "user_lookup": "/users/by/username/{username}",
    "user_tweets": "/users/{id}/tweets",
    "trends": "/trends/by/woeid/{woeid}",
    "bookmarks": "/users/{id}/bookmarks",
    "likes": "/users/{id}/liked_tweets",
}


class XApiTransport:
    """X API v2 over httpx with a bearer token."""

    def __init__(
        self,
        bearer_token: Optional[str],
        client: Optional[httpx.Client] = None,
        base_url: str = X_API_BASE_URL,
        timeout: float = 30.0,
    ):
        if not bearer_token and client is None:
            raise ValueError("bearer_token is required and cannot be empty")
        self.client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {bearer_token}"},
        )

    def _build(self, request: ApiRequest) -> tuple:
        if request.kind not in X_ENDPOINTS:
            raise TransportError(f"Unsupported endpoint: {request.kind}")

        template = X_ENDPOINTS[request.kind]
        params = {k: v for k, v in request.params.items() if v is not None}
        path_values = {}
        for name in ("id", "username", "woeid"):
            if "{" + name + "}" in template:
                if name not in params:
                    raise TransportError(f"{request.kind} requires '{name}'")
                path_values[name] = params.pop(name)

        if request.kind.startswith("search") or request.kind == "thread":
            params.setdefault("tweet.fields", TWEET_FIELDS)
            params.setdefault("expansions", "author_id")
            params.setdefault("user.fields", USER_FIELDS)
        return template.format(**path_values), params

    def send(self, request: ApiRequest) -> Any:
        """Issue a GET and return the decoded JSON body.

        Raises:
            TransportError: On HTTP, connection or decoding errors
        """
        path, params = self._build(request)
        try:
            response = self.client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Request timeout for {path}: {e}")
            raise TransportError(f"Request timeout: {e}")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP {e.response.status_code} error for {path}")
            raise TransportError(
                f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                status_code=e.response.status_code,
            )
        except httpx.HTTPError as e:
            logger.error(f"Connection failed to {path}: {e}")
            raise TransportError(f"Connection failed: {e}")
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {path}: {e}")

    def close(self) -> None:
        self.client.close()


class XaiTransport:
    """xAI chat completions through the OpenAI-compatible SDK."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
        base_url: str = XAI_BASE_URL,
        timeout: float = 60.0,
    ):
        if client is None and not api_key:
            raise ValueError("api_key is required and cannot be empty")
        self.client = client or OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def send(self, request: ApiRequest) -> Any:
        """Create a chat completion and return it as a plain dict.

        Raises:
            TransportError: On any SDK error
        """
        if request.kind != CHAT_KIND:
            raise TransportError(f"Unsupported endpoint: {request.kind}")

        params = {k: v for k, v in request.params.items() if v is not None}
        try:
            response = self.client.chat.completions.create(**params)
        except OpenAIError as e:
            logger.error(f"xAI request failed: {e}")
            raise TransportError(
                f"xAI request failed: {e}",
                status_code=getattr(e, "status_code", None),
            )

        if not getattr(response, "usage", None):
            raise TransportError("xAI response missing usage information")
        return response.model_dump()

    def close(self) -> None:
        self.client.close()


class RoutingTransport:
    """Sends each request to the transport registered for its kind."""

    def __init__(self, routes: Mapping[str, Any], default: Optional[Any] = None):
        self.routes = dict(routes)
        self.default = default

    def send(self, request: ApiRequest) -> Any:
        transport = self.routes.get(request.kind, self.default)
        if transport is None:
            raise TransportError(f"No transport configured for {request.kind}")
        return transport.send(request)

    def close(self) -> None:
        closed = set()
        for transport in list(self.routes.values()) + [self.default]:
            if transport is not None and id(transport) not in closed:
                closed.add(id(transport))
                transport.close()
