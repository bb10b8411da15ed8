"""
Normalized request and response descriptors exchanged with the gateway.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from .cache import fingerprint


@dataclass(frozen=True)
class ApiRequest:
    """One spend-incurring API call.

    `kind` names the endpoint (and selects pricing); `category` selects the
    cache TTL. Requests with `cacheable=False` always hit the network.
    """
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)
    category: str = "standard"
    cacheable: bool = True
    ttl: Optional[float] = None

    def __post_init__(self):
        if not self.kind or not self.kind.strip():
            raise ValueError("kind is required and cannot be empty")

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.kind, self.params)


@dataclass(frozen=True)
class GatewayResponse:
    """Payload returned by the gateway, fresh or from cache."""
    payload: Any
    cost: Decimal
    cached: bool = False
    age: float = 0.0
