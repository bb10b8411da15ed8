"""
Request gateway - the single choke point for paid API calls.

Execution Order:
1. Cache lookup - a fresh hit is returned without touching the ledger
2. Admission - the estimated cost is reserved against today's budget
3. Transport - the external call; failures release the reservation
4. Commit - the actual cost is recorded, then the response is cached

This ordering means no spend is recorded for a failed call, the budget is
checked before every paid call, and only confirmed successes are cached.
"""

import logging
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Protocol

from .cache import ResponseCache
from .errors import BudgetExceeded, TransportError
from .ledger import BudgetLedger
from .pricing import PricingTable
from .request import ApiRequest, GatewayResponse

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Sends a request to an external API and returns its JSON payload.

    Implementations raise TransportError for any failure.
    """

    def send(self, request: ApiRequest) -> Any: ...

    def close(self) -> None: ...


class RequestGateway:
    """Composes the ledger, the cache and a transport."""

    def __init__(
        self,
        ledger: BudgetLedger,
        cache: ResponseCache,
        transport: Transport,
        pricing: Optional[PricingTable] = None,
        ttl_for: Optional[Callable[[str], float]] = None,
        enforce_budget: bool = True,
    ):
        """Initialize the gateway.

        Args:
            ledger: Budget ledger shared by everything that spends
            cache: Response cache
            transport: Outbound API transport
            pricing: Cost estimation and accounting table
            ttl_for: Maps a request category to its cache TTL in seconds
            enforce_budget: When False, calls are sent without admission
                checks; their cost is still committed to the ledger
        """
        self.ledger = ledger
        self.cache = cache
        self.transport = transport
        self.pricing = pricing or PricingTable()
        self.ttl_for = ttl_for or (lambda category: 900.0)
        self.enforce_budget = enforce_budget

    def execute(self, request: ApiRequest) -> GatewayResponse:
        """Run a request through cache, budget and transport.

        Raises:
            BudgetExceeded: If the estimated cost doesn't fit today's budget
            TransportError: If the external call failed (nothing is spent)
            PersistenceFailure: If spend or cache could not be written
        """
        key = request.fingerprint

        if request.cacheable:
            hit = self.cache.get(key)
            if hit is not None:
                logger.debug(f"Cache hit for {request.kind} ({hit.age:.0f}s old)")
                return GatewayResponse(payload=hit.value, cost=Decimal("0"), cached=True, age=hit.age)

        estimate = self.pricing.estimate(request)
        reservation = None
        if self.enforce_budget:
            admission = self.ledger.check_and_reserve(estimate, request.kind)
            if not admission.allowed:
                raise BudgetExceeded(
                    spent=admission.spent,
                    limit=admission.limit,
                    remaining=admission.remaining,
                    estimate=estimate,
                    endpoint=request.kind
                )
            reservation = admission.reservation

        try:
            payload = self.transport.send(request)
        except TransportError:
            self.ledger.release(reservation)
            raise
        except Exception as e:
            self.ledger.release(reservation)
            raise TransportError(f"{request.kind} failed: {e}") from e

        try:
            cost = self.pricing.actual(request, payload)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not price {request.kind} response, charging estimate: {e}")
            cost = estimate
        self.ledger.commit(cost, request.kind, reservation)
        if cost > estimate:
            logger.info(f"{request.kind} cost ${cost}, estimated ${estimate}")

        if request.cacheable:
            ttl = request.ttl if request.ttl is not None else self.ttl_for(request.category)
            self.cache.put(key, payload, ttl)

        return GatewayResponse(payload=payload, cost=cost, cached=False)

    def close(self) -> None:
        self.transport.close()


def ttl_lookup(ttls: Mapping[str, float], default: float) -> Callable[[str], float]:
    """Build a category -> TTL function from a mapping."""
    return lambda category: float(ttls.get(category, default))
