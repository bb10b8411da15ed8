"""
Error taxonomy for the request core.

Gateway errors reach callers as distinct types so that a polling session
can branch on budget, transport and persistence failures separately.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class XintGuardError(Exception):
    """Base class for all core errors."""


class BudgetExceeded(XintGuardError):
    """Raised when admission control rejects a paid call. Not retryable."""

    code = "BUDGET_DENIED"

    def __init__(
        self,
        spent: Decimal,
        limit: Decimal,
        remaining: Decimal,
        estimate: Decimal = Decimal("0"),
        endpoint: Optional[str] = None
    ):
        super().__init__(
            f"Daily budget exceeded (${spent:.2f} / ${limit:.2f}, "
            f"remaining ${remaining:.2f}, request needs ${estimate:.4f})"
        )
        self.spent = spent
        self.limit = limit
        self.remaining = remaining
        self.estimate = estimate
        self.endpoint = endpoint

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable denial for JSON output."""
        return {
            "code": self.code,
            "message": f"Daily budget exceeded (${self.spent:.2f} / ${self.limit:.2f})",
            "endpoint": self.endpoint,
            "spent_usd": float(self.spent),
            "limit_usd": float(self.limit),
            "remaining_usd": float(self.remaining),
            "estimate_usd": float(self.estimate),
        }


class TransportError(XintGuardError):
    """Raised when an outbound API call fails. Retryable with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceFailure(XintGuardError):
    """Raised when a ledger or cache write cannot be persisted. Fatal."""


class WebhookDeliveryFailure(XintGuardError):
    """A webhook push that failed after its final attempt."""

    def __init__(self, message: str, attempts: int, status_code: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code
