"""
Webhook delivery with bounded retry.

Delivery is at-least-once. When an attempt times out or fails after the
receiver has already processed the body, the retry delivers the same item
again. Receivers should deduplicate on the item `id`.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .errors import WebhookDeliveryFailure
from .items import Item

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429}


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of delivering one item."""
    item_id: int
    delivered: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[WebhookDeliveryFailure] = None


class WebhookDispatcher:
    """POSTs items to a webhook URL, one request per item.

    A failed item is reported in its DeliveryResult and logged. It never
    raises, so a bad delivery can't stop the items after it.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        max_attempts: int = 3,
        timeout: float = 10.0,
        backoff_base: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.client = client or httpx.Client()
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.sleep = sleep or time.sleep

    def deliver(self, item: Item, url: str) -> DeliveryResult:
        """Deliver one item, retrying server errors with exponential backoff."""
        status_code = None
        reason = ""

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.client.post(
                    url,
                    json=item.to_dict(),
                    headers={"content-type": "application/json"},
                    timeout=self.timeout,
                )
                status_code = response.status_code
                if response.is_success:
                    if attempt > 1:
                        logger.info(f"Delivered {item.id} to webhook on attempt {attempt}")
                    return DeliveryResult(item_id=item.id, delivered=True, attempts=attempt, status_code=status_code)

                reason = f"HTTP {status_code}"
                retryable = response.is_server_error or status_code in RETRYABLE_STATUS
            except httpx.TimeoutException as e:
                reason = f"timeout: {e}"
                retryable = True
            except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
                reason = f"bad webhook URL: {e}"
                retryable = False
            except httpx.HTTPError as e:
                reason = f"request failed: {e}"
                retryable = True

            if not retryable:
                break
            if attempt < self.max_attempts:
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    f"Webhook attempt {attempt}/{self.max_attempts} for {item.id} failed "
                    f"({reason}), retrying in {delay:.1f}s"
                )
                self.sleep(delay)

        error = WebhookDeliveryFailure(
            f"Webhook delivery of {item.id} failed after {attempt} attempt(s): {reason}",
            attempts=attempt,
            status_code=status_code,
        )
        logger.error(str(error))
        return DeliveryResult(
            item_id=item.id,
            delivered=False,
            attempts=attempt,
            status_code=status_code,
            error=error,
        )

    def close(self) -> None:
        self.client.close()
