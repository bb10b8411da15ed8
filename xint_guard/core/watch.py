"""
Watch poller - unattended polling of a search query.

State machine:
    IDLE -> POLLING <-> SLEEPING -> STOPPED(manual | budget_exceeded | error_threshold)

Each tick searches for items newer than the high-water mark, delivers
items not seen in the recent-id window, and sleeps. Budget denials stop
the session at once. Transport errors back off exponentially until too
many happen in a row.

Session state lives in memory only; a restarted watch starts fresh.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .errors import BudgetExceeded, TransportError
from .gateway import RequestGateway
from .items import Item, parse_items
from .request import ApiRequest
from .webhook import WebhookDispatcher

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 10.0


class WatchState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


class StopReason(Enum):
    MANUAL = "manual"
    BUDGET_EXCEEDED = "budget_exceeded"
    ERROR_THRESHOLD = "error_threshold"


class RecentIdWindow:
    """Set of the most recent N ids, evicting the oldest first."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("window size must be >= 1")
        self.size = size
        self._order: Deque[int] = deque()
        self._ids: Set[int] = set()

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, item_id: int) -> None:
        if item_id in self._ids:
            return
        self._order.append(item_id)
        self._ids.add(item_id)
        while len(self._order) > self.size:
            self._ids.discard(self._order.popleft())


@dataclass
class WatchSession:
    """Mutable state of one running watch."""
    query: str
    poll_interval: float
    recent_id_window: RecentIdWindow
    webhook_url: Optional[str] = None
    high_water_mark: Optional[int] = None
    status: WatchState = WatchState.IDLE
    stop_reason: Optional[StopReason] = None
    ticks: int = 0
    delivered: int = 0
    webhook_failures: int = 0
    consecutive_failures: int = 0
    spent: Decimal = Decimal("0")
    last_error: Optional[str] = None
    denial: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class WatchOptions:
    """Tunables for a watch session."""
    poll_interval: float
    min_interval: float = MIN_POLL_INTERVAL
    max_consecutive_failures: int = 5
    max_backoff: float = 900.0
    window_size: int = 1000
    max_results: int = 10
    webhook_url: Optional[str] = None

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if self.max_consecutive_failures < 0:
            raise ValueError("max_consecutive_failures cannot be negative")
        if not 10 <= self.max_results <= 100:
            raise ValueError("max_results must be between 10 and 100")

    @property
    def effective_interval(self) -> float:
        return max(self.poll_interval, self.min_interval)


class WatchPoller:
    """Drives the gateway on a timer and forwards new items to sinks.

    Sinks are callables taking an Item (stdout printers, collectors in
    tests). The webhook dispatcher, when given along with a URL, receives
    every new item as well.
    """

    def __init__(
        self,
        gateway: RequestGateway,
        query: str,
        options: WatchOptions,
        sinks: Optional[List[Callable[[Item], None]]] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the poller.

        Args:
            gateway: Request gateway shared with the rest of the process
            query: X search query to watch
            options: Interval, failure threshold and window settings
            sinks: Callables receiving each new item in id order
            dispatcher: Webhook dispatcher for `options.webhook_url`
            sleep: Sleep primitive; defaults to an interruptible wait that
                `stop()` cuts short
        """
        if not query or not query.strip():
            raise ValueError("query is required and cannot be empty")
        if options.webhook_url and dispatcher is None:
            raise ValueError("webhook_url requires a dispatcher")

        self.gateway = gateway
        self.options = options
        self.sinks = list(sinks or [])
        self.dispatcher = dispatcher
        self.session = WatchSession(
            query=query.strip(),
            poll_interval=options.effective_interval,
            recent_id_window=RecentIdWindow(options.window_size),
            webhook_url=options.webhook_url,
        )
        self._stop_requested = threading.Event()
        self._sleep = sleep or self._stop_requested.wait

    @property
    def state(self) -> WatchState:
        return self.session.status

    def stop(self) -> None:
        """Request a manual stop. Safe to call from a signal handler.

        Observed between ticks; a call already in flight completes first.
        """
        self._stop_requested.set()

    def build_request(self) -> ApiRequest:
        params = {
            "query": self.session.query,
            "max_results": self.options.max_results,
        }
        if self.session.high_water_mark is not None:
            params["since_id"] = str(self.session.high_water_mark)
        # Never cached: an unchanged since_id must still reach the API
        return ApiRequest(kind="search_recent", params=params, category="fast", cacheable=False)

    def _finish(self, reason: StopReason) -> StopReason:
        self.session.status = WatchState.STOPPED
        self.session.stop_reason = reason
        logger.info(
            f"Watch '{self.session.query}' stopped ({reason.value}) after "
            f"{self.session.ticks} ticks, {self.session.delivered} items, "
            f"${self.session.spent} spent"
        )
        return reason

    def _deliver(self, item: Item) -> None:
        for sink in self.sinks:
            sink(item)
        if self.dispatcher is not None and self.session.webhook_url:
            result = self.dispatcher.deliver(item, self.session.webhook_url)
            if not result.delivered:
                self.session.webhook_failures += 1

    def tick(self) -> Optional[float]:
        """Run one poll.

        Returns:
            Seconds to sleep before the next tick, or None if the session
            has stopped

        Raises:
            PersistenceFailure: If spend could not be recorded
        """
        session = self.session
        session.status = WatchState.POLLING
        session.ticks += 1

        try:
            response = self.gateway.execute(self.build_request())
        except BudgetExceeded as e:
            session.last_error = str(e)
            session.denial = e.to_dict()
            logger.warning(f"Watch '{session.query}': {e}")
            self._finish(StopReason.BUDGET_EXCEEDED)
            return None
        except TransportError as e:
            session.consecutive_failures += 1
            session.last_error = str(e)
            if session.consecutive_failures > self.options.max_consecutive_failures:
                logger.error(
                    f"Watch '{session.query}': {session.consecutive_failures} "
                    f"consecutive failures, last: {e}"
                )
                self._finish(StopReason.ERROR_THRESHOLD)
                return None
            delay = min(
                session.poll_interval * (2 ** session.consecutive_failures),
                max(self.options.max_backoff, session.poll_interval)
            )
            logger.warning(
                f"Watch '{session.query}' poll failed "
                f"({session.consecutive_failures}/{self.options.max_consecutive_failures}): "
                f"{e}; backing off {delay:.0f}s"
            )
            return delay

        session.consecutive_failures = 0
        session.last_error = None
        session.spent += response.cost

        new_items = sorted(
            (i for i in parse_items(response.payload) if i.id not in session.recent_id_window),
            key=lambda i: i.id
        )
        for item in new_items:
            if item.id in session.recent_id_window:
                continue
            self._deliver(item)
            session.recent_id_window.add(item.id)
            session.delivered += 1
            if session.high_water_mark is None or item.id > session.high_water_mark:
                session.high_water_mark = item.id

        if new_items:
            logger.debug(f"Watch '{session.query}': {len(new_items)} new, high-water {session.high_water_mark}")
        return session.poll_interval

    def run(self, max_ticks: Optional[int] = None) -> StopReason:
        """Poll until stopped, budget exhausted or too many failures.

        Args:
            max_ticks: Stop manually after this many ticks (None = forever)

        Returns:
            Why the session stopped
        """
        logger.info(f"Watching '{self.session.query}' every {self.session.poll_interval:.0f}s")
        while True:
            if self._stop_requested.is_set():
                return self._finish(StopReason.MANUAL)

            delay = self.tick()
            if delay is None:
                return self.session.stop_reason

            if self._stop_requested.is_set():
                return self._finish(StopReason.MANUAL)
            if max_ticks is not None and self.session.ticks >= max_ticks:
                return self._finish(StopReason.MANUAL)
            self.session.status = WatchState.SLEEPING
            self._sleep(delay)
