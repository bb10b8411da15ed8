"""
CLI interface for xint-guard.

Provides the budget, cache and watch commands of the request core.
"""

import json
import logging
import signal
import sqlite3
import sys
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from xint_guard.config.loader import AppConfig, load_config, x_bearer_token, xai_api_key
from xint_guard.core.cache import ResponseCache
from xint_guard.core.errors import BudgetExceeded, PersistenceFailure, XintGuardError
from xint_guard.core.gateway import RequestGateway
from xint_guard.core.items import Item
from xint_guard.core.ledger import BudgetLedger, SpendPeriod
from xint_guard.core.pricing import CHAT_KIND, PricingTable
from xint_guard.core.watch import StopReason, WatchOptions, WatchPoller
from xint_guard.core.webhook import WebhookDispatcher
from xint_guard.sdk.transports import RoutingTransport, XaiTransport, XApiTransport
from xint_guard.storage.repository import CacheRepository, LedgerRepository, initialize_schema

app = typer.Typer()
cache_app = typer.Typer(help="Manage the response cache.")
app.add_typer(cache_app, name="cache")
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

# Exit codes - 2 is left to Typer/Click usage errors
EXIT_CODE_SUCCESS = 0
EXIT_CODE_ERROR = 1
EXIT_CODE_BUDGET_EXCEEDED = 3

_STOP_EXIT_CODES = {
    StopReason.MANUAL: EXIT_CODE_SUCCESS,
    StopReason.BUDGET_EXCEEDED: EXIT_CODE_BUDGET_EXCEEDED,
    StopReason.ERROR_THRESHOLD: EXIT_CODE_ERROR,
}


def _stop_reason_to_exit_code(reason: StopReason) -> int:
    """Convert a watch stop reason to a CLI exit code."""
    return _STOP_EXIT_CODES[reason]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the ledger/cache database path"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log progress to stderr"
    )
):
    """xint-guard: budget-capped X and xAI API access."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        stream=sys.stderr,
    )
    try:
        config = load_config(config_path)
    except Exception as e:
        err_console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_ERROR)

    ctx.obj = {"config": config, "db_path": db_path or config.storage.path}
    if ctx.invoked_subcommand is None:
        console.print("xint-guard - Use --help to see available commands")


def _open_stores(ctx: typer.Context):
    """Create the schema if needed and return (config, ledger, cache)."""
    config: AppConfig = ctx.obj["config"]
    db_path: str = ctx.obj["db_path"]
    initialize_schema(db_path)
    ledger = BudgetLedger(LedgerRepository(db_path), config.budget.daily_limit)
    cache = ResponseCache(CacheRepository(db_path))
    return config, ledger, cache


def _build_transport(config: AppConfig) -> RoutingTransport:
    """Route X endpoints to the X API and chat completions to xAI."""
    token = x_bearer_token()
    if not token:
        raise XintGuardError("X_BEARER_TOKEN is not set")
    x_transport = XApiTransport(token)
    routes = {}
    key = xai_api_key()
    if key:
        routes[CHAT_KIND] = XaiTransport(key)
    return RoutingTransport(routes, default=x_transport)


def _format_currency(amount: Decimal) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}" if abs(amount) >= 1 else f"${abs(amount):,.4f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger and cache database."""
    try:
        initialize_schema(ctx.obj["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_SUCCESS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_ERROR)


@app.command()
def costs(
    ctx: typer.Context,
    period: str = typer.Argument(
        "today",
        help="today, week, month or all - or 'budget' to set the daily limit"
    ),
    amount: Optional[str] = typer.Argument(
        None,
        help="New daily limit in USD (with 'budget')"
    ),
    events: int = typer.Option(
        0,
        "--events",
        "-e",
        help="Also list the N most recent cost events in the period"
    )
):
    """
    Show API spend, or set the daily budget.

    `costs budget AMOUNT` changes today's limit immediately; later days
    keep it until it is changed again.
    """
    try:
        _, ledger, _ = _open_stores(ctx)

        if period == "budget":
            if amount is None:
                status = ledger.status()
                console.print(
                    f"Daily budget: {_format_currency(status.limit)} "
                    f"(spent {_format_currency(status.spent)}, "
                    f"remaining {_format_currency(status.remaining)})"
                )
                sys.exit(EXIT_CODE_SUCCESS)
            record = ledger.set_limit(amount.lstrip("$"))
            console.print(f"[green]✓[/] Daily budget set to {_format_currency(record.limit)}")
            sys.exit(EXIT_CODE_SUCCESS)

        try:
            spend_period = SpendPeriod(period)
        except ValueError:
            valid = [p.value for p in SpendPeriod] + ["budget"]
            console.print(f"[red]Error:[/] period must be one of: {valid}")
            sys.exit(EXIT_CODE_ERROR)

        _display_costs(ledger, spend_period)
        if events > 0:
            _display_events(ledger, spend_period, events)
        sys.exit(EXIT_CODE_SUCCESS)
    except (PersistenceFailure, sqlite3.Error, ValueError, InvalidOperation) as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_ERROR)


def _display_costs(ledger: BudgetLedger, period: SpendPeriod):
    """Display spend for a period in a clean, financial format."""
    status = ledger.status()
    total = ledger.current_spend(period)

    console.print(f"\n[bold]API Costs ({period.value})[/bold]")
    console.print("-" * 40)
    console.print(f"Total spend: {_format_currency(total)}")
    console.print(
        f"Today: {_format_currency(status.spent)} of {_format_currency(status.limit)} "
        f"({_format_currency(status.remaining)} remaining)"
    )

    rows = ledger.spend_by_endpoint(period)
    if not rows:
        console.print("\n[dim]No API spend recorded for this period.[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Endpoint")
    table.add_column("Calls", justify="right")
    table.add_column("Cost", justify="right")
    for endpoint, calls, cost in rows:
        table.add_row(endpoint, str(calls), _format_currency(cost))
    console.print(table)


def _display_events(ledger: BudgetLedger, period: SpendPeriod, limit: int):
    """List the most recent cost events, newest first."""
    rows = ledger.recent_events(period, limit)
    if not rows:
        return

    table = Table(show_header=True, header_style="bold", title="Recent cost events")
    table.add_column("Time (UTC)")
    table.add_column("Endpoint")
    table.add_column("Cost", justify="right")
    for event in rows:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.endpoint,
            _format_currency(event.amount)
        )
    console.print(table)


@cache_app.command("clear")
def cache_clear(ctx: typer.Context):
    """Remove every cached response."""
    try:
        _, _, cache = _open_stores(ctx)
        removed = cache.clear()
        console.print(f"[green]✓[/] Cache cleared ({removed} entries)")
        sys.exit(EXIT_CODE_SUCCESS)
    except (PersistenceFailure, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_ERROR)


@cache_app.command("prune")
def cache_prune(ctx: typer.Context):
    """Remove expired cached responses and old budget records."""
    try:
        config, ledger, cache = _open_stores(ctx)
        removed = cache.prune()
        days = ledger.prune(config.storage.keep_days)
        console.print(
            f"[green]✓[/] Pruned {removed} expired entries and {days} old budget days "
            f"({cache.size()} cached responses remain)"
        )
        sys.exit(EXIT_CODE_SUCCESS)
    except (PersistenceFailure, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_ERROR)


def _print_item(item: Item) -> None:
    author = f"@{item.author}" if item.author else "unknown"
    stamp = f" [dim]{item.timestamp}[/]" if item.timestamp else ""
    console.print(f"[bold cyan]{escape(author)}[/]{stamp}\n{escape(item.text)}\n")


def _print_item_jsonl(item: Item) -> None:
    typer.echo(json.dumps(item.to_dict(), ensure_ascii=False))


@contextmanager
def _stop_on_signals(poller: WatchPoller):
    """Turn SIGINT/SIGTERM into a manual stop observed between ticks."""
    def _shutdown(signum=None, frame=None):
        poller.stop()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _shutdown)
        except ValueError:
            # Not on the main thread; rely on KeyboardInterrupt instead
            pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _validate_webhook_url(url: str) -> str:
    """Reject URLs no retry could ever deliver to, before polling starts."""
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise ValueError(f"Invalid webhook URL '{url}': {e}")
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"Webhook URL must be http(s) with a host: '{url}'")
    return url


def _session_summary(label: str, session) -> str:
    message = (
        f"Watch stopped ({label}): {session.ticks} polls, "
        f"{session.delivered} new tweets, {_format_currency(session.spent)} spent"
    )
    if session.webhook_failures:
        message += f", {session.webhook_failures} webhook failures"
    return message


@app.command()
def watch(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="X search query to monitor"),
    interval: float = typer.Option(
        60.0,
        "--interval",
        "-i",
        help="Seconds between polls (raised to the configured minimum)"
    ),
    webhook: Optional[str] = typer.Option(
        None,
        "--webhook",
        help="POST each new tweet as JSON to this URL"
    ),
    jsonl: bool = typer.Option(
        False,
        "--jsonl",
        help="Print one JSON object per new tweet"
    ),
    max_results: Optional[int] = typer.Option(
        None,
        "--max-results",
        "-n",
        help="Tweets requested per poll (10-100)"
    ),
    max_ticks: int = typer.Option(
        0,
        "--max-ticks",
        help="Stop after this many polls (0 = run until interrupted)"
    ),
    no_budget_guard: bool = typer.Option(
        False,
        "--no-budget-guard",
        help="Skip daily budget checks (spend is still recorded)"
    )
):
    """
    Poll a search query and print tweets as they appear.

    Runs until interrupted, until the daily budget is exhausted (exit 3),
    or until too many consecutive API failures (exit 1). Webhook delivery
    is at-least-once: receivers may see the same tweet twice.
    """
    gateway = None
    dispatcher = None
    try:
        if webhook:
            _validate_webhook_url(webhook)
        config, ledger, cache = _open_stores(ctx)
        enforce_budget = config.budget.enforce and not no_budget_guard
        if not enforce_budget:
            err_console.print("[yellow]Budget guard disabled: spend is recorded but not capped[/]")

        pricing = PricingTable().with_overrides(config.pricing)
        gateway = RequestGateway(
            ledger,
            cache,
            _build_transport(config),
            pricing=pricing,
            ttl_for=config.cache.ttl_for,
            enforce_budget=enforce_budget
        )
        if webhook:
            dispatcher = WebhookDispatcher(
                max_attempts=config.webhook.max_attempts,
                timeout=config.webhook.timeout,
                backoff_base=config.webhook.backoff_base
            )

        options = WatchOptions(
            poll_interval=interval,
            min_interval=config.watch.min_interval,
            max_consecutive_failures=config.watch.max_consecutive_failures,
            max_backoff=config.watch.max_backoff,
            window_size=config.watch.window_size,
            max_results=max_results or config.watch.max_results,
            webhook_url=webhook
        )
        poller = WatchPoller(
            gateway,
            query,
            options,
            sinks=[_print_item_jsonl if jsonl else _print_item],
            dispatcher=dispatcher
        )
        if interval < options.min_interval:
            err_console.print(f"[yellow]Interval raised to the {options.min_interval:.0f}s minimum[/]")

        with _stop_on_signals(poller):
            try:
                reason = poller.run(max_ticks=max_ticks or None)
            except KeyboardInterrupt:
                poller.stop()
                reason = StopReason.MANUAL
            except OSError as e:
                # Typically stdout closed under us, e.g. `watch ... | head`
                err_console.print(f"[red]{escape(_session_summary('output error', poller.session))}[/]")
                err_console.print(f"[red]Error:[/] {escape(str(e))}")
                sys.exit(EXIT_CODE_ERROR)

        session = poller.session
        message = _session_summary(reason.value, session)
        if reason == StopReason.BUDGET_EXCEEDED:
            err_console.print(f"[yellow]{escape(message)}[/]\n{escape(session.last_error or '')}")
            if jsonl and session.denial:
                typer.echo(json.dumps(session.denial), err=True)
        elif reason == StopReason.ERROR_THRESHOLD:
            err_console.print(f"[red]{escape(message)}[/]\nLast error: {escape(session.last_error or '')}")
        else:
            err_console.print(escape(message))
        sys.exit(_stop_reason_to_exit_code(reason))

    except BudgetExceeded as e:
        err_console.print(f"[yellow]Budget exceeded:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_BUDGET_EXCEEDED)
    except (XintGuardError, sqlite3.Error, ValueError) as e:
        err_console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_ERROR)
    finally:
        if gateway is not None:
            gateway.close()
        if dispatcher is not None:
            dispatcher.close()


if __name__ == "__main__":
    app()
