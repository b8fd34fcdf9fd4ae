"""Command-line tools: watch a live option chain, or serve a demo hub."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from pydantic import ValidationError
from rich import box
from rich.console import Console, RenderableType
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table

from . import __version__
from .domain.enums import ConnectionState
from .domain.models import Snapshot, SubscriptionView
from .domain.value_objects import Duration, SubscriptionKey
from .infrastructure.config import ChainStreamConfig
from .infrastructure.factories import create_registry
from .infrastructure.nats_chain_hub import NATSChainHub, StaticChainProvider, build_demo_chain
from .logging_config import setup_logging

STATE_STYLES = {
    ConnectionState.IDLE: "dim",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.SUBSCRIBED: "green",
    ConnectionState.RECONNECTING: "bold yellow",
    ConnectionState.CLOSED: "dim",
}


def render_snapshot(snapshot: Snapshot) -> RenderableType:
    """Render a chain payload as a strike table, anything else as-is."""
    payload = snapshot.payload
    title = f"{snapshot.key} @ {snapshot.received_at:%H:%M:%S}"

    rows = payload.get("strikes") if isinstance(payload, dict) else None
    if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
        return Panel(Pretty(payload), title=title)

    columns: list[str] = []
    for row in rows:
        columns.extend(c for c in row if c not in columns)

    table = Table(title=title, box=box.SIMPLE_HEAVY)
    for column in columns:
        table.add_column(column.capitalize(), justify="right")
    for row in rows:
        table.add_row(*(_format_cell(row.get(column)) for column in columns))
    return table


def _format_cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:,.2f}"
    return str(value)


class ViewPrinter:
    """Registry listener that prints what changed in the view."""

    def __init__(self, console: Console, as_json: bool = False):
        self.console = console
        self.as_json = as_json
        self._last: SubscriptionView | None = None

    def __call__(self, view: SubscriptionView) -> None:
        last, self._last = self._last, view
        if self.as_json:
            self._print_json(view, last)
            return

        if last is None or last.state is not view.state or last.is_connected != view.is_connected:
            style = STATE_STYLES[view.state]
            link = "connected" if view.is_connected else "disconnected"
            self.console.print(f"[{style}]{view.state.value}[/{style}] ({link})")

        if view.error and (last is None or last.error != view.error):
            self.console.print(f"[bold red]Error:[/bold red] {view.error}")

        if view.snapshot is not None and (last is None or last.snapshot is not view.snapshot):
            self.console.print(render_snapshot(view.snapshot))

    def _print_json(self, view: SubscriptionView, last: SubscriptionView | None) -> None:
        if last is not None and last == view:
            return
        self.console.print_json(json.dumps(view.model_dump(mode="json")))


def build_config(nats_url: str | None, refresh_seconds: float | None) -> ChainStreamConfig:
    """Environment configuration with command-line overrides applied."""
    config = ChainStreamConfig.from_env()
    if nats_url:
        config.transport.servers = [s.strip() for s in nats_url.split(",") if s.strip()]
    if refresh_seconds is not None:
        config.refresh_interval = Duration(seconds=refresh_seconds)
    return config


async def run_watch(
    config: ChainStreamConfig,
    key: SubscriptionKey,
    printer: ViewPrinter,
    duration: float | None = None,
) -> None:
    """Subscribe to one key and print every change until cancelled or timed out."""
    registry = create_registry(config)
    registry.observe(printer)
    try:
        await registry.set_key(key)
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await registry.teardown()


async def run_demo_hub(
    config: ChainStreamConfig,
    console: Console,
    publish_interval: float | None = None,
    duration: float | None = None,
) -> None:
    """Serve toy chains until cancelled or timed out."""
    hub = NATSChainHub(StaticChainProvider(builder=build_demo_chain), config.transport)
    await hub.start()
    console.print(
        f"[green]Demo hub listening[/green] on {', '.join(config.transport.servers)} "
        f"(prefix '{config.transport.subject_prefix}')"
    )
    loop = asyncio.get_running_loop()
    deadline = None if duration is None else loop.time() + duration
    try:
        while deadline is None or loop.time() < deadline:
            step = publish_interval or 1.0
            if deadline is not None:
                step = min(step, max(deadline - loop.time(), 0))
            await asyncio.sleep(step)
            if publish_interval:
                for key in hub.active_keys():
                    await hub.publish_update(key)
    finally:
        await hub.stop()


@click.group()
@click.version_option(__version__, prog_name="chainstream")
@click.option("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or WARNING)")
def cli(log_level: str | None) -> None:
    """Live option chain subscriptions over NATS."""
    setup_logging(log_level)


@cli.command()
@click.argument("instrument")
@click.argument("expiry")
@click.option("--nats-url", "-n", help="NATS server URL(s), comma-separated")
@click.option("--refresh", "refresh_seconds", type=float, help="Refresh interval in seconds")
@click.option("--duration", type=float, help="Stop after this many seconds")
@click.option("--json", "as_json", is_flag=True, help="Print views as JSON")
def watch(
    instrument: str,
    expiry: str,
    nats_url: str | None,
    refresh_seconds: float | None,
    duration: float | None,
    as_json: bool,
) -> None:
    """Watch the live chain for INSTRUMENT and EXPIRY."""
    try:
        key = SubscriptionKey.of(instrument, expiry)
        config = build_config(nats_url, refresh_seconds)
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e

    console = Console()
    try:
        asyncio.run(run_watch(config, key, ViewPrinter(console, as_json), duration))
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")


@cli.command("serve-demo")
@click.option("--nats-url", "-n", help="NATS server URL(s), comma-separated")
@click.option(
    "--publish-interval",
    type=float,
    help="Also push fresh chains to every subscribed key this often (seconds)",
)
@click.option("--duration", type=float, help="Stop after this many seconds")
def serve_demo(nats_url: str | None, publish_interval: float | None, duration: float | None) -> None:
    """Answer channel requests with generated demo chains."""
    try:
        config = build_config(nats_url, None)
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e

    console = Console()
    try:
        asyncio.run(run_demo_hub(config, console, publish_interval, duration))
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
