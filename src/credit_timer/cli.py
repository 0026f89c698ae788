#!/usr/bin/env python3
"""Credit timer CLI.

Drive the credit engine from the shell, either against the local store or a
running API server.

Usage:
    credit-timer status
    credit-timer add 300
    credit-timer start
    credit-timer app background
    credit-timer screen off
    credit-timer --remote http://127.0.0.1:7788 status
    credit-timer watch
    credit-timer serve
"""

from __future__ import annotations

import json
import sys
from functools import wraps

import click
from apscheduler.schedulers.blocking import BlockingScheduler
from rich.console import Console
from rich.table import Table

from .client import TimerClient
from .config import load_config
from .engine import CreditTimerEngine, TimerSnapshot, parse_app_state
from .errors import CreditTimerError
from .log import configure_logging
from .notification import RichNotificationPresenter, build_notification, format_duration
from .scheduler import TickScheduler
from .store import SqliteStateStore

console = Console()


def _get_timer(ctx: click.Context):
    """Engine over the local store, or a client when --remote was given."""
    obj = ctx.obj
    if obj.get("timer") is None:
        if obj["remote"]:
            obj["timer"] = TimerClient(obj["remote"])
        else:
            config = obj["config"]
            obj["timer"] = CreditTimerEngine(SqliteStateStore(config.db_path, config.namespace))
    return obj["timer"]


def _print_snapshot(snapshot: TimerSnapshot) -> None:
    content = build_notification(snapshot)
    console.print(f"[bold {content.color}]{content.title}[/bold {content.color}]  {content.text}")

    table = Table(show_header=False, box=None)
    table.add_column("field", style="cyan")
    table.add_column("value")
    table.add_row("Credit", format_duration(snapshot.remaining_credit))
    table.add_row("Debt", format_duration(snapshot.debt))
    table.add_row("Tracking", "yes" if snapshot.is_tracking else "no")
    table.add_row("Screen", "on" if snapshot.screen_on else "off")
    table.add_row("App", "foreground" if snapshot.app_foreground else "background")
    table.add_row("Status", content.status)
    console.print(table)


def handle_errors(f):
    """Print timer errors in red and exit 1 instead of dumping a traceback."""

    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except CreditTimerError as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)

    return wrapper


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="SQLite state file (overrides CREDIT_TIMER_DB).")
@click.option("--namespace", help="State namespace inside the database.")
@click.option("--remote", metavar="URL", help="Send commands to a running API server instead of the local store.")
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr.")
@click.pass_context
@handle_errors
def cli(ctx, db_path, namespace, remote, verbose):
    """Screen-time credit timer."""
    config = load_config().with_overrides(db_path=db_path, namespace=namespace)
    configure_logging("DEBUG" if verbose else config.log_level, console=verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["remote"] = remote
    ctx.obj.setdefault("timer", None)


@cli.command()
@click.pass_context
@handle_errors
def status(ctx):
    """Show the current balance."""
    _print_snapshot(_get_timer(ctx).get_snapshot())


@cli.command()
@click.pass_context
@handle_errors
def start(ctx):
    """Start tracking."""
    _print_snapshot(_get_timer(ctx).start_tracking())


@cli.command()
@click.pass_context
@handle_errors
def stop(ctx):
    """Stop tracking (credit and debt are kept)."""
    _print_snapshot(_get_timer(ctx).stop_tracking())


@cli.command()
@click.argument("seconds", type=int)
@click.pass_context
@handle_errors
def add(ctx, seconds):
    """Add SECONDS of credit (negative deducts)."""
    _print_snapshot(_get_timer(ctx).add_credit(seconds))


@cli.command()
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
@handle_errors
def reset(ctx, yes):
    """Zero credit and debt and stop tracking."""
    if not yes:
        click.confirm("Reset credit and debt to zero?", abort=True)
    _print_snapshot(_get_timer(ctx).reset())


@cli.command()
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_context
@handle_errors
def screen(ctx, state):
    """Record the screen turning on or off."""
    _print_snapshot(_get_timer(ctx).set_screen_on(state == "on"))


@cli.command()
@click.argument("state")
@click.pass_context
@handle_errors
def app(ctx, state):
    """Record the host app moving to the foreground or background."""
    _print_snapshot(_get_timer(ctx).set_app_foreground(parse_app_state(state)))


@cli.command()
@click.pass_context
@handle_errors
def export(ctx):
    """Print timer state and lifetime statistics as JSON."""
    click.echo(json.dumps(_get_timer(ctx).export_data(), indent=2))


@cli.command()
@click.option("--interval", type=float, default=None, help="Seconds between ticks (defaults to config).")
@click.pass_context
@handle_errors
def watch(ctx, interval):
    """Run the tick loop locally and print notification changes until Ctrl-C."""
    if ctx.obj["remote"]:
        raise click.UsageError("watch drives the local store; it cannot be combined with --remote")
    config = ctx.obj["config"]
    engine = _get_timer(ctx)
    presenter = RichNotificationPresenter(console)
    presenter.attach(engine)

    scheduler = BlockingScheduler()
    ticker = TickScheduler(engine, scheduler, interval or config.tick_seconds)
    ticker.start()
    console.print(f"[cyan]Watching {config.db_path} (Ctrl-C to stop)...[/cyan]")
    engine.reconcile()
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        ticker.stop()
        if scheduler.running:
            scheduler.shutdown(wait=False)
    console.print("[dim]Stopped.[/dim]")


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to config).")
@click.option("--port", type=int, default=None, help="Port (defaults to config).")
@click.pass_context
@handle_errors
def serve(ctx, host, port):
    """Run the HTTP API server."""
    import uvicorn

    from .api import create_app

    config = ctx.obj["config"].with_overrides(host=host, port=port)
    uvicorn.run(create_app(config), host=config.host, port=config.port)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":  # pragma: no cover
    main()
