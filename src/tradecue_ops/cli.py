#!/usr/bin/env python3
"""
tradecue: operator CLI for the order-execution work queue.

Usage:
    tradecue worker
    tradecue list --status DEAD_LETTER --limit 20
    tradecue show 3f2a...
    tradecue retry 3f2a...
    tradecue invalidate 3f2a... --reason "canceled at broker"
    tradecue kill-switch --close-positions
    tradecue kill-switch --off
    tradecue stats
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.logging import RichHandler

from tradecue.alpaca import AlpacaGateway
from tradecue.config import AlpacaConfig, QueueConfig
from tradecue.engine import WorkQueue
from tradecue.errors import TradecueError, WorkItemNotFound
from tradecue.models import KillSwitchPayload, NewWorkItem, WorkItemStatus, WorkItemType
from tradecue.repository import SqliteRepository
from tradecue_ops.display import item_panel, print_items, stats_table
from tradecue_ops.services import AllowListEnforcement, AlpacaTradability

console = Console()


def configure_logging(verbose: bool = False) -> None:
    """Route tradecue logs through rich."""
    tradecue_logger = logging.getLogger("tradecue")
    tradecue_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    tradecue_logger.handlers.clear()
    tradecue_logger.addHandler(handler)


async def run_worker(config: QueueConfig) -> None:
    """Run the worker loop until SIGINT/SIGTERM, then drain."""
    alpaca = AlpacaConfig.from_env()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with SqliteRepository(config.db_path) as repo, AlpacaGateway(alpaca) as gateway:
        queue = WorkQueue(
            repo,
            gateway=gateway,
            enforcement=AllowListEnforcement.from_env(),
            tradability=AlpacaTradability(gateway),
            config=config,
        )
        queue.start()
        console.print(
            f"[bold]tradecue worker[/bold] {config.worker.worker_id} "
            f"on {config.db_path} (every {config.worker.interval:.1f}s, Ctrl-C to stop)"
        )
        await stop.wait()
        console.print("Draining...")
        drained = await queue.drain()
        if not drained:
            console.print("[yellow]Exited with a cycle still in flight[/yellow]")


async def run_admin(args: argparse.Namespace, config: QueueConfig) -> int:
    async with SqliteRepository(config.db_path) as repo:
        queue = WorkQueue(repo, config=config)

        if args.command == "list":
            status = WorkItemStatus(args.status) if args.status else None
            items = await queue.recent_items(limit=args.limit, status=status)
            print_items(console, items)

        elif args.command == "show":
            item = await queue.get(args.id)
            if item is None:
                raise WorkItemNotFound(args.id)
            console.print(item_panel(item, await queue.runs(item.id)))

        elif args.command == "retry":
            item = await queue.retry_dead_letter(args.id)
            if item is None:
                console.print(f"[yellow]{args.id} is not dead-lettered, nothing to retry[/yellow]")
                return 1
            console.print(f"Requeued [bold]{item.id}[/bold]")

        elif args.command == "invalidate":
            item = await queue.invalidate(args.id, args.reason)
            console.print(f"Invalidated [bold]{item.id}[/bold], key released")

        elif args.command == "kill-switch" and args.off:
            await queue.deactivate_kill_switch()
            console.print("[green]Kill switch deactivated[/green], orders will be submitted again")

        elif args.command == "kill-switch":
            item = await queue.enqueue(
                NewWorkItem.create(
                    WorkItemType.KILL_SWITCH,
                    KillSwitchPayload(close_positions=args.close_positions),
                )
            )
            console.print(f"[bold red]Kill switch enqueued[/bold red] as {item.id}")

        elif args.command == "stats":
            counts = await repo.count_by_status()
            status = await repo.get_status()
            console.print(stats_table(counts, status.kill_switch_active))

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradecue",
        description="Operate the tradecue order-execution queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: $TRADECUE_DB_PATH or tradecue.db)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run the worker loop")
    worker.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between ticks (default: 5)",
    )

    list_cmd = sub.add_parser("list", help="List recent work items")
    list_cmd.add_argument(
        "--status",
        choices=[s.value for s in WorkItemStatus],
        default=None,
        help="Only items in this status",
    )
    list_cmd.add_argument("--limit", "-n", type=int, default=50, help="Max rows (default: 50)")

    show = sub.add_parser("show", help="Show one item and its runs")
    show.add_argument("id")

    retry = sub.add_parser("retry", help="Requeue a dead-lettered item")
    retry.add_argument("id")

    invalidate = sub.add_parser("invalidate", help="Dead-letter an item and release its key")
    invalidate.add_argument("id")
    invalidate.add_argument("--reason", required=True, help="Why the recorded outcome is void")

    kill = sub.add_parser("kill-switch", help="Enqueue a kill switch, or clear it with --off")
    kill_mode = kill.add_mutually_exclusive_group()
    kill_mode.add_argument(
        "--off",
        action="store_true",
        help="Deactivate the kill switch instead of engaging it",
    )
    kill_mode.add_argument(
        "--close-positions",
        action="store_true",
        help="Also close every open position",
    )

    sub.add_parser("stats", help="Counts per status and kill switch state")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = QueueConfig.from_env()
        if args.db:
            config.db_path = args.db
        if args.command == "worker":
            if args.interval is not None:
                config.worker.interval = args.interval
            asyncio.run(run_worker(config))
            return 0
        return asyncio.run(run_admin(args, config))
    except WorkItemNotFound as e:
        console.print(f"[red]No work item {e}[/red]")
        return 1
    except TradecueError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
