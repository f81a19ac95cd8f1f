"""Rich rendering for the tradecue operator CLI.

Only renders data. Nothing here touches the queue.
"""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tradecue.models import WorkItem, WorkItemRun, WorkItemStatus

STATUS_STYLES = {
    WorkItemStatus.PENDING: "yellow",
    WorkItemStatus.RUNNING: "cyan",
    WorkItemStatus.SUCCEEDED: "green",
    WorkItemStatus.DEAD_LETTER: "red",
}


def format_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def status_text(status: WorkItemStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _truncate(text: str | None, width: int = 60) -> str:
    if not text:
        return ""
    return text if len(text) <= width else text[: width - 1] + "…"


def items_table(items: list[WorkItem], title: str = "Work Items") -> Table:
    table = Table(title=title, border_style="blue")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Symbol")
    table.add_column("Attempts", justify="right")
    table.add_column("Next Run")
    table.add_column("Last Error")

    for item in items:
        table.add_row(
            item.id,
            item.type.value,
            status_text(item.status),
            item.symbol or "",
            f"{item.attempts}/{item.max_attempts}",
            format_ts(item.next_run_at) if item.status is WorkItemStatus.PENDING else "",
            _truncate(item.last_error),
        )
    return table


def item_panel(item: WorkItem, runs: list[WorkItemRun]) -> Panel:
    details = Table.grid(padding=(0, 2))
    details.add_column(style="dim")
    details.add_column()

    details.add_row("Type", item.type.value)
    details.add_row("Status", status_text(item.status))
    details.add_row("Idempotency key", item.idempotency_key or "-")
    details.add_row("Attempts", f"{item.attempts}/{item.max_attempts}")
    details.add_row("Next run", format_ts(item.next_run_at))
    details.add_row("Broker order", item.broker_order_id or "-")
    details.add_row("Payload", str(item.payload.to_dict()))
    if item.result:
        details.add_row("Result", str(item.result))
    if item.last_error:
        details.add_row("Last error", f"[red]{item.last_error}[/red]")
    if item.claimed_by:
        details.add_row("Claimed by", f"{item.claimed_by} until {format_ts(item.lease_expires_at)}")
    details.add_row("Created", format_ts(item.created_at))
    details.add_row("Updated", format_ts(item.updated_at))

    runs_table = Table(box=None, expand=True, padding=(0, 1))
    runs_table.add_column("#", justify="right")
    runs_table.add_column("Status")
    runs_table.add_column("Started")
    runs_table.add_column("Duration", justify="right")
    runs_table.add_column("Error")
    for run in runs:
        duration = f"{run.duration_ms}ms" if run.duration_ms is not None else "-"
        runs_table.add_row(
            str(run.attempt_number),
            run.status.value,
            format_ts(run.started_at),
            duration,
            _truncate(run.error),
        )

    content = Table.grid(expand=True)
    content.add_row(details)
    content.add_row("")
    content.add_row(runs_table if runs else "[dim]No runs yet[/dim]")
    return Panel(content, title=f"[bold]{item.id}[/bold]", border_style="blue")


def stats_table(counts: dict[WorkItemStatus, int], kill_switch_active: bool) -> Table:
    table = Table(title="Queue", show_header=False, border_style="green")
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    for status in WorkItemStatus:
        table.add_row(status_text(status), str(counts.get(status, 0)))
    table.add_row("Total", str(sum(counts.values())))
    table.add_row(
        "Kill switch",
        "[bold red]ACTIVE[/bold red]" if kill_switch_active else "[green]off[/green]",
    )
    return table


def print_items(console: Console, items: list[WorkItem], title: str = "Work Items") -> None:
    if not items:
        console.print("[dim]No work items[/dim]")
        return
    console.print(items_table(items, title))
