"""
Status report for `cardflow status`.

Collects card counts per configured column, ledger counts for both pipelines
and the tail of the activity log, then renders them with Rich.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from cardflow.errors import CardflowError
from cardflow.logger import ACTIVITY_LOG_NAME
from cardflow.utils.fs import tail_lines

if TYPE_CHECKING:
    from cardflow.board import TrelloBoard
    from cardflow.config import CardflowConfig
    from cardflow.ledger import CardLedger


RECENT_ACTIVITY_LINES = 10

LEVEL_STYLES = {
    "[ERROR]": "red",
    "[WARN]": "yellow",
    "[INFO]": "green",
}


@dataclass
class ColumnStatus:
    """Cards currently in one board column."""
    column_id: str
    name: str
    titles: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.titles)


@dataclass
class LedgerStatus:
    """Processed and retrying card counts for one pipeline."""
    pipeline: str
    processed: int = 0
    retrying: int = 0
    error: Optional[str] = None


@dataclass
class StatusReport:
    columns: list[ColumnStatus] = field(default_factory=list)
    ledgers: list[LedgerStatus] = field(default_factory=list)
    recent_activity: list[str] = field(default_factory=list)
    board_error: Optional[str] = None


def configured_columns(config: CardflowConfig) -> list[str]:
    """Column ids in workflow order, skipping unset ones."""
    columns = config.board.columns
    ordered = [
        columns.todo,
        columns.analysis_source,
        columns.analysis_reviewing,
        columns.analysis_done,
        columns.dev_source,
        columns.dev_in_progress,
        columns.dev_done,
        columns.failed,
    ]
    seen: list[str] = []
    for column_id in ordered:
        if column_id and column_id not in seen:
            seen.append(column_id)
    return seen


def ledger_status(pipeline: str, ledger: CardLedger) -> LedgerStatus:
    """Load a ledger read-only and summarise it."""
    try:
        ledger.load()
    except CardflowError as e:
        return LedgerStatus(pipeline, error=str(e))
    snapshot = ledger.snapshot()
    return LedgerStatus(
        pipeline,
        processed=len(snapshot["processed"]),
        retrying=sum(1 for count in snapshot["attempts"].values() if count > 0),
    )


async def collect_status(
    config: CardflowConfig,
    board: Optional[TrelloBoard],
    ledgers: dict[str, CardLedger],
) -> StatusReport:
    """
    Gather the status report.

    Board failures are recorded on the report rather than raised, so the
    ledger and activity sections still render.
    """
    report = StatusReport()

    if board is not None:
        try:
            names = {item["id"]: item.get("name", item["id"]) for item in await board.get_board_lists()}
            for column_id in configured_columns(config):
                cards = await board.list_cards(column_id)
                report.columns.append(
                    ColumnStatus(column_id, names.get(column_id, column_id), [c.title for c in cards])
                )
        except CardflowError as e:
            report.board_error = str(e)

    report.ledgers = [ledger_status(name, ledger) for name, ledger in ledgers.items()]
    report.recent_activity = tail_lines(config.logs_path / ACTIVITY_LOG_NAME, RECENT_ACTIVITY_LINES)
    return report


def format_activity_line(line: str) -> Text:
    """Colour the level tag of an activity log line."""
    text = Text(line)
    for tag, style in LEVEL_STYLES.items():
        text.highlight_words([tag], style=style)
    return text


def render_status(report: StatusReport, console: Console, bot_name: str = "CardBot") -> None:
    """Print the report."""
    console.print(f"\n[bold]{bot_name} status[/bold]  [dim]{datetime.now():%Y-%m-%d %H:%M:%S}[/dim]")

    console.print("\n[bold cyan]Board[/bold cyan]")
    if report.board_error:
        console.print(f"  [red]Board unavailable: {report.board_error}[/red]")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Cards", justify="right")
        table.add_column("Column")
        table.add_column("Titles", style="dim")
        for column in report.columns:
            count = Text(str(column.count), style="yellow" if column.count else "dim")
            table.add_row(count, column.name, ", ".join(column.titles))
        console.print(table)
        total = sum(c.count for c in report.columns)
        console.print(f"  [dim]Total: {total} card(s) across {len(report.columns)} column(s)[/dim]")

    console.print("\n[bold cyan]Ledger[/bold cyan]")
    for ledger in report.ledgers:
        if ledger.error:
            console.print(f"  {ledger.pipeline}: [red]{ledger.error}[/red]")
        else:
            console.print(
                f"  {ledger.pipeline}: {ledger.processed} processed, "
                f"{ledger.retrying} with failed attempts"
            )

    console.print("\n[bold cyan]Recent activity[/bold cyan]")
    if not report.recent_activity:
        console.print("  [dim]No activity log found[/dim]")
    for line in report.recent_activity:
        console.print(Text("  ") + format_activity_line(line))
    console.print()
