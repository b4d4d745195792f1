"""Typer CLI for cardflow.

Commands:
    run           Poll the board until interrupted
    once          Run one poll of each cycle and exit
    status        Board, ledger and recent activity overview
    check-config  Load and validate the configuration
    ledger show   Processed cards and attempt counts
    ledger reset  Forget a card so it is processed again
"""
from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from cardflow import __version__
from cardflow.errors import CardflowError, ConfigError

if TYPE_CHECKING:
    from cardflow.board import Board, TrelloBoard
    from cardflow.config import CardflowConfig
    from cardflow.ledger import CardLedger
    from cardflow.poller import CardPoller


app = typer.Typer(
    name="cardflow",
    help="Kanban-card driven analysis and development pipelines.",
    add_completion=False,
)
ledger_app = typer.Typer(help="Inspect or reset the card ledgers.")
app.add_typer(ledger_app, name="ledger")

console = Console()

PIPELINES = ("analysis", "dev")

# Set by the root callback
_config_path: Optional[str] = None


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"cardflow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the config file (default: $CARDFLOW_CONFIG or cardflow.yaml).",
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Console log level.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    cardflow - moves board cards through AI analysis and development.
    """
    from cardflow.logger import setup_logging

    global _config_path
    _config_path = config
    setup_logging(log_level)


def _load_config(validate: bool = True) -> CardflowConfig:
    from cardflow.config import load_config

    try:
        return load_config(_config_path, validate=validate)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _ledgers(config: CardflowConfig, pipeline: Optional[str] = None) -> dict[str, CardLedger]:
    from cardflow.ledger import CardLedger

    if pipeline is not None and pipeline not in PIPELINES:
        console.print(f"[red]Error:[/red] Unknown pipeline '{pipeline}' (expected analysis or dev)")
        raise typer.Exit(1)

    ledgers = {
        "analysis": CardLedger.for_analysis(config.data_path),
        "dev": CardLedger.for_development(config.data_path),
    }
    if pipeline is not None:
        return {pipeline: ledgers[pipeline]}
    return ledgers


def build_pollers(
    config: CardflowConfig,
    board: Board,
    analysis_ledger: CardLedger,
    dev_ledger: CardLedger,
) -> list[CardPoller]:
    """Wire runner, agent, pipelines and pollers for both cycles."""
    from cardflow.agent import AgentRunner
    from cardflow.logger import PipelineLogger
    from cardflow.pipelines import AnalysisPipeline, DevelopmentPipeline
    from cardflow.poller import AnalysisPoller, DevelopmentPoller
    from cardflow.process_runner import ProcessRunner

    columns = config.board.columns
    runner = ProcessRunner(config.sandbox)

    analysis_logger = PipelineLogger("analysis", config.logs_path)
    analysis = AnalysisPipeline(
        config, board, analysis_ledger,
        AgentRunner(config, runner, analysis_logger),
        analysis_logger,
    )
    pollers: list[CardPoller] = [
        AnalysisPoller(board, analysis_ledger, analysis, columns.analysis_source, analysis_logger)
    ]

    if columns.dev_enabled:
        dev_logger = PipelineLogger("dev", config.logs_path)
        development = DevelopmentPipeline(
            config, board, dev_ledger,
            AgentRunner(config, runner, dev_logger),
            runner,
            dev_logger,
        )
        pollers.append(
            DevelopmentPoller(board, dev_ledger, development, columns.dev_source, dev_logger)
        )
    return pollers


def _make_board(config: CardflowConfig) -> TrelloBoard:
    from cardflow.board import TrelloBoard
    from cardflow.logger import PipelineLogger

    return TrelloBoard(config.board, logger=PipelineLogger("board", config.logs_path))


async def _drive(config: CardflowConfig, once: bool) -> None:
    from cardflow.poller import PollDriver

    board = _make_board(config)
    ledgers = _ledgers(config)
    async with ledgers["analysis"] as analysis_ledger, ledgers["dev"] as dev_ledger:
        pollers = build_pollers(config, board, analysis_ledger, dev_ledger)
        driver = PollDriver(config.poll_interval_seconds, pollers)

        if once:
            await driver.run_once()
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, driver.stop)
        try:
            await driver.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


def _print_startup(config: CardflowConfig) -> None:
    console.print(f"[bold]{config.bot_name}[/bold] starting...")
    console.print(f"  Board ID: {config.board.board_id}")
    console.print(f"  Repo dir: {config.repo_dir}")
    console.print(f"  Worktree base dir: {config.worktree_base_dir}")
    if not config.board.columns.dev_enabled:
        console.print("  [dim]Development cycle disabled (dev columns not configured)[/dim]")


@app.command()
def run() -> None:
    """
    Poll the board every poll interval until SIGINT/SIGTERM.

    A first signal lets in-flight runs finish; a second one cancels them.
    """
    config = _load_config()
    _print_startup(config)
    console.print(f"  Polling every {config.poll_interval_seconds:g}s\n")
    try:
        asyncio.run(_drive(config, once=False))
    except CardflowError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print("Shut down.")


@app.command()
def once() -> None:
    """Run one poll of each cycle, wait for it to finish and exit."""
    config = _load_config()
    _print_startup(config)
    try:
        asyncio.run(_drive(config, once=True))
    except CardflowError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def status() -> None:
    """Show card counts per column, ledger counts and recent activity."""
    from cardflow.status import collect_status, render_status

    config = _load_config()
    board = None
    try:
        board = _make_board(config)
    except ConfigError as e:
        console.print(f"[yellow]Warning:[/yellow] {e}; board section skipped")

    report = asyncio.run(collect_status(config, board, _ledgers(config)))
    render_status(report, console, config.bot_name)


@app.command("check-config")
def check_config() -> None:
    """Load and validate the configuration, then print a summary."""
    from cardflow.tool_config import collect_env_placeholders

    config = _load_config()
    columns = config.board.columns

    table = Table(title="Configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Bot name", config.bot_name)
    table.add_row("Board ID", config.board.board_id)
    table.add_row("Repo dir", config.repo_dir)
    table.add_row("Worktree base dir", config.worktree_base_dir)
    table.add_row("Data dir", str(config.data_path))
    table.add_row("Logs dir", str(config.logs_path))
    table.add_row("Base", f"{config.git.base_remote}/{config.git.base_branch}")
    table.add_row("Development cycle", "enabled" if columns.dev_enabled else "disabled")
    table.add_row("Failed column", columns.failed or "[dim]none (unbounded retry)[/dim]")
    table.add_row("Max attempts", str(config.max_card_attempts))
    table.add_row("Sandbox user", config.sandbox.user or "[dim]current user[/dim]")
    table.add_row("Dev server", config.pipeline.dev_command or "[dim]none[/dim]")
    table.add_row("Test commands", str(len(config.pipeline.test_commands)))
    table.add_row("URL allow-list", str(len(config.url_allow_list)))
    placeholders = collect_env_placeholders(config.agent.tool_servers)
    table.add_row(
        "Tool servers",
        f"{len(config.agent.tool_servers)} (env: {', '.join(placeholders) or '-'})",
    )
    console.print(table)
    console.print("[green]Configuration is valid.[/green]")


@ledger_app.command("show")
def ledger_show(
    pipeline: Optional[str] = typer.Option(
        None,
        "--pipeline",
        "-p",
        help="Only this pipeline (analysis or dev).",
    ),
) -> None:
    """Show processed cards and attempt counts."""
    config = _load_config(validate=False)

    for name, ledger in _ledgers(config, pipeline).items():
        try:
            ledger.load()
        except CardflowError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        snapshot = ledger.snapshot()
        attempts = snapshot["attempts"]
        card_ids = sorted(set(snapshot["processed"]) | set(attempts))

        table = Table(title=f"{name} ledger")
        table.add_column("Card ID", style="cyan")
        table.add_column("Processed")
        table.add_column("Failed attempts", justify="right")
        for card_id in card_ids:
            table.add_row(
                card_id,
                "[green]yes[/green]" if card_id in snapshot["processed"] else "[dim]no[/dim]",
                str(attempts.get(card_id, 0)),
            )
        if not card_ids:
            console.print(f"[dim]{name}: no cards recorded.[/dim]")
        else:
            console.print(table)


async def _reset(ledgers: dict[str, CardLedger], card_id: str) -> None:
    for ledger in ledgers.values():
        async with ledger:
            await ledger.unmark_processed(card_id)
            await ledger.clear_attempts(card_id)


@ledger_app.command("reset")
def ledger_reset(
    card_id: str = typer.Argument(..., help="Board card id."),
    pipeline: Optional[str] = typer.Option(
        None,
        "--pipeline",
        "-p",
        help="Only this pipeline (analysis or dev).",
    ),
) -> None:
    """Unmark a card as processed and clear its attempts."""
    config = _load_config(validate=False)
    ledgers = _ledgers(config, pipeline)
    try:
        asyncio.run(_reset(ledgers, card_id))
    except CardflowError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Reset[/green] {card_id} in {', '.join(ledgers)} ledger(s).")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "build_pollers", "cli_main"]
