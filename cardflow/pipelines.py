"""
Analysis and development pipelines.

This module coordinates one card run from start to finish:
- Column moves that make progress visible on the board
- Card context assembly and agent invocation
- Worktree, dev server and verification commands (development only)
- Commit, push and pull request, or a "no changes" result
- Ledger bookkeeping on success
- A single failure boundary that comments on the card, counts the attempt
  and either sends the card back to its source column or escalates it

Pipelines never raise: every run ends in a RunOutcome.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from cardflow.agent import AgentRunner
from cardflow.card_context import (
    ANALYSIS_SCRATCH_PREFIX,
    DEV_SCRATCH_PREFIX,
    build_card_context,
    cleanup_scratch_dir,
    render_card_content,
    sanitize_filename,
    scratch_dir_for,
)
from cardflow.card_update import parse_agent_output
from cardflow.dev_server import DevServer
from cardflow.escalation import EscalationDecision, escalate
from cardflow.git_ops import GitPublisher
from cardflow.models import Card, RunOutcome
from cardflow.process_runner import shell_command
from cardflow.utils.fs import safe_write
from cardflow.utils.redact import redact_secrets
from cardflow.worktree import WorktreeManager

if TYPE_CHECKING:
    from cardflow.board import Board
    from cardflow.config import CardflowConfig
    from cardflow.ledger import CardLedger
    from cardflow.logger import PipelineLogger
    from cardflow.process_runner import ProcessRunner


COMMENT_CEILING = 15000
ERROR_MESSAGE_CEILING = 5000


def make_run_id(card_id: str) -> str:
    """Return ``<epoch-ms>-<card_id>``."""
    return f"{int(time.time() * 1000)}-{card_id}"


def format_error_comment(bot_name: str, run_id: str, message: str) -> str:
    """Board comment for a failed run, with secrets masked."""
    return f"**{bot_name} error (run {run_id}):**\n\n{redact_secrets(message)[:ERROR_MESSAGE_CEILING]}"


def format_dev_output(bot_name: str, output: str) -> str:
    """Board comment carrying the development agent's output."""
    if len(output) > COMMENT_CEILING:
        output = output[:COMMENT_CEILING] + "\n\n... (output truncated)"
    return f"**{bot_name} Dev Output:**\n\n{output}"


def format_no_changes(bot_name: str) -> str:
    return (
        f"**{bot_name}: no code changes detected**\n\n"
        f"{bot_name} completed the run but did not produce file changes to commit."
    )


class CardPipeline:
    """
    Shared shape of both pipelines: run steps, catch once, escalate.

    Subclasses implement ``_run`` and name their source column.
    """

    name = "pipeline"

    def __init__(
        self,
        config: CardflowConfig,
        board: Board,
        ledger: CardLedger,
        agent: AgentRunner,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.config = config
        self.board = board
        self.ledger = ledger
        self.agent = agent
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"pipeline": self.name}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    @contextlib.contextmanager
    def _run_scope(self, run_id: str) -> Iterator[None]:
        if self._logger:
            with self._logger.run_context(run_id):
                yield
        else:
            yield

    @property
    def source_column(self) -> str:
        raise NotImplementedError

    async def _run(self, card: Card, run_id: str) -> RunOutcome:
        raise NotImplementedError

    async def process(self, card: Card) -> RunOutcome:
        """
        Run the pipeline for one card.

        Returns:
            RunOutcome. Failures are converted, never raised.
        """
        run_id = make_run_id(card.id)
        with self._run_scope(run_id):
            self._log("run_start", {"card_id": card.id, "title": card.title})
            try:
                outcome = await self._run(card, run_id)
            except asyncio.CancelledError:
                await asyncio.shield(self._return_cancelled(card))
                raise
            except Exception as e:
                return await self._handle_failure(card, run_id, e)
            self._log("run_complete", {"card_id": card.id, "kind": outcome.kind.name})
            return outcome

    async def _complete(self, card: Card, done_column: str) -> None:
        await self.board.move_card(card.id, done_column)
        await self.ledger.mark_processed(card.id)
        await self.ledger.clear_attempts(card.id)

    async def _return_cancelled(self, card: Card) -> None:
        """Send an interrupted card back to its source column. Never raises."""
        self._log("run_cancelled", {"card_id": card.id}, level="warn")
        try:
            await self.board.move_card(card.id, self.source_column)
        except Exception as e:
            self._log("failure_move_failed", {
                "card_id": card.id,
                "target": self.source_column,
                "error": str(e),
            }, level="error")

    async def _handle_failure(self, card: Card, run_id: str, error: Exception) -> RunOutcome:
        """Comment, count the attempt and route the card. Never raises."""
        message = str(error) or error.__class__.__name__
        self._log("run_failed", {
            "card_id": card.id,
            "error_type": error.__class__.__name__,
            "error": redact_secrets(message),
        }, level="error")

        bot = self.config.bot_name
        try:
            await self.board.add_comment(card.id, format_error_comment(bot, run_id, message))
        except Exception as e:
            self._log("error_comment_failed", {"card_id": card.id, "error": str(e)}, level="error")

        try:
            attempts = await self.ledger.increment_attempts(card.id)
        except Exception as e:
            self._log("attempt_count_failed", {"card_id": card.id, "error": str(e)}, level="error")
            attempts = 0

        failed_column = self.config.board.columns.failed
        decision = escalate(attempts, self.config.max_card_attempts, failed_column is not None)
        if decision is EscalationDecision.ESCALATE:
            target, event = failed_column, "card_escalated"
        else:
            target, event = self.source_column, "card_requeued"

        try:
            await self.board.move_card(card.id, target)
            self._log(event, {"card_id": card.id, "attempts": attempts})
        except Exception as e:
            self._log("failure_move_failed", {
                "card_id": card.id,
                "target": target,
                "error": str(e),
            }, level="error")

        return RunOutcome.failure(card.id, run_id, message, attempts=attempts)


class AnalysisPipeline(CardPipeline):
    """
    Produces an implementation plan for a card and posts it as a comment.

    Runs the agent against the main repository checkout; never changes code.
    """

    name = "analysis"

    @property
    def source_column(self) -> str:
        return self.config.board.columns.analysis_source

    def _write_card_record(self, card: Card, content: str) -> Path:
        path = self.config.logs_path / f"{card.id}-{sanitize_filename(card.title)}.txt"
        safe_write(path, content)
        return path

    def _fit_comment(self, card: Card, run_id: str, text: str) -> tuple[str, Optional[Path]]:
        """Truncate long output, saving the full text beside the logs."""
        if len(text) <= COMMENT_CEILING:
            return text, None
        path = self.config.logs_path / f"{card.id}-analysis-{run_id}.md"
        safe_write(path, text)
        return f"{text[:COMMENT_CEILING]}\n\n... (truncated; full output saved to {path})", path

    async def _run(self, card: Card, run_id: str) -> RunOutcome:
        columns = self.config.board.columns
        await self.board.move_card(card.id, columns.analysis_reviewing)

        scratch = scratch_dir_for(ANALYSIS_SCRATCH_PREFIX, card.id)
        try:
            context = await build_card_context(self.board, card, scratch, self._logger)
            content = render_card_content(context)
            artifacts = [str(self._write_card_record(card, content))]

            output = await self.agent.run(
                self.config.agent.analysis_template_path,
                content,
                self.config.repo_dir,
                self.config.timeouts.analysis,
                label="Agent CLI",
            )
            self._log("plan_produced", {"card_id": card.id, "chars": len(output)})

            parsed = parse_agent_output(output, self.config.bot_name)
            if parsed.update is not None:
                await self.board.update_card(
                    card.id,
                    title=parsed.update.title,
                    description=parsed.update.description,
                )
                self._log("card_updated", {
                    "card_id": card.id,
                    "title": parsed.update.title is not None,
                    "description": parsed.update.description is not None,
                })

            comment, saved = self._fit_comment(card, run_id, parsed.comment)
            if saved is not None:
                artifacts.append(str(saved))
            await self.board.add_comment(card.id, comment)

            await self._complete(card, columns.analysis_done)
            return RunOutcome.success(card.id, run_id, artifacts)
        finally:
            cleanup_scratch_dir(scratch, self._logger)


class DevelopmentPipeline(CardPipeline):
    """
    Implements a card in an isolated worktree and opens a draft pull request.
    """

    name = "dev"

    def __init__(
        self,
        config: CardflowConfig,
        board: Board,
        ledger: CardLedger,
        agent: AgentRunner,
        runner: ProcessRunner,
        logger: Optional[PipelineLogger] = None,
        worktrees: Optional[WorktreeManager] = None,
        publisher: Optional[GitPublisher] = None,
    ) -> None:
        super().__init__(config, board, ledger, agent, logger)
        self.runner = runner
        self.worktrees = worktrees or WorktreeManager(config, runner, logger)
        self.publisher = publisher or GitPublisher(config, runner, logger)

    @property
    def source_column(self) -> str:
        return self.config.board.columns.dev_source

    async def _run_test_commands(self, cwd: Path) -> None:
        """Run verification commands in order, stopping at the first failure."""
        commands = self.config.pipeline.test_commands
        if not commands:
            self._log("tests_skipped", {"reason": "no test commands configured"})
            return
        for command in commands:
            self._log("test_command_start", {"command": command})
            await self.runner.run(
                shell_command(command), cwd, self.config.timeouts.test,
                label=f"Test command `{command}`",
            )
            self._log("test_command_passed", {"command": command})

    async def _verify(self, cwd: Path) -> None:
        pipeline = self.config.pipeline
        if not pipeline.dev_command:
            await self._run_test_commands(cwd)
            return

        server = DevServer(
            self.runner,
            pipeline.dev_command,
            pipeline.dev_ready_pattern,
            cwd,
            self.config.timeouts.dev_server,
            self.config.timeouts.dev_server_grace,
            self._logger,
        )
        async with server:
            await self._run_test_commands(cwd)

    async def _run(self, card: Card, run_id: str) -> RunOutcome:
        columns = self.config.board.columns
        bot = self.config.bot_name
        await self.board.move_card(card.id, columns.dev_in_progress)

        scratch = scratch_dir_for(DEV_SCRATCH_PREFIX, card.id)
        try:
            context = await build_card_context(self.board, card, scratch, self._logger)
            content = render_card_content(context)

            async with self.worktrees.checkout(card) as worktree:
                output = await self.agent.run(
                    self.config.agent.development_template_path,
                    content,
                    worktree.path,
                    self.config.timeouts.development,
                    label="Agent dev CLI",
                )
                self._log("implementation_produced", {"card_id": card.id, "chars": len(output)})
                await self.board.add_comment(card.id, format_dev_output(bot, output))

                await self._verify(worktree.path)

                committed = await self.publisher.commit_and_push(
                    worktree.path, worktree.branch, card.title
                )
                if not committed:
                    await self.board.add_comment(card.id, format_no_changes(bot))
                    outcome = RunOutcome.noop(card.id, run_id)
                else:
                    pr_url = await self.publisher.open_pull_request(
                        worktree.path, worktree.branch, card
                    )
                    await self.board.add_url_attachment(card.id, pr_url, "Pull Request")
                    outcome = RunOutcome.success(card.id, run_id, [pr_url])

            await self._complete(card, columns.dev_done)
            return outcome
        finally:
            cleanup_scratch_dir(scratch, self._logger)
