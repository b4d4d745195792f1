"""
Publishing a development run: stage, commit, push and open a pull request.

All commands run inside the card's worktree through the sandboxed runner.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from cardflow.config import CardflowConfig
    from cardflow.logger import PipelineLogger
    from cardflow.models import Card
    from cardflow.process_runner import ProcessRunner


GIT_LOCAL_TIMEOUT = 30
GIT_PUSH_TIMEOUT = 60
PR_CREATE_TIMEOUT = 60


class GitPublisher:
    """Commits worktree changes under the bot identity and opens a draft PR."""

    def __init__(
        self,
        config: CardflowConfig,
        runner: ProcessRunner,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def author(self) -> str:
        bot = self.config.bot_name
        return f"{bot} AI <{bot.lower()}-ai@noreply>"

    async def stage_all(self, cwd: Path) -> None:
        await self.runner.run(["git", "add", "-A"], cwd, GIT_LOCAL_TIMEOUT, label="git add")

    async def staged_files(self, cwd: Path) -> list[str]:
        """Return the paths staged in the index."""
        result = await self.runner.run(
            ["git", "diff", "--cached", "--name-only"], cwd, GIT_LOCAL_TIMEOUT,
            label="git diff",
        )
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def commit(self, cwd: Path, title: str) -> None:
        await self.runner.run(
            ["git", "commit", f"--author={self.author}", "-m", f"feat: {title}"],
            cwd, GIT_LOCAL_TIMEOUT, label="git commit",
        )

    async def push(self, cwd: Path, branch: str) -> None:
        await self.runner.run(
            ["git", "push", "-u", self.config.git.base_remote, branch],
            cwd, GIT_PUSH_TIMEOUT, label="git push",
        )

    async def commit_and_push(self, cwd: Path, branch: str, title: str) -> bool:
        """
        Stage everything, then commit and push if anything changed.

        Returns:
            False when nothing was staged (no commit, no push).
        """
        await self.stage_all(cwd)
        staged = await self.staged_files(cwd)
        if not staged:
            self._log("no_changes", {"branch": branch})
            return False

        await self.commit(cwd, title)
        await self.push(cwd, branch)
        self._log("branch_pushed", {"branch": branch, "files": len(staged)})
        return True

    async def open_pull_request(self, cwd: Path, branch: str, card: Card) -> str:
        """Open a draft pull request against the base branch and return its URL."""
        result = await self.runner.run(
            [
                "gh", "pr", "create", "--draft",
                "--base", self.config.git.base_branch,
                "--head", branch,
                "--title", card.title,
                "--body", f"Board card: {card.url}",
            ],
            cwd, PR_CREATE_TIMEOUT, label="gh pr create",
        )
        pr_url = result.stdout.strip()
        self._log("pull_request_opened", {"url": pr_url})
        return pr_url
