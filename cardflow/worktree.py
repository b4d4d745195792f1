"""
Git worktree lifecycle for development runs.

Each development run gets its own worktree at <worktree_base_dir>/<card_id>
on a fresh branch derived from the card title. The worktree moves through
ABSENT -> FETCHING -> CREATED -> IN_USE -> REMOVED and is always removed when
the run ends, however it ends. Leftovers from a crashed earlier run (stale
directory, registration or branch) are cleared before the new one is created.
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Optional

from cardflow.errors import CardflowError

if TYPE_CHECKING:
    from cardflow.config import CardflowConfig
    from cardflow.logger import PipelineLogger
    from cardflow.models import Card
    from cardflow.process_runner import ProcessRunner


MAX_BRANCH_SLUG_LENGTH = 50

FETCH_TIMEOUT = 60
BRANCH_DELETE_TIMEOUT = 30
WORKTREE_ADD_TIMEOUT = 60
WORKTREE_REMOVE_TIMEOUT = 30


def sanitize_branch_name(title: str) -> str:
    """
    Derive a branch-safe slug from a card title.

    The result matches ``^[a-z0-9-]{0,50}$`` and never starts or ends
    with ``-``.
    """
    slug = re.sub(r"[^a-z0-9-]+", "-", title.lower())
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug[:MAX_BRANCH_SLUG_LENGTH].rstrip("-")


def branch_name_for(bot_name: str, title: str) -> str:
    """Return ``<bot>-dev/<slug>``; titles with no usable characters map to ``untitled``."""
    return f"{bot_name.lower()}-dev/{sanitize_branch_name(title) or 'untitled'}"


class WorktreeState(Enum):
    """Lifecycle states of a per-card worktree."""
    ABSENT = "absent"
    FETCHING = "fetching"
    CREATED = "created"
    IN_USE = "in_use"
    REMOVED = "removed"


@dataclass
class Worktree:
    """A worktree bound to one card for the duration of one run."""
    card_id: str
    path: Path
    branch: str
    state: WorktreeState = WorktreeState.ABSENT


class WorktreeManager:
    """
    Creates and destroys per-card worktrees through the sandboxed runner.

    Every git command runs in the main repository checkout.
    """

    def __init__(
        self,
        config: CardflowConfig,
        runner: ProcessRunner,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self._logger = logger
        self.repo_dir = Path(config.repo_dir)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    async def _git(self, *args: str, timeout: float) -> None:
        await self.runner.run(["git", *args], self.repo_dir, timeout, label=f"git {args[0]}")

    def worktree_for(self, card: Card) -> Worktree:
        """Describe (without creating) the worktree for a card."""
        return Worktree(
            card_id=card.id,
            path=self.config.worktree_path / card.id,
            branch=branch_name_for(self.config.bot_name, card.title),
        )

    async def _delete_branch(self, branch: str) -> bool:
        """Delete a local branch. A branch that does not exist is not an error."""
        try:
            await self._git("branch", "-D", branch, timeout=BRANCH_DELETE_TIMEOUT)
            return True
        except CardflowError:
            return False

    async def _remove_directory(self, worktree: Worktree) -> None:
        """Remove the worktree directory, falling back to rm -rf plus prune."""
        try:
            await self._git(
                "worktree", "remove", "--force", str(worktree.path),
                timeout=WORKTREE_REMOVE_TIMEOUT,
            )
            return
        except CardflowError as e:
            self._log("worktree_remove_failed", {"path": str(worktree.path), "error": str(e)}, level="warn")

        try:
            await self.runner.run(
                ["rm", "-rf", str(worktree.path)], self.repo_dir,
                WORKTREE_REMOVE_TIMEOUT, label="rm worktree",
            )
            await self._git("worktree", "prune", timeout=WORKTREE_REMOVE_TIMEOUT)
        except CardflowError as e:
            self._log("worktree_cleanup_error", {"path": str(worktree.path), "error": str(e)}, level="error")

    async def create(self, worktree: Worktree) -> None:
        """
        Fetch the remote and create the worktree on a new branch.

        Raises:
            SpawnError, CommandTimeoutError, ProcessError: If fetch or
            ``worktree add`` fails.
        """
        remote = self.config.git.base_remote
        base = f"{remote}/{self.config.git.base_branch}"

        worktree.state = WorktreeState.FETCHING
        await self._git("fetch", remote, timeout=FETCH_TIMEOUT)

        if worktree.path.exists():
            self._log("stale_worktree_found", {"path": str(worktree.path)}, level="warn")
            await self._remove_directory(worktree)
        try:
            await self._git("worktree", "prune", timeout=WORKTREE_REMOVE_TIMEOUT)
        except CardflowError as e:
            self._log("worktree_prune_failed", {"error": str(e)}, level="warn")

        if await self._delete_branch(worktree.branch):
            self._log("stale_branch_deleted", {"branch": worktree.branch})

        await self._git(
            "worktree", "add", "-b", worktree.branch, str(worktree.path), base,
            timeout=WORKTREE_ADD_TIMEOUT,
        )
        worktree.state = WorktreeState.CREATED
        self._log("worktree_created", {"path": str(worktree.path), "branch": worktree.branch})

    async def cleanup(self, worktree: Worktree) -> None:
        """
        Remove the worktree directory and delete its branch.

        Never raises for git failures; they are logged. The branch is deleted
        even when directory removal failed.
        """
        await self._remove_directory(worktree)
        await self._delete_branch(worktree.branch)
        worktree.state = WorktreeState.REMOVED
        self._log("worktree_removed", {"path": str(worktree.path), "branch": worktree.branch})

    @asynccontextmanager
    async def checkout(self, card: Card) -> AsyncIterator[Worktree]:
        """
        Provide a fresh worktree for the card and always clean it up.

        Cleanup also runs when ``create`` failed part-way.
        """
        worktree = self.worktree_for(card)
        try:
            await self.create(worktree)
            worktree.state = WorktreeState.IN_USE
            yield worktree
        finally:
            await self.cleanup(worktree)
