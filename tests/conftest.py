"""Shared fixtures for cardflow tests."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from typer.testing import CliRunner

from cardflow.config import (
    BoardColumns,
    BoardConfig,
    CardflowConfig,
    PipelineConfig,
    SandboxConfig,
    TimeoutConfig,
)
from cardflow.models import Attachment, Card, Comment
from cardflow.process_runner import ProcessResult


COLUMNS = {
    "analysis_source": "col-revision",
    "analysis_reviewing": "col-reviewing",
    "analysis_done": "col-reviewed",
    "dev_source": "col-dev",
    "dev_in_progress": "col-developing",
    "dev_done": "col-developed",
}


def make_config(tmp_path: Path, **overrides) -> CardflowConfig:
    """Build a CardflowConfig rooted in tmp_path."""
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)

    failed = overrides.pop("failed", None)
    pipeline = overrides.pop("pipeline", PipelineConfig())
    timeouts = overrides.pop("timeouts", TimeoutConfig())
    sandbox = overrides.pop("sandbox", SandboxConfig(forward_env=[]))

    return CardflowConfig(
        repo_dir=str(repo),
        worktree_base_dir=str(tmp_path / "worktrees"),
        data_dir=str(tmp_path / "data"),
        logs_dir=str(tmp_path / "logs"),
        board=BoardConfig(board_id="board-1", columns=BoardColumns(failed=failed, **COLUMNS)),
        pipeline=pipeline,
        timeouts=timeouts,
        sandbox=sandbox,
        **overrides,
    )


class FakeBoard:
    """In-memory Board that records every write."""

    def __init__(self) -> None:
        self.columns: dict[str, list[Card]] = {}
        self.comments: dict[str, list[Comment]] = {}
        self.attachments: dict[str, list[Attachment]] = {}
        self.downloads: dict[str, bytes] = {}
        self.download_errors: dict[str, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.comment_error: Optional[Exception] = None

        self.moves: list[tuple[str, str]] = []
        self.posted: list[tuple[str, str]] = []
        self.updates: list[tuple[str, Optional[str], Optional[str]]] = []
        self.url_attachments: list[tuple[str, str, str]] = []

    def add_card(self, column: str, card: Card) -> Card:
        self.columns.setdefault(column, []).append(card)
        return card

    async def list_cards(self, list_id: str) -> list[Card]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.columns.get(list_id, []))

    async def get_comments(self, card_id: str) -> list[Comment]:
        return list(self.comments.get(card_id, []))

    async def get_attachments(self, card_id: str) -> list[Attachment]:
        return list(self.attachments.get(card_id, []))

    async def move_card(self, card_id: str, list_id: str) -> None:
        self.moves.append((card_id, list_id))

    async def add_comment(self, card_id: str, text: str) -> None:
        if self.comment_error is not None:
            raise self.comment_error
        self.posted.append((card_id, text))

    async def update_card(self, card_id, *, title=None, description=None) -> None:
        self.updates.append((card_id, title, description))

    async def add_url_attachment(self, card_id: str, url: str, name: str) -> None:
        self.url_attachments.append((card_id, url, name))

    async def download_attachment(self, url: str, dest: Path) -> int:
        if url in self.download_errors:
            raise self.download_errors[url]
        data = self.downloads.get(url, b"")
        dest.write_bytes(data)
        return len(data)

    def comments_for(self, card_id: str) -> list[str]:
        return [text for cid, text in self.posted if cid == card_id]

    def last_column(self, card_id: str) -> Optional[str]:
        targets = [col for cid, col in self.moves if cid == card_id]
        return targets[-1] if targets else None


def make_runner(stdout: str = "") -> MagicMock:
    """ProcessRunner mock whose run() succeeds with ``stdout``."""
    runner = MagicMock()
    runner.run = AsyncMock(return_value=ProcessResult(stdout=stdout, stderr=""))
    return runner


@pytest.fixture
def config_factory(tmp_path):
    """Factory for configs rooted in tmp_path; keyword overrides as in make_config."""
    def factory(**overrides) -> CardflowConfig:
        return make_config(tmp_path, **overrides)
    return factory


@pytest.fixture
def config(config_factory):
    return config_factory()


@pytest.fixture
def runner():
    return make_runner()


@pytest.fixture
def board():
    return FakeBoard()


@pytest.fixture
def card():
    return Card(id="card1", title="Add login page", description="Users need to log in.",
                url="https://trello.com/c/card1")


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
