"""
Card context assembly and prompt document rendering.

This module handles:
- Fetching a card's comments and attachments from the board
- Downloading uploaded attachments into a per-run scratch directory, with a
  per-attachment fallback to a link reference when a download fails
- Rendering the card document that is substituted into the agent prompt
- Scratch directory naming and cleanup
"""

from __future__ import annotations

import asyncio
import re
import tempfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Optional

from cardflow.errors import CardflowError
from cardflow.models import (
    Attachment,
    AttachmentResult,
    Card,
    CardContext,
    DownloadedAttachment,
    LinkFallback,
)
from cardflow.utils.fs import FileSystemError, ensure_dir, remove_tree

if TYPE_CHECKING:
    from cardflow.board import Board
    from cardflow.logger import PipelineLogger


ANALYSIS_SCRATCH_PREFIX = "cardflow-analysis"
DEV_SCRATCH_PREFIX = "cardflow-att"

DOWNLOADED_NOTE = "  ^ This file has been downloaded locally. Use the Read tool to view it."


def scratch_dir_for(prefix: str, card_id: str) -> Path:
    """Return ``<tmp>/<prefix>-<card_id>``."""
    return Path(tempfile.gettempdir()) / f"{prefix}-{card_id}"


def sanitize_filename(name: str) -> str:
    """Replace anything outside ``[A-Za-z0-9_-]`` with ``_`` and cap at 80 chars."""
    return re.sub(r"[^A-Za-z0-9_-]", "_", name)[:80]


def _log(logger: Optional[PipelineLogger], event_type: str, data: dict, level: str = "info") -> None:
    if logger:
        logger.log(event_type, data, level=level)


async def download_attachments(
    board: Board,
    attachments: list[Attachment],
    dest_dir: Path,
    logger: Optional[PipelineLogger] = None,
) -> list[AttachmentResult]:
    """
    Classify attachments, downloading uploads into ``dest_dir``.

    Link attachments and failed downloads become LinkFallback entries; a
    failed download never aborts the run.
    """
    ensure_dir(dest_dir, mode=0o755)

    results: list[AttachmentResult] = []
    for attachment in attachments:
        if not attachment.is_upload:
            results.append(LinkFallback(attachment.name, attachment.url))
            continue

        local_path = dest_dir / f"{attachment.id}{PurePosixPath(attachment.name).suffix}"
        try:
            size = await board.download_attachment(attachment.url, local_path)
        except (CardflowError, FileSystemError, OSError) as e:
            _log(logger, "attachment_download_failed", {
                "name": attachment.name,
                "error": str(e),
            }, level="warn")
            results.append(LinkFallback(attachment.name, attachment.url, reason=str(e)))
            continue

        _log(logger, "attachment_downloaded", {"name": attachment.name, "bytes": size})
        results.append(DownloadedAttachment(attachment.name, str(local_path), attachment.mime_type))
    return results


async def build_card_context(
    board: Board,
    card: Card,
    scratch_dir: Path,
    logger: Optional[PipelineLogger] = None,
) -> CardContext:
    """
    Fetch comments and attachments for a card and download its uploads.

    Raises:
        ApiError: If comments or the attachment list cannot be fetched.
    """
    comments, attachments = await asyncio.gather(
        board.get_comments(card.id),
        board.get_attachments(card.id),
    )
    results = await download_attachments(board, attachments, scratch_dir, logger)
    return CardContext(
        card=card,
        comments=sorted(comments, key=lambda c: c.date),
        attachments=results,
    )


def render_card_content(context: CardContext) -> str:
    """Render the card document handed to the agent."""
    card = context.card
    lines = [
        f"Card: {card.title}",
        f"URL: {card.url}",
        "",
        "--- Description ---",
        card.description or "(no description)",
        "",
        "--- Comments ---",
    ]

    if not context.comments:
        lines.append("(no comments)")
    for comment in context.comments:
        lines.append(f"[{comment.date}] {comment.author}:")
        lines.append(comment.text)
        lines.append("")

    lines.append("--- Attachments ---")
    if not context.attachments:
        lines.append("(no attachments)")
    for att in context.downloaded:
        mime = f" ({att.mime_type})" if att.mime_type else ""
        lines.append(f"{att.name}{mime}: {att.local_path}")
        lines.append(DOWNLOADED_NOTE)
    for link in context.links:
        lines.append(f"{link.name} [link]: {link.url}")

    return "\n".join(lines)


def cleanup_scratch_dir(path: Path, logger: Optional[PipelineLogger] = None) -> None:
    """Remove a run's scratch directory; failures are logged only."""
    try:
        remove_tree(path)
    except FileSystemError as e:
        _log(logger, "scratch_cleanup_failed", {"path": str(path), "error": str(e)}, level="error")
