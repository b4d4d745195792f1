"""
Core data models for cardflow.

This module defines the data structures passed between the board client,
the card context builder and the pipelines:
- Card, Comment and Attachment snapshots fetched from the board
- Per-attachment download results (downloaded file or link fallback)
- CardContext, the per-run bundle rendered into the agent prompt
- CardUpdate, the optional metadata change parsed from agent output
- RunOutcome, the result of one pipeline run
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from typing import Any, Optional, Union


@dataclass(frozen=True)
class Card:
    """Immutable snapshot of a board card."""
    id: str
    title: str
    description: str = ""
    url: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Card:
        """Create from a Trello card payload."""
        return cls(
            id=data["id"],
            title=data.get("name", ""),
            description=data.get("desc") or "",
            url=data.get("url", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Comment:
    """A comment on a card, oldest first when part of a CardContext."""
    id: str
    date: str
    author: str
    text: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Comment:
        """Create from a Trello commentCard action payload."""
        return cls(
            id=data.get("id", ""),
            date=data.get("date", ""),
            author=(data.get("memberCreator") or {}).get("fullName", "unknown"),
            text=(data.get("data") or {}).get("text", ""),
        )


@dataclass(frozen=True)
class Attachment:
    """Attachment metadata as listed on the card."""
    id: str
    name: str
    url: str
    mime_type: Optional[str] = None
    is_upload: bool = False
    size_bytes: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        """Create from a Trello attachment payload."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            url=data.get("url", ""),
            mime_type=data.get("mimeType") or None,
            is_upload=bool(data.get("isUpload", False)),
            size_bytes=int(data.get("bytes") or 0),
        )


@dataclass(frozen=True)
class DownloadedAttachment:
    """An uploaded attachment saved to the run's scratch directory."""
    name: str
    local_path: str
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class LinkFallback:
    """An attachment referenced by URL only.

    ``reason`` is empty for link attachments and carries the download error
    when an upload could not be fetched.
    """
    name: str
    url: str
    reason: str = ""


AttachmentResult = Union[DownloadedAttachment, LinkFallback]


@dataclass
class CardContext:
    """Card plus its comments and classified attachments for one run."""
    card: Card
    comments: list[Comment] = field(default_factory=list)
    attachments: list[AttachmentResult] = field(default_factory=list)

    @property
    def downloaded(self) -> list[DownloadedAttachment]:
        return [a for a in self.attachments if isinstance(a, DownloadedAttachment)]

    @property
    def links(self) -> list[LinkFallback]:
        return [a for a in self.attachments if isinstance(a, LinkFallback)]


@dataclass(frozen=True)
class CardUpdate:
    """Card metadata change requested by the agent."""
    title: Optional[str] = None
    description: Optional[str] = None


class OutcomeKind(Enum):
    """Kinds of pipeline run results."""
    SUCCESS = auto()                 # Work product delivered
    NOOP = auto()                    # Completed, nothing to deliver
    FAILURE = auto()                 # Step failed, card retried or escalated


@dataclass
class RunOutcome:
    """
    Result of one pipeline run for one card.

    Decides which column the card ended in and whether attempts were
    cleared (SUCCESS, NOOP) or incremented (FAILURE).
    """
    kind: OutcomeKind
    card_id: str
    run_id: str
    artifacts: list[str] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

    @classmethod
    def success(cls, card_id: str, run_id: str, artifacts: Optional[list[str]] = None) -> RunOutcome:
        return cls(OutcomeKind.SUCCESS, card_id, run_id, artifacts=list(artifacts or []))

    @classmethod
    def noop(cls, card_id: str, run_id: str) -> RunOutcome:
        return cls(OutcomeKind.NOOP, card_id, run_id)

    @classmethod
    def failure(cls, card_id: str, run_id: str, error: str, attempts: int = 0) -> RunOutcome:
        return cls(OutcomeKind.FAILURE, card_id, run_id, error=error, attempts=attempts)

    @property
    def ok(self) -> bool:
        return self.kind is not OutcomeKind.FAILURE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["kind"] = self.kind.name
        return data
