"""
Parser for the structured card update an agent may embed in its output.

    ```CARD_UPDATE
    TITLE: <single line>
    DESCRIPTION:
    <multi-line body>
    ```

Only the first block is honoured. A malformed block never fails a run: the
whole output is posted as the comment and the card is left unchanged.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from cardflow.errors import CardUpdateValidationError
from cardflow.models import CardUpdate

logger = logging.getLogger(__name__)

_OPEN_FENCE = re.compile(r"^[ \t]*```CARD_UPDATE[ \t]*$", re.MULTILINE)
_FENCE = re.compile(r"^[ \t]*```(\S*)[ \t]*$", re.MULTILINE)
_TITLE = re.compile(r"^TITLE:(.*)$")
_DESCRIPTION = re.compile(r"^DESCRIPTION:(.*)$")


@dataclass(frozen=True)
class ParsedAgentOutput:
    """Agent output split into an optional update and the comment to post."""
    update: Optional[CardUpdate]
    comment: str


def _parse_block(body: str) -> CardUpdate:
    title: Optional[str] = None
    description_lines: Optional[list[str]] = None

    for line in body.splitlines():
        if description_lines is not None:
            description_lines.append(line)
            continue
        stripped = line.strip()
        match = _TITLE.match(stripped)
        if match and title is None:
            title = match.group(1).strip()
            continue
        match = _DESCRIPTION.match(stripped)
        if match:
            first = match.group(1).strip()
            description_lines = [first] if first else []

    description = "\n".join(description_lines).strip() if description_lines is not None else None

    update = CardUpdate(title=title or None, description=description or None)
    if update.title is None and update.description is None:
        raise CardUpdateValidationError("CARD_UPDATE block has neither TITLE nor DESCRIPTION")
    return update


def _find_closing_fence(text: str, start: int) -> Optional[re.Match]:
    """
    Find the fence that ends the block opened before ``start``.

    Fences inside the block pair up in order: any fence opens a pair and the
    next bare fence closes it. The block ends at the bare fence left unpaired
    at the end. When the fences after the opening all pair up, the block
    closes at the first bare fence.
    """
    fences = list(_FENCE.finditer(text, start))
    pending: Optional[re.Match] = None
    for fence in fences:
        if pending is None:
            pending = fence
        elif not fence.group(1):
            pending = None

    if pending is not None and not pending.group(1):
        return pending
    return next((f for f in fences if not f.group(1)), None)


def extract_card_update(text: str) -> tuple[Optional[CardUpdate], str]:
    """
    Split agent output into (update, remainder).

    Returns (None, text) when there is no block.

    Raises:
        CardUpdateValidationError: If the first block is unterminated or empty.
    """
    opening = _OPEN_FENCE.search(text)
    if opening is None:
        return None, text

    closing = _find_closing_fence(text, opening.end())
    if closing is None:
        raise CardUpdateValidationError("CARD_UPDATE block is not terminated")

    update = _parse_block(text[opening.end():closing.start()])
    remainder = (text[:opening.start()] + text[closing.end():]).strip()
    return update, remainder


def parse_agent_output(text: str, bot_name: str = "CardBot") -> ParsedAgentOutput:
    """
    Parse agent output into an optional CardUpdate and the comment body.

    Args:
        text: Raw (stripped) agent output.
        bot_name: Used in the placeholder comment when nothing but the
                  update block was produced.
    """
    try:
        update, remainder = extract_card_update(text)
    except CardUpdateValidationError as e:
        logger.warning("Ignoring malformed card update: %s", e)
        return ParsedAgentOutput(update=None, comment=text)

    if update is None:
        return ParsedAgentOutput(update=None, comment=text)

    comment = remainder or f"{bot_name} updated the card title/description."
    return ParsedAgentOutput(update=update, comment=comment)
