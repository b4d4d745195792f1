"""
Retry/escalation policy for failed pipeline runs.
"""

from __future__ import annotations

from enum import Enum


class EscalationDecision(Enum):
    """Where a failed card goes next."""
    RETRY = "retry"          # Back to its source column, picked up on a later poll
    ESCALATE = "escalate"    # Parked in the failed column


def escalate(attempts: int, max_attempts: int, has_failed_column: bool) -> EscalationDecision:
    """
    Decide between retrying a card and parking it in the failed column.

    Without a failed column a card is retried forever.

    Args:
        attempts: Consecutive failures recorded for the card, this one included.
        max_attempts: Configured ``max_card_attempts``.
        has_failed_column: Whether a failed column is configured.
    """
    if has_failed_column and attempts >= max_attempts:
        return EscalationDecision.ESCALATE
    return EscalationDecision.RETRY
