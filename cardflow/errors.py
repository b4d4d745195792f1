"""
Error taxonomy for cardflow.

Every failure that can happen inside a pipeline run is one of these types.
They all propagate up to the pipeline boundary, where they are converted into
a failed run outcome and a retry/escalation decision. Only
CardUpdateValidationError is handled below that boundary: a malformed
structured update from the agent degrades to "no metadata change".
"""

from __future__ import annotations

from typing import Optional


class CardflowError(Exception):
    """Base exception for all cardflow errors."""
    pass


class ConfigError(CardflowError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


class LedgerError(CardflowError):
    """Raised when the card ledger cannot be read, written or is closed."""
    pass


class SpawnError(CardflowError):
    """Raised when a command cannot be started at all."""

    def __init__(self, label: str, reason: str) -> None:
        super().__init__(f"Failed to spawn {label}: {reason}")
        self.label = label
        self.reason = reason


class CommandTimeoutError(CardflowError):
    """Raised when a command exceeds its deadline and has been terminated."""

    def __init__(self, label: str, timeout_seconds: float) -> None:
        super().__init__(f"{label} timed out after {timeout_seconds:g}s")
        self.label = label
        self.timeout_seconds = timeout_seconds


class ProcessError(CardflowError):
    """Raised when a command exits with a non-zero code."""

    def __init__(self, label: str, returncode: int, stderr_excerpt: str = "") -> None:
        message = f"{label} exited with code {returncode}"
        if stderr_excerpt:
            message = f"{message}: {stderr_excerpt}"
        super().__init__(message)
        self.label = label
        self.returncode = returncode
        self.stderr_excerpt = stderr_excerpt


class ApiError(CardflowError):
    """Raised when a board API call fails after its own retries."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class CardUpdateValidationError(CardflowError):
    """Raised when a CARD_UPDATE block in agent output is malformed."""
    pass


class DevServerError(CardflowError):
    """Raised when the dev server fails to start or become ready."""
    pass
