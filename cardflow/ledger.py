"""
Persistent card ledger for cardflow.

This module handles:
- Remembering which cards a pipeline has already handled
- Counting consecutive failed runs per card
- Saving both to JSON documents under the data directory
- Distinguishing "no state yet" from unreadable state at startup

Each pipeline owns one ledger with two stores: a JSON array of processed card
ids and a JSON object mapping card id to consecutive-failure count. Every
mutation rewrites its whole store atomically, so a crash can lose at most the
latest mutation and never leaves a mix of old and new records.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from cardflow.errors import LedgerError
from cardflow.utils.fs import FileSystemError, ensure_dir, read_file, safe_write

if TYPE_CHECKING:
    from cardflow.logger import PipelineLogger


ANALYSIS_PROCESSED_FILE = "analysis-processed-cards.json"
ANALYSIS_ATTEMPTS_FILE = "analysis-failed-attempts.json"
DEV_PROCESSED_FILE = "dev-processed-cards.json"
DEV_ATTEMPTS_FILE = "dev-failed-attempts.json"


class CardLedger:
    """
    Durable processed-set and attempt counter for one pipeline.

    Queries are answered from memory. Mutators are coroutines that persist
    before returning; the write happens without yielding to the event loop,
    so two mutations issued concurrently can never reach disk out of order.

    Lifecycle: open() (or ``async with``) loads state, close() ends it.
    Mutating a closed ledger raises LedgerError.
    """

    def __init__(
        self,
        data_dir: str | Path,
        processed_filename: str,
        attempts_filename: str,
        label: str = "cards",
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            data_dir: Directory holding the JSON documents.
            processed_filename: File name of the processed-id array.
            attempts_filename: File name of the attempt-count object.
            label: Human label used in log events.
            logger: Optional logger for recording operations.
        """
        self._data_dir = Path(data_dir)
        self._processed_path = self._data_dir / processed_filename
        self._attempts_path = self._data_dir / attempts_filename
        self._label = label
        self._logger = logger
        self._processed: set[str] = set()
        self._attempts: dict[str, int] = {}
        self._open = False

    @classmethod
    def for_analysis(cls, data_dir: str | Path, logger: Optional[PipelineLogger] = None) -> CardLedger:
        return cls(data_dir, ANALYSIS_PROCESSED_FILE, ANALYSIS_ATTEMPTS_FILE, "analysis cards", logger)

    @classmethod
    def for_development(cls, data_dir: str | Path, logger: Optional[PipelineLogger] = None) -> CardLedger:
        return cls(data_dir, DEV_PROCESSED_FILE, DEV_ATTEMPTS_FILE, "dev cards", logger)

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
    def is_open(self) -> bool:
        return self._open

    @property
    def processed_path(self) -> Path:
        return self._processed_path

    @property
    def attempts_path(self) -> Path:
        return self._attempts_path

    # Lifecycle

    async def open(self) -> CardLedger:
        """Load durable state and start accepting mutations."""
        self.load()
        self._open = True
        return self

    async def close(self) -> None:
        """Stop accepting mutations. In-memory state stays readable."""
        self._open = False

    async def __aenter__(self) -> CardLedger:
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _read_document(self, path: Path) -> Optional[Any]:
        try:
            return json.loads(read_file(path))
        except FileNotFoundError:
            return None
        except (FileSystemError, json.JSONDecodeError) as e:
            self._log("ledger_read_error", {"path": str(path), "error": str(e)}, level="error")
            raise LedgerError(f"Cannot read ledger file {path}: {e}")

    def load(self) -> None:
        """
        Restore processed ids and attempt counts from disk.

        A missing store means empty state. Any other read failure, including
        a document of the wrong shape, raises LedgerError.
        """
        try:
            ensure_dir(self._data_dir)
        except FileSystemError as e:
            raise LedgerError(str(e))

        processed = self._read_document(self._processed_path)
        if processed is None:
            self._processed = set()
            self._log("ledger_empty", {"label": self._label})
        else:
            if not isinstance(processed, list) or not all(isinstance(i, str) for i in processed):
                raise LedgerError(f"Ledger file {self._processed_path} must contain a JSON array of ids")
            self._processed = set(processed)
            self._log("ledger_loaded", {"label": self._label, "processed": len(self._processed)})

        attempts = self._read_document(self._attempts_path)
        if attempts is None:
            self._attempts = {}
        else:
            if not isinstance(attempts, dict) or not all(
                isinstance(v, int) and not isinstance(v, bool) and v >= 0
                for v in attempts.values()
            ):
                raise LedgerError(
                    f"Ledger file {self._attempts_path} must contain an object of non-negative counts"
                )
            self._attempts = {str(k): v for k, v in attempts.items()}

    def _require_open(self) -> None:
        if not self._open:
            raise LedgerError(f"Ledger for {self._label} is not open")

    def _write(self, path: Path, payload: Any) -> None:
        try:
            safe_write(path, json.dumps(payload, indent=2))
        except FileSystemError as e:
            self._log("ledger_write_error", {"path": str(path), "error": str(e)}, level="error")
            raise LedgerError(str(e))

    def _save_processed(self, processed: set[str]) -> None:
        self._write(self._processed_path, sorted(processed))
        self._processed = processed

    def _save_attempts(self, attempts: dict[str, int]) -> None:
        self._write(self._attempts_path, dict(sorted(attempts.items())))
        self._attempts = attempts

    # Processed set

    def is_processed(self, card_id: str) -> bool:
        return card_id in self._processed

    async def mark_processed(self, card_id: str) -> None:
        """Record the card as handled. Idempotent; always persists."""
        self._require_open()
        self._save_processed(self._processed | {card_id})

    async def unmark_processed(self, card_id: str) -> None:
        """Forget the card so the next poll processes it again."""
        self._require_open()
        self._save_processed(self._processed - {card_id})

    # Attempt counters

    def get_attempts(self, card_id: str) -> int:
        return self._attempts.get(card_id, 0)

    async def increment_attempts(self, card_id: str) -> int:
        """Count one more consecutive failure and return the new count."""
        self._require_open()
        count = self._attempts.get(card_id, 0) + 1
        self._save_attempts({**self._attempts, card_id: count})
        return count

    async def clear_attempts(self, card_id: str) -> None:
        """Reset the failure count after a successful run."""
        self._require_open()
        attempts = dict(self._attempts)
        attempts.pop(card_id, None)
        self._save_attempts(attempts)

    def snapshot(self) -> dict[str, Any]:
        """Return processed ids and attempt counts for reporting."""
        return {
            "processed": sorted(self._processed),
            "attempts": dict(sorted(self._attempts.items())),
        }
