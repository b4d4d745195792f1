"""
Structured logging for cardflow.

This module provides:
- JSONL event logging per pipeline, organised by date
- An append-only, human-readable activity log shared by all pipelines
  (read back by `cardflow status`)
- Mirroring of every event to the stdlib ``logging`` tree for console output
- A context manager for run-scoped logging
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from cardflow.utils.redact import redact_dict

ACTIVITY_LOG_NAME = "cardflow.log"


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _format_data(data: dict[str, Any]) -> str:
    parts = []
    for key, value in data.items():
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        if isinstance(text, str) and len(text) > 200:
            text = text[:200] + "..."
        parts.append(f"{key}={text}")
    return " ".join(parts)


class PipelineLogger:
    """
    JSONL event logger for one pipeline.

    Writes structured log entries to <logs_dir>/<name>-YYYY-MM-DD.jsonl and a
    one-line summary of each entry to <logs_dir>/cardflow.log.

    Each JSONL entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - pipeline: Pipeline (logger) name
    - data: Additional event data (dict)
    - run_id: Present inside run_context()
    """

    def __init__(self, name: str, logs_path: str | Path) -> None:
        """
        Initialize logger for a pipeline.

        Args:
            name: Logger name, e.g. "analysis" or "dev".
            logs_path: Directory that receives the log files.
        """
        self.name = name
        self.logs_path = Path(logs_path)
        self._current_run_id: Optional[str] = None
        self._stdlib = logging.getLogger(f"cardflow.{name}")

    def _get_log_path(self) -> Path:
        """Get the JSONL file path for today."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.logs_path / f"{self.name}-{today}.jsonl"

    @property
    def activity_log_path(self) -> Path:
        return self.logs_path / ACTIVITY_LOG_NAME

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Append a log entry to the JSONL file and the activity log."""
        self.logs_path.mkdir(parents=True, exist_ok=True)

        with open(self._get_log_path(), "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

        line = (
            f"{entry['timestamp']} [{entry['level'].upper()}] [{self.name}] "
            f"{entry['event_type']}"
        )
        if entry.get("run_id"):
            line += f" run={entry['run_id']}"
        if entry["data"]:
            line += " " + _format_data(entry["data"])
        with open(self.activity_log_path, "a") as f:
            f.write(line.replace("\n", " ") + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "card_moved", "agent_finished").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "pipeline": self.name,
            "data": redact_dict(data or {}),
        }

        if self._current_run_id:
            entry["run_id"] = self._current_run_id

        self._stdlib.log(
            _STDLIB_LEVELS.get(level, logging.INFO),
            "%s %s",
            event_type,
            _format_data(entry["data"]),
        )

        try:
            self._write_entry(entry)
        except OSError as e:
            # Losing a log line must never fail a pipeline step
            self._stdlib.warning("Failed to write log entry: %s", e)

    @contextmanager
    def run_context(self, run_id: str) -> Iterator[PipelineLogger]:
        """
        Context manager for run-scoped logging.

        All logs within this context include the run_id.

        Example:
            with logger.run_context("1718000000000-abc123") as log:
                log.log("card_moved", {"column": "reviewing"})
        """
        old_run_id = self._current_run_id
        self._current_run_id = run_id
        try:
            yield self
        finally:
            self._current_run_id = old_run_id

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            run_id: Filter by run ID.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters.
        """
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        log_path = self.logs_path / f"{self.name}-{date}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if run_id and entry.get("run_id") != run_id:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries


def setup_logging(level: str = "INFO") -> None:
    """
    Configure stdlib logging for console output.

    Args:
        level: Level name for the ``cardflow`` logger tree.
    """
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.WARNING,
    )
    logging.getLogger("cardflow").setLevel(level.upper())
