"""
Long-lived dev server scope for the development pipeline.

The server is started inside the card's worktree, declared ready once its
combined output contains the configured marker, and always stopped when the
scope exits: SIGTERM first, SIGKILL after the grace window.
"""

from __future__ import annotations

import asyncio
import codecs
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from cardflow.errors import DevServerError
from cardflow.process_runner import ManagedProcess, shell_command

if TYPE_CHECKING:
    from cardflow.logger import PipelineLogger
    from cardflow.process_runner import ProcessRunner


# Output kept while searching for the marker, beyond the marker length
_SEARCH_WINDOW = 64 * 1024
# Server output quoted in startup errors
_ERROR_TAIL_CHARS = 1000


class DevServer:
    """
    Async context manager around a dev server process.

    Usage:
        async with DevServer(runner, "npm run dev", "ready", worktree, 600, 2):
            await run_tests()
    """

    def __init__(
        self,
        runner: ProcessRunner,
        command: str,
        ready_pattern: str,
        cwd: str | Path,
        ready_timeout: float,
        grace_seconds: float,
        pipeline_logger: Optional[PipelineLogger] = None,
    ) -> None:
        if not ready_pattern:
            raise DevServerError("A readiness marker is required to start a dev server")
        self._runner = runner
        self.command = command
        self.ready_pattern = ready_pattern
        self.cwd = Path(cwd)
        self.ready_timeout = ready_timeout
        self.grace_seconds = grace_seconds
        self._logger = pipeline_logger
        self._process: Optional[ManagedProcess] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._tail: deque[str] = deque(maxlen=50)

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
    def output_tail(self) -> str:
        """Last lines of server output seen so far."""
        return "".join(self._tail)

    def _failure(self, message: str) -> DevServerError:
        tail = self.output_tail.strip()[-_ERROR_TAIL_CHARS:]
        if tail:
            message = f"{message}. Last output:\n{tail}"
        return DevServerError(message)

    async def _wait_ready(self, process: ManagedProcess) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await process.read_chunk()
            if not chunk:
                code = await process.wait()
                raise self._failure(f"Dev server exited with code {code} before becoming ready")
            text = decoder.decode(chunk)
            self._tail.append(text)
            buffer += text
            if self.ready_pattern in buffer:
                return
            buffer = buffer[-(len(self.ready_pattern) + _SEARCH_WINDOW):]

    async def _drain(self, process: ManagedProcess) -> None:
        # Keep reading so a chatty server never blocks on a full pipe
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.read_chunk()
            if not chunk:
                return
            self._tail.append(decoder.decode(chunk))

    async def start(self) -> None:
        """
        Start the server and block until it is ready.

        Raises:
            SpawnError: If the command cannot be started.
            DevServerError: If the server exits or times out before the marker.
        """
        self._log("dev_server_starting", {"command": self.command})
        process = await self._runner.start(
            shell_command(self.command), self.cwd, label="Dev server"
        )
        self._process = process
        try:
            await asyncio.wait_for(self._wait_ready(process), self.ready_timeout)
        except asyncio.TimeoutError:
            await self.stop()
            raise self._failure(
                f"Dev server did not become ready within {self.ready_timeout:g}s"
            )
        except BaseException:
            await self.stop()
            raise

        self._drain_task = asyncio.create_task(self._drain(process))
        self._log("dev_server_ready", {"pid": process.pid})

    async def stop(self) -> None:
        """Terminate the server process tree. Safe to call more than once."""
        process = self._process
        if process is None:
            return
        self._process = None
        try:
            await process.terminate(self.grace_seconds)
        finally:
            if self._drain_task is not None:
                self._drain_task.cancel()
                try:
                    await self._drain_task
                except asyncio.CancelledError:
                    pass
                self._drain_task = None
            self._log("dev_server_stopped", {"returncode": process.returncode})

    async def __aenter__(self) -> DevServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
