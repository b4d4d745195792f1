"""
Sandboxed process execution for cardflow.

Every external command (the agent, git, gh, verification commands and the dev
server) goes through ProcessRunner:
- Optional privilege de-escalation via ``sudo -u <user> -- env K=V ... argv``
- Explicit environment forwarding (only the configured variable names)
- Separate stdout/stderr capture, optional stdin payload
- Deadline per call; on expiry the whole process group gets SIGTERM, then
  SIGKILL after a grace window
- Typed failures: SpawnError, CommandTimeoutError, ProcessError
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional, Sequence

from cardflow.errors import CommandTimeoutError, ProcessError, SpawnError

if TYPE_CHECKING:
    from cardflow.config import SandboxConfig


logger = logging.getLogger(__name__)

STDERR_EXCERPT_CHARS = 1000


@dataclass
class ProcessResult:
    """Captured output of a finished command."""
    stdout: str
    stderr: str
    returncode: int = 0


def shell_command(command: str) -> list[str]:
    """Wrap an operator-supplied command line for shell interpretation."""
    return ["bash", "-c", command]


def _describe(argv: Sequence[str]) -> str:
    return " ".join(argv)[:100]


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Send ``sig`` to the process group led by ``proc``."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        # Group members owned by the sandbox user; sudo relays signals it receives
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


async def terminate_process(proc: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """
    Stop a process tree: SIGTERM first, SIGKILL once the grace window ends.

    Returns after the direct child has been reaped.
    """
    if proc.returncode is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), grace_seconds)
        return
    except asyncio.TimeoutError:
        pass
    _signal_group(proc, signal.SIGKILL)
    await proc.wait()


class ManagedProcess:
    """
    Handle for a long-lived command started with ProcessRunner.start().

    stdout and stderr are merged into one stream.
    """

    def __init__(self, proc: asyncio.subprocess.Process, label: str) -> None:
        self._proc = proc
        self.label = label

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def read_chunk(self, size: int = 4096) -> bytes:
        """Read the next chunk of combined output; b"" means EOF."""
        if self._proc.stdout is None:
            return b""
        return await self._proc.stdout.read(size)

    async def wait(self) -> int:
        return await self._proc.wait()

    async def terminate(self, grace_seconds: float) -> None:
        await terminate_process(self._proc, grace_seconds)


class ProcessRunner:
    """
    Runs commands under the configured restricted identity.

    When ``sandbox.user`` is empty, commands run as the current user with the
    same explicit environment overlay.
    """

    def __init__(
        self,
        sandbox: SandboxConfig,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Initialize the runner.

        Args:
            sandbox: Sandbox settings (user, sudo binary, forwarded variables).
            base_env: Environment to read forwarded values from and to start
                      children with. Defaults to os.environ.
        """
        self.sandbox = sandbox
        self._base_env = dict(base_env if base_env is not None else os.environ)

    def _overlay(self, extra_env: Optional[Mapping[str, str]]) -> dict[str, str]:
        overlay = {name: self._base_env.get(name, "") for name in self.sandbox.forward_env}
        if extra_env:
            overlay.update(extra_env)
        return overlay

    def build_command(
        self,
        argv: Sequence[str],
        extra_env: Optional[Mapping[str, str]] = None,
    ) -> tuple[list[str], dict[str, str]]:
        """
        Build the final argument vector and child environment.

        Args:
            argv: The command to run.
            extra_env: Additional variables for this call only.

        Returns:
            (argv, env) ready for create_subprocess_exec.
        """
        overlay = self._overlay(extra_env)
        if self.sandbox.user:
            wrapped = [
                self.sandbox.sudo_binary, "-u", self.sandbox.user, "--",
                "env", *(f"{k}={v}" for k, v in overlay.items()),
                *argv,
            ]
            return wrapped, dict(self._base_env)
        return list(argv), {**self._base_env, **overlay}

    async def run(
        self,
        argv: Sequence[str],
        cwd: str | Path,
        timeout: float,
        *,
        input_text: Optional[str] = None,
        label: Optional[str] = None,
        extra_env: Optional[Mapping[str, str]] = None,
    ) -> ProcessResult:
        """
        Run a command to completion.

        Args:
            argv: The command to run.
            cwd: Working directory.
            timeout: Deadline in seconds.
            input_text: Optional text written to the command's stdin.
            label: Name used in errors and logs. Defaults to the command line.
            extra_env: Additional environment variables for this call.

        Returns:
            ProcessResult on exit code 0.

        Raises:
            SpawnError: If the command cannot be started.
            CommandTimeoutError: If the deadline elapsed (process tree terminated).
            ProcessError: If the command exited non-zero.
        """
        label = label or _describe(argv)
        full_argv, env = self.build_command(argv, extra_env)
        logger.debug("Starting %s in %s", label, cwd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *full_argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(label, str(e))

        payload = input_text.encode("utf-8") if input_text is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout)
        except asyncio.TimeoutError:
            await terminate_process(proc, self.sandbox.kill_grace_seconds)
            logger.warning("%s timed out after %ss", label, timeout)
            raise CommandTimeoutError(label, timeout)
        except asyncio.CancelledError:
            await terminate_process(proc, self.sandbox.kill_grace_seconds)
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            raise ProcessError(label, proc.returncode, err.strip()[:STDERR_EXCERPT_CHARS])

        return ProcessResult(stdout=out, stderr=err, returncode=proc.returncode)

    async def start(
        self,
        argv: Sequence[str],
        cwd: str | Path,
        *,
        label: Optional[str] = None,
        extra_env: Optional[Mapping[str, str]] = None,
    ) -> ManagedProcess:
        """
        Start a long-lived command with merged stdout/stderr.

        The caller owns the returned handle and must terminate it.

        Raises:
            SpawnError: If the command cannot be started.
        """
        label = label or _describe(argv)
        full_argv, env = self.build_command(argv, extra_env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *full_argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(label, str(e))
        logger.debug("Started %s (pid %s)", label, proc.pid)
        return ManagedProcess(proc, label)
