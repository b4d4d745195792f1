"""Tests for sandboxed command execution."""
import os
import time

import pytest

from cardflow.config import SandboxConfig
from cardflow.errors import CommandTimeoutError, ProcessError, SpawnError
from cardflow.process_runner import ProcessRunner, shell_command


def _runner(**sandbox_kwargs) -> ProcessRunner:
    sandbox_kwargs.setdefault("forward_env", [])
    sandbox_kwargs.setdefault("kill_grace_seconds", 0.5)
    return ProcessRunner(SandboxConfig(**sandbox_kwargs), base_env=dict(os.environ))


def _is_running(pid: int) -> bool:
    """True unless the process is gone or a zombie waiting to be reaped."""
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except FileNotFoundError:
        return False


class TestBuildCommand:
    """Argument vector and environment construction."""

    def test_sudo_wrapping_forwards_only_named_variables(self):
        runner = ProcessRunner(
            SandboxConfig(user="claudeuser", forward_env=["GITHUB_TOKEN", "MISSING"]),
            base_env={"GITHUB_TOKEN": "gh-secret", "OTHER": "nope", "PATH": "/usr/bin"},
        )

        argv, env = runner.build_command(["claude", "-p"], {"ANTHROPIC_API_KEY": "k"})

        assert argv == [
            "sudo", "-u", "claudeuser", "--",
            "env", "GITHUB_TOKEN=gh-secret", "MISSING=", "ANTHROPIC_API_KEY=k",
            "claude", "-p",
        ]
        assert not any(arg.startswith("OTHER=") for arg in argv)
        assert env["PATH"] == "/usr/bin"

    def test_custom_sudo_binary(self):
        runner = ProcessRunner(
            SandboxConfig(user="bot", sudo_binary="/usr/local/bin/sudo", forward_env=[]),
            base_env={},
        )

        argv, _ = runner.build_command(["git", "status"])

        assert argv[:5] == ["/usr/local/bin/sudo", "-u", "bot", "--", "env"]
        assert argv[-2:] == ["git", "status"]

    def test_without_user_overlays_environment(self):
        runner = ProcessRunner(
            SandboxConfig(user="", forward_env=["GITHUB_TOKEN"]),
            base_env={"PATH": "/bin"},
        )

        argv, env = runner.build_command(["git", "status"], {"EXTRA": "1"})

        assert argv == ["git", "status"]
        assert env == {"PATH": "/bin", "GITHUB_TOKEN": "", "EXTRA": "1"}

    def test_shell_command(self):
        assert shell_command("npm test && echo ok") == ["bash", "-c", "npm test && echo ok"]


class TestRun:
    """ProcessRunner.run() against real processes."""

    @pytest.mark.asyncio
    async def test_captures_stdout(self, tmp_path):
        result = await _runner().run(["echo", "hello"], tmp_path, timeout=10)

        assert result.stdout == "hello\n"
        assert result.returncode == 0

    @pytest.mark.asyncio
    async def test_writes_stdin(self, tmp_path):
        result = await _runner().run(["cat"], tmp_path, timeout=10, input_text="prompt text")

        assert result.stdout == "prompt text"

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, tmp_path):
        result = await _runner().run(["pwd"], tmp_path, timeout=10)

        assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_process_error(self, tmp_path):
        with pytest.raises(ProcessError) as exc_info:
            await _runner().run(
                shell_command("echo boom >&2; exit 3"), tmp_path, timeout=10, label="Test command"
            )

        assert exc_info.value.returncode == 3
        assert "boom" in exc_info.value.stderr_excerpt
        assert str(exc_info.value).startswith("Test command exited with code 3")

    @pytest.mark.asyncio
    async def test_missing_binary_raises_spawn_error(self, tmp_path):
        with pytest.raises(SpawnError) as exc_info:
            await _runner().run(["definitely-not-a-real-binary-xyz"], tmp_path, timeout=10, label="Agent CLI")

        assert exc_info.value.label == "Agent CLI"

    @pytest.mark.asyncio
    async def test_timeout_terminates_and_raises(self, tmp_path):
        started = time.monotonic()

        with pytest.raises(CommandTimeoutError) as exc_info:
            await _runner().run(["sleep", "30"], tmp_path, timeout=0.3, label="Agent CLI")

        assert exc_info.value.timeout_seconds == 0.3
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_timeout_kills_whole_process_group(self, tmp_path):
        marker = tmp_path / "child.pid"
        script = f"sleep 30 & echo $! > {marker}; wait"

        with pytest.raises(CommandTimeoutError):
            await _runner().run(shell_command(script), tmp_path, timeout=0.5)

        child_pid = int(marker.read_text().strip())
        deadline = time.monotonic() + 5
        while _is_running(child_pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not _is_running(child_pid)

    @pytest.mark.asyncio
    async def test_extra_env_reaches_child(self, tmp_path):
        result = await _runner().run(
            shell_command("printf %s \"$CARDFLOW_TEST_VAR\""),
            tmp_path,
            timeout=10,
            extra_env={"CARDFLOW_TEST_VAR": "visible"},
        )

        assert result.stdout == "visible"


class TestStart:

    @pytest.mark.asyncio
    async def test_merges_output_and_terminates(self, tmp_path):
        process = await _runner().start(
            shell_command("echo out; echo err >&2; sleep 30"), tmp_path, label="Dev server"
        )

        collected = b""
        while b"out" not in collected or b"err" not in collected:
            chunk = await process.read_chunk()
            assert chunk
            collected += chunk

        await process.terminate(0.5)
        assert process.returncode is not None
