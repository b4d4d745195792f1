"""
Agent CLI adapter for cardflow.

This module provides:
- Prompt template rendering with ``{{name}}`` placeholders
- The URL access policy prepended to prompts when an allow-list is configured
- AgentRunner, which writes the ephemeral tool-server config file, runs the
  agent through the sandboxed ProcessRunner and returns its trimmed output
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional

from cardflow.errors import CardflowError
from cardflow.tool_config import build_tool_config_payload
from cardflow.utils.fs import read_file

if TYPE_CHECKING:
    from cardflow.config import CardflowConfig
    from cardflow.logger import PipelineLogger
    from cardflow.process_runner import ProcessRunner


_TEMPLATE_VAR = re.compile(r"\{\{(\w+)\}\}")
TOOL_CONFIG_TIMEOUT_SECONDS = 30


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` placeholders. Unknown names are left as written."""
    return _TEMPLATE_VAR.sub(
        lambda m: variables[m.group(1)] if m.group(1) in variables else m.group(0),
        template,
    )


def build_url_policy(urls: list[str]) -> str:
    """Return the URL access policy block, or "" when the allow-list is empty."""
    if not urls:
        return ""
    return (
        "URL ACCESS POLICY: You are ONLY permitted to access these URLs:\n"
        + "\n".join(f"- {u}" for u in urls)
        + "\nDo NOT fetch, read, or access any URL not on this list."
    )


class AgentRunner:
    """
    Runs the external agent non-interactively.

    The prompt travels on stdin and never touches disk. When tool servers are
    configured, their resolved settings live in a 0600 temp file for the
    duration of one invocation only.
    """

    def __init__(
        self,
        config: CardflowConfig,
        runner: ProcessRunner,
        logger: Optional[PipelineLogger] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Initialize the agent runner.

        Args:
            config: Loaded configuration.
            runner: Sandboxed process runner used for the invocation.
            logger: Optional logger for recording operations.
            env: Environment supplying the API key and tool-server
                 placeholders. Defaults to os.environ.
        """
        self.config = config
        self.runner = runner
        self.logger = logger
        self._env = os.environ if env is None else env

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def build_prompt(self, template_path: str | Path, card_content: str) -> str:
        """
        Render a prompt template for one card.

        Raises:
            FileNotFoundError: If the template does not exist.
        """
        template = read_file(Path(template_path))
        return render_template(template, {
            "botName": self.config.bot_name,
            "cardContent": card_content,
            "urlPolicy": build_url_policy(self.config.url_allow_list),
            "baseBranch": self.config.git.base_branch,
            "baseRemote": self.config.git.base_remote,
        })

    def build_command(self, tool_config_path: Optional[str] = None) -> list[str]:
        """Build the agent argument vector."""
        cmd = [self.config.agent.binary, "-p", "--dangerously-skip-permissions"]
        cmd.extend(self.config.agent.extra_args)
        if tool_config_path:
            cmd.extend(["--mcp-config", tool_config_path])
        return cmd

    async def _write_tool_config(self) -> Optional[str]:
        """
        Write the tool-server config file, or return None if none is configured.

        With a sandbox user the file is created by that user through the
        runner, so the agent can read it and nobody else can.
        """
        payload = build_tool_config_payload(self.config.agent.tool_servers, self._env)
        if payload is None:
            return None

        if self.config.sandbox.user:
            path = os.path.join(tempfile.gettempdir(), f"cardflow-mcp-{uuid.uuid4().hex}.json")
            await self.runner.run(
                ["sh", "-c", 'umask 077 && set -C && cat > "$1"', "sh", path],
                tempfile.gettempdir(),
                TOOL_CONFIG_TIMEOUT_SECONDS,
                input_text=json.dumps(payload),
                label="Tool config write",
            )
            return path

        fd, path = tempfile.mkstemp(prefix="cardflow-mcp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f)
            os.chmod(path, 0o600)
        except BaseException:
            os.unlink(path)
            raise
        return path

    async def _remove_tool_config(self, path: str) -> None:
        try:
            if self.config.sandbox.user:
                await self.runner.run(
                    ["rm", "-f", path],
                    tempfile.gettempdir(),
                    TOOL_CONFIG_TIMEOUT_SECONDS,
                    label="Tool config cleanup",
                )
            else:
                os.unlink(path)
        except FileNotFoundError:
            pass
        except (OSError, CardflowError) as e:
            self._log("tool_config_cleanup_failed", {"path": path, "error": str(e)}, level="warn")

    async def run(
        self,
        template_path: str | Path,
        card_content: str,
        cwd: str | Path,
        timeout: float,
        label: str = "Agent CLI",
    ) -> str:
        """
        Run the agent against one card.

        Args:
            template_path: Prompt template to render.
            card_content: Rendered card document.
            cwd: Working directory (repository or worktree).
            timeout: Deadline in seconds.
            label: Name used in errors and logs.

        Returns:
            The agent's stdout, stripped.

        Raises:
            SpawnError, CommandTimeoutError, ProcessError: From the runner.
        """
        prompt = self.build_prompt(template_path, card_content)
        api_key_var = self.config.agent.api_key_env_var
        extra_env = {api_key_var: self._env.get(api_key_var, "")}

        tool_config_path = await self._write_tool_config()
        self._log("agent_start", {
            "label": label,
            "cwd": str(cwd),
            "prompt_length": len(prompt),
            "timeout": timeout,
            "tool_config": bool(tool_config_path),
        })
        try:
            result = await self.runner.run(
                self.build_command(tool_config_path),
                cwd,
                timeout,
                input_text=prompt,
                label=label,
                extra_env=extra_env,
            )
        finally:
            if tool_config_path:
                await self._remove_tool_config(tool_config_path)

        output = result.stdout.strip()
        self._log("agent_complete", {"label": label, "output_length": len(output)})
        return output
