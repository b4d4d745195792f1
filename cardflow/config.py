"""
Configuration loading and validation for cardflow.

This module handles:
- Loading cardflow.yaml (or the file named by --config / CARDFLOW_CONFIG)
- Environment variable resolution (${VAR} syntax)
- Default values for optional fields
- Validation of required fields and cross-field preconditions
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from cardflow.errors import ConfigError
from cardflow.prompts import get_default_prompts_path
from cardflow.tool_config import parse_tool_config_document

__all__ = [
    "AgentConfig",
    "BoardColumns",
    "BoardConfig",
    "CardflowConfig",
    "ConfigError",
    "GitConfig",
    "PipelineConfig",
    "SandboxConfig",
    "TimeoutConfig",
    "clear_config_cache",
    "get_config",
    "load_config",
    "validate_config",
]

DEFAULT_CONFIG_FILE = "cardflow.yaml"
CONFIG_ENV_VAR = "CARDFLOW_CONFIG"


@dataclass
class BoardColumns:
    """Board column (list) identifiers for both pipelines."""
    analysis_source: str = ""                  # Cards waiting for a plan
    analysis_reviewing: str = ""               # Plan being produced
    analysis_done: str = ""                    # Plan posted
    dev_source: str = ""                       # Cards waiting for implementation
    dev_in_progress: str = ""                  # Implementation running
    dev_done: str = ""                         # Pull request opened (or no-op)
    failed: Optional[str] = None               # Escalation target after max attempts
    todo: Optional[str] = None                 # Only shown by `cardflow status`

    @property
    def dev_enabled(self) -> bool:
        """True when all development columns are configured."""
        return bool(self.dev_source and self.dev_in_progress and self.dev_done)


@dataclass
class BoardConfig:
    """Kanban board (Trello) configuration."""
    board_id: str = ""
    api_key_env_var: str = "TRELLO_API_KEY"    # Environment variable containing the API key
    token_env_var: str = "TRELLO_TOKEN"        # Environment variable containing the token
    base_url: str = "https://api.trello.com/1"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    max_download_bytes: int = 50 * 1024 * 1024  # Per attachment
    columns: BoardColumns = field(default_factory=BoardColumns)

    def get_api_key(self) -> str:
        """Get the board API key from environment."""
        value = os.environ.get(self.api_key_env_var, "")
        if not value:
            raise ConfigError(f"Environment variable {self.api_key_env_var} is not set")
        return value

    def get_token(self) -> str:
        """Get the board token from environment."""
        value = os.environ.get(self.token_env_var, "")
        if not value:
            raise ConfigError(f"Environment variable {self.token_env_var} is not set")
        return value


@dataclass
class GitConfig:
    """Git base used for worktrees and pull requests."""
    base_branch: str = "main"
    base_remote: str = "origin"


@dataclass
class AgentConfig:
    """External agent CLI configuration."""
    binary: str = "claude"
    extra_args: list[str] = field(default_factory=list)
    analysis_template: str = ""                # Empty means the bundled template
    development_template: str = ""
    tool_servers: dict[str, Any] = field(default_factory=dict)  # MCP servers
    tool_servers_file: str = ""                # JSON document with an `mcpServers` object
    api_key_env_var: str = "ANTHROPIC_API_KEY"

    @property
    def analysis_template_path(self) -> Path:
        if self.analysis_template:
            return Path(self.analysis_template).expanduser().absolute()
        return get_default_prompts_path() / "analysis.md"

    @property
    def development_template_path(self) -> Path:
        if self.development_template:
            return Path(self.development_template).expanduser().absolute()
        return get_default_prompts_path() / "development.md"


@dataclass
class SandboxConfig:
    """Restricted identity used for every spawned command."""
    user: str = ""                             # Empty: run as the current user
    sudo_binary: str = "sudo"
    forward_env: list[str] = field(default_factory=lambda: ["GITHUB_TOKEN"])
    kill_grace_seconds: float = 2.0            # SIGTERM -> SIGKILL window on timeout


@dataclass
class PipelineConfig:
    """Development verification commands."""
    dev_command: str = ""                      # Long-lived dev server (shell)
    dev_ready_pattern: str = ""                # Output marker meaning "ready"
    test_commands: list[str] = field(default_factory=list)


@dataclass
class TimeoutConfig:
    """Timeouts in seconds."""
    analysis: float = 300
    development: float = 1200
    dev_server: float = 600
    test: float = 600
    dev_server_grace: float = 2


@dataclass
class CardflowConfig:
    """
    Main configuration for cardflow.

    This is the top-level config loaded from cardflow.yaml.
    """
    repo_dir: str = "."
    bot_name: str = "CardBot"
    worktree_base_dir: str = ""
    data_dir: str = "data"
    logs_dir: str = "logs"
    max_card_attempts: int = 3
    poll_interval_seconds: float = 60
    url_allow_list: list[str] = field(default_factory=list)

    # Nested configurations
    git: GitConfig = field(default_factory=GitConfig)
    board: BoardConfig = field(default_factory=BoardConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths."""
        self.repo_dir = str(Path(self.repo_dir).expanduser().absolute())
        if not self.worktree_base_dir:
            self.worktree_base_dir = str(Path(self.repo_dir).parent / "worktrees")
        self.worktree_base_dir = str(Path(self.worktree_base_dir).expanduser().absolute())

    @property
    def data_path(self) -> Path:
        """Absolute path to the ledger directory."""
        return Path(self.data_dir).expanduser().absolute()

    @property
    def logs_path(self) -> Path:
        """Absolute path to the logs directory."""
        return Path(self.logs_dir).expanduser().absolute()

    @property
    def worktree_path(self) -> Path:
        """Absolute path under which per-card worktrees are created."""
        return Path(self.worktree_base_dir)


# Module-level cache for the loaded configuration
_config_cache: Optional[CardflowConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def _string_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{name} must be a list of strings")
    return list(value)


def _parse_columns(data: dict[str, Any]) -> BoardColumns:
    """Parse board column identifiers from dict."""
    return BoardColumns(
        analysis_source=data.get("analysis_source", ""),
        analysis_reviewing=data.get("analysis_reviewing", ""),
        analysis_done=data.get("analysis_done", ""),
        dev_source=data.get("dev_source", ""),
        dev_in_progress=data.get("dev_in_progress", ""),
        dev_done=data.get("dev_done", ""),
        failed=data.get("failed") or None,
        todo=data.get("todo") or None,
    )


def _parse_board_config(data: dict[str, Any]) -> BoardConfig:
    """Parse board configuration from dict."""
    return BoardConfig(
        board_id=data.get("board_id", ""),
        api_key_env_var=data.get("api_key_env_var", "TRELLO_API_KEY"),
        token_env_var=data.get("token_env_var", "TRELLO_TOKEN"),
        base_url=data.get("base_url", "https://api.trello.com/1"),
        request_timeout_seconds=data.get("request_timeout_seconds", 30.0),
        max_retries=data.get("max_retries", 3),
        backoff_base_seconds=data.get("backoff_base_seconds", 1.0),
        max_download_bytes=data.get("max_download_bytes", 50 * 1024 * 1024),
        columns=_parse_columns(_section(data, "columns")),
    )


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    """Parse git configuration from dict."""
    return GitConfig(
        base_branch=data.get("base_branch", "main"),
        base_remote=data.get("base_remote", "origin"),
    )


def _load_tool_servers_file(path: str) -> dict[str, Any]:
    """Read server definitions from a JSON document. Placeholders stay unresolved."""
    file_path = Path(path).expanduser()
    try:
        document = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read agent.tool_servers_file {file_path}: {e}")
    try:
        return parse_tool_config_document(document)
    except ValueError as e:
        raise ConfigError(f"{file_path}: {e}")


def _parse_agent_config(data: dict[str, Any]) -> AgentConfig:
    """Parse agent configuration from dict.

    Servers from ``tool_servers_file`` are loaded first; inline
    ``tool_servers`` entries replace file entries of the same name.
    """
    tool_servers = data.get("tool_servers") or {}
    if not isinstance(tool_servers, dict):
        raise ConfigError("agent.tool_servers must be a mapping of server name to settings")
    tool_servers_file = data.get("tool_servers_file") or ""
    if tool_servers_file:
        tool_servers = {**_load_tool_servers_file(tool_servers_file), **tool_servers}
    return AgentConfig(
        binary=data.get("binary", "claude"),
        extra_args=_string_list(data.get("extra_args"), "agent.extra_args"),
        analysis_template=data.get("analysis_template", ""),
        development_template=data.get("development_template", ""),
        tool_servers=tool_servers,
        tool_servers_file=tool_servers_file,
        api_key_env_var=data.get("api_key_env_var", "ANTHROPIC_API_KEY"),
    )


def _parse_sandbox_config(data: dict[str, Any]) -> SandboxConfig:
    """Parse sandbox configuration from dict."""
    forward_env = data.get("forward_env")
    return SandboxConfig(
        user=data.get("user", ""),
        sudo_binary=data.get("sudo_binary", "sudo"),
        forward_env=["GITHUB_TOKEN"] if forward_env is None
        else _string_list(forward_env, "sandbox.forward_env"),
        kill_grace_seconds=data.get("kill_grace_seconds", 2.0),
    )


def _parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    """Parse pipeline configuration from dict, with safe defaults when missing."""
    return PipelineConfig(
        dev_command=data.get("dev_command") or "",
        dev_ready_pattern=data.get("dev_ready_pattern") or "",
        test_commands=_string_list(data.get("test_commands"), "pipeline.test_commands"),
    )


def _parse_timeout_config(data: dict[str, Any]) -> TimeoutConfig:
    """Parse timeout configuration from dict."""
    return TimeoutConfig(
        analysis=data.get("analysis", 300),
        development=data.get("development", 1200),
        dev_server=data.get("dev_server", 600),
        test=data.get("test", 600),
        dev_server_grace=data.get("dev_server_grace", 2),
    )


def parse_config(data: dict[str, Any]) -> CardflowConfig:
    """
    Build a CardflowConfig from an already env-resolved mapping.

    No validation is performed; see validate_config().
    """
    return CardflowConfig(
        repo_dir=data.get("repo_dir") or os.getcwd(),
        bot_name=data.get("bot_name") or "CardBot",
        worktree_base_dir=data.get("worktree_base_dir") or "",
        data_dir=data.get("data_dir") or "data",
        logs_dir=data.get("logs_dir") or "logs",
        max_card_attempts=data.get("max_card_attempts", 3),
        poll_interval_seconds=data.get("poll_interval_seconds", 60),
        url_allow_list=_string_list(data.get("url_allow_list"), "url_allow_list"),
        git=_parse_git_config(_section(data, "git")),
        board=_parse_board_config(_section(data, "board")),
        agent=_parse_agent_config(_section(data, "agent")),
        sandbox=_parse_sandbox_config(_section(data, "sandbox")),
        pipeline=_parse_pipeline_config(_section(data, "pipeline")),
        timeouts=_parse_timeout_config(_section(data, "timeouts")),
    )


def validate_config(config: CardflowConfig) -> None:
    """
    Validate cross-field requirements.

    Collects every problem and raises a single ConfigError listing them.

    Raises:
        ConfigError: If any requirement is not met.
    """
    errors: list[str] = []
    columns = config.board.columns

    if not config.board.board_id:
        errors.append("board.board_id is required")

    for key in ("analysis_source", "analysis_reviewing", "analysis_done"):
        if not getattr(columns, key):
            errors.append(f"board.columns.{key} is required")

    dev_columns = [columns.dev_source, columns.dev_in_progress, columns.dev_done]
    if any(dev_columns) and not all(dev_columns):
        errors.append(
            "board.columns.dev_source, dev_in_progress and dev_done must be set together"
        )

    if not Path(config.repo_dir).is_dir():
        errors.append(f"repo_dir does not exist: {config.repo_dir}")

    if not config.agent.analysis_template_path.is_file():
        errors.append(f"Analysis template not found: {config.agent.analysis_template_path}")

    if not config.agent.development_template_path.is_file():
        errors.append(f"Development template not found: {config.agent.development_template_path}")

    # A dev server without a readiness marker could never be declared ready
    if config.pipeline.dev_command and not config.pipeline.dev_ready_pattern:
        errors.append("pipeline.dev_ready_pattern is required when pipeline.dev_command is set")

    timeouts = config.timeouts
    values = [
        timeouts.analysis,
        timeouts.development,
        timeouts.dev_server,
        timeouts.test,
        timeouts.dev_server_grace,
    ]
    if any(not isinstance(v, (int, float)) or v <= 0 for v in values):
        errors.append("All timeout values must be positive numbers")

    if not isinstance(config.max_card_attempts, int) or config.max_card_attempts < 1:
        errors.append("max_card_attempts must be a positive integer")

    if not isinstance(config.poll_interval_seconds, (int, float)) or config.poll_interval_seconds <= 0:
        errors.append("poll_interval_seconds must be a positive number")

    if errors:
        raise ConfigError(
            "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        )


def load_config(config_path: Optional[str] = None, validate: bool = True) -> CardflowConfig:
    """
    Load configuration from cardflow.yaml.

    Args:
        config_path: Optional path to config file. If not provided, uses
                     $CARDFLOW_CONFIG or cardflow.yaml in the current directory.
        validate: Whether to run validate_config() on the result.

    Returns:
        CardflowConfig: Loaded (and validated) configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    # Tool server placeholders are resolved per agent invocation, not here
    tool_servers = None
    agent_section = raw_data.get("agent")
    if isinstance(agent_section, dict) and "tool_servers" in agent_section:
        tool_servers = agent_section["tool_servers"]
        raw_data = {
            **raw_data,
            "agent": {k: v for k, v in agent_section.items() if k != "tool_servers"},
        }

    data = _resolve_env_vars(raw_data)
    if tool_servers is not None:
        data["agent"]["tool_servers"] = tool_servers
    config = parse_config(data)

    if validate:
        validate_config(config)

    return config


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> CardflowConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        CardflowConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
