"""
Auxiliary tool (MCP server) configuration for agent runs.

Server definitions come from ``agent.tool_servers`` in the config file and may
contain ``${VAR}`` placeholders. Placeholders are resolved against the
environment right before an agent run, so secrets only ever exist in the
short-lived config file handed to the agent.
"""

from __future__ import annotations

import json
import os
import re
from typing import Any, Mapping, Optional

_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


def _resolve_string(value: str, env: Mapping[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: env.get(m.group(1)) or "", value)


def _resolve_value(value: Any, env: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return _resolve_string(value, env)
    if isinstance(value, list):
        return [_resolve_value(v, env) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_value(v, env) for k, v in value.items()}
    return value


def resolve_tool_servers_env(
    servers: dict[str, Any],
    env: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """
    Replace ``${VAR}`` placeholders recursively. Unset variables become "".

    Args:
        servers: Server name -> server settings.
        env: Environment to resolve against. Defaults to os.environ.
    """
    return _resolve_value(servers, os.environ if env is None else env)


def build_tool_config_payload(
    servers: Optional[dict[str, Any]],
    env: Optional[Mapping[str, str]] = None,
) -> Optional[dict[str, Any]]:
    """Return ``{"mcpServers": ...}`` or None when no servers are configured."""
    if not servers:
        return None
    return {"mcpServers": resolve_tool_servers_env(servers, env)}


def parse_tool_config_document(document: str) -> dict[str, Any]:
    """
    Parse a JSON document holding an ``mcpServers`` object.

    Raises:
        ValueError: If the document is not JSON or has the wrong shape.
    """
    try:
        parsed = json.loads(document)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid MCP config JSON: {e}")

    if not isinstance(parsed, dict):
        raise ValueError("Invalid MCP config: expected JSON object")

    servers = parsed.get("mcpServers")
    if not isinstance(servers, dict):
        raise ValueError("Invalid MCP config: expected object at `mcpServers`")
    return servers


def collect_env_placeholders(servers: Optional[dict[str, Any]]) -> list[str]:
    """Return the sorted, unique variable names referenced by placeholders."""
    if not servers:
        return []
    keys: set[str] = set()

    def walk(value: Any) -> None:
        if isinstance(value, str):
            keys.update(_PLACEHOLDER.findall(value))
        elif isinstance(value, list):
            for v in value:
                walk(v)
        elif isinstance(value, dict):
            for v in value.values():
                walk(v)

    walk(servers)
    return sorted(keys)
