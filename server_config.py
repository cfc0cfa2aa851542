"""Resolve MCP server launch settings from .mcp.json.

The file holds an ``mcpServers`` table mapping server names to
``{"command": ..., "args": [...], "env": {...}}``. A wrapper mapping file
(``.mcp-wrappers/.mcp-server-mapping.json``, ``{serverName: wrapperName}``)
next to it lets callers address a server by its wrapper name.
"""

import json
import os
from dataclasses import dataclass, field

CONFIG_FILENAME = ".mcp.json"
MAPPING_RELPATH = os.path.join(".mcp-wrappers", ".mcp-server-mapping.json")


class ServerConfigError(ValueError):
    """The configuration file is missing, unreadable, or lacks the server."""


@dataclass
class ServerConfig:
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    description: str | None = None


def resolve_config_path(config_path: str | None = None) -> str:
    """Config path: parameter > MCP_BRIDGE_CONFIG > ./.mcp.json."""
    return (
        config_path
        or os.environ.get("MCP_BRIDGE_CONFIG")
        or os.path.join(os.getcwd(), CONFIG_FILENAME)
    )


def _read_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_servers(config_path: str | None = None) -> dict:
    path = resolve_config_path(config_path)
    try:
        data = _read_json(path)
    except FileNotFoundError:
        raise ServerConfigError(f"No {CONFIG_FILENAME} found at {path}") from None
    except json.JSONDecodeError as e:
        raise ServerConfigError(f"Invalid JSON in {path}: {e}") from None
    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        raise ServerConfigError(f"{path} has no mcpServers table")
    return servers


def load_server_mapping(mapping_path: str | None = None,
                        config_path: str | None = None) -> dict[str, str]:
    """Server-to-wrapper name mapping. A missing or broken file maps nothing."""
    if mapping_path is None:
        config_dir = os.path.dirname(os.path.abspath(resolve_config_path(config_path)))
        mapping_path = os.path.join(config_dir, MAPPING_RELPATH)
    try:
        data = _read_json(mapping_path)
    except (FileNotFoundError, json.JSONDecodeError):
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def list_server_names(config_path: str | None = None) -> list[str]:
    return list(load_servers(config_path))


def load_server_config(name: str | None = None, *, config_path: str | None = None,
                       mapping_path: str | None = None) -> ServerConfig:
    """Look up one server. ``name=None`` picks the first configured server.

    ``name`` may be a server name or a wrapper name from the mapping file.
    """
    servers = load_servers(config_path)
    if name is None:
        if not servers:
            raise ServerConfigError("No servers configured in mcpServers")
        name = next(iter(servers))
    elif name not in servers:
        mapping = load_server_mapping(mapping_path, config_path)
        name = next((server for server, wrapper in mapping.items() if wrapper == name), name)

    entry = servers.get(name)
    if not isinstance(entry, dict):
        raise ServerConfigError(f'Server "{name}" not found in {CONFIG_FILENAME}')

    command = entry.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ServerConfigError(f'Server "{name}" has no command')
    args = entry.get("args") or []
    if not isinstance(args, list):
        raise ServerConfigError(f'Server "{name}": args must be a list')
    env = entry.get("env") or {}
    if not isinstance(env, dict):
        raise ServerConfigError(f'Server "{name}": env must be an object')

    return ServerConfig(
        name=name,
        command=command,
        args=[str(a) for a in args],
        env={str(k): str(v) for k, v in env.items()},
        description=entry.get("description"),
    )
