import json
import logging
import os
import sys
import tempfile
from collections.abc import Callable

from permissions.handler import PORT_ENV, SERVER_NAME

logger = logging.getLogger("flotilla.mcp_config")

USER_CONFIG = os.path.join(os.path.expanduser("~"), ".claude.json")


def read_user_mcp_servers(path: str = USER_CONFIG) -> dict:
    """Return the user's own mcpServers, or {} when the file is missing or unreadable."""
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    servers = data.get("mcpServers") if isinstance(data, dict) else None
    return dict(servers) if isinstance(servers, dict) else {}


def build_mcp_config(port: int, user_servers: dict | None = None) -> dict:
    servers = dict(user_servers or {})
    servers[SERVER_NAME] = {
        "command": sys.executable,
        "args": ["-m", "flotilla", "permission-handler"],
        "env": {PORT_ENV: str(port)},
    }
    return {"mcpServers": servers}


def generate_mcp_config(port: int, user_config: str = USER_CONFIG) -> tuple[str, Callable[[], None]]:
    """Write a private MCP config pointing the agent at the permission handler.

    Returns the file path and a cleanup function that removes it.
    """
    config = build_mcp_config(port, read_user_mcp_servers(user_config))
    fd, path = tempfile.mkstemp(prefix="flotilla-mcp-", suffix=".json")
    try:
        os.chmod(path, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(config, f, indent=2)
    except OSError:
        os.unlink(path)
        raise

    def cleanup() -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass

    logger.debug(f"MCP config written to {path} ({len(config['mcpServers'])} server(s))")
    return path, cleanup
