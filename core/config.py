"""
Devdock configuration - paths, defaults, and the startup config loader.

All modules import path constants from here. The ~/.devdock/ directory
is the single location for logs and runtime state. Agent settings are
read once at startup and never change while the agent runs.
"""

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

# ---------------------------------------------------------------------------
# Paths - the ~/.devdock/ directory tree
# ---------------------------------------------------------------------------

AGENT_DIR = Path.home() / ".devdock"
LOG_DIR = AGENT_DIR / "logs"
PID_FILE = AGENT_DIR / "agent.pid"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

AGENT_VERSION = "0.1.0"
DEFAULT_COORDINATOR_URL = "ws://localhost:4200/api/agent/ws"
DEFAULT_SCAN_ROOT = Path.home() / "Apps"
DEFAULT_TERMINAL_COMMAND = "claude"

# Env file key mapping: ENV_VAR -> (config key, cast)
_ENV_MAP: dict[str, tuple[str, Callable]] = {
    "DEVDOCK_URL": ("coordinator_url", str),
    "DEVDOCK_TOKEN": ("token", str),
    "AGENT_NAME": ("name", str),
    "SCAN_ROOT": ("scan_root", str),
    "DEVDOCK_TERMINAL_COMMAND": ("terminal_command", str),
}


@dataclass(frozen=True)
class AgentConfig:
    coordinator_url: str
    token: str
    name: str
    scan_root: Path
    terminal_command: str = DEFAULT_TERMINAL_COMMAND

    @property
    def agent_id(self) -> str:
        return self.token[:8] or "local"


# ---------------------------------------------------------------------------
# config.env reader
# ---------------------------------------------------------------------------


def source_env_file(
    path: Path,
    config: dict,
    key_map: dict[str, tuple[str, Callable]],
) -> None:
    """Fold the agent settings found in a config.env file into `config`.

    The file holds shell-style `KEY=value` lines, optionally written as
    `export KEY=value` so the same file can be sourced by a shell. Only
    keys present in key_map are read. A value its cast rejects is skipped
    and the earlier setting stays.
    """
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        mapped = key_map.get(key.strip()) if sep else None
        if mapped is None:
            continue
        cfg_key, cast = mapped
        try:
            config[cfg_key] = cast(value.strip().strip('"').strip("'"))
        except (ValueError, TypeError):
            continue


def load_config(scan_root: Optional[str] = None) -> AgentConfig:
    """Build the agent config.

    Priority: explicit override > environment > config.env > defaults.
    config.env is looked up in the current directory, then ./.devdock/.
    """
    config: dict = {
        "coordinator_url": DEFAULT_COORDINATOR_URL,
        "token": "",
        "name": socket.gethostname(),
        "scan_root": str(DEFAULT_SCAN_ROOT),
        "terminal_command": DEFAULT_TERMINAL_COMMAND,
    }

    for search in [Path.cwd(), Path.cwd() / ".devdock"]:
        cfg_file = search / "config.env"
        if cfg_file.exists():
            source_env_file(cfg_file, config, _ENV_MAP)
            break

    for env_key, (cfg_key, cast) in _ENV_MAP.items():
        value = os.environ.get(env_key)
        if value:
            config[cfg_key] = cast(value)

    if scan_root:
        config["scan_root"] = scan_root

    return AgentConfig(
        coordinator_url=config["coordinator_url"],
        token=config["token"],
        name=config["name"],
        scan_root=Path(config["scan_root"]).expanduser().resolve(),
        terminal_command=config["terminal_command"],
    )
