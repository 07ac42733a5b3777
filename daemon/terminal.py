"""Open a terminal window in a project directory (macOS only).

Tries iTerm first and falls back to Terminal.app, running the configured
command after cd-ing into the project.
"""

import asyncio
import subprocess
import sys

from core.errors import ExternalToolError

OSASCRIPT_TIMEOUT = 15


def build_applescript(path: str, command: str) -> str:
    escaped = path.replace('"', '\\"')
    shell_line = f'cd \\"{escaped}\\" && {command}'
    return "\n".join([
        "try",
        '  tell application "iTerm"',
        "    create window with default profile",
        "    tell current session of current window",
        f'      write text "{shell_line}"',
        "    end tell",
        "  end tell",
        "on error",
        '  tell application "Terminal"',
        f'    do script "{shell_line}"',
        "    activate",
        "  end tell",
        "end try",
    ])


def _run_osascript(script: str) -> None:
    try:
        result = subprocess.run(
            ["osascript", "-e", script],
            capture_output=True, text=True, timeout=OSASCRIPT_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ExternalToolError("osascript not found") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(f"osascript timed out after {OSASCRIPT_TIMEOUT}s") from e
    if result.returncode != 0:
        raise ExternalToolError(result.stderr.strip() or f"osascript exit {result.returncode}")


async def launch_terminal(path: str, command: str) -> None:
    if sys.platform != "darwin":
        raise ExternalToolError("launchTerminal is only supported on macOS")
    await asyncio.to_thread(_run_osascript, build_applescript(path, command))
