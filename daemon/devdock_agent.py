#!/usr/bin/env python3
"""
Devdock Agent - runs on the developer workstation.

Connects out to the devdock coordinator over a websocket and executes
lifecycle commands (start, stop, restart, install, build) against local
projects on its behalf. Also discovers projects under the scan root,
finds free ports, probes running apps and drives the local docker CLI.

Usage:
    python3 -m daemon.devdock_agent                 # foreground
    python3 -m daemon.devdock_agent --scan          # print discovered projects and exit

Config: DEVDOCK_URL, DEVDOCK_TOKEN, AGENT_NAME, SCAN_ROOT from the
        environment or ./config.env.
Logs:   ~/.devdock/logs/agent.log (rotated at 10MB)
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler

from core.config import AGENT_DIR, AGENT_VERSION, LOG_DIR, PID_FILE, AgentConfig, load_config
from daemon.connection import ConnectionManager
from daemon.dispatcher import CommandDispatcher
from daemon.events import EventBus
from daemon.scanner import scan_apps
from daemon.supervisor import ProcessSupervisor

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(verbose=False):
    """Send agent logs to LOG_DIR/agent.log and the console.

    The file keeps DEBUG detail such as events dropped while the
    coordinator is unreachable. The console shows INFO unless --verbose
    is given. Per-request chatter from httpx and websockets is held at
    WARNING so liveness checks and heartbeats do not flood either sink.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # agent.log rolls at 10MB, 5 backups
    file_handler = RotatingFileHandler(
        LOG_DIR / "agent.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for noisy in ("httpx", "httpcore", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger("devdock")


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class DevdockAgent:
    """Wires the components together and owns the agent's lifetime."""

    def __init__(self, config: AgentConfig, logger: logging.Logger):
        self.config = config
        self.log = logger
        self.events = EventBus(logger)
        self.supervisor = ProcessSupervisor(self.events, logger)
        self.dispatcher = CommandDispatcher(self.supervisor, self.events, config, logger)
        self.connection = ConnectionManager(
            config, self.events, self.dispatcher, self.supervisor, logger,
        )

    async def start(self):
        AGENT_DIR.mkdir(parents=True, exist_ok=True)
        PID_FILE.write_text(str(os.getpid()))

        self.log.info(f"Devdock Agent v{AGENT_VERSION} starting")
        self.log.info(f"Name: {self.config.name}")
        self.log.info(f"Scan root: {self.config.scan_root}")
        self.log.info(f"Target: {self.config.coordinator_url}")
        if not self.config.token:
            self.log.warning("DEVDOCK_TOKEN not set; connecting without credentials")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig, stop_event)

        runner = asyncio.create_task(self.connection.run())
        try:
            await stop_event.wait()
        finally:
            self.events.set_sink(None)
            await self.connection.stop()
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
            await self.supervisor.shutdown()
            PID_FILE.unlink(missing_ok=True)
            self.log.info("Agent stopped")

    def _on_signal(self, sig, stop_event):
        self.log.info(f"Received {signal.Signals(sig).name}, shutting down...")
        stop_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main():
    parser = argparse.ArgumentParser(description="Devdock Agent")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--scan-root", help="Override the project scan root")
    parser.add_argument("--scan", action="store_true",
                        help="Print discovered projects as JSON and exit")
    args = parser.parse_args()

    config = load_config(scan_root=args.scan_root)

    if args.scan:
        apps = scan_apps(config.scan_root)
        print(json.dumps([a.to_dict() for a in apps], indent=2))
        return 0

    log = setup_logging(verbose=args.verbose)
    agent = DevdockAgent(config, log)
    asyncio.run(agent.start())
    return 0


if __name__ == "__main__":
    sys.exit(main())
