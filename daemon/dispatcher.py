"""
Command dispatcher.

Routes decoded coordinator commands to the component that executes them
and sends the response. Two response disciplines:

- Lifecycle commands (start, stop, restart, install, build) are acked as
  soon as they are accepted and then run in the background. Their
  outcome is only visible through the log/status event stream.
- Every other command is awaited and answered with exactly one result
  event, or a negative ack carrying the error text.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from core.config import AgentConfig
from core.models import AppConfig, ProbeableApp
from daemon import docker, events
from daemon.events import EventBus
from daemon.ports import find_vacant_port
from daemon.reconcile import probe_apps, reconcile
from daemon.scanner import scan_apps
from daemon.supervisor import ProcessSupervisor
from daemon.terminal import launch_terminal

LIFECYCLE_COMMANDS = frozenset({"start", "stop", "restart", "install", "build"})

RequestHandler = Callable[[str, dict], Awaitable[dict]]


class CommandDispatcher:
    """Decodes inbound messages and executes them."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        event_bus: EventBus,
        config: AgentConfig,
        logger: logging.Logger,
    ) -> None:
        self.supervisor = supervisor
        self.events = event_bus
        self.config = config
        self.log = logger
        self._background: set[asyncio.Task] = set()

        self._lifecycle: dict[str, Callable[[AppConfig, dict], Awaitable[Any]]] = {
            "start": lambda app, msg: self.supervisor.start(app),
            "stop": lambda app, msg: self.supervisor.stop(app),
            "restart": lambda app, msg: self.supervisor.restart(app),
            "install": lambda app, msg: self.supervisor.install_deps(app, bool(msg.get("force", False))),
            "build": lambda app, msg: self.supervisor.build_app(app, bool(msg.get("thenStart", False))),
        }
        self._requests: dict[str, RequestHandler] = {
            "scan": self._handle_scan,
            "probe": self._handle_probe,
            "reconcile": self._handle_reconcile,
            "readFile": self._handle_read_file,
            "docker:list": self._handle_docker_list,
            "docker:start": self._handle_docker_start,
            "docker:stop": self._handle_docker_stop,
            "launchTerminal": self._handle_launch_terminal,
            "vacantPort": self._handle_vacant_port,
        }

    @property
    def pending(self) -> int:
        """Number of lifecycle operations still running in the background."""
        return len(self._background)

    # --- Entry point ---

    async def handle(self, msg: Any) -> None:
        """Execute one decoded message."""
        if not isinstance(msg, dict):
            self.log.warning(f"Discarding non-object message: {str(msg)[:100]}")
            return

        msg_type = msg.get("type", "")
        if msg_type == "ping":
            self.events.emit(events.pong())
            return

        if msg_type not in LIFECYCLE_COMMANDS and msg_type not in self._requests:
            self.log.warning(f"Discarding unknown message type: {msg_type!r}")
            return

        request_id = msg.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            self.log.warning(f"Discarding {msg_type} without requestId")
            return

        if msg_type in LIFECYCLE_COMMANDS:
            self._accept_lifecycle(msg_type, request_id, msg)
            return

        handler = self._requests[msg_type]
        try:
            response = await handler(request_id, msg)
        except Exception as e:
            self.log.warning(f"{msg_type} {request_id} failed: {e}")
            response = events.ack(request_id, ok=False, error=str(e) or type(e).__name__)
        self.events.emit(response)

    # --- Lifecycle (ack first, run in background) ---

    def _accept_lifecycle(self, msg_type: str, request_id: str, msg: dict) -> None:
        try:
            app = AppConfig.from_dict(msg["app"])
        except (KeyError, TypeError, ValueError) as e:
            self.events.emit(events.ack(request_id, ok=False, error=f"Malformed app: {e}"))
            return

        self.events.emit(events.ack(request_id))
        operation = self._lifecycle[msg_type](app, msg)
        task = asyncio.create_task(self._run_lifecycle(msg_type, app, operation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_lifecycle(self, msg_type: str, app: AppConfig, operation: Awaitable[Any]) -> None:
        try:
            await operation
        except Exception as e:
            self.log.error(f"{msg_type} app {app.id} ({app.name}) failed: {e}")
            self.events.system(app.id, f"{msg_type.capitalize()} error: {e}")

    async def wait_background(self) -> None:
        """Wait for in-flight lifecycle operations (tests and shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Request handlers ---

    async def _handle_scan(self, request_id: str, msg: dict) -> dict:
        apps = await asyncio.to_thread(scan_apps, self.config.scan_root)
        return events.scan_result(request_id, apps)

    async def _handle_probe(self, request_id: str, msg: dict) -> dict:
        apps = [ProbeableApp.from_dict(a) for a in msg.get("apps") or []]
        return events.probe_result(request_id, await probe_apps(apps))

    async def _handle_reconcile(self, request_id: str, msg: dict) -> dict:
        apps = [ProbeableApp.from_dict(a) for a in msg.get("runningApps") or []]
        statuses = await reconcile(self.supervisor, apps)
        return events.reconcile_result(request_id, statuses)

    async def _handle_read_file(self, request_id: str, msg: dict) -> dict:
        path = Path(str(msg["path"])).expanduser()
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return events.file_content(request_id, content)

    async def _handle_docker_list(self, request_id: str, msg: dict) -> dict:
        return events.docker_containers(request_id, await docker.list_containers())

    async def _handle_docker_start(self, request_id: str, msg: dict) -> dict:
        await docker.start_container(str(msg["containerId"]))
        return events.ack(request_id)

    async def _handle_docker_stop(self, request_id: str, msg: dict) -> dict:
        await docker.stop_container(str(msg["containerId"]))
        return events.ack(request_id)

    async def _handle_launch_terminal(self, request_id: str, msg: dict) -> dict:
        await launch_terminal(str(msg["path"]), self.config.terminal_command)
        return events.ack(request_id)

    async def _handle_vacant_port(self, request_id: str, msg: dict) -> dict:
        used = {int(p) for p in msg.get("usedPorts") or []}
        port = await asyncio.to_thread(find_vacant_port, used)
        return events.vacant_port(request_id, port)
