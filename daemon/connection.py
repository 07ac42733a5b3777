"""
Control-channel connection to the coordinator.

Keeps one websocket open at a time. On connect it installs itself as the
event sink, says hello and re-announces every managed process so the
coordinator can resync. On disconnect it removes the sink (events are
dropped until the next connect) and reconnects with exponential backoff.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Callable, Optional
from urllib.parse import quote

import websockets
import websockets.exceptions

from core.config import AGENT_VERSION, AgentConfig
from core.models import ProcessStatus
from daemon import events
from daemon.dispatcher import CommandDispatcher
from daemon.events import EventBus, WebSocketSink
from daemon.supervisor import ProcessSupervisor

INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0
HEARTBEAT_INTERVAL = 30.0
HANDSHAKE_TIMEOUT = 10.0
MAX_MESSAGE_SIZE = 16 * 2**20  # scan results and file contents can be large


class ConnectionManager:
    """Connect, heartbeat, reconnect; hand inbound messages to the dispatcher.

    Lifecycle:
        1. Created by the agent entry point with the shared EventBus
        2. run() loops forever: connect, serve, back off, reconnect
        3. stop() ends the loop and closes the current connection
    """

    def __init__(
        self,
        config: AgentConfig,
        event_bus: EventBus,
        dispatcher: CommandDispatcher,
        supervisor: ProcessSupervisor,
        logger: logging.Logger,
        *,
        connect: Callable[..., Any] = websockets.connect,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.config = config
        self.events = event_bus
        self.dispatcher = dispatcher
        self.supervisor = supervisor
        self.log = logger
        self._connect = connect
        self.heartbeat_interval = heartbeat_interval

        self.reconnect_delay = INITIAL_RECONNECT_DELAY
        self._running = False
        self._ws = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._handlers: set[asyncio.Task] = set()

    # -- Lifecycle --

    def build_uri(self) -> str:
        url = self.config.coordinator_url
        if not self.config.token:
            return url
        sep = "&" if "?" in url else "?"
        return f"{url}{sep}token={quote(self.config.token, safe='')}"

    def next_delay(self) -> float:
        """Delay before the next attempt; doubles up to the cap."""
        delay = self.reconnect_delay
        self.reconnect_delay = min(self.reconnect_delay * 2, MAX_RECONNECT_DELAY)
        return delay

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                await self._connect_and_serve()
            except websockets.exceptions.ConnectionClosed as e:
                self.log.info(f"Disconnected ({e})")
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                self.log.warning(f"Connection failed: {e}")
            except Exception as e:
                self.log.error(f"Unexpected connection error: {e!r}")
            finally:
                self._on_disconnect()

            if not self._running:
                break
            delay = self.next_delay()
            self.log.info(f"Reconnecting in {delay:.0f}s...")
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    # -- Connection --

    async def _connect_and_serve(self) -> None:
        self.log.info(f"Connecting to {self.config.coordinator_url} ...")
        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"

        async with self._connect(
            self.build_uri(),
            additional_headers=headers,
            open_timeout=HANDSHAKE_TIMEOUT,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
            max_size=MAX_MESSAGE_SIZE,
        ) as ws:
            self._on_connect(ws)
            async for raw in ws:
                self._on_message(raw)
        self.log.info("Connection closed by coordinator")

    def _on_connect(self, ws) -> None:
        self.log.info("Connected")
        self._ws = ws
        self.reconnect_delay = INITIAL_RECONNECT_DELAY

        sink = WebSocketSink(ws, self.log)
        self._writer = asyncio.create_task(sink.run())
        self.events.set_sink(sink)

        self.events.emit(events.hello(
            agent_id=self.config.agent_id,
            name=self.config.name,
            scan_root=str(self.config.scan_root),
            version=AGENT_VERSION,
            platform=sys.platform,
        ))
        for app_id, pid in self.supervisor.managed_apps():
            self.events.status(app_id, ProcessStatus.RUNNING, pid)

        self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    def _on_disconnect(self) -> None:
        self.events.set_sink(None)
        self._ws = None
        for task in (self._heartbeat, self._writer):
            if task is not None:
                task.cancel()
        self._heartbeat = None
        self._writer = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.events.emit(events.ping())

    # -- Inbound --

    def _on_message(self, raw) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.log.warning(f"Invalid JSON: {str(raw)[:100]}")
            return

        task = asyncio.create_task(self.dispatcher.handle(msg))
        self._handlers.add(task)
        task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handlers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(f"Handler error: {exc!r}")
