"""Agent -> coordinator events and the sink they are delivered through.

Components never talk to the websocket directly. They emit events on the
EventBus, which forwards them to whatever sink the Connection Manager has
installed. While disconnected the bus holds a NullSink: events are logged
locally and dropped.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

import websockets.exceptions

from core.models import LogStream, ProbeResult, ProcessStatus


# ---------------------------------------------------------------------------
# Event constructors
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def pong() -> dict:
    return {"type": "pong"}


def ping() -> dict:
    return {"type": "ping"}


def hello(agent_id: str, name: str, scan_root: str, version: str, platform: str) -> dict:
    return {
        "type": "hello",
        "agentId": agent_id,
        "name": name,
        "scanRoot": scan_root,
        "version": version,
        "platform": platform,
    }


def log(app_id: int, stream: LogStream, message: str) -> dict:
    return {
        "type": "log",
        "appId": app_id,
        "stream": stream.value,
        "message": message,
        "createdAt": _now_iso(),
    }


def status(app_id: int, state: ProcessStatus, pid: Optional[int] = None) -> dict:
    return {"type": "status", "appId": app_id, "status": state.value, "pid": pid}


def port(app_id: int, port_number: int) -> dict:
    return {"type": "port", "appId": app_id, "port": port_number}


def ack(request_id: str, ok: bool = True, error: Optional[str] = None) -> dict:
    event: dict[str, Any] = {"type": "ack", "requestId": request_id, "ok": ok}
    if error is not None:
        event["error"] = error
    return event


def scan_result(request_id: str, apps: Iterable) -> dict:
    return {"type": "scanResult", "requestId": request_id, "apps": [a.to_dict() for a in apps]}


def probe_result(request_id: str, results: Iterable[ProbeResult]) -> dict:
    return {"type": "probeResult", "requestId": request_id, "results": [r.to_dict() for r in results]}


def reconcile_result(request_id: str, statuses: Iterable[ProbeResult]) -> dict:
    return {
        "type": "reconcileResult",
        "requestId": request_id,
        "statuses": [s.to_dict() for s in statuses],
    }


def file_content(request_id: str, content: str) -> dict:
    return {"type": "fileContent", "requestId": request_id, "content": content}


def docker_containers(request_id: str, containers: Iterable) -> dict:
    return {
        "type": "docker:containers",
        "requestId": request_id,
        "containers": [c.to_dict() for c in containers],
    }


def vacant_port(request_id: str, port_number: int) -> dict:
    return {"type": "vacantPort", "requestId": request_id, "port": port_number}


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class EventSink(Protocol):
    def send(self, event: dict) -> None: ...


class NullSink:
    """Installed while disconnected. Drops every event after logging it."""

    def __init__(self, logger: logging.Logger) -> None:
        self.log = logger

    def send(self, event: dict) -> None:
        self.log.debug(f"Event (no connection): {event.get('type')} {event.get('appId', '')}")


class WebSocketSink:
    """Per-connection outbound queue drained by a single writer task.

    Keeps events in emission order. Anything still queued when the
    connection drops is discarded along with the sink.
    """

    def __init__(self, websocket, logger: logging.Logger) -> None:
        self._ws = websocket
        self.log = logger
        self._queue: asyncio.Queue[dict] = asyncio.Queue()

    def send(self, event: dict) -> None:
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Write queued events until cancelled or the socket closes."""
        while True:
            event = await self._queue.get()
            try:
                await self._ws.send(json.dumps(event))
            except websockets.exceptions.ConnectionClosed:
                self.log.debug(f"Connection closed, dropping {event.get('type')} and queued events")
                return


class EventBus:
    """Holds the active sink. Components emit through it by reference."""

    def __init__(self, logger: logging.Logger) -> None:
        self.log = logger
        self._null = NullSink(logger)
        self._sink: EventSink = self._null

    @property
    def connected(self) -> bool:
        return self._sink is not self._null

    def set_sink(self, sink: Optional[EventSink]) -> None:
        self._sink = sink if sink is not None else self._null

    def emit(self, event: dict) -> None:
        try:
            self._sink.send(event)
        except Exception as e:
            self.log.warning(f"Event dropped ({event.get('type')}): {e}")

    # -- Convenience helpers used by the supervisor --

    def log_line(self, app_id: int, stream: LogStream, message: str) -> None:
        self.emit(log(app_id, stream, message))

    def system(self, app_id: int, message: str) -> None:
        self.emit(log(app_id, LogStream.SYSTEM, message))

    def status(self, app_id: int, state: ProcessStatus, pid: Optional[int] = None) -> None:
        self.emit(status(app_id, state, pid))
