"""
Reconciliation and probing.

The coordinator keeps its own idea of which apps are running. These
functions re-confirm that belief against the host: signal-0 checks for
known PIDs and an HTTP request for apps that declare a port. A failed
check is evidence the app is down, never an agent fault.
"""

import asyncio
import logging
import signal
from typing import Optional

import httpx

from core.models import ProbeableApp, ProbeResult, ProcessStatus
from daemon.ports import is_alive, kill_process_group, pids_on_port
from daemon.supervisor import ProcessSupervisor

HTTP_PROBE_TIMEOUT = 2.5

log = logging.getLogger("devdock.reconcile")


def _running(app_id: int, pid: Optional[int]) -> ProbeResult:
    return ProbeResult(app_id, ProcessStatus.RUNNING, pid)


def _stopped(app_id: int) -> ProbeResult:
    return ProbeResult(app_id, ProcessStatus.STOPPED, None)


async def is_http_up(port: int, timeout: float = HTTP_PROBE_TIMEOUT) -> bool:
    """True if anything answers HTTP on 127.0.0.1:port.

    Any response counts, whatever its status code. Redirects are not
    followed. Connection failures and timeouts mean down. Proxy settings
    from the environment are ignored so the request reaches the port.
    """
    try:
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=False, trust_env=False,
        ) as client:
            await client.get(f"http://127.0.0.1:{port}/")
    except httpx.HTTPError:
        return False
    return True


async def _probe_port(app_id: int, port: int) -> ProbeResult:
    if await is_http_up(port):
        pids = await asyncio.to_thread(pids_on_port, port)
        return _running(app_id, pids[0] if pids else None)
    return _stopped(app_id)


def _probe_pid(app_id: int, pid: int) -> ProbeResult:
    return _running(app_id, pid) if is_alive(pid) else _stopped(app_id)


async def probe_app(app: ProbeableApp) -> Optional[ProbeResult]:
    """Probe one app without touching the process table.

    Returns None for apps with neither a port nor a pid: there is nothing
    to check.
    """
    if app.port:
        return await _probe_port(app.id, app.port)
    if app.pid:
        return _probe_pid(app.id, app.pid)
    return None


async def probe_apps(apps: list[ProbeableApp]) -> list[ProbeResult]:
    """Probe all apps concurrently; apps with nothing to check are omitted."""
    results = await asyncio.gather(*(probe_app(app) for app in apps))
    return [r for r in results if r is not None]


async def reconcile(supervisor: ProcessSupervisor, running_apps: list[ProbeableApp]) -> list[ProbeResult]:
    """Reconcile the process table against the apps the coordinator believes are running.

    1. Managed processes for apps not in the list are terminated and forgotten.
    2. Managed apps in the list are confirmed alive, or forgotten as stale.
    3. Unmanaged apps are checked over HTTP (by port) or by signal-0 (by pid).

    Returns one result per input app, in input order.
    """
    wanted = {app.id for app in running_apps}

    for managed in supervisor.managed():
        if managed.app_id in wanted:
            continue
        if is_alive(managed.pid):
            kill_process_group(managed.pid, signal.SIGTERM)
            log.info(f"Reconcile: terminated orphan app {managed.app_id} (PID {managed.pid})")
        supervisor.forget(managed.app_id)

    results: list[ProbeResult] = []
    for app in running_apps:
        managed = supervisor.get(app.id)
        if managed is not None:
            if is_alive(managed.pid):
                results.append(_running(app.id, managed.pid))
            else:
                supervisor.forget(app.id)
                results.append(_stopped(app.id))
            continue

        if app.port:
            results.append(await _probe_port(app.id, app.port))
        elif app.pid:
            results.append(_probe_pid(app.id, app.pid))
        else:
            results.append(_stopped(app.id))

    return results
