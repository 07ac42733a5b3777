"""Port and PID introspection.

Finds listening TCP sockets on this machine and the processes that own
them. Uses psutil; when the OS refuses system-wide socket enumeration
(macOS without root) falls back to parsing `lsof` output.
"""

import logging
import os
import re
import signal
import subprocess
from typing import Iterable, Optional

import psutil

log = logging.getLogger("devdock.ports")

FIRST_CANDIDATE_PORT = 3000

_LSOF_LISTEN_RE = re.compile(r":(\d+)\s+\(LISTEN\)")


# ---------------------------------------------------------------------------
# Socket enumeration
# ---------------------------------------------------------------------------


def _lsof(args: list[str]) -> str:
    try:
        result = subprocess.run(
            ["lsof", *args], capture_output=True, text=True, timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        log.debug(f"lsof unavailable: {e}")
        return ""
    return result.stdout


def _listen_connections() -> list:
    """All TCP LISTEN sockets visible to psutil.

    Raises psutil.AccessDenied where the OS requires privileges.
    """
    return [
        c for c in psutil.net_connections(kind="tcp")
        if c.status == psutil.CONN_LISTEN and c.laddr
    ]


def listening_ports() -> set[int]:
    """Return every TCP port currently in LISTEN state on this host."""
    try:
        return {c.laddr.port for c in _listen_connections()}
    except psutil.AccessDenied:
        out = _lsof(["-i", "TCP", "-P", "-n"])
        ports = set()
        for line in out.splitlines():
            m = _LSOF_LISTEN_RE.search(line)
            if m:
                ports.add(int(m.group(1)))
        return ports


def first_vacant(used: Iterable[int], start: int = FIRST_CANDIDATE_PORT) -> int:
    """Smallest port >= start not in used."""
    taken = set(used)
    candidate = start
    while candidate in taken:
        candidate += 1
    return candidate


def find_vacant_port(exclude: Iterable[int] = ()) -> int:
    """Smallest port >= 3000 that is neither listening nor excluded."""
    return first_vacant(listening_ports() | set(exclude))


def pids_on_port(port: int) -> list[int]:
    """PIDs holding a LISTEN socket on the given port."""
    try:
        pids: list[int] = []
        for c in _listen_connections():
            if c.laddr.port == port and c.pid and c.pid not in pids:
                pids.append(c.pid)
        return pids
    except psutil.AccessDenied:
        out = _lsof(["-ti", f"TCP:{port}", "-s", "TCP:LISTEN"])
        return [int(p) for p in out.split() if p.isdigit()]


def listening_port_for_pid(pid: int) -> Optional[int]:
    """First LISTEN port owned by pid or one of its direct children."""
    try:
        proc = psutil.Process(pid)
        procs = [proc, *proc.children(recursive=False)]
    except psutil.Error:
        return None

    for p in procs:
        try:
            for c in p.net_connections(kind="tcp"):
                if c.status == psutil.CONN_LISTEN and c.laddr:
                    return c.laddr.port
        except (psutil.AccessDenied, psutil.NoSuchProcess):
            continue
    return None


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def is_alive(pid: Optional[int]) -> bool:
    """Zero-signal liveness check."""
    if not pid:
        return False
    return psutil.pid_exists(pid)


def kill_process_group(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal the process group led by pid, falling back to pid alone.

    Returns False when nothing could be signalled (already gone, or not
    ours to signal).
    """
    try:
        os.killpg(pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        pass
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        log.warning(f"Not permitted to signal PID {pid}")
        return False
