"""Tests for port and PID introspection."""

import os
import signal
import socket
import subprocess
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from daemon.ports import (
    find_vacant_port,
    first_vacant,
    is_alive,
    kill_process_group,
    listening_port_for_pid,
    listening_ports,
    pids_on_port,
)


def _conn(port: int, pid: int | None, status: str = psutil.CONN_LISTEN) -> SimpleNamespace:
    return SimpleNamespace(laddr=SimpleNamespace(ip="127.0.0.1", port=port), status=status, pid=pid)


@pytest.fixture
def listener():
    """A real listening socket owned by this process."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    yield sock.getsockname()[1]
    sock.close()


# ---------------------------------------------------------------------------
# Vacant port search
# ---------------------------------------------------------------------------


class TestFirstVacant:
    def test_nothing_used(self) -> None:
        assert first_vacant(set()) == 3000

    def test_skips_used(self) -> None:
        assert first_vacant({3000, 3001, 3003}) == 3002

    def test_ignores_ports_below_start(self) -> None:
        assert first_vacant({80, 443}) == 3000


class TestFindVacantPort:
    @patch("daemon.ports.listening_ports", return_value=set())
    def test_excluded_ports_are_skipped(self, _mock: MagicMock) -> None:
        assert find_vacant_port({3000, 3001}) == 3002

    @patch("daemon.ports.listening_ports", return_value={3000, 3002})
    def test_union_of_listening_and_excluded(self, _mock: MagicMock) -> None:
        assert find_vacant_port({3001}) == 3003


# ---------------------------------------------------------------------------
# Socket enumeration
# ---------------------------------------------------------------------------


class TestListeningPorts:
    @patch("daemon.ports.psutil.net_connections")
    def test_only_listen_sockets(self, mock_conns: MagicMock) -> None:
        mock_conns.return_value = [
            _conn(3000, 11),
            _conn(5432, None),
            _conn(50000, 12, status=psutil.CONN_ESTABLISHED),
        ]
        assert listening_ports() == {3000, 5432}

    @patch("daemon.ports.subprocess.run")
    @patch("daemon.ports.psutil.net_connections", side_effect=psutil.AccessDenied())
    def test_falls_back_to_lsof(self, _conns: MagicMock, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout=(
                "COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME\n"
                "node 123 me 20u IPv4 0x1 0t0 TCP *:3000 (LISTEN)\n"
                "node 123 me 21u IPv4 0x2 0t0 TCP 127.0.0.1:3000->127.0.0.1:50000 (ESTABLISHED)\n"
                "pg 456 me 5u IPv6 0x3 0t0 TCP [::1]:5432 (LISTEN)\n"
            ),
        )
        assert listening_ports() == {3000, 5432}

    def test_sees_real_listener(self, listener: int) -> None:
        assert listener in listening_ports()


class TestPidsOnPort:
    @patch("daemon.ports.psutil.net_connections")
    def test_filters_by_port(self, mock_conns: MagicMock) -> None:
        mock_conns.return_value = [_conn(3000, 11), _conn(3000, 11), _conn(3001, 12), _conn(3000, None)]
        assert pids_on_port(3000) == [11]

    @patch("daemon.ports.subprocess.run")
    @patch("daemon.ports.psutil.net_connections", side_effect=psutil.AccessDenied())
    def test_lsof_fallback(self, _conns: MagicMock, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="123\n456\n")
        assert pids_on_port(3000) == [123, 456]

    @patch("daemon.ports.subprocess.run", side_effect=FileNotFoundError("lsof"))
    @patch("daemon.ports.psutil.net_connections", side_effect=psutil.AccessDenied())
    def test_no_lsof_means_empty(self, _conns: MagicMock, _run: MagicMock) -> None:
        assert pids_on_port(3000) == []

    def test_real_listener_owned_by_us(self, listener: int) -> None:
        assert os.getpid() in pids_on_port(listener)


class TestListeningPortForPid:
    def test_own_listener(self, listener: int) -> None:
        assert listening_port_for_pid(os.getpid()) is not None

    def test_unknown_pid(self) -> None:
        with patch("daemon.ports.psutil.Process", side_effect=psutil.NoSuchProcess(999999)):
            assert listening_port_for_pid(999999) is None

    def test_checks_children(self) -> None:
        parent = MagicMock()
        parent.net_connections.return_value = []
        child = MagicMock()
        child.net_connections.return_value = [_conn(8080, 2)]
        parent.children.return_value = [child]
        with patch("daemon.ports.psutil.Process", return_value=parent):
            assert listening_port_for_pid(1) == 8080
        parent.children.assert_called_once_with(recursive=False)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class TestSignals:
    def test_is_alive_self(self) -> None:
        assert is_alive(os.getpid()) is True

    def test_is_alive_none(self) -> None:
        assert is_alive(None) is False

    def test_kill_process_group_terminates_group(self) -> None:
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        try:
            assert kill_process_group(proc.pid, signal.SIGTERM) is True
            assert proc.wait(timeout=5) == -signal.SIGTERM
        finally:
            if proc.poll() is None:
                proc.kill()

    def test_falls_back_to_single_pid(self) -> None:
        with patch("daemon.ports.os.killpg", side_effect=ProcessLookupError), \
             patch("daemon.ports.os.kill") as mock_kill:
            assert kill_process_group(4242, signal.SIGTERM) is True
        mock_kill.assert_called_once_with(4242, signal.SIGTERM)

    def test_gone_process(self) -> None:
        with patch("daemon.ports.os.killpg", side_effect=ProcessLookupError), \
             patch("daemon.ports.os.kill", side_effect=ProcessLookupError):
            assert kill_process_group(4242) is False

    def test_reaped_process_is_not_alive(self) -> None:
        proc = subprocess.Popen(["true"])
        proc.wait(timeout=5)
        time.sleep(0.05)
        assert is_alive(proc.pid) is False
