"""Tests for the agent entry point: logging setup, --scan and shutdown."""

import asyncio
import json
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from core.config import AgentConfig
from daemon import devdock_agent
from daemon.devdock_agent import DevdockAgent, main, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_rotating_file_and_console(self, tmp_path: Path, monkeypatch, restore_root_logger) -> None:
        monkeypatch.setattr(devdock_agent, "LOG_DIR", tmp_path / "logs")
        logger = setup_logging(verbose=True)

        assert logger.name == "devdock"
        new = logging.getLogger().handlers[-2:]
        rotating = [h for h in new if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 10 * 1024 * 1024
        assert rotating[0].backupCount == 5

        logger.info("hello from test")
        rotating[0].flush()
        assert "hello from test" in (tmp_path / "logs" / "agent.log").read_text()

    def test_console_level_follows_verbose(self, tmp_path: Path, monkeypatch, restore_root_logger) -> None:
        monkeypatch.setattr(devdock_agent, "LOG_DIR", tmp_path / "logs")
        setup_logging(verbose=False)
        console = logging.getLogger().handlers[-1]
        assert console.level == logging.INFO

    def test_client_libraries_quieted(self, tmp_path: Path, monkeypatch, restore_root_logger) -> None:
        monkeypatch.setattr(devdock_agent, "LOG_DIR", tmp_path / "logs")
        for name in ("httpx", "websockets"):
            monkeypatch.setattr(logging.getLogger(name), "level", logging.NOTSET)
        setup_logging(verbose=True)
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("websockets").level == logging.WARNING
        assert not logging.getLogger("httpx").isEnabledFor(logging.INFO)


class TestScanCommand:
    def test_prints_projects_as_json(self, tmp_path: Path, monkeypatch, capsys) -> None:
        monkeypatch.chdir(tmp_path)
        apps = tmp_path.resolve() / "apps"
        (apps / "web").mkdir(parents=True)
        (apps / "web" / "package.json").write_text(json.dumps({"scripts": {"dev": "vite --port 5173"}}))
        monkeypatch.setattr(sys, "argv", ["devdock-agent", "--scan", "--scan-root", str(apps)])

        assert main() == 0

        output = json.loads(capsys.readouterr().out)
        assert output == [{
            "name": "web",
            "localPath": str(apps / "web"),
            "port": 5173,
            "githubName": None,
            "githubUrl": None,
            "packageManager": None,
            "framework": None,
            "runtime": "node",
            "devCommand": "npm run dev",
            "projectType": "web-app",
        }]


class TestAgentLifecycle:
    @pytest.mark.asyncio
    async def test_sigterm_shuts_down_cleanly(self, tmp_path: Path, monkeypatch) -> None:
        pid_file = tmp_path / "agent.pid"
        monkeypatch.setattr(devdock_agent, "AGENT_DIR", tmp_path)
        monkeypatch.setattr(devdock_agent, "PID_FILE", pid_file)

        agent = DevdockAgent(AgentConfig("ws://test", "", "host", tmp_path), logging.getLogger("test.agent"))

        async def connect_forever():
            await asyncio.Event().wait()

        agent.connection.run = connect_forever
        agent.connection.stop = AsyncMock()
        agent.supervisor.shutdown = AsyncMock()

        task = asyncio.create_task(agent.start())
        for _ in range(100):
            if pid_file.exists():
                break
            await asyncio.sleep(0.01)
        assert pid_file.read_text() == str(os.getpid())

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(task, 2)

        agent.connection.stop.assert_awaited_once()
        agent.supervisor.shutdown.assert_awaited_once()
        assert not pid_file.exists()
        assert agent.events.connected is False
