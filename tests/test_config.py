"""Tests for core.config module."""

from pathlib import Path

import pytest

from core.config import (
    AGENT_DIR,
    DEFAULT_COORDINATOR_URL,
    LOG_DIR,
    PID_FILE,
    AgentConfig,
    load_config,
    source_env_file,
)

_ENV_KEYS = ("DEVDOCK_URL", "DEVDOCK_TOKEN", "AGENT_NAME", "SCAN_ROOT", "DEVDOCK_TERMINAL_COMMAND")


@pytest.fixture(autouse=True)
def _clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """No stray env vars or config.env from the developer's machine."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def test_agent_dir_is_under_home():
    assert str(AGENT_DIR).endswith(".devdock")
    assert AGENT_DIR.parent == Path.home()


def test_log_dir_and_pid_file_under_agent_dir():
    assert LOG_DIR.parent == AGENT_DIR
    assert PID_FILE.parent == AGENT_DIR


# ---------------------------------------------------------------------------
# source_env_file
# ---------------------------------------------------------------------------


class TestSourceEnvFile:
    def test_parses_mapped_keys(self, tmp_path: Path) -> None:
        env = tmp_path / "config.env"
        env.write_text('# comment\n\nSCAN_ROOT="/srv/apps"\nOTHER=1\nbroken line\n')
        config: dict = {}
        source_env_file(env, config, {"SCAN_ROOT": ("scan_root", str)})
        assert config == {"scan_root": "/srv/apps"}

    def test_export_prefix(self, tmp_path: Path) -> None:
        env = tmp_path / "config.env"
        env.write_text("export DEVDOCK_TOKEN='abc'\n#export AGENT_NAME=skipped\n")
        config: dict = {}
        source_env_file(env, config, {"DEVDOCK_TOKEN": ("token", str), "AGENT_NAME": ("name", str)})
        assert config == {"token": "abc"}

    def test_ignores_uncastable_values(self, tmp_path: Path) -> None:
        env = tmp_path / "config.env"
        env.write_text("PORT=abc\n")
        config: dict = {"port": 1}
        source_env_file(env, config, {"PORT": ("port", int)})
        assert config["port"] == 1


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_defaults(self) -> None:
        config = load_config()
        assert config.coordinator_url == DEFAULT_COORDINATOR_URL
        assert config.token == ""
        assert config.name
        assert config.agent_id == "local"

    def test_env_overrides_config_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        (tmp_path / "config.env").write_text("AGENT_NAME=from-file\nSCAN_ROOT=/from/file\n")
        monkeypatch.setenv("AGENT_NAME", "from-env")
        config = load_config()
        assert config.name == "from-env"
        assert config.scan_root == Path("/from/file")

    def test_config_file_in_dot_devdock(self, tmp_path: Path) -> None:
        (tmp_path / ".devdock").mkdir()
        (tmp_path / ".devdock" / "config.env").write_text("DEVDOCK_URL=ws://coord:9/ws\n")
        assert load_config().coordinator_url == "ws://coord:9/ws"

    def test_scan_root_override_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCAN_ROOT", "/from/env")
        assert load_config(scan_root="/cli").scan_root == Path("/cli")

    def test_relative_scan_root_made_absolute(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCAN_ROOT", "projects")
        assert load_config().scan_root == (tmp_path / "projects").resolve()
        assert load_config(scan_root="../elsewhere").scan_root == (tmp_path.parent / "elsewhere").resolve()

    def test_home_relative_scan_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCAN_ROOT", "~/Apps")
        assert load_config().scan_root == (Path.home() / "Apps").resolve()

    def test_agent_id_is_token_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEVDOCK_TOKEN", "abcdef0123456789")
        assert load_config().agent_id == "abcdef01"

    def test_config_is_immutable(self) -> None:
        config = AgentConfig("ws://x", "", "n", Path("/tmp"))
        with pytest.raises(AttributeError):
            config.token = "changed"  # type: ignore[misc]
