import os
import stat
from pathlib import Path

import pytest

from printops_agent import constants
from printops_agent.config import (
    ConfigurationStore,
    load_config,
    resolve_config_path,
)
from printops_agent.errors import ConfigurationError


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "printops-agent.cfg")

    assert config.is_ready is False
    assert config.heartbeat.interval_seconds == 30.0
    assert config.transport.use_realtime is True
    assert config.transport.reconnect_delay_seconds == 10.0
    assert config.transport.reconnect_backoff == "fixed"
    assert config.transport.request_timeout_seconds == 15.0
    assert config.commands.timeout_seconds == 300.0
    assert config.commands.duplicate_ttl_hours == 24.0
    assert config.provider.command_timeout_seconds == 120.0
    assert config.health.enabled is False
    assert config.logging.path == constants.DEFAULT_LOG_PATH


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "printops-agent.cfg"
    config_path.write_text(
        """
[agent]
agent_id = agent-42
api_key = secret-key
dashboard_url = https://ops.example.com/

[heartbeat]
interval_seconds = 45

[transport]
use_realtime = false
reconnect_backoff = exponential
reconnect_max_seconds = 120

[provider]
clear_queue_command = cancel -a {device}

[logging]
path =
        """.strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.is_ready is True
    assert config.identity.agent_id == "agent-42"
    assert config.identity.dashboard_url == "https://ops.example.com"
    assert config.heartbeat.interval_seconds == 45.0
    assert config.transport.use_realtime is False
    assert config.transport.reconnect_backoff == "exponential"
    assert config.transport.reconnect_max_seconds == 120.0
    assert config.provider.clear_queue_command == "cancel -a {device}"
    assert config.logging.path is None


def test_invalid_values_fall_back_to_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "printops-agent.cfg"
    config_path.write_text(
        "[heartbeat]\ninterval_seconds = soon\n"
        "[transport]\nuse_realtime = maybe\nreconnect_backoff = random\n"
        "[health]\nport = eighty\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.heartbeat.interval_seconds == 30.0
    assert config.transport.use_realtime is True
    assert config.transport.reconnect_backoff == "fixed"
    assert config.health.port == 0


def test_resolve_config_path_prefers_explicit_then_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_path = tmp_path / "env.cfg"
    monkeypatch.setenv(constants.CONFIG_PATH_ENV, str(env_path))

    assert resolve_config_path(tmp_path / "explicit.cfg") == tmp_path / "explicit.cfg"
    assert resolve_config_path() == env_path

    monkeypatch.delenv(constants.CONFIG_PATH_ENV)
    assert resolve_config_path() == constants.DEFAULT_CONFIG_PATH


def test_reconfigure_persists_and_swaps_identity(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "printops-agent.cfg"
    store = ConfigurationStore.from_path(config_path)
    assert store.is_ready is False

    identity = store.reconfigure(
        api_key="  secret-key ", dashboard_url="https://ops.example.com/"
    )

    assert store.is_ready is True
    assert store.identity() == identity
    assert identity.api_key == "secret-key"
    assert identity.dashboard_url == "https://ops.example.com"
    assert identity.agent_id

    reloaded = load_config(config_path)
    assert reloaded.identity == identity
    if os.name == "posix":
        assert stat.S_IMODE(config_path.stat().st_mode) == 0o600
    assert [p.name for p in config_path.parent.iterdir()] == ["printops-agent.cfg"]


def test_reconfigure_keeps_existing_agent_id(tmp_path: Path) -> None:
    config_path = tmp_path / "printops-agent.cfg"
    config_path.write_text("[agent]\nagent_id = agent-7\n", encoding="utf-8")
    store = ConfigurationStore.from_path(config_path)

    identity = store.reconfigure(api_key="k", dashboard_url="http://localhost:5000")

    assert identity.agent_id == "agent-7"


@pytest.mark.parametrize(
    "api_key, dashboard_url",
    [("", "https://ops.example.com"), ("key", "ftp://ops.example.com"), ("key", "")],
)
def test_reconfigure_rejects_invalid_values(
    tmp_path: Path, api_key: str, dashboard_url: str
) -> None:
    config_path = tmp_path / "printops-agent.cfg"
    store = ConfigurationStore.from_path(config_path)

    with pytest.raises(ConfigurationError):
        store.reconfigure(api_key=api_key, dashboard_url=dashboard_url)

    assert not config_path.exists()
    assert store.is_ready is False


def test_reload_picks_up_external_changes(tmp_path: Path) -> None:
    config_path = tmp_path / "printops-agent.cfg"
    store = ConfigurationStore.from_path(config_path)

    config_path.write_text(
        "[agent]\napi_key = k\ndashboard_url = http://localhost\n", encoding="utf-8"
    )

    assert store.reload() is True
    assert store.identity().dashboard_url == "http://localhost"


def test_failed_save_keeps_previous_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_path = tmp_path / "printops-agent.cfg"
    store = ConfigurationStore.from_path(config_path)
    store.reconfigure(api_key="first-key", dashboard_url="https://ops.example.com")
    before = config_path.read_text(encoding="utf-8")

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", fail_replace)
    with pytest.raises((OSError, ConfigurationError)):
        store.reconfigure(api_key="second-key", dashboard_url="https://ops.example.com")
    monkeypatch.undo()

    assert config_path.read_text(encoding="utf-8") == before
    assert [p.name for p in tmp_path.iterdir()] == ["printops-agent.cfg"]
