"""Configuration loader for printops-agent."""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import uuid
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .core.models import AgentIdentity
from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

RECONNECT_BACKOFF_POLICIES = ("fixed", "exponential")


@dataclass(slots=True)
class AgentSection:
    agent_id: str = ""
    api_key: str = ""
    dashboard_url: str = constants.DEFAULT_DASHBOARD_URL


@dataclass(slots=True)
class HeartbeatConfig:
    interval_seconds: float = 30.0


@dataclass(slots=True)
class TransportConfig:
    use_realtime: bool = True
    reconnect_delay_seconds: float = 10.0
    reconnect_backoff: str = "fixed"
    reconnect_max_seconds: float = 60.0
    reconnect_jitter_ratio: float = 0.0
    request_timeout_seconds: float = 15.0
    readiness_poll_seconds: float = 5.0


@dataclass(slots=True)
class CommandConfig:
    timeout_seconds: float = 300.0
    duplicate_ttl_hours: float = 24.0
    download_timeout_seconds: float = 300.0


@dataclass(slots=True)
class ProviderConfig:
    list_command: str = ""
    restart_command: str = ""
    clear_queue_command: str = ""
    test_output_command: str = ""
    install_driver_command: str = ""
    command_timeout_seconds: float = 120.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class AgentConfig:
    agent: AgentSection
    heartbeat: HeartbeatConfig
    transport: TransportConfig
    commands: CommandConfig
    provider: ProviderConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path

    @property
    def is_ready(self) -> bool:
        return bool(self.agent.api_key.strip() and self.agent.dashboard_url.strip())

    @property
    def identity(self) -> AgentIdentity:
        return AgentIdentity(
            agent_id=self.agent.agent_id,
            api_key=self.agent.api_key,
            dashboard_url=self.agent.dashboard_url.rstrip("/"),
        )


def resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return path
    env_value = os.environ.get(constants.CONFIG_PATH_ENV)
    if env_value:
        return Path(env_value).expanduser()
    return constants.DEFAULT_CONFIG_PATH


def load_config(path: Optional[Path] = None) -> AgentConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = resolve_config_path(path)
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "agent": {
                "agent_id": "",
                "api_key": "",
                "dashboard_url": constants.DEFAULT_DASHBOARD_URL,
            },
            "heartbeat": {
                "interval_seconds": "30",
            },
            "transport": {
                "use_realtime": "true",
                "reconnect_delay_seconds": "10",
                "reconnect_backoff": "fixed",
                "reconnect_max_seconds": "60",
                "reconnect_jitter_ratio": "0.0",
                "request_timeout_seconds": "15",
                "readiness_poll_seconds": "5",
            },
            "commands": {
                "timeout_seconds": "300",
                "duplicate_ttl_hours": "24",
                "download_timeout_seconds": "300",
            },
            "provider": {
                "list_command": "",
                "restart_command": "",
                "clear_queue_command": "",
                "test_output_command": "",
                "install_driver_command": "",
                "command_timeout_seconds": "120",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        try:
            parser.read(config_path, encoding="utf-8")
        except Exception as exc:
            LOGGER.error("Failed to read configuration %s: %s", config_path, exc)
    else:
        LOGGER.debug("Configuration file not found at %s", config_path)

    agent = AgentSection(
        agent_id=parser.get("agent", "agent_id", fallback="").strip(),
        api_key=parser.get("agent", "api_key", fallback="").strip(),
        dashboard_url=parser.get("agent", "dashboard_url", fallback="").strip().rstrip("/"),
    )

    heartbeat = HeartbeatConfig(
        interval_seconds=max(
            1.0, _get_float(parser, "heartbeat", "interval_seconds", 30.0)
        ),
    )

    backoff = parser.get("transport", "reconnect_backoff", fallback="fixed").strip().lower()
    if backoff not in RECONNECT_BACKOFF_POLICIES:
        LOGGER.warning("Unknown reconnect_backoff %r; using 'fixed'", backoff)
        backoff = "fixed"

    transport = TransportConfig(
        use_realtime=_get_bool(parser, "transport", "use_realtime", True),
        reconnect_delay_seconds=max(
            0.0, _get_float(parser, "transport", "reconnect_delay_seconds", 10.0)
        ),
        reconnect_backoff=backoff,
        reconnect_max_seconds=max(
            0.0, _get_float(parser, "transport", "reconnect_max_seconds", 60.0)
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(1.0, _get_float(parser, "transport", "reconnect_jitter_ratio", 0.0)),
        ),
        request_timeout_seconds=max(
            1.0, _get_float(parser, "transport", "request_timeout_seconds", 15.0)
        ),
        readiness_poll_seconds=max(
            0.1, _get_float(parser, "transport", "readiness_poll_seconds", 5.0)
        ),
    )

    commands = CommandConfig(
        timeout_seconds=max(
            1.0, _get_float(parser, "commands", "timeout_seconds", 300.0)
        ),
        duplicate_ttl_hours=max(
            0.0, _get_float(parser, "commands", "duplicate_ttl_hours", 24.0)
        ),
        download_timeout_seconds=max(
            1.0, _get_float(parser, "commands", "download_timeout_seconds", 300.0)
        ),
    )

    provider = ProviderConfig(
        list_command=parser.get("provider", "list_command", fallback=""),
        restart_command=parser.get("provider", "restart_command", fallback=""),
        clear_queue_command=parser.get("provider", "clear_queue_command", fallback=""),
        test_output_command=parser.get("provider", "test_output_command", fallback=""),
        install_driver_command=parser.get(
            "provider", "install_driver_command", fallback=""
        ),
        command_timeout_seconds=max(
            1.0, _get_float(parser, "provider", "command_timeout_seconds", 120.0)
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=_get_bool(parser, "logging", "log_network", False),
    )

    health = HealthConfig(
        enabled=_get_bool(parser, "health", "enabled", False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=_get_int(parser, "health", "port", 0),
    )

    return AgentConfig(
        agent=agent,
        heartbeat=heartbeat,
        transport=transport,
        commands=commands,
        provider=provider,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: AgentConfig) -> None:
    """Persist the current configuration to disk.

    The file is written next to its destination and swapped in with
    ``os.replace`` so readers never observe a half-written file.
    """

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{config_path.name}.", dir=str(config_path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as stream:
            config.raw.write(stream)
        if hasattr(os, "chmod"):
            os.chmod(tmp_name, 0o600)  # holds the API key
        os.replace(tmp_name, config_path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class ConfigurationStore:
    """Owns the loaded configuration and the agent identity derived from it.

    Other components receive :meth:`identity` as a callable and never hold a
    reference they could mutate. :meth:`reconfigure` is the only writer.
    """

    def __init__(self, config: AgentConfig) -> None:
        self._config = config
        self._identity = config.identity

    @classmethod
    def from_path(cls, path: Optional[Path] = None) -> "ConfigurationStore":
        return cls(load_config(path))

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def path(self) -> Path:
        return self._config.path

    @property
    def is_ready(self) -> bool:
        return self._config.is_ready

    def identity(self) -> AgentIdentity:
        return self._identity

    def reload(self) -> bool:
        """Re-read the configuration file; returns the new readiness."""
        config = load_config(self._config.path)
        self._config = config
        self._identity = config.identity
        return config.is_ready

    def reconfigure(
        self,
        *,
        api_key: str,
        dashboard_url: str,
        agent_id: Optional[str] = None,
    ) -> AgentIdentity:
        """Persist new credentials and atomically replace the identity."""

        api_key = (api_key or "").strip()
        dashboard_url = (dashboard_url or "").strip().rstrip("/")
        if not api_key:
            raise ConfigurationError("API key cannot be empty")
        if not dashboard_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Dashboard URL must start with http:// or https://: {dashboard_url!r}"
            )

        config = self._config
        if not config.raw.has_section("agent"):
            config.raw.add_section("agent")

        resolved_agent_id = (
            (agent_id or config.agent.agent_id or "").strip() or str(uuid.uuid4())
        )
        config.raw.set("agent", "api_key", api_key)
        config.raw.set("agent", "dashboard_url", dashboard_url)
        config.raw.set("agent", "agent_id", resolved_agent_id)

        save_config(config)

        config.agent = AgentSection(
            agent_id=resolved_agent_id,
            api_key=api_key,
            dashboard_url=dashboard_url,
        )
        self._identity = config.identity
        LOGGER.info("Configuration saved to %s", config.path)
        return self._identity


def _get_float(parser: ConfigParser, section: str, option: str, default: float) -> float:
    try:
        return parser.getfloat(section, option, fallback=default)
    except ValueError:
        LOGGER.warning("Invalid value for [%s] %s; using %s", section, option, default)
        return default


def _get_int(parser: ConfigParser, section: str, option: str, default: int) -> int:
    try:
        return parser.getint(section, option, fallback=default)
    except ValueError:
        LOGGER.warning("Invalid value for [%s] %s; using %s", section, option, default)
        return default


def _get_bool(parser: ConfigParser, section: str, option: str, default: bool) -> bool:
    try:
        return parser.getboolean(section, option, fallback=default)
    except ValueError:
        LOGGER.warning("Invalid value for [%s] %s; using %s", section, option, default)
        return default

