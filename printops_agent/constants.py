"""Constants used across the printops-agent package."""

from __future__ import annotations

from pathlib import Path

from . import __version__

APP_NAME = "printops-agent"
AGENT_VERSION = __version__

DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path("/etc/printops") / DEFAULT_CONFIG_FILENAME
CONFIG_PATH_ENV = "PRINTOPS_AGENT_CONFIG"

DEFAULT_LOG_PATH = Path("/var/log/printops") / f"{APP_NAME}.log"

DEFAULT_DASHBOARD_URL = ""
API_KEY_HEADER = "X-API-Key"

HEARTBEAT_PATH = "/api/agents/heartbeat"
COMMAND_RESULT_PATH = "/api/agents/command/{command_id}/result"
REALTIME_PATH = "/ws/agent"
