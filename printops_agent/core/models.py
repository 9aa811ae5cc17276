"""Domain models for heartbeats and commands.

Wire payloads use the dashboard's camelCase keys; ``as_dict`` and
``from_dict`` are the only places that know about them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..errors import CommandParseError

CommandId = Union[int, str]


class DeviceStatus(str, Enum):
    ONLINE = "online"
    WARNING = "warning"
    ERROR = "error"
    OFFLINE = "offline"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any) -> "DeviceStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


HEALTHY_STATUSES = frozenset({DeviceStatus.ONLINE, DeviceStatus.WARNING})


@dataclass(frozen=True, slots=True)
class AgentIdentity:
    """Credentials used to reach the dashboard."""

    agent_id: str
    api_key: str
    dashboard_url: str


@dataclass(frozen=True, slots=True)
class ConsumableLevels:
    cyan: int = 0
    magenta: int = 0
    yellow: int = 0
    black: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"c": self.cyan, "m": self.magenta, "y": self.yellow, "k": self.black}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConsumableLevels":
        return cls(
            cyan=_as_int(data.get("c")),
            magenta=_as_int(data.get("m")),
            yellow=_as_int(data.get("y")),
            black=_as_int(data.get("k")),
        )


@dataclass(frozen=True, slots=True)
class DeviceSnapshot:
    """Point-in-time state of one managed device."""

    name: str
    model: str = "Unknown"
    manufacturer: str = "Generic"
    port: str = "Unknown"
    status: DeviceStatus = DeviceStatus.UNKNOWN
    driver_version: str = ""
    driver_status: str = "current"
    consumable_levels: Optional[ConsumableLevels] = None
    pending_job_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "manufacturer": self.manufacturer,
            "port": self.port,
            "status": self.status.value,
            "driverVersion": self.driver_version,
            "driverStatus": self.driver_status,
            "inkLevels": (
                self.consumable_levels.as_dict()
                if self.consumable_levels is not None
                else None
            ),
            "jobCount": self.pending_job_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeviceSnapshot":
        name = data.get("name")
        if not name:
            raise ValueError("Device entry is missing a name")

        levels = data.get("inkLevels")
        return cls(
            name=str(name),
            model=str(data.get("model") or "Unknown"),
            manufacturer=str(data.get("manufacturer") or "Generic"),
            port=str(data.get("port") or "Unknown"),
            status=DeviceStatus.coerce(data.get("status", "unknown")),
            driver_version=str(data.get("driverVersion") or ""),
            driver_status=str(data.get("driverStatus") or "current"),
            consumable_levels=(
                ConsumableLevels.from_dict(levels) if isinstance(levels, Mapping) else None
            ),
            pending_job_count=_as_int(data.get("jobCount")),
        )


@dataclass(slots=True)
class HeartbeatPayload:
    agent_id: str
    hostname: str
    os_descriptor: str
    agent_version: str
    ip_address: str
    devices: Sequence[DeviceSnapshot] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "hostname": self.hostname,
            "osVersion": self.os_descriptor,
            "agentVersion": self.agent_version,
            "ipAddress": self.ip_address,
            "printers": [device.as_dict() for device in self.devices],
        }


@dataclass(frozen=True, slots=True)
class Command:
    """Dashboard-issued instruction; ``id`` correlates exactly one result."""

    id: CommandId
    kind: str
    device_id: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "Command":
        if not isinstance(data, Mapping):
            raise CommandParseError("Command must be a JSON object")

        command_id = data.get("id")
        if command_id is None or isinstance(command_id, bool) or command_id == "":
            raise CommandParseError("Command is missing an id")
        if not isinstance(command_id, (int, str)):
            raise CommandParseError(f"Unsupported command id: {command_id!r}")

        kind = data.get("kind") or data.get("commandType") or ""
        if not isinstance(kind, str) or not kind.strip():
            raise CommandParseError("Command is missing a kind", command_id=command_id)

        payload = data.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise CommandParseError(
                "Command payload must be an object", command_id=command_id
            )

        device_id = data.get("deviceId")
        return cls(
            id=command_id,
            kind=kind.strip(),
            device_id=str(device_id) if device_id not in (None, "") else None,
            payload=dict(payload),
        )


@dataclass(slots=True)
class CommandResult:
    success: bool
    message: str = ""
    device_id: Optional[str] = None
    actions_taken: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "deviceId": self.device_id,
            "actionsTaken": list(self.actions_taken),
        }


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
