"""Core primitives for printops-agent."""

from .idempotency import CommandDisposition, CommandIdempotencyGuard
from .models import (
    AgentIdentity,
    Command,
    CommandId,
    CommandResult,
    ConsumableLevels,
    DeviceSnapshot,
    DeviceStatus,
    HeartbeatPayload,
)
from .protocols import DeviceCapabilityProvider, IdentitySource, StateListener
from .utils import wait_for_stop

__all__ = [
    "AgentIdentity",
    "Command",
    "CommandDisposition",
    "CommandId",
    "CommandIdempotencyGuard",
    "CommandResult",
    "ConsumableLevels",
    "DeviceCapabilityProvider",
    "DeviceSnapshot",
    "DeviceStatus",
    "HeartbeatPayload",
    "IdentitySource",
    "StateListener",
    "wait_for_stop",
]
