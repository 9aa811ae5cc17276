"""Command idempotency guard for preventing duplicate execution.

The dashboard can hand the same command to the agent twice: once over the
real-time channel and again in a heartbeat acknowledgement when the channel
dropped before the result arrived. The guard tracks command ids so a command
runs at most once, and remembers its result so a failed delivery can be
retried without executing the command again.

Key features:
- TTL-based expiration (default 24 hours)
- Bounded memory with periodic cleanup
- Safe for use from a single asyncio event loop
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

from .models import CommandId, CommandResult

LOGGER = logging.getLogger(__name__)


class CommandDisposition(str, Enum):
    """What to do with an incoming command id."""

    EXECUTE = "execute"
    """First sighting; run the command."""

    REDELIVER = "redeliver"
    """Already executed but its result never reached the dashboard."""

    DROP = "drop"
    """In flight or already delivered; ignore."""


@dataclass(slots=True)
class ProcessedCommand:
    """Record of a command seen by the agent."""

    command_id: str
    received_at: datetime
    result: Optional[CommandResult] = None
    delivered: bool = False
    delivering: bool = False

    @property
    def completed(self) -> bool:
        return self.result is not None


class CommandIdempotencyGuard:
    """
    Tracks command ids to prevent duplicate execution.
    Uses an in-memory dict with TTL-based expiration.

    Usage:
        guard = CommandIdempotencyGuard(ttl_hours=24)

        disposition = guard.begin(command.id)
        if disposition is CommandDisposition.DROP:
            return
        if disposition is CommandDisposition.REDELIVER:
            result = guard.get_cached_result(command.id)
        else:
            result = await dispatcher.handle(command)
            guard.complete(command.id, result)

        delivered = await deliver(command.id, result)
        guard.mark_delivered(command.id, delivered)
    """

    def __init__(
        self,
        ttl_hours: float = 24,
        max_entries: int = 10000,
        cleanup_interval: int = 100,
    ) -> None:
        """
        Initialize the idempotency guard.

        Args:
            ttl_hours: Time-to-live for tracked entries (default 24 hours).
            max_entries: Maximum entries before forced cleanup (memory safety).
            cleanup_interval: Run cleanup every N operations.
        """
        self._entries: Dict[str, ProcessedCommand] = {}
        self._ttl = timedelta(hours=ttl_hours)
        self._max_entries = max_entries
        self._cleanup_interval = max(1, cleanup_interval)
        self._operation_count = 0

    def begin(self, command_id: CommandId) -> CommandDisposition:
        """Register a sighting of ``command_id`` and decide how to treat it."""
        self._maybe_cleanup()
        key = _key(command_id)

        entry = self._entries.get(key)
        if entry is not None and self._is_expired(entry):
            del self._entries[key]
            entry = None

        if entry is None:
            self._entries[key] = ProcessedCommand(
                command_id=key, received_at=_utcnow()
            )
            return CommandDisposition.EXECUTE

        if not entry.completed:
            LOGGER.info("Command %s is already in progress; ignoring duplicate", key)
            return CommandDisposition.DROP

        if entry.delivered:
            LOGGER.info(
                "Duplicate command %s detected (received at %s); result already delivered",
                key,
                entry.received_at.isoformat(),
            )
            return CommandDisposition.DROP

        if entry.delivering:
            LOGGER.info("Result for command %s is being delivered; ignoring duplicate", key)
            return CommandDisposition.DROP

        LOGGER.info("Duplicate command %s; re-delivering cached result", key)
        entry.delivering = True
        return CommandDisposition.REDELIVER

    def complete(self, command_id: CommandId, result: CommandResult) -> None:
        """Store the result produced for ``command_id``.

        The entry counts as being delivered until :meth:`mark_delivered` runs.
        """
        key = _key(command_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = ProcessedCommand(command_id=key, received_at=_utcnow())
            self._entries[key] = entry
        entry.result = result
        entry.delivering = True

    def mark_delivered(self, command_id: CommandId, delivered: bool = True) -> None:
        entry = self._entries.get(_key(command_id))
        if entry is None:
            return
        entry.delivered = delivered
        entry.delivering = False
        LOGGER.debug("Command %s delivery recorded: delivered=%s", command_id, delivered)

    def get_cached_result(self, command_id: CommandId) -> Optional[CommandResult]:
        """
        Get the cached result for a processed command.

        Returns None if not found, still in flight or expired.
        """
        key = _key(command_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[key]
            return None
        return entry.result

    def clear(self) -> None:
        """Clear all tracked commands."""
        self._entries.clear()
        self._operation_count = 0

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: ProcessedCommand) -> bool:
        return entry.received_at < _utcnow() - self._ttl

    def _maybe_cleanup(self) -> None:
        self._operation_count += 1

        if (
            self._operation_count % self._cleanup_interval != 0
            and len(self._entries) < self._max_entries
        ):
            return

        self._cleanup_expired()

    def _cleanup_expired(self) -> None:
        cutoff = _utcnow() - self._ttl
        expired_keys = [k for k, v in self._entries.items() if v.received_at < cutoff]

        for key in expired_keys:
            del self._entries[key]

        if expired_keys:
            LOGGER.debug("Cleaned up %d expired command entries", len(expired_keys))

        # Over the limit after TTL cleanup: drop the oldest completed half.
        if len(self._entries) >= self._max_entries:
            completed = sorted(
                (item for item in self._entries.items() if item[1].completed),
                key=lambda item: item[1].received_at,
            )
            remove_count = max(1, len(self._entries) // 2)
            for key, _ in completed[:remove_count]:
                del self._entries[key]
            LOGGER.warning(
                "Forced cleanup of %d oldest command entries (max_entries=%d reached)",
                min(remove_count, len(completed)),
                self._max_entries,
            )


def _key(command_id: CommandId) -> str:
    return str(command_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
