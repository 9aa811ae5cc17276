"""Exception types shared across the agent.

Each fault is contained by the activity that raised it:

- ``TransportError``: the real-time channel is down or a send failed; the
  channel reconnects after its delay and callers fall back to HTTP.
- ``CommandParseError``: an inbound frame or queued command could not be
  decoded; the message is dropped and the connection stays open.
- ``ProviderError``: a device operation failed; surfaced as an unsuccessful
  ``CommandResult``.
- ``ConfigurationError``: the configuration is missing or invalid; the agent
  idles until it becomes ready.
"""

from __future__ import annotations

from typing import Optional


class TransportError(RuntimeError):
    """Raised when the real-time channel cannot deliver a frame."""


class CommandParseError(RuntimeError):
    """Raised when an inbound command payload is malformed."""

    def __init__(self, message: str, *, command_id: Optional[object] = None) -> None:
        super().__init__(message)
        self.command_id = command_id


class ProviderError(RuntimeError):
    """Raised by device capability providers when an operation fails."""

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail


class ConfigurationError(RuntimeError):
    """Raised when the agent configuration is unusable."""
