"""Protocol definitions for device capability providers and callbacks."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol, Sequence, runtime_checkable

from .models import AgentIdentity, DeviceSnapshot

IdentitySource = Callable[[], AgentIdentity]


@runtime_checkable
class DeviceCapabilityProvider(Protocol):
    """Contract for components that enumerate and act on managed devices.

    The agent core never talks to the operating system directly; everything
    platform-specific lives behind this interface. Boolean methods return
    ``True`` when the operation completed. Implementations may raise
    :class:`~printops_agent.errors.ProviderError` with diagnostic text instead
    of returning ``False``.

    ``list_devices`` must be safe to call concurrently with itself and with
    mutating calls. Mutating calls are never issued concurrently for the same
    device by the dispatcher.
    """

    async def list_devices(self) -> Sequence[DeviceSnapshot]:
        """Return a fresh snapshot of every managed device."""
        ...

    async def restart_subsystem(self) -> bool:
        """Restart the device subsystem; ``True`` when it is running again."""
        ...

    async def clear_queue(self, name: str) -> bool:
        """Purge all pending jobs for the named device."""
        ...

    async def test_output(self, name: str) -> bool:
        """Send a diagnostic test job to the named device."""
        ...

    async def install_driver(self, path: str, selector: str) -> bool:
        """Install the driver package at ``path`` matching ``selector``."""
        ...


StateListener = Callable[..., Awaitable[None] | None]
