"""Periodic device state reporting."""

from __future__ import annotations

import asyncio
import logging
import platform
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence

from . import constants
from .core.models import DeviceSnapshot, HeartbeatPayload
from .core.protocols import DeviceCapabilityProvider, IdentitySource
from .core.utils import wait_for_stop
from .errors import TransportError

if TYPE_CHECKING:
    from .connection import RealtimeChannel
    from .fallback import FallbackExchange

LOGGER = logging.getLogger(__name__)

TickListener = Callable[[bool], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class HostInfo:
    hostname: str
    os_descriptor: str
    ip_address: str

    @classmethod
    def detect(cls) -> "HostInfo":
        return cls(
            hostname=socket.gethostname(),
            os_descriptor=platform.platform(),
            ip_address=local_ip_address(),
        )


def local_ip_address() -> str:
    """Return the address of the interface used for outbound traffic.

    Connecting a UDP socket sends nothing; it only selects a route.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 65530))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


class HeartbeatLoop:
    """Collects device snapshots on a fixed period and publishes them.

    Ticks are scheduled at ``start + k * interval`` so a slow tick does not
    push later ones back. Every failure is contained in its tick.
    """

    def __init__(
        self,
        *,
        identity: IdentitySource,
        provider: DeviceCapabilityProvider,
        fallback: "FallbackExchange",
        interval: float,
        channel: Optional["RealtimeChannel"] = None,
        host_info: Optional[Callable[[], HostInfo]] = None,
        tick_listener: Optional[TickListener] = None,
    ) -> None:
        self._identity = identity
        self._provider = provider
        self._fallback = fallback
        self._channel = channel
        self._interval = max(0.01, interval)
        self._host_info = host_info or HostInfo.detect
        self._tick_listener = tick_listener

        self._tick_count = 0
        self._consecutive_failures = 0
        self._last_success_at: Optional[datetime] = None

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_success_at(self) -> Optional[datetime]:
        return self._last_success_at

    async def run(self, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while not stop_event.is_set():
            await self.tick()

            next_tick += self._interval
            now = loop.time()
            if next_tick < now:
                skipped = int((now - next_tick) // self._interval) + 1
                LOGGER.debug("Heartbeat overran its period; skipping %d tick(s)", skipped)
                next_tick += skipped * self._interval

            if await wait_for_stop(stop_event, next_tick - loop.time()):
                break

    async def tick(self) -> bool:
        """Run one heartbeat; returns whether the dashboard accepted it."""

        self._tick_count += 1
        delivered = False
        try:
            devices = await self._collect_devices()
            payload = self.build_payload(devices)
            delivered = await self._publish(payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Heartbeat tick failed")

        if delivered:
            self._consecutive_failures = 0
            self._last_success_at = datetime.now(timezone.utc)
        else:
            self._consecutive_failures += 1

        if self._tick_listener is not None:
            try:
                result = self._tick_listener(delivered)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.warning("Heartbeat tick listener failed", exc_info=True)

        return delivered

    def build_payload(self, devices: Sequence[DeviceSnapshot]) -> HeartbeatPayload:
        host = self._host_info()
        return HeartbeatPayload(
            agent_id=self._identity().agent_id,
            hostname=host.hostname,
            os_descriptor=host.os_descriptor,
            agent_version=constants.AGENT_VERSION,
            ip_address=host.ip_address,
            devices=tuple(devices),
        )

    async def _collect_devices(self) -> Sequence[DeviceSnapshot]:
        try:
            return await self._provider.list_devices()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Still report in so the dashboard sees the agent as online.
            LOGGER.warning("Device enumeration failed: %s", exc)
            return ()

    async def _publish(self, payload: HeartbeatPayload) -> bool:
        channel = self._channel
        if channel is not None and channel.is_connected:
            try:
                await channel.send_heartbeat(payload)
            except TransportError as exc:
                LOGGER.info("Real-time heartbeat failed (%s); using HTTP", exc)
            else:
                LOGGER.debug(
                    "Heartbeat sent via real-time channel (%d devices)",
                    len(payload.devices),
                )
                return True

        ack = await self._fallback.publish_heartbeat(payload)
        return ack.accepted
