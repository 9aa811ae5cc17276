"""Real-time channel to the dashboard and its reconnection management.

The channel owns :class:`ConnectionState`. It cycles
``DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED`` until the shutdown
event is set, waiting a policy-defined delay after every disconnect. Inbound
commands are pushed onto the shared inbound queue; outbound frames go through
:meth:`RealtimeChannel.publish`, which serialises writes.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from enum import Enum
from typing import Any, List, Mapping, Optional
from urllib.parse import urlparse, urlunparse

import aiohttp

from . import constants
from .config import TransportConfig
from .core.models import Command, CommandId, CommandResult, HeartbeatPayload
from .core.protocols import IdentitySource, StateListener
from .core.utils import wait_for_stop
from .errors import CommandParseError, TransportError

LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Current state of the real-time channel."""

    DISCONNECTED = "disconnected"
    """No channel open; fallback exchange is in use."""

    CONNECTING = "connecting"
    """Handshake in progress."""

    CONNECTED = "connected"
    """Channel open; receive loop running."""


class RealtimeChannel:
    """Persistent, auto-reconnecting WebSocket connection to the dashboard.

    Key responsibilities:
    - Maintain the connection across network interruptions
    - Forward ``command`` envelopes to the inbound queue
    - Serialise outbound frames so they never interleave
    - Expose a read-only connection state snapshot
    """

    def __init__(
        self,
        *,
        identity: IdentitySource,
        config: TransportConfig,
        inbound: "asyncio.Queue[Command]",
        session: Optional[aiohttp.ClientSession] = None,
        ping_interval: Optional[float] = 30.0,
    ) -> None:
        self._identity = identity
        self._config = config
        self._inbound = inbound
        self._ping_interval = ping_interval

        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._state = ConnectionState.DISCONNECTED
        self._send_lock = asyncio.Lock()
        self._state_listeners: List[StateListener] = []
        self._failed_attempts = 0
        self._connect_attempts = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def connect_attempts(self) -> int:
        return self._connect_attempts

    def register_state_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with the new state on every transition."""
        self._state_listeners.append(listener)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Maintain the channel until ``stop_event`` is set."""

        try:
            while not stop_event.is_set():
                await self._set_state(ConnectionState.CONNECTING)
                try:
                    await self._connect_and_receive(stop_event)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._failed_attempts += 1
                    if not stop_event.is_set():
                        LOGGER.warning("Real-time channel error: %s", exc)
                finally:
                    self._ws = None

                await self._set_state(ConnectionState.DISCONNECTED)
                if stop_event.is_set():
                    break

                delay = self._next_delay()
                LOGGER.info("Reconnecting real-time channel in %.1fs", delay)
                if await wait_for_stop(stop_event, delay):
                    break
        finally:
            self._ws = None
            self._state = ConnectionState.DISCONNECTED
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None

    async def publish(self, envelope: Mapping[str, Any]) -> None:
        """Send one envelope as a text frame.

        Raises:
            TransportError: If the channel is not connected or the send fails.
        """

        data = json.dumps(envelope)
        async with self._send_lock:
            ws = self._ws
            if ws is None or ws.closed or self._state is not ConnectionState.CONNECTED:
                raise TransportError("Real-time channel is not connected")
            try:
                await ws.send_str(data)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                raise TransportError(f"Failed to send frame: {exc}") from exc

    async def send_heartbeat(self, payload: HeartbeatPayload) -> None:
        await self.publish({"type": "heartbeat", "payload": payload.as_dict()})

    async def send_command_result(
        self, command_id: CommandId, result: CommandResult
    ) -> None:
        await self.publish(
            {"type": "command_result", "commandId": command_id, "result": result.as_dict()}
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _connect_and_receive(self, stop_event: asyncio.Event) -> None:
        session = await self._ensure_session()
        identity = self._identity()
        url = build_realtime_url(identity.dashboard_url)
        headers = {constants.API_KEY_HEADER: identity.api_key}

        self._connect_attempts += 1
        LOGGER.info("Connecting to real-time channel %s", url)
        ws = await asyncio.wait_for(
            session.ws_connect(url, headers=headers, heartbeat=self._ping_interval),
            timeout=self._config.request_timeout_seconds,
        )

        closer = asyncio.create_task(_close_on_stop(ws, stop_event))
        try:
            self._ws = ws
            self._failed_attempts = 0
            await self._set_state(ConnectionState.CONNECTED)
            LOGGER.info("Real-time channel connected")

            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_frame(message.data)
                elif message.type == aiohttp.WSMsgType.BINARY:
                    try:
                        text = message.data.decode("utf-8")
                    except UnicodeDecodeError:
                        LOGGER.warning("Dropping non UTF-8 binary frame")
                        continue
                    await self._handle_frame(text)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    raise TransportError(
                        f"Real-time channel error: {ws.exception() or 'unknown'}"
                    )

            if not stop_event.is_set():
                LOGGER.info("Real-time channel closed by server (code=%s)", ws.close_code)
        finally:
            closer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await closer
            self._ws = None
            if not ws.closed:
                with contextlib.suppress(Exception):
                    await ws.close()

    async def _handle_frame(self, raw: str) -> None:
        try:
            envelope = parse_envelope(raw)
        except CommandParseError as exc:
            LOGGER.warning("Dropping malformed frame: %s", exc)
            return

        message_type = envelope.get("type")
        if message_type != "command":
            LOGGER.debug("Ignoring frame of type %r", message_type)
            return

        body = envelope.get("command", envelope.get("body"))
        try:
            command = Command.from_dict(body)
        except CommandParseError as exc:
            LOGGER.warning("Dropping malformed command frame: %s", exc)
            return

        LOGGER.debug("Command %s received over real-time channel", command.id)
        self._inbound.put_nowait(command)

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.debug("Real-time channel %s -> %s", previous.value, state.value)

        for listener in list(self._state_listeners):
            try:
                result = listener(state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.warning("Connection state listener failed", exc_info=True)

    def _next_delay(self) -> float:
        base = max(0.0, self._config.reconnect_delay_seconds)
        delay = base
        if self._config.reconnect_backoff == "exponential" and self._failed_attempts > 1:
            ceiling = max(base, self._config.reconnect_max_seconds)
            delay = min(base * (2 ** (self._failed_attempts - 1)), ceiling)

        jitter_ratio = max(0.0, min(1.0, self._config.reconnect_jitter_ratio))
        if jitter_ratio > 0.0 and delay > 0.0:
            jitter = delay * jitter_ratio
            delay = random.uniform(max(0.0, delay - jitter), delay + jitter)
        return delay


def parse_envelope(raw: str) -> dict[str, Any]:
    """Decode a text frame into an envelope with a ``type`` field."""

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CommandParseError(f"Frame is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise CommandParseError("Frame must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise CommandParseError("Frame is missing a type")
    return data


def build_realtime_url(dashboard_url: str) -> str:
    parsed = urlparse(dashboard_url)
    scheme = "wss" if parsed.scheme in ("https", "wss") else "ws"
    path = parsed.path.rstrip("/") + constants.REALTIME_PATH
    return urlunparse((scheme, parsed.netloc, path, "", "", ""))


async def _close_on_stop(
    ws: aiohttp.ClientWebSocketResponse, stop_event: asyncio.Event
) -> None:
    await stop_event.wait()
    await ws.close()

