"""HTTP fallback exchange used while the real-time channel is down."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

import aiohttp

from . import constants
from .core.models import Command, CommandId, CommandResult, HeartbeatPayload
from .core.protocols import IdentitySource
from .errors import CommandParseError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


@dataclass(slots=True)
class HeartbeatAck:
    accepted: bool
    queued_commands: List[Command] = field(default_factory=list)


class FallbackExchange:
    """Best-effort request/response calls to the dashboard.

    Nothing here retries: a failed heartbeat is simply superseded by the next
    tick. Commands queued server-side come back in the heartbeat response and
    are pushed onto the same inbound queue the real-time channel feeds.
    """

    def __init__(
        self,
        *,
        identity: IdentitySource,
        inbound: "asyncio.Queue[Command]",
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._identity = identity
        self._inbound = inbound
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None

    async def publish_heartbeat(self, payload: HeartbeatPayload) -> HeartbeatAck:
        """POST the heartbeat and forward any commands the dashboard queued."""

        identity = self._identity()
        url = identity.dashboard_url + constants.HEARTBEAT_PATH

        try:
            status, body = await self._post(url, payload.as_dict())
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            LOGGER.warning("HTTP heartbeat failed: %s", exc or type(exc).__name__)
            return HeartbeatAck(accepted=False)

        if status >= 400:
            LOGGER.warning("HTTP heartbeat rejected with status %d", status)
            return HeartbeatAck(accepted=False)

        commands = _extract_commands(body)
        for command in commands:
            self._inbound.put_nowait(command)

        accepted = True
        if isinstance(body, dict) and body.get("success") is False:
            accepted = False

        LOGGER.debug(
            "Heartbeat sent via HTTP (accepted=%s, queued_commands=%d)",
            accepted,
            len(commands),
        )
        return HeartbeatAck(accepted=accepted, queued_commands=commands)

    async def publish_command_result(
        self, command_id: CommandId, result: CommandResult
    ) -> bool:
        """POST a command result; returns whether the dashboard accepted it."""

        identity = self._identity()
        url = identity.dashboard_url + constants.COMMAND_RESULT_PATH.format(
            command_id=command_id
        )

        try:
            status, _ = await self._post(url, result.as_dict())
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            LOGGER.warning(
                "Failed to send result for command %s: %s",
                command_id,
                exc or type(exc).__name__,
            )
            return False

        if status >= 400:
            LOGGER.warning(
                "Result for command %s rejected with status %d", command_id, status
            )
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        return self._session

    async def _post(self, url: str, payload: dict[str, Any]) -> tuple[int, Any]:
        session = await self._ensure_session()
        headers = {constants.API_KEY_HEADER: self._identity().api_key}

        async with asyncio.timeout(self._timeout):
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status >= 400:
                    detail = await response.text()
                    LOGGER.debug(
                        "Dashboard responded %d for %s: %s",
                        response.status,
                        url,
                        detail[:200],
                    )
                    return response.status, None
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                return response.status, body


def _extract_commands(body: Any) -> List[Command]:
    if not isinstance(body, dict):
        return []

    raw_commands = body.get("commands") or []
    if not isinstance(raw_commands, list):
        LOGGER.warning("Ignoring non-list commands field in heartbeat response")
        return []

    commands: List[Command] = []
    for entry in raw_commands:
        try:
            commands.append(Command.from_dict(entry))
        except CommandParseError as exc:
            LOGGER.warning("Skipping malformed queued command: %s", exc)
    return commands
