"""Health reporting for printops-agent.

The reporter answers one question for an operator or a supervisor health
check: is the agent still reaching its dashboard? Transport and command components
are pushed in by the app. The heartbeat component is derived at snapshot
time from the last successful heartbeat, so a wedged heartbeat loop turns
the endpoint unhealthy even when nothing reports a failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

HEARTBEAT_COMPONENT = "heartbeat"
# Missed intervals before the last successful heartbeat counts as stale.
HEARTBEAT_STALE_INTERVALS = 3
HEARTBEAT_UNHEALTHY_AFTER = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": _isoformat(self.updated_at),
        }


@dataclass(slots=True)
class HeartbeatHealth:
    """Liveness of the heartbeat loop, judged by its last delivered tick."""

    interval_seconds: float
    tracked_since: datetime = field(default_factory=_utcnow)
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    consecutive_failures: int = 0

    @property
    def stale_after_seconds(self) -> float:
        return self.interval_seconds * HEARTBEAT_STALE_INTERVALS

    def seconds_since_success(self, now: datetime) -> float:
        reference = self.last_success_at or self.tracked_since
        return max(0.0, (now - reference).total_seconds())

    def is_stale(self, now: datetime) -> bool:
        return self.seconds_since_success(now) > self.stale_after_seconds

    def as_component(self, now: datetime) -> ComponentStatus:
        stale = self.is_stale(now)
        failing = self.consecutive_failures >= HEARTBEAT_UNHEALTHY_AFTER

        parts: List[str] = []
        if self.last_success_at is None:
            parts.append("no heartbeat delivered yet")
        else:
            parts.append(f"last_success={_isoformat(self.last_success_at)}")
        if self.consecutive_failures:
            parts.append(f"consecutive_failures={self.consecutive_failures}")
        if stale:
            parts.append(f"stale for {self.seconds_since_success(now):.0f}s")

        return ComponentStatus(
            name=HEARTBEAT_COMPONENT,
            healthy=not (stale or failing),
            detail=", ".join(parts),
            updated_at=self.last_attempt_at or self.tracked_since,
        )

    def as_dict(self, now: datetime) -> Dict[str, object]:
        return {
            "intervalSeconds": self.interval_seconds,
            "lastSuccessAt": (
                _isoformat(self.last_success_at) if self.last_success_at else None
            ),
            "secondsSinceSuccess": round(self.seconds_since_success(now), 1),
            "consecutiveFailures": self.consecutive_failures,
            "stale": self.is_stale(now),
        }


class HealthReporter:
    """Tracks agent state, transport, commands and heartbeat liveness."""

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._agent_state: Optional[ComponentStatus] = None
        self._heartbeat: Optional[HeartbeatHealth] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._agent_state = ComponentStatus(
                name=state, healthy=healthy, detail=detail or state
            )

    async def track_heartbeat(
        self, interval_seconds: float, *, now: Optional[datetime] = None
    ) -> None:
        """Start judging heartbeat liveness against ``interval_seconds``."""
        async with self._lock:
            self._heartbeat = HeartbeatHealth(
                interval_seconds=interval_seconds, tracked_since=now or _utcnow()
            )

    async def record_heartbeat(
        self,
        *,
        last_success_at: Optional[datetime],
        consecutive_failures: int,
        now: Optional[datetime] = None,
    ) -> None:
        async with self._lock:
            heartbeat = self._heartbeat
            if heartbeat is None:
                LOGGER.debug("Heartbeat recorded before tracking started; ignoring")
                return
            heartbeat.last_success_at = last_success_at
            heartbeat.consecutive_failures = consecutive_failures
            heartbeat.last_attempt_at = now or _utcnow()

    async def snapshot(self, *, now: Optional[datetime] = None) -> Dict[str, object]:
        now = now or _utcnow()
        async with self._lock:
            statuses = list(self._components.values())
            heartbeat = self._heartbeat
            agent_state = self._agent_state
            if heartbeat is not None:
                statuses.append(heartbeat.as_component(now))

        components = [status.as_dict() for status in statuses]
        healthy = all(status.healthy for status in statuses)
        if agent_state is not None and not agent_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if agent_state is not None:
            payload["agentState"] = {
                "state": agent_state.name,
                "detail": agent_state.detail,
                "healthy": agent_state.healthy,
                "updatedAt": _isoformat(agent_state.updated_at),
            }
        if heartbeat is not None:
            payload["heartbeat"] = heartbeat.as_dict(now)
        return payload


class HealthServer:
    """Serves the reporter snapshot on ``/healthz``: 200 when ok, 503 otherwise."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            with contextlib.suppress(RuntimeError):
                await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(
            snapshot, status=status, headers={"Cache-Control": "no-store"}
        )
