"""Main application entry-point for printops-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from enum import Enum
from typing import List, Optional, Set

import aiohttp

from .adapters import ShellDeviceProvider
from .commands import CommandDispatcher, HttpDriverDownloader
from .config import ConfigurationStore
from .connection import ConnectionState, RealtimeChannel
from .core import (
    Command,
    CommandDisposition,
    CommandId,
    CommandIdempotencyGuard,
    CommandResult,
    DeviceCapabilityProvider,
    wait_for_stop,
)
from .errors import TransportError
from .fallback import FallbackExchange
from .health import HealthReporter, HealthServer
from .heartbeat import HeartbeatLoop
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0


class AgentState(str, Enum):
    AWAITING_CONFIG = "awaiting_config"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class PrintOpsAgentApp:
    """Coordinates agent startup, steady state and shutdown.

    This class orchestrates the agent lifecycle, managing:
    - Waiting until an API key and dashboard URL are configured
    - The real-time channel and its HTTP fallback
    - The heartbeat loop and the command consumer
    - State machine transitions reported to the health endpoint

    The device provider can be injected for testing or to support
    platforms other than the shell adapter.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        *,
        provider: Optional[DeviceCapabilityProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
        install_signal_handlers: bool = True,
    ) -> None:
        """Initialize the agent.

        Args:
            store: Configuration store; its identity is read on every request.
            provider: Device provider. If None, a ShellDeviceProvider is built
                      from the ``[provider]`` section.
            session: Shared HTTP session. If None, one is created and closed
                     by the agent.
            install_signal_handlers: Register SIGINT/SIGTERM handlers that
                     request shutdown.
        """
        self._store = store
        self._provider = provider
        self._session = session
        self._owns_session = session is None
        self._install_signal_handlers = install_signal_handlers

        self._shutdown_event = asyncio.Event()
        self._inbound: asyncio.Queue[Command] = asyncio.Queue()
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._state = AgentState.AWAITING_CONFIG
        self._state_detail: Optional[str] = None

        self._channel: Optional[RealtimeChannel] = None
        self._fallback: Optional[FallbackExchange] = None
        self._heartbeat: Optional[HeartbeatLoop] = None
        self._dispatcher: Optional[CommandDispatcher] = None
        self._guard = CommandIdempotencyGuard()
        self._service_tasks: List[asyncio.Task[None]] = []
        self._consumer_task: Optional[asyncio.Task[None]] = None
        self._command_tasks: Set[asyncio.Task[None]] = set()
        self._stopping = False

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def channel(self) -> Optional[RealtimeChannel]:
        return self._channel

    @property
    def pending_commands(self) -> int:
        return len(self._command_tasks)

    def request_shutdown(self) -> None:
        """Ask every activity to stop; safe to call more than once."""
        if not self._shutdown_event.is_set():
            LOGGER.info("printops-agent shutdown requested")
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run until :meth:`request_shutdown` is called or a signal arrives."""

        loop = asyncio.get_running_loop()
        installed = self._add_signal_handlers(loop)

        LOGGER.info("printops-agent starting with config: %s", self._store.path)
        try:
            if await self._wait_until_ready():
                await self._start_services()
                LOGGER.info("printops-agent active; awaiting shutdown signal")
                await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("printops-agent received shutdown signal")
            raise
        finally:
            await self._stop_services()
            for signum in installed:
                loop.remove_signal_handler(signum)

    @classmethod
    def start(cls, store: ConfigurationStore) -> None:
        instance = cls(store)
        logging_config = store.config.logging
        configure_logging(
            logging_config.level,
            log_path=logging_config.path,
            log_network=logging_config.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("printops-agent received shutdown signal")

    async def deliver_result(self, command_id: CommandId, result: CommandResult) -> bool:
        """Send a result over the channel when connected, otherwise over HTTP."""

        channel = self._channel
        if channel is not None and channel.is_connected:
            try:
                await channel.send_command_result(command_id, result)
            except TransportError as exc:
                LOGGER.info(
                    "Real-time result delivery for command %s failed (%s); using HTTP",
                    command_id,
                    exc,
                )
            else:
                return True

        if self._fallback is None:
            LOGGER.warning("No transport available for result of command %s", command_id)
            return False
        return await self._fallback.publish_command_result(command_id, result)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _wait_until_ready(self) -> bool:
        poll = self._store.config.transport.readiness_poll_seconds
        while not self._store.is_ready:
            await self._transition_state(
                AgentState.AWAITING_CONFIG,
                detail="waiting for api_key and dashboard_url",
            )
            if await wait_for_stop(self._shutdown_event, poll):
                return False
            if self._store.reload():
                LOGGER.info("Configuration became ready")
        return not self._shutdown_event.is_set()

    async def _start_services(self) -> None:
        config = self._store.config
        identity = self._store.identity

        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            )
            self._owns_session = True
        session = self._session

        self._guard = CommandIdempotencyGuard(
            ttl_hours=config.commands.duplicate_ttl_hours
        )
        provider = self._provider or ShellDeviceProvider(config.provider)
        self._fallback = FallbackExchange(
            identity=identity,
            inbound=self._inbound,
            session=session,
            timeout=config.transport.request_timeout_seconds,
        )
        self._dispatcher = CommandDispatcher(
            provider,
            timeout_seconds=config.commands.timeout_seconds,
            downloader=HttpDriverDownloader(
                timeout=config.commands.download_timeout_seconds, session=session
            ),
        )

        if config.transport.use_realtime:
            self._channel = RealtimeChannel(
                identity=identity,
                config=config.transport,
                inbound=self._inbound,
                session=session,
            )
            self._channel.register_state_listener(self._on_connection_state)
            await self._transition_state(
                AgentState.CONNECTING, detail="opening real-time channel"
            )
        else:
            await self._transition_state(
                AgentState.DEGRADED, detail="real-time transport disabled"
            )
            await self._health.update("transport", True, "http only")

        self._heartbeat = HeartbeatLoop(
            identity=identity,
            provider=provider,
            fallback=self._fallback,
            interval=config.heartbeat.interval_seconds,
            channel=self._channel,
            tick_listener=self._on_heartbeat_tick,
        )
        await self._health.track_heartbeat(config.heartbeat.interval_seconds)

        await self._start_health_server()
        await self._health.update("commands", True, None)

        stop = self._shutdown_event
        if self._channel is not None:
            self._service_tasks.append(
                asyncio.create_task(self._channel.run(stop), name="realtime-channel")
            )
        self._service_tasks.append(
            asyncio.create_task(self._heartbeat.run(stop), name="heartbeat")
        )
        self._consumer_task = asyncio.create_task(
            self._consume_commands(), name="command-consumer"
        )

    async def _stop_services(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        await self._transition_state(AgentState.STOPPING, detail="shutdown requested")
        self._shutdown_event.set()

        consumer = self._consumer_task
        self._consumer_task = None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

        tasks = [task for task in self._service_tasks if not task.done()]
        tasks.extend(self._command_tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for task, outcome in zip(tasks, results):
                if isinstance(outcome, Exception):
                    LOGGER.error(
                        "Task %s ended with error: %s", task.get_name(), outcome
                    )
        self._service_tasks.clear()
        self._command_tasks.clear()

        await self._stop_health_server()

        if self._fallback is not None:
            await self._fallback.aclose()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail == self._state_detail:
            return

        previous = self._state
        self._state = state
        self._state_detail = detail

        message_detail = detail or state.value
        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            message_detail,
        )
        await self._health.set_agent_state(
            state.value,
            healthy=state == AgentState.ACTIVE,
            detail=message_detail,
        )

    def _add_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> List[int]:
        if not self._install_signal_handlers:
            return []

        installed: List[int] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError, ValueError):
                LOGGER.debug("Signal handler for %s not supported here", signum)
            else:
                installed.append(signum)
        return installed

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def _consume_commands(self) -> None:
        while not self._shutdown_event.is_set():
            command = await self._inbound.get()
            try:
                self._accept_command(command)
            finally:
                self._inbound.task_done()

    def _accept_command(self, command: Command) -> None:
        disposition = self._guard.begin(command.id)
        if disposition is CommandDisposition.DROP:
            return

        LOGGER.info("Command %s received: %s", command.id, command.kind)
        task = asyncio.create_task(
            self._process_command(command, disposition), name=f"command-{command.id}"
        )
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def _process_command(
        self, command: Command, disposition: CommandDisposition
    ) -> None:
        assert self._dispatcher is not None

        if disposition is CommandDisposition.REDELIVER:
            result = self._guard.get_cached_result(command.id)
            if result is None:
                self._guard.mark_delivered(command.id, False)
                return
        else:
            result = await self._dispatcher.handle(command)
            self._guard.complete(command.id, result)
            LOGGER.info(
                "Command %s completed: success=%s (%s)",
                command.id,
                result.success,
                result.message,
            )

        delivered = await self.deliver_result(command.id, result)
        self._guard.mark_delivered(command.id, delivered)
        if not delivered:
            LOGGER.warning(
                "Result for command %s not delivered; it will be re-sent if the "
                "command is received again",
                command.id,
            )
        pending = max(0, self.pending_commands - 1)
        await self._health.update(
            "commands", True, f"pending_commands={pending}" if pending else None
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    async def _on_connection_state(self, state: ConnectionState) -> None:
        if self._stopping:
            return

        if state is ConnectionState.CONNECTED:
            await self._health.update("transport", True, "real-time connected")
            await self._transition_state(
                AgentState.ACTIVE, detail="real-time channel connected"
            )
        elif state is ConnectionState.DISCONNECTED:
            await self._health.update("transport", False, "using http fallback")
            await self._transition_state(
                AgentState.DEGRADED, detail="real-time channel unavailable"
            )

    async def _on_heartbeat_tick(self, delivered: bool) -> None:
        heartbeat = self._heartbeat
        if heartbeat is None:
            return
        await self._health.record_heartbeat(
            last_success_at=heartbeat.last_success_at,
            consecutive_failures=heartbeat.consecutive_failures,
        )

    # ------------------------------------------------------------------
    # Health endpoint
    # ------------------------------------------------------------------
    async def _start_health_server(self) -> None:
        health = self._store.config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        with contextlib.suppress(Exception):
            await self._health_server.stop()
        self._health_server = None
