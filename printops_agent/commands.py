"""Command dispatch for the PrintOps agent.

:class:`CommandDispatcher` turns one :class:`~printops_agent.core.models.Command`
into exactly one :class:`~printops_agent.core.models.CommandResult`. It never
raises: provider failures, timeouts and unexpected faults all become
unsuccessful results. Handlers fill in the result as they go so partial
progress stays visible in ``actions_taken`` even when a later step fails.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import tempfile
from pathlib import Path
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)
from urllib.parse import unquote, urlparse

import aiohttp

from .command_names import CommandNames, normalize_kind
from .core.models import HEALTHY_STATUSES, Command, CommandResult, DeviceSnapshot
from .core.protocols import DeviceCapabilityProvider
from .errors import ProviderError

LOGGER = logging.getLogger(__name__)

DEFAULT_DRIVER_SELECTOR = "*.inf"
SUBSYSTEM_LOCK_KEY = "__subsystem__"

Handler = Callable[[Command, CommandResult], Awaitable[None]]


class DriverDownloader(Protocol):
    async def download(self, url: str) -> Path:
        """Fetch a driver package and return its local path."""
        ...


class HttpDriverDownloader:
    """Downloads driver packages into a private temporary directory."""

    def __init__(
        self,
        *,
        timeout: float = 300.0,
        session: Optional[aiohttp.ClientSession] = None,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._timeout = timeout
        self._session = session
        self._chunk_size = chunk_size

    async def download(self, url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ProviderError(f"Unsupported download URL: {url}")

        filename = Path(unquote(parsed.path)).name or "driver-package"
        target_dir = Path(tempfile.mkdtemp(prefix="printops-driver-"))
        target = target_dir / filename

        session = self._session
        owns_session = session is None
        if session is None:
            session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )

        try:
            async with asyncio.timeout(self._timeout):
                async with session.get(url) as response:
                    if response.status >= 400:
                        raise ProviderError(
                            f"Download failed with status {response.status}"
                        )
                    with target.open("wb") as stream:
                        async for chunk in response.content.iter_chunked(
                            self._chunk_size
                        ):
                            stream.write(chunk)
        except (aiohttp.ClientError, TimeoutError) as exc:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise ProviderError(
                f"Download failed: {exc or type(exc).__name__}"
            ) from exc
        except BaseException:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise
        finally:
            if owns_session:
                await session.close()

        LOGGER.info("Downloaded driver package %s to %s", url, target)
        return target


class DeviceLocks:
    """Per-device mutual exclusion for mutating provider calls.

    Locks are only ever held one at a time by a handler, so composite
    commands cannot deadlock against each other. A key's lock is dropped
    once its last holder or waiter leaves.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @property
    def active_keys(self) -> Sequence[str]:
        return tuple(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        normalized = key.strip().lower()
        lock = self._locks.get(normalized)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[normalized] = lock
        self._users[normalized] = self._users.get(normalized, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[normalized] - 1
            if remaining:
                self._users[normalized] = remaining
            else:
                del self._users[normalized]
                del self._locks[normalized]

    def subsystem(self) -> AsyncContextManager[None]:
        return self.hold(SUBSYSTEM_LOCK_KEY)


class CommandDispatcher:
    """Maps command kinds to handlers executed against the device provider."""

    def __init__(
        self,
        provider: DeviceCapabilityProvider,
        *,
        timeout_seconds: float = 300.0,
        downloader: Optional[DriverDownloader] = None,
        locks: Optional[DeviceLocks] = None,
    ) -> None:
        self._provider = provider
        self._timeout = timeout_seconds
        self._downloader = downloader or HttpDriverDownloader()
        self._locks = locks if locks is not None else DeviceLocks()
        self._handlers: Dict[str, Handler] = {
            CommandNames.RESTART_SUBSYSTEM: self._handle_restart_subsystem,
            CommandNames.CLEAR_QUEUE: self._handle_clear_queue,
            CommandNames.FIX_DEVICE: self._handle_fix_device,
            CommandNames.TEST_OUTPUT: self._handle_test_output,
            CommandNames.GET_STATUS: self._handle_get_status,
            CommandNames.INSTALL_DRIVER: self._handle_install_driver,
            CommandNames.UPDATE_DRIVER: self._handle_update_driver,
        }

    @property
    def supported_kinds(self) -> Sequence[str]:
        return tuple(self._handlers)

    async def handle(self, command: Command) -> CommandResult:
        """Execute ``command`` and return its result. Never raises."""

        result = CommandResult(success=False, device_id=command.device_id)
        handler = self._handlers.get(normalize_kind(command.kind))

        LOGGER.info(
            "Handling command %s: %s for %s",
            command.id,
            command.kind,
            _target_name(command) or "all devices",
        )

        if handler is None:
            result.message = f"Unknown command type: {command.kind}"
            return result

        try:
            async with asyncio.timeout(self._timeout):
                await handler(command, result)
        except TimeoutError:
            LOGGER.warning("Command %s timed out after %.0fs", command.id, self._timeout)
            result.success = False
            result.message = f"Command timed out after {self._timeout:g}s"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Command %s (%s) failed", command.id, command.kind)
            result.success = False
            result.message = f"Command failed: {exc}"

        result.device_id = command.device_id
        return result

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_restart_subsystem(
        self, command: Command, result: CommandResult
    ) -> None:
        if await self._restart_subsystem():
            result.success = True
            result.message = "Subsystem restarted successfully"
            result.actions_taken.append("Stopped subsystem service")
            result.actions_taken.append("Started subsystem service")
        else:
            result.message = "Failed to restart subsystem"

    async def _handle_clear_queue(self, command: Command, result: CommandResult) -> None:
        name = _target_name(command)
        if not name:
            result.message = "Device name is required"
            return

        if await self._clear_queue(name):
            result.success = True
            result.message = f"Queue cleared for {name}"
            result.actions_taken.append(f"Purged all jobs from {name} queue")
        else:
            result.message = f"Failed to clear queue for {name}"

    async def _handle_fix_device(self, command: Command, result: CommandResult) -> None:
        name = _target_name(command)
        issues = command.payload.get("issues")
        if isinstance(issues, list) and issues:
            LOGGER.info(
                "Fixing %s with issues: %s",
                name or "all devices",
                ", ".join(str(issue) for issue in issues),
            )

        if await self._attempt("Subsystem restart", self._restart_subsystem):
            result.actions_taken.append("Restarted subsystem service")

        if name and await self._attempt(
            f"Queue purge for {name}", lambda: self._clear_queue(name)
        ):
            result.actions_taken.append(f"Cleared queue for {name}")

        device: Optional[DeviceSnapshot] = None
        if name:
            try:
                device = _find_device(await self._provider.list_devices(), name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Could not re-read status of %s: %s", name, exc)

        if device is not None:
            result.actions_taken.append(f"Verified device status: {device.status.value}")
            if device.status in HEALTHY_STATUSES:
                result.success = True
                result.message = f"Device {name} fixed successfully"
            else:
                result.success = False
                result.message = f"Device {name} still showing as {device.status.value}"
            return

        result.success = bool(result.actions_taken)
        result.message = (
            "General maintenance completed"
            if result.success
            else "Could not find specified device"
        )

    async def _handle_test_output(self, command: Command, result: CommandResult) -> None:
        name = _target_name(command)
        if not name:
            result.message = "Device name is required"
            return

        async with self._locks.hold(name):
            completed = await self._provider.test_output(name)

        if completed:
            result.success = True
            result.message = f"Test page sent to {name}"
            result.actions_taken.append(f"Sent test page to {name}")
        else:
            result.message = f"Failed to send test page to {name}"

    async def _handle_get_status(self, command: Command, result: CommandResult) -> None:
        name = _target_name(command)
        devices = list(await self._provider.list_devices())

        result.success = True
        if not name:
            result.message = f"Found {len(devices)} devices"
            return

        device = _find_device(devices, name)
        if device is None:
            result.message = f"No device named {name} (found {len(devices)} devices)"
        else:
            result.message = (
                f"Status: {device.status.value}, Jobs: {device.pending_job_count}"
            )

    async def _handle_install_driver(
        self, command: Command, result: CommandResult
    ) -> None:
        driver_path = _payload_str(command.payload, "driverPath")
        if not driver_path:
            result.message = "Driver path is required"
            return

        selector = _driver_selector(command.payload)
        async with self._locks.subsystem():
            installed = await self._provider.install_driver(driver_path, selector)

        if installed:
            result.success = True
            result.message = "Driver installed successfully"
            result.actions_taken.append(f"Installed driver from {driver_path}")
        else:
            result.message = "Failed to install driver"

    async def _handle_update_driver(
        self, command: Command, result: CommandResult
    ) -> None:
        name = _target_name(command)
        if not name:
            result.message = "Device name is required"
            return

        download_url = _payload_str(command.payload, "downloadUrl")
        if not download_url:
            result.message = "Download URL is required"
            return

        LOGGER.info("Updating driver for %s from %s", name, download_url)
        try:
            package = await self._downloader.download(download_url)
        except ProviderError as exc:
            result.message = f"Failed to download driver package: {exc}"
            return
        result.actions_taken.append(f"Downloaded driver package from {download_url}")

        try:
            async with self._locks.subsystem():
                installed = await self._provider.install_driver(
                    str(package), _driver_selector(command.payload)
                )
        finally:
            shutil.rmtree(package.parent, ignore_errors=True)

        if installed:
            result.success = True
            result.message = f"Driver updated for {name}"
            result.actions_taken.append(f"Installed updated driver for {name}")
        else:
            result.message = f"Failed to install updated driver for {name}"

    # ------------------------------------------------------------------
    # Provider calls under the per-device locks
    # ------------------------------------------------------------------
    async def _restart_subsystem(self) -> bool:
        async with self._locks.subsystem():
            return bool(await self._provider.restart_subsystem())

    async def _clear_queue(self, name: str) -> bool:
        async with self._locks.hold(name):
            return bool(await self._provider.clear_queue(name))

    async def _attempt(self, label: str, step: Callable[[], Awaitable[bool]]) -> bool:
        try:
            succeeded = await step()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("%s failed: %s", label, exc)
            return False
        if not succeeded:
            LOGGER.warning("%s reported failure", label)
        return succeeded


def _target_name(command: Command) -> Optional[str]:
    for key in ("printerName", "deviceName"):
        value = _payload_str(command.payload, key)
        if value:
            return value
    if command.device_id:
        return command.device_id.strip() or None
    return None


def _payload_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _driver_selector(payload: Mapping[str, Any]) -> str:
    return (
        _payload_str(payload, "package")
        or _payload_str(payload, "infFile")
        or DEFAULT_DRIVER_SELECTOR
    )


def _find_device(
    devices: Sequence[DeviceSnapshot], name: str
) -> Optional[DeviceSnapshot]:
    wanted = name.casefold()
    for device in devices:
        if device.name.casefold() == wanted:
            return device
    return None
