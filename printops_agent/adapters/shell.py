"""Device capability provider backed by configurable shell commands.

Each operation runs one command line from the ``[provider]`` section, for
example::

    [provider]
    list_command = /usr/lib/printops/list-printers --json
    restart_command = systemctl restart cups
    clear_queue_command = cancel -a {device}
    test_output_command = lp -d {device} /usr/share/printops/testpage.pdf
    install_driver_command = /usr/lib/printops/install-driver {path} {selector}

Placeholders are substituted per argument after splitting, so a device name
containing spaces stays a single argument. An operation succeeds when its
command exits with status 0.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shlex
from typing import List, Mapping, Sequence

from ..config import ProviderConfig
from ..core.models import DeviceSnapshot
from ..errors import ProviderError

LOGGER = logging.getLogger(__name__)


class ShellDeviceProvider:
    """Runs the configured commands without blocking the event loop."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    async def list_devices(self) -> Sequence[DeviceSnapshot]:
        if not self._config.list_command.strip():
            LOGGER.debug("No list_command configured; reporting no devices")
            return []

        stdout = await self._run("list", self._config.list_command, {})
        return parse_device_listing(stdout)

    async def restart_subsystem(self) -> bool:
        await self._run("restart", self._config.restart_command, {})
        return True

    async def clear_queue(self, name: str) -> bool:
        await self._run("clear_queue", self._config.clear_queue_command, {"device": name})
        return True

    async def test_output(self, name: str) -> bool:
        await self._run("test_output", self._config.test_output_command, {"device": name})
        return True

    async def install_driver(self, path: str, selector: str) -> bool:
        await self._run(
            "install_driver",
            self._config.install_driver_command,
            {"path": path, "selector": selector},
        )
        return True

    async def _run(
        self, operation: str, template: str, values: Mapping[str, str]
    ) -> str:
        argv = build_argv(template, values)
        if not argv:
            raise ProviderError(f"No command configured for {operation}")

        LOGGER.debug("Running %s command: %s", operation, shlex.join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProviderError(f"Cannot run {argv[0]}: {exc}") from exc

        try:
            async with asyncio.timeout(self._config.command_timeout_seconds):
                stdout_bytes, stderr_bytes = await process.communicate()
        except TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise ProviderError(
                f"{operation} command timed out after "
                f"{self._config.command_timeout_seconds:g}s"
            ) from exc
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise ProviderError(
                f"{operation} command failed (rc={process.returncode})",
                detail=stderr[:500] or None,
            )
        return stdout


def build_argv(template: str, values: Mapping[str, str]) -> List[str]:
    """Split ``template`` and substitute ``{name}`` placeholders per argument."""

    argv: List[str] = []
    for token in shlex.split(template or ""):
        for key, value in values.items():
            token = token.replace("{" + key + "}", value)
        argv.append(token)
    return argv


def parse_device_listing(stdout: str) -> List[DeviceSnapshot]:
    """Decode the JSON array printed by ``list_command``."""

    try:
        data = json.loads(stdout or "[]")
    except json.JSONDecodeError as exc:
        raise ProviderError(f"Device listing is not valid JSON: {exc}") from exc

    if not isinstance(data, list):
        raise ProviderError("Device listing must be a JSON array")

    devices: List[DeviceSnapshot] = []
    for entry in data:
        if not isinstance(entry, Mapping):
            LOGGER.warning("Skipping non-object device entry: %r", entry)
            continue
        try:
            devices.append(DeviceSnapshot.from_dict(entry))
        except ValueError as exc:
            LOGGER.warning("Skipping device entry: %s", exc)
    return devices
