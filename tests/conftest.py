import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from printops_agent.config import ConfigurationStore, load_config
from printops_agent.core.models import DeviceSnapshot, DeviceStatus
from printops_agent.errors import ProviderError


class FakeDeviceProvider:
    """In-memory device provider recording every call it receives."""

    def __init__(self, devices: Optional[Sequence[DeviceSnapshot]] = None) -> None:
        self.devices: List[DeviceSnapshot] = list(devices or [])
        self.calls: List[tuple] = []
        self.restart_result = True
        self.clear_result = True
        self.test_result = True
        self.install_result = True
        self.fail_restart = False
        self.fail_listing = False
        self.delay = 0.0
        self.status_after_fix: Optional[DeviceStatus] = None

    async def list_devices(self) -> Sequence[DeviceSnapshot]:
        self.calls.append(("list",))
        if self.fail_listing:
            raise ProviderError("enumeration unavailable")
        return list(self.devices)

    async def restart_subsystem(self) -> bool:
        self.calls.append(("restart:start",))
        await asyncio.sleep(self.delay)
        self.calls.append(("restart:end",))
        if self.fail_restart:
            raise ProviderError("service manager unavailable")
        if self.status_after_fix is not None:
            self.devices = [
                DeviceSnapshot(
                    name=device.name,
                    status=self.status_after_fix,
                    pending_job_count=device.pending_job_count,
                )
                for device in self.devices
            ]
        return self.restart_result

    async def clear_queue(self, name: str) -> bool:
        self.calls.append(("clear:start", name))
        await asyncio.sleep(self.delay)
        self.calls.append(("clear:end", name))
        return self.clear_result

    async def test_output(self, name: str) -> bool:
        self.calls.append(("test:start", name))
        await asyncio.sleep(self.delay)
        self.calls.append(("test:end", name))
        return self.test_result

    async def install_driver(self, path: str, selector: str) -> bool:
        self.calls.append(("install", path, selector))
        return self.install_result


@pytest.fixture
def provider_factory():
    return FakeDeviceProvider


@pytest.fixture
def fake_provider() -> FakeDeviceProvider:
    return FakeDeviceProvider(
        [
            DeviceSnapshot(
                name="LaserJet-1", status=DeviceStatus.WARNING, pending_job_count=3
            ),
            DeviceSnapshot(name="Label-2", status=DeviceStatus.ONLINE),
        ]
    )


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "printops-agent.cfg"


@pytest.fixture
def ready_store(config_path: Path):
    """Store configured for ``dashboard_url``; call with the fake server URL."""

    def _create(dashboard_url: str, **overrides: dict) -> ConfigurationStore:
        lines = [
            "[agent]",
            "agent_id = agent-1",
            "api_key = secret-key",
            f"dashboard_url = {dashboard_url}",
        ]
        for section, values in overrides.items():
            lines.append(f"[{section}]")
            lines.extend(f"{key} = {value}" for key, value in values.items())
        config_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return ConfigurationStore(load_config(config_path))

    return _create


class FakeDashboard:
    """aiohttp application standing in for the PrintOps dashboard."""

    def __init__(self) -> None:
        self.url = ""
        self.api_keys: List[Optional[str]] = []
        self.ws_connections = 0
        self.ws_connected_at: List[float] = []
        self.ws_frames: List[dict] = []
        self.ws_outbound: List[str] = []
        self.close_after_send = False
        self.ws_reject_status = 0
        self.heartbeats: List[dict] = []
        self.queued_commands: List[dict] = []
        self.heartbeat_status = 200
        self.results: Dict[str, dict] = {}
        self.result_status = 200
        self.result_delay = 0.0
        self.result_posts: List[str] = []

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws/agent", self._handle_ws)
        app.router.add_post("/api/agents/heartbeat", self._handle_heartbeat)
        app.router.add_post(
            "/api/agents/command/{command_id}/result", self._handle_result
        )
        return app

    def command_results(self) -> List[dict]:
        return [frame for frame in self.ws_frames if frame["type"] == "command_result"]

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        self.api_keys.append(request.headers.get("X-API-Key"))
        self.ws_connections += 1
        self.ws_connected_at.append(asyncio.get_running_loop().time())
        if self.ws_reject_status:
            return web.Response(status=self.ws_reject_status, text="rejected")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        while self.ws_outbound:
            await ws.send_str(self.ws_outbound.pop(0))
        if self.close_after_send:
            await ws.close()
            return ws

        async for message in ws:
            if message.type == WSMsgType.TEXT:
                self.ws_frames.append(json.loads(message.data))
        return ws

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        self.api_keys.append(request.headers.get("X-API-Key"))
        self.heartbeats.append(await request.json())
        if self.heartbeat_status >= 400:
            return web.Response(status=self.heartbeat_status, text="nope")
        commands, self.queued_commands = self.queued_commands, []
        return web.json_response({"success": True, "commands": commands})

    async def _handle_result(self, request: web.Request) -> web.Response:
        self.result_posts.append(request.match_info["command_id"])
        if self.result_delay:
            await asyncio.sleep(self.result_delay)
        if self.result_status >= 400:
            return web.Response(status=self.result_status, text="nope")
        self.results[request.match_info["command_id"]] = await request.json()
        return web.json_response({"success": True})


@pytest_asyncio.fixture
async def dashboard():
    fake = FakeDashboard()
    async with TestServer(fake.build_app()) as server:
        fake.url = str(server.make_url("/")).rstrip("/")
        yield fake


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return wait_until
