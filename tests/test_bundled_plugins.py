import shutil
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from serverpilot.exec import CommandRegistry, ExecResult, ExecutionEngine
from serverpilot.plugins.manager import PluginManager

BUNDLED = Path(__file__).resolve().parents[1] / "plugins"

OUTPUTS = {
    "df": "Filesystem 1B-blocks Used Available Use% Mounted on\n/dev/sda1 1000 400 600 40% /",
    "free": "              total used free\nMem:           2048  1024  1024\nSwap: 0 0 0",
    "systemctl:is-active": "active",
    "service-logs:list-units": "ssh.service loaded active running OpenBSD Secure Shell server",
    "service-logs:journal": "line one\nline two",
}


class CannedEngine(ExecutionEngine):
    def __init__(self):
        super().__init__(CommandRegistry())
        self.calls = []

    def _result(self, mode, key, extra_args):
        self.calls.append((mode, key, list(extra_args)))
        return ExecResult(key in self.registry, OUTPUTS.get(key, ""), "", 0)

    def run_sync(self, key, extra_args=(), timeout=None):
        return self._result("sync", key, extra_args)

    async def run_async(self, key, extra_args=(), timeout=None):
        return self._result("async", key, extra_args)


@pytest_asyncio.fixture
async def bundled(tmp_path):
    plugins_dir = tmp_path / "plugins"
    shutil.copytree(BUNDLED, plugins_dir, ignore=shutil.ignore_patterns(".registry.json"))
    engine = CannedEngine()
    manager = PluginManager(plugins_dir, engine)
    await manager.discover()
    yield manager, engine
    await manager.shutdown()


def _request(**params):
    return SimpleNamespace(query_params=params)


@pytest.mark.asyncio
async def test_bundled_plugins_are_valid(bundled):
    manager, _ = bundled
    assert {"service-logs", "system-health"} <= set(manager.installed_ids())


@pytest.mark.asyncio
async def test_system_health_status(bundled):
    manager, _ = bundled
    await manager.enable("system-health")
    plugin = manager.get("system-health")

    handler = manager.api_handler(plugin, "GET", "/status")
    data = await handler(_request(), plugin.context)

    assert data["disk"] == {"total": 1000, "used": 400, "available": 600}
    assert data["memory"] == {"total": 2048, "used": 1024}
    assert data["services"] == {"ssh": "active", "cron": "active"}


@pytest.mark.asyncio
async def test_system_health_never_blocks_the_event_loop(bundled):
    manager, engine = bundled
    await manager.enable("system-health")

    data = await manager.widget_data("system-health", "health-summary")

    assert data["disk"]["used"] == 400
    assert engine.calls
    assert {mode for mode, _, _ in engine.calls} == {"async"}


@pytest.mark.asyncio
async def test_service_logs_uses_its_own_commands(bundled):
    manager, engine = bundled
    await manager.enable("service-logs")
    plugin = manager.get("service-logs")

    services = await manager.api_handler(plugin, "GET", "/services")(_request(), plugin.context)
    logs = await manager.api_handler(plugin, "GET", "/logs")(
        _request(unit="ssh.service", lines="5"), plugin.context
    )

    assert services["services"][0]["unit"] == "ssh.service"
    assert logs["lines"] == ["line one", "line two"]
    assert ("async", "service-logs:journal", ["ssh.service", "-n", "5"]) in engine.calls


@pytest.mark.asyncio
async def test_service_logs_rejects_odd_unit_names(bundled):
    manager, engine = bundled
    await manager.enable("service-logs")
    plugin = manager.get("service-logs")

    result = await manager.api_handler(plugin, "GET", "/logs")(
        _request(unit="ssh; reboot"), plugin.context
    )

    assert result["error"] == "Invalid unit name"
    assert not any(key == "service-logs:journal" for _, key, _ in engine.calls)
