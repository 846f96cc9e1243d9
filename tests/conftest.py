import json
import textwrap
from pathlib import Path

import pytest

from serverpilot.exec import CommandRegistry, ExecResult, ExecutionEngine
from serverpilot.plugins.manager import PluginManager


class RecordingEngine(ExecutionEngine):
    """Engine that records calls instead of spawning processes."""

    def __init__(self, registry=None):
        super().__init__(registry or CommandRegistry())
        self.calls = []

    def run_sync(self, key, extra_args=(), timeout=None):
        self.calls.append(("sync", key, list(extra_args)))
        if self.registry.get(key) is None:
            return super().run_sync(key, extra_args, timeout)
        return ExecResult(True, f"ran {key}", "", 0)

    async def run_async(self, key, extra_args=(), timeout=None):
        self.calls.append(("async", key, list(extra_args)))
        if self.registry.get(key) is None:
            return await super().run_async(key, extra_args, timeout)
        return ExecResult(True, f"ran {key}", "", 0)


def write_plugin(
    plugins_dir: Path,
    plugin_id: str,
    *,
    contributes: dict | None = None,
    code: str | None = None,
    version: str = "1.0.0",
    **fields,
) -> Path:
    plugin_dir = plugins_dir / plugin_id
    plugin_dir.mkdir(parents=True, exist_ok=True)
    manifest = {"id": plugin_id, "name": plugin_id.title(), "version": version, **fields}
    if contributes is not None:
        manifest["contributes"] = contributes
    (plugin_dir / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    if code is not None:
        (plugin_dir / "plugin.py").write_text(textwrap.dedent(code), encoding="utf-8")
    return plugin_dir


@pytest.fixture
def plugins_dir(tmp_path):
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def engine():
    return RecordingEngine()


@pytest.fixture
def manager(plugins_dir, engine):
    return PluginManager(plugins_dir, engine)


@pytest.fixture
def make_plugin(plugins_dir):
    def _make(plugin_id, **kwargs):
        return write_plugin(plugins_dir, plugin_id, **kwargs)

    return _make


ADMIN = {"Authorization": "Bearer admin-token"}
VIEWER = {"Authorization": "Bearer viewer-token"}


@pytest.fixture
def settings(plugins_dir):
    from serverpilot.config import Settings

    return Settings(
        plugins_dir=plugins_dir,
        api_tokens={"admin-token": "admin", "viewer-token": "viewer"},
        catalog_url="https://catalog.test/catalog.json",
    )


@pytest.fixture
def client_for(settings):
    """Build a TestClient after the plugin tree has been prepared."""
    from fastapi.testclient import TestClient

    from serverpilot.app import create_app

    clients = []

    def _client():
        client = TestClient(create_app(settings))
        client.__enter__()
        clients.append(client)
        return client

    yield _client
    for client in clients:
        client.__exit__(None, None, None)
