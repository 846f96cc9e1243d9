import pytest

from serverpilot.exec import CommandDef
from serverpilot.plugins.context import ScopedContextFactory
from serverpilot.plugins.models import PluginManifest
from serverpilot.plugins.registry import PluginRegistryStore


def _context(engine, tmp_path, plugin_id="alpha"):
    registry = PluginRegistryStore(tmp_path / ".registry.json")
    entry = registry.ensure(plugin_id, "1.0.0")
    manifest = PluginManifest(id=plugin_id, name=plugin_id, version="1.0.0")
    return ScopedContextFactory(engine, registry).build(manifest, entry), registry


def test_foreign_namespace_is_refused(engine, tmp_path):
    engine.registry.register("beta:restart", CommandDef("true"))
    ctx, _ = _context(engine, tmp_path)

    result = ctx.exec.run_sync("beta:restart")

    assert result.ok is False
    assert result.code == 1
    assert "alpha" in result.stderr
    assert "beta:restart" in result.stderr
    assert engine.calls == []


@pytest.mark.asyncio
async def test_foreign_namespace_is_refused_async(engine, tmp_path):
    ctx, _ = _context(engine, tmp_path)

    result = await ctx.exec.run_async("systemctl:restart", ["sshd"])

    assert result.ok is False
    assert "systemctl:restart" in result.stderr
    assert engine.calls == []


def test_own_namespace_and_shared_reads_are_allowed(engine, tmp_path):
    engine.registry.register("alpha:scan", CommandDef("true"))
    ctx, _ = _context(engine, tmp_path)

    assert ctx.exec.run_sync("alpha:scan").ok is True
    assert ctx.exec.run_sync("df").ok is True
    assert [c[1] for c in engine.calls] == ["alpha:scan", "df"]


def test_plugin_named_like_host_namespace_cannot_use_host_commands(engine, tmp_path):
    ctx, _ = _context(engine, tmp_path, plugin_id="docker")

    assert ctx.exec.run_sync("docker:rm", ["web"]).ok is False
    assert ctx.exec.run_sync("docker:ps").ok is True
    assert [c[1] for c in engine.calls] == ["docker:ps"]


def test_store_persists_into_registry(engine, tmp_path):
    ctx, registry = _context(engine, tmp_path)

    ctx.store.set("last_run", "2026-01-01")

    assert ctx.store.get("last_run") == "2026-01-01"
    assert ctx.store.get_all() == {"last_run": "2026-01-01"}
    assert registry.get("alpha").config == {"last_run": "2026-01-01"}


def test_logger_is_named_after_plugin(engine, tmp_path):
    ctx, _ = _context(engine, tmp_path)
    assert ctx.log.name == "serverpilot.plugin.alpha"
