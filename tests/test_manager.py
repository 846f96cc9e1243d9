import pytest

from serverpilot.plugins.manager import PluginManager

COUNTER_CODE = """
def activate(ctx):
    ctx.store.set("activations", ctx.store.get("activations", 0) + 1)


def deactivate(ctx):
    ctx.store.set("deactivations", ctx.store.get("deactivations", 0) + 1)


async def get_widget_data(key, ctx):
    return {"key": key, "activations": ctx.store.get("activations")}
"""

BROKEN_ACTIVATE = """
def activate(ctx):
    raise RuntimeError("boom")
"""

HELLO_COMMANDS = {"commands": [{"key": "hello", "bin": "echo", "args": ["hi"]}]}


@pytest.mark.asyncio
async def test_discover_registers_plugins_disabled(manager, make_plugin, plugins_dir):
    make_plugin("demo", code=COUNTER_CODE)
    make_plugin("second")
    (plugins_dir / ".install-leftover").mkdir()
    make_plugin("wrong-dir").joinpath("manifest.json").write_text(
        '{"id": "other", "name": "x", "version": "1"}', encoding="utf-8"
    )
    make_plugin("Bad_Dir")

    found = await manager.discover()

    assert found == ["demo", "second"]
    assert manager.registry.ids() == ["demo", "second"]
    assert manager.registry.get("Bad_Dir") is None
    assert manager.registry.get("wrong-dir") is None
    assert manager.registry.get("other") is None
    assert manager.registry.get("demo").enabled is False
    assert manager.get("demo").instance is None
    assert manager.registry.get("demo").config == {}


@pytest.mark.asyncio
async def test_enable_registers_commands_then_activates(manager, make_plugin, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    await manager.discover()

    assert await manager.enable("demo") is True

    assert "demo:hello" in engine.registry
    assert manager.registry.get("demo").enabled is True
    assert manager.registry.get("demo").config["activations"] == 1


@pytest.mark.asyncio
async def test_enable_disable_enable_restores_commands_once(manager, make_plugin, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    await manager.discover()

    await manager.enable("demo")
    await manager.disable("demo")
    assert "demo:hello" not in engine.registry
    assert manager.registry.get("demo").config["deactivations"] == 1

    await manager.enable("demo")
    assert engine.registry.keys().count("demo:hello") == 1
    assert manager.registry.get("demo").config["activations"] == 2


@pytest.mark.asyncio
async def test_enabled_plugins_activate_on_discover(plugins_dir, engine, make_plugin):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    first = PluginManager(plugins_dir, engine)
    await first.discover()
    await first.enable("demo")
    await first.shutdown()
    assert "demo:hello" not in engine.registry
    assert first.registry.get("demo").enabled is True

    second = PluginManager(plugins_dir, engine)
    await second.discover()

    assert "demo:hello" in engine.registry
    assert second.get("demo").instance is not None


@pytest.mark.asyncio
async def test_configure_merges(manager, make_plugin):
    make_plugin("demo")
    await manager.discover()

    manager.configure("demo", {"a": 1})
    manager.configure("demo", {"b": 2})

    assert manager.registry.get("demo").config == {"a": 1, "b": 2}
    assert manager.get("demo").context.config == {"a": 1, "b": 2}
    assert manager.get("demo").context.store.get("a") == 1


@pytest.mark.asyncio
async def test_configure_unknown_plugin(manager):
    assert manager.configure("ghost", {"a": 1}) is False


@pytest.mark.asyncio
async def test_activation_error_keeps_plugin_enabled(manager, make_plugin, engine):
    make_plugin("flaky", code=BROKEN_ACTIVATE, contributes=HELLO_COMMANDS)
    await manager.discover()

    assert await manager.enable("flaky") is True

    assert manager.registry.get("flaky").enabled is True
    assert "flaky:hello" in engine.registry


@pytest.mark.asyncio
async def test_activation_error_rolls_back_when_configured(plugins_dir, engine, make_plugin):
    make_plugin("flaky", code=BROKEN_ACTIVATE, contributes=HELLO_COMMANDS)
    manager = PluginManager(plugins_dir, engine, rollback_failed_activation=True)
    await manager.discover()

    assert await manager.enable("flaky") is False

    assert manager.registry.get("flaky").enabled is False
    assert "flaky:hello" not in engine.registry


@pytest.mark.asyncio
async def test_module_import_error_is_contained(manager, make_plugin):
    make_plugin("broken", code="raise ImportError('missing dep')\n")
    await manager.discover()

    assert await manager.enable("broken") is True
    assert manager.get("broken").instance is None


@pytest.mark.asyncio
async def test_plugin_cannot_override_builtin_command(manager, make_plugin, engine):
    make_plugin(
        "docker",
        contributes={"commands": [{"key": "docker:rm", "bin": "sh", "args": ["-c", "x"]}]},
    )
    await manager.discover()
    await manager.enable("docker")

    assert engine.registry.get("docker:rm").bin == "docker"

    await manager.disable("docker")
    assert "docker:rm" in engine.registry


@pytest.mark.asyncio
async def test_uninstall_is_idempotent(manager, make_plugin, plugins_dir, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    await manager.discover()
    await manager.enable("demo")

    first = await manager.uninstall("demo")
    second = await manager.uninstall("demo")

    assert first.ok is True
    assert second.ok is True
    assert not (plugins_dir / "demo").exists()
    assert manager.registry.get("demo") is None
    assert manager.get("demo") is None
    assert "demo:hello" not in engine.registry


@pytest.mark.asyncio
async def test_uninstall_rejects_bad_id(manager, plugins_dir):
    result = await manager.uninstall("../plugins")

    assert result.ok is False
    assert plugins_dir.exists()


@pytest.mark.asyncio
async def test_contributions_only_from_enabled_plugins(manager, make_plugin):
    contributes = {
        "navItems": [{"label": "Demo", "href": "/plugins/demo"}],
        "widgets": [
            {"key": "main", "title": "Main"},
            {"key": "side", "title": "Side", "placement": "sidebar"},
        ],
    }
    make_plugin("demo", code=COUNTER_CODE, contributes=contributes)
    make_plugin("idle", contributes=contributes)
    await manager.discover()
    await manager.enable("demo")

    assert [n["pluginId"] for n in manager.nav_items()] == ["demo"]
    assert [w["key"] for w in manager.widgets("dashboard")] == ["main"]
    assert [w["key"] for w in manager.widgets("sidebar")] == ["main", "side"]
    assert await manager.widget_data("demo", "main") == {"key": "main", "activations": 1}
    assert await manager.widget_data("idle", "main") is None


@pytest.mark.asyncio
async def test_component_file_refuses_traversal(manager, make_plugin, plugins_dir):
    (plugins_dir / "secret.txt").write_text("top secret", encoding="utf-8")
    plugin_dir = make_plugin(
        "demo",
        contributes={
            "components": [
                {"key": "page", "type": "page", "file": "components/page.js"},
                {"key": "escape", "type": "widget", "file": "../secret.txt"},
            ]
        },
    )
    (plugin_dir / "components").mkdir()
    (plugin_dir / "components" / "page.js").write_text("export default 1;", encoding="utf-8")
    await manager.discover()

    assert manager.component_file("demo", "page") is None

    await manager.enable("demo")
    served = manager.component_file("demo", "page")
    assert served.content == b"export default 1;"
    assert served.media_type == "application/javascript"

    assert manager.component_file("demo", "escape") is None
    assert manager.component_file("demo", "../page") is None
    assert manager.component_file("demo", "missing") is None


@pytest.mark.asyncio
async def test_components_listing(manager, make_plugin):
    comps = {"components": [{"key": "page", "type": "page", "file": "p.js"}]}
    make_plugin("demo", contributes=comps)
    await manager.discover()

    assert manager.components() == []
    assert [c["pluginId"] for c in manager.all_components("page")] == ["demo"]
    assert manager.all_components("panel") == []


@pytest.mark.asyncio
async def test_reload_refreshes_changed_commands(manager, make_plugin, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    await manager.discover()
    await manager.enable("demo")

    make_plugin(
        "demo",
        code=COUNTER_CODE,
        version="1.1.0",
        contributes={"commands": [{"key": "bye", "bin": "echo", "args": ["bye"]}]},
    )
    await manager.load_plugin("demo")

    assert "demo:hello" not in engine.registry
    assert "demo:bye" in engine.registry
    assert manager.registry.get("demo").version == "1.1.0"
    assert manager.registry.get("demo").enabled is True


@pytest.mark.asyncio
async def test_rediscover_applies_disable_from_registry(manager, make_plugin, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    await manager.discover()
    await manager.enable("demo")

    manager.registry.set_enabled("demo", False)
    await manager.discover()

    plugin = manager.get("demo")
    assert plugin.enabled is False
    assert plugin.active is False
    assert plugin.instance is None
    assert "demo:hello" not in engine.registry
    assert manager.registry.get("demo").config["deactivations"] == 1


@pytest.mark.asyncio
async def test_rediscover_applies_enable_from_registry(manager, make_plugin, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    await manager.discover()

    manager.registry.set_enabled("demo", True)
    await manager.discover()

    plugin = manager.get("demo")
    assert plugin.active is True
    assert plugin.instance is not None
    assert "demo:hello" in engine.registry
    assert manager.registry.get("demo").config["activations"] == 1


@pytest.mark.asyncio
async def test_declarations_only_plugin_follows_registry(manager, make_plugin, engine):
    make_plugin("decl", contributes=HELLO_COMMANDS)
    await manager.discover()
    await manager.enable("decl")
    assert "decl:hello" in engine.registry

    manager.registry.set_enabled("decl", False)
    await manager.discover()

    assert "decl:hello" not in engine.registry


@pytest.mark.asyncio
async def test_discover_without_activation_runs_no_plugin_code(manager, make_plugin, engine):
    make_plugin("demo", code=COUNTER_CODE, contributes=HELLO_COMMANDS)
    manager.registry.ensure("demo", "1.0.0")
    manager.registry.set_enabled("demo", True)

    await manager.discover(activate=False)

    assert manager.get("demo").enabled is True
    assert manager.get("demo").instance is None
    assert "demo:hello" not in engine.registry
    assert "activations" not in manager.registry.get("demo").config


@pytest.mark.asyncio
async def test_uninstall_keeps_the_plugin_lock(manager, make_plugin):
    make_plugin("demo")
    await manager.discover()
    lock = manager._lock_for("demo")

    await manager.uninstall("demo")

    assert manager._lock_for("demo") is lock
