"""Plugin manager — discovery, lifecycle and contributions.

    plugins/
      .registry.json        <- enabled flag + config for every plugin
      system-health/
        manifest.json       <- Required manifest (id == directory name)
        plugin.py           <- Optional code: activate/deactivate/api/get_widget_data
        components/         <- Optional files served to the dashboard

Lifecycle per plugin::

    discovered -> validated -> registered -> disabled <-> enabled
                                                  \\-> removed

Only enabled plugins have a loaded module and registered commands.
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import mimetypes
import re
import shutil
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any

from serverpilot.exec import CommandDef, ExecutionEngine
from serverpilot.plugins.context import PluginContext, ScopedContextFactory
from serverpilot.plugins.manifest import MANIFEST_FILENAME, is_valid_plugin_id, load_manifest
from serverpilot.plugins.models import PluginManifest, PluginResult, RegistryEntry
from serverpilot.plugins.registry import PluginRegistryStore

logger = logging.getLogger(__name__)

PLUGIN_MODULE_FILENAME = "plugin.py"
REGISTRY_FILENAME = ".registry.json"

_COMPONENT_KEY = re.compile(r"^(?:[a-z0-9]|[a-z0-9][a-z0-9.-]*[a-z0-9])$")


@dataclass
class LoadedPlugin:
    manifest: PluginManifest
    path: Path
    context: PluginContext
    entry: RegistryEntry
    instance: Any = None
    # True while commands are registered and the module (if any) is loaded
    active: bool = False

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def enabled(self) -> bool:
        return self.entry.enabled


@dataclass(frozen=True)
class ComponentFile:
    content: bytes
    media_type: str
    path: Path


# ─── Helpers ─────────────────────────────────────────────────────────────


def _member(instance: Any, name: str) -> Any:
    """Read a hook from a plugin module, object or plain dict."""
    if instance is None:
        return None
    if isinstance(instance, Mapping):
        return instance.get(name)
    return getattr(instance, name, None)


async def call_hook(fn: Any, *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _module_name(plugin_id: str) -> str:
    return "serverpilot_plugins." + plugin_id.replace("-", "_")


def _import_plugin_module(path: Path, plugin_id: str) -> ModuleType:
    name = _module_name(plugin_id)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(name, None)
        raise
    return module


class PluginManager:
    """Owns every loaded plugin for the lifetime of the process."""

    def __init__(
        self,
        plugins_dir: Path,
        engine: ExecutionEngine,
        registry: PluginRegistryStore | None = None,
        *,
        manifest_filename: str = MANIFEST_FILENAME,
        rollback_failed_activation: bool = False,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.engine = engine
        self.registry = registry or PluginRegistryStore(self.plugins_dir / REGISTRY_FILENAME)
        self.manifest_filename = manifest_filename
        self.rollback_failed_activation = rollback_failed_activation
        self.contexts = ScopedContextFactory(engine, self.registry)
        self._plugins: dict[str, LoadedPlugin] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Any, engine: ExecutionEngine) -> PluginManager:
        return cls(
            settings.plugins_dir,
            engine,
            PluginRegistryStore(settings.registry_path),
            manifest_filename=settings.manifest_filename,
            rollback_failed_activation=settings.rollback_failed_activation,
        )

    def get_plugins_dir(self) -> Path:
        """Get and ensure the plugins directory exists."""
        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        return self.plugins_dir

    def _lock_for(self, plugin_id: str) -> asyncio.Lock:
        return self._locks.setdefault(plugin_id, asyncio.Lock())

    # ─── Discovery / registration ────────────────────────────────────────

    async def discover(self, activate: bool = True) -> list[str]:
        """Scan the plugin directory and load every valid plugin.

        With ``activate=False`` plugins are only validated and registered;
        no plugin code runs.  The CLI uses this for registry-only commands.
        """
        plugins_dir = self.get_plugins_dir()
        dirs = sorted(
            d.name for d in plugins_dir.iterdir() if d.is_dir() and not d.name.startswith(".")
        )
        logger.info("Scanning %s: found %d plugin dir(s)", plugins_dir, len(dirs))

        for dir_name in dirs:
            await self.load_plugin(dir_name, activate=activate)

        enabled = [p for p in self._plugins.values() if p.enabled]
        logger.info("%d plugin(s) loaded, %d enabled", len(self._plugins), len(enabled))
        return sorted(self._plugins)

    async def load_plugin(self, dir_name: str, activate: bool = True) -> LoadedPlugin | None:
        """Validate, register and (if enabled) activate one plugin directory."""
        plugin_dir = self.get_plugins_dir() / dir_name
        check = load_manifest(plugin_dir, dir_name, self.manifest_filename)
        if not check:
            logger.warning("Skipping plugin '%s': %s", dir_name, check.reason)
            return None
        manifest = check.manifest
        assert manifest is not None

        async with self._lock_for(manifest.id):
            entry = self.registry.ensure(manifest.id, manifest.version)

            existing = self._plugins.get(manifest.id)
            if existing is not None:
                if existing.manifest != manifest:
                    logger.info("Manifest of '%s' changed; refreshing", manifest.id)
                    if existing.active:
                        self._unregister_commands(existing)
                    existing.manifest = manifest
                    if existing.active:
                        self._register_commands(existing)
                existing.entry = entry
                existing.context.config = dict(entry.config)
                existing.context.store.refresh(entry.config)
                if activate:
                    await self._reconcile(existing)
                return existing

            plugin = LoadedPlugin(
                manifest=manifest,
                path=plugin_dir,
                context=self.contexts.build(manifest, entry),
                entry=entry,
            )
            self._plugins[manifest.id] = plugin

            if activate and entry.enabled:
                await self._activate(plugin)
            return plugin

    # ─── Module / commands ───────────────────────────────────────────────

    async def _load_module(self, plugin: LoadedPlugin) -> Any:
        module_path = plugin.path / PLUGIN_MODULE_FILENAME
        if not module_path.is_file():
            # Declarations-only plugin
            return None
        try:
            module = await asyncio.to_thread(_import_plugin_module, module_path, plugin.id)
        except Exception:
            logger.exception("Error loading module for plugin '%s'", plugin.id)
            return None
        return getattr(module, "plugin", module)

    def _register_commands(self, plugin: LoadedPlugin) -> None:
        for cmd in plugin.manifest.contributes.commands:
            key = plugin.manifest.command_key(cmd.key)
            if not self.engine.registry.register(key, CommandDef(cmd.bin, tuple(cmd.args))):
                plugin.context.log.warning("Command '%s' was not registered", key)

    def _unregister_commands(self, plugin: LoadedPlugin) -> None:
        for cmd in plugin.manifest.contributes.commands:
            key = plugin.manifest.command_key(cmd.key)
            if not self.engine.registry.is_builtin(key):
                self.engine.registry.unregister(key)

    async def _activate(self, plugin: LoadedPlugin) -> bool:
        if plugin.instance is None:
            plugin.instance = await self._load_module(plugin)
        self._register_commands(plugin)
        plugin.active = True

        activate = _member(plugin.instance, "activate")
        if activate is None:
            return True
        try:
            await call_hook(activate, plugin.context)
        except Exception:
            plugin.context.log.exception("Error activating plugin '%s'", plugin.id)
            if self.rollback_failed_activation:
                await self._deactivate(plugin, run_hook=False)
                self._persist_enabled(plugin, False)
                return False
        return True

    async def _deactivate(self, plugin: LoadedPlugin, run_hook: bool = True) -> None:
        deactivate = _member(plugin.instance, "deactivate")
        if run_hook and deactivate is not None:
            try:
                await call_hook(deactivate, plugin.context)
            except Exception:
                plugin.context.log.exception("Error deactivating plugin '%s'", plugin.id)
        self._unregister_commands(plugin)
        plugin.instance = None
        plugin.active = False
        sys.modules.pop(_module_name(plugin.id), None)

    async def _reconcile(self, plugin: LoadedPlugin) -> None:
        """Bring the live state in line with the persisted ``enabled`` flag."""
        if plugin.enabled and not plugin.active:
            await self._activate(plugin)
        elif not plugin.enabled and plugin.active:
            await self._deactivate(plugin)

    def _persist_enabled(self, plugin: LoadedPlugin, enabled: bool) -> None:
        entry = self.registry.set_enabled(plugin.id, enabled)
        if entry is None:
            # Entry vanished from disk; recreate it rather than fail.
            entry = self.registry.ensure(plugin.id, plugin.manifest.version)
            entry = self.registry.set_enabled(plugin.id, enabled) or entry
        plugin.entry = entry

    # ─── Public lifecycle ────────────────────────────────────────────────

    def get(self, plugin_id: str) -> LoadedPlugin | None:
        return self._plugins.get(plugin_id)

    def installed_ids(self) -> list[str]:
        return sorted({*self._plugins, *self.registry.ids()})

    def list_plugins(self) -> list[dict[str, Any]]:
        """All discovered plugins, enabled or not."""
        result = []
        for plugin_id in sorted(self._plugins):
            plugin = self._plugins[plugin_id]
            entry = self.registry.get(plugin_id) or plugin.entry
            result.append(
                {
                    "manifest": plugin.manifest.model_dump(by_alias=True),
                    "enabled": plugin.enabled,
                    "config": dict(entry.config),
                }
            )
        return result

    async def enable(self, plugin_id: str) -> bool:
        """Enable a plugin.  Returns False if unknown (or rolled back)."""
        async with self._lock_for(plugin_id):
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                return False
            if plugin.enabled and plugin.active:
                return True
            # Persist first so a crash during activation leaves the right state on disk.
            self._persist_enabled(plugin, True)
            ok = await self._activate(plugin)
        if ok:
            logger.info("Enabled plugin '%s'", plugin_id)
        return ok

    async def disable(self, plugin_id: str) -> bool:
        async with self._lock_for(plugin_id):
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                return False
            await self._deactivate(plugin)
            self._persist_enabled(plugin, False)
        logger.info("Disabled plugin '%s'", plugin_id)
        return True

    def configure(self, plugin_id: str, config: dict[str, Any]) -> bool:
        """Merge *config* into the plugin's stored config."""
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            return False
        entry = self.registry.merge_config(plugin_id, config)
        if entry is None:
            self.registry.ensure(plugin_id, plugin.manifest.version)
            entry = self.registry.merge_config(plugin_id, config)
        assert entry is not None
        plugin.entry = entry
        plugin.context.store.refresh(config)
        plugin.context.config = dict(entry.config)
        return True

    async def uninstall(self, plugin_id: str) -> PluginResult:
        """Disable, forget and delete a plugin.  Safe to call again after a partial run."""
        if not is_valid_plugin_id(plugin_id):
            return PluginResult(False, plugin_id, error="Invalid plugin ID format")

        async with self._lock_for(plugin_id):
            plugin = self._plugins.get(plugin_id)
            if plugin is not None and (plugin.enabled or plugin.active):
                await self._deactivate(plugin)
                self._persist_enabled(plugin, False)

            self._plugins.pop(plugin_id, None)
            self.registry.remove(plugin_id)

            plugin_dir = self.get_plugins_dir() / plugin_id
            if plugin_dir.exists():
                try:
                    shutil.rmtree(plugin_dir)
                except OSError:
                    logger.exception("Failed to delete files of plugin '%s'", plugin_id)
                    return PluginResult(False, plugin_id, error="Failed to remove plugin files")

        logger.info("Uninstalled plugin '%s'", plugin_id)
        return PluginResult(True, plugin_id, message=f'Plugin "{plugin_id}" uninstalled')

    async def shutdown(self) -> None:
        """Deactivate every live plugin without touching persisted state."""
        for plugin in list(self._plugins.values()):
            if plugin.active:
                async with self._lock_for(plugin.id):
                    await self._deactivate(plugin)
        logger.info("Plugin manager shut down")

    # ─── Contributions ───────────────────────────────────────────────────

    def _enabled(self) -> list[LoadedPlugin]:
        return [self._plugins[k] for k in sorted(self._plugins) if self._plugins[k].enabled]

    def nav_items(self) -> list[dict[str, Any]]:
        items = []
        for plugin in self._enabled():
            for nav in plugin.manifest.contributes.nav_items:
                items.append({**nav.model_dump(by_alias=True), "pluginId": plugin.id})
        return items

    def widgets(self, placement: str = "dashboard") -> list[dict[str, Any]]:
        widgets = []
        for plugin in self._enabled():
            for widget in plugin.manifest.contributes.widgets:
                if widget.placement in (None, placement):
                    widgets.append({**widget.model_dump(by_alias=True), "pluginId": plugin.id})
        return widgets

    async def widget_data(self, plugin_id: str, widget_key: str) -> Any:
        plugin = self._plugins.get(plugin_id)
        if plugin is None or not plugin.enabled:
            return None
        hook = _member(plugin.instance, "get_widget_data")
        if hook is None:
            return None
        try:
            return await call_hook(hook, widget_key, plugin.context)
        except Exception:
            plugin.context.log.exception("Error getting widget data for '%s'", widget_key)
            return None

    def _components(self, plugins: list[LoadedPlugin], type_: str | None) -> list[dict[str, Any]]:
        found = []
        for plugin in plugins:
            for comp in plugin.manifest.contributes.components:
                if type_ is None or comp.type == type_:
                    found.append(
                        {
                            **comp.model_dump(by_alias=True),
                            "pluginId": plugin.id,
                            "pluginName": plugin.manifest.name,
                            "enabled": plugin.enabled,
                        }
                    )
        return found

    def components(self, type_: str | None = None) -> list[dict[str, Any]]:
        """Component declarations of enabled plugins."""
        return self._components(self._enabled(), type_)

    def all_components(self, type_: str | None = None) -> list[dict[str, Any]]:
        plugins = [self._plugins[k] for k in sorted(self._plugins)]
        return self._components(plugins, type_)

    def component_file(self, plugin_id: str, key: str) -> ComponentFile | None:
        """Read a declared component file, refusing anything outside the plugin dir."""
        if not _COMPONENT_KEY.fullmatch(key):
            return None
        plugin = self._plugins.get(plugin_id)
        if plugin is None or not plugin.enabled:
            return None
        decl = next((c for c in plugin.manifest.contributes.components if c.key == key), None)
        if decl is None:
            return None

        base = plugin.path.resolve()
        target = (base / decl.file).resolve()
        if not target.is_relative_to(base) or target == base:
            logger.warning("Component '%s' of '%s' points outside its plugin", key, plugin_id)
            return None
        if not target.is_file():
            return None

        media_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        if target.suffix in (".js", ".mjs", ".jsx"):
            media_type = "application/javascript"
        return ComponentFile(target.read_bytes(), media_type, target)

    # ─── API routes ──────────────────────────────────────────────────────

    def api_handler(self, plugin: LoadedPlugin, method: str, path: str) -> Any:
        """Look up ``"METHOD /path"`` (or bare ``"/path"``) in the plugin's api map."""
        api = _member(plugin.instance, "api")
        if not api:
            return None
        return api.get(f"{method.upper()} {path}") or api.get(path)
