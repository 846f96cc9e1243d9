"""Per-plugin capability object handed to plugin code.

A plugin only ever sees its :class:`PluginContext`:

    ctx.config          its persisted configuration
    ctx.exec.run_sync   / ctx.exec.run_async, limited to its own
                        ``<plugin-id>:*`` commands and the shared read-only keys
    ctx.store           key-value storage saved into its registry entry
    ctx.log             logger named ``serverpilot.plugin.<plugin-id>``
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from serverpilot.exec import (
    BUILTIN_COMMANDS,
    EXIT_NOT_REGISTERED,
    READ_ONLY_KEYS,
    ExecResult,
    ExecutionEngine,
)
from serverpilot.plugins.models import PluginManifest, RegistryEntry
from serverpilot.plugins.registry import PluginRegistryStore

PLUGIN_LOGGER_PREFIX = "serverpilot.plugin"


class ScopedExecutor:
    """Execution proxy that re-checks every key against the plugin's identity."""

    def __init__(
        self,
        plugin_id: str,
        engine: ExecutionEngine,
        reserved_keys: frozenset[str] = frozenset(BUILTIN_COMMANDS),
        shared_keys: frozenset[str] = READ_ONLY_KEYS,
    ):
        self.plugin_id = plugin_id
        self._engine = engine
        self._reserved = reserved_keys
        self._shared = shared_keys

    def is_allowed(self, key: str) -> bool:
        if key in self._shared:
            return True
        return key.startswith(f"{self.plugin_id}:") and key not in self._reserved

    def _refused(self, key: str) -> ExecResult:
        logging.getLogger(f"{PLUGIN_LOGGER_PREFIX}.{self.plugin_id}").warning(
            "Blocked command '%s'", key
        )
        return ExecResult(
            False,
            "",
            f'Plugin "{self.plugin_id}" cannot access command "{key}"',
            EXIT_NOT_REGISTERED,
        )

    def run_sync(
        self, key: str, extra_args: Iterable[str] = (), timeout: float | None = None
    ) -> ExecResult:
        if not self.is_allowed(key):
            return self._refused(key)
        return self._engine.run_sync(key, extra_args, timeout)

    async def run_async(
        self, key: str, extra_args: Iterable[str] = (), timeout: float | None = None
    ) -> ExecResult:
        if not self.is_allowed(key):
            return self._refused(key)
        return await self._engine.run_async(key, extra_args, timeout)


class PluginStore:
    """Namespaced key-value store; every write lands in the registry file."""

    def __init__(self, plugin_id: str, registry: PluginRegistryStore, initial: dict[str, Any]):
        self.plugin_id = plugin_id
        self._registry = registry
        self._data: dict[str, Any] = dict(initial)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._registry.merge_config(self.plugin_id, {key: value})

    def get_all(self) -> dict[str, Any]:
        return dict(self._data)

    def refresh(self, values: dict[str, Any]) -> None:
        """Update the live view after the config was changed elsewhere."""
        self._data.update(values)


class PluginContext:
    def __init__(
        self,
        plugin_id: str,
        config: dict[str, Any],
        exec: ScopedExecutor,
        store: PluginStore,
        log: logging.Logger,
    ):
        self.plugin_id = plugin_id
        self.config = config
        self.exec = exec
        self.store = store
        self.log = log

    def __repr__(self) -> str:
        return f"<PluginContext {self.plugin_id}>"


class ScopedContextFactory:
    def __init__(self, engine: ExecutionEngine, registry: PluginRegistryStore):
        self.engine = engine
        self.registry = registry

    def build(self, manifest: PluginManifest, entry: RegistryEntry) -> PluginContext:
        plugin_id = manifest.id
        return PluginContext(
            plugin_id=plugin_id,
            config=dict(entry.config),
            exec=ScopedExecutor(plugin_id, self.engine),
            store=PluginStore(plugin_id, self.registry, entry.config),
            log=logging.getLogger(f"{PLUGIN_LOGGER_PREFIX}.{plugin_id}"),
        )
