"""Plugin system — discovery, lifecycle, scoped execution and marketplace.

A plugin is a directory inside ``plugins/`` with a ``manifest.json`` and an
optional ``plugin.py``.  See :mod:`serverpilot.plugins.manager`.
"""

from serverpilot.plugins.context import PluginContext, ScopedContextFactory
from serverpilot.plugins.manager import LoadedPlugin, PluginManager
from serverpilot.plugins.manifest import ManifestCheck, is_valid_plugin_id, validate_manifest
from serverpilot.plugins.marketplace import MarketplaceInstaller
from serverpilot.plugins.models import PluginManifest, PluginResult, RegistryEntry
from serverpilot.plugins.registry import PluginRegistryStore
from serverpilot.plugins.router import PluginApiRouter

__all__ = [
    "LoadedPlugin",
    "ManifestCheck",
    "MarketplaceInstaller",
    "PluginApiRouter",
    "PluginContext",
    "PluginManager",
    "PluginManifest",
    "PluginRegistryStore",
    "PluginResult",
    "RegistryEntry",
    "ScopedContextFactory",
    "is_valid_plugin_id",
    "validate_manifest",
]
