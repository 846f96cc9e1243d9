"""Plugin data shapes.

``manifest.json`` (one per plugin directory)::

    {
      "id": "system-health",
      "name": "System Health",
      "version": "1.0.0",
      "description": "Disk, memory and service checks",
      "contributes": {
        "navItems":   [{"label": "Health", "href": "/plugins/system-health"}],
        "widgets":    [{"key": "health-summary", "title": "Health", "colSpan": 2}],
        "apiRoutes":  [{"method": "GET", "path": "/status", "adminOnly": false}],
        "settings":   {"title": "Thresholds", "fields": [...]},
        "commands":   [{"key": "status", "bin": "/usr/bin/foo", "args": ["--json"]}],
        "components": [{"key": "log-viewer", "type": "page", "file": "components/LogViewer.js"}]
      }
    }

The registry file holds a JSON array of :class:`RegistryEntry`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class PluginError(Exception):
    """Base class for errors raised inside the plugin pipeline."""


@dataclass
class PluginResult:
    """Outcome of install/uninstall.  ``error`` is always safe to show a user."""

    ok: bool
    plugin_id: str
    plugin: PluginManifest | None = None
    error: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            data["message"] = self.message
            if self.plugin is not None:
                data["plugin"] = self.plugin.model_dump(by_alias=True)
        else:
            data["error"] = self.error
        return data


class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class NavItem(_Camel):
    label: str
    href: str
    icon: str | None = None


class WidgetDecl(_Camel):
    key: str
    title: str
    col_span: int = Field(default=1, alias="colSpan")
    placement: str | None = None


class ApiRouteDecl(_Camel):
    method: Literal["GET", "POST", "PUT", "DELETE"]
    path: str
    auth: bool = True
    admin_only: bool = Field(default=False, alias="adminOnly")


class SettingsField(_Camel):
    key: str
    label: str
    type: Literal["text", "number", "boolean", "select"] = "text"
    default: Any = None
    options: list[dict[str, str]] = Field(default_factory=list)
    description: str | None = None


class SettingsDecl(_Camel):
    title: str
    fields: list[SettingsField] = Field(default_factory=list)


class CommandDecl(_Camel):
    key: str
    bin: str
    args: list[str] = Field(default_factory=list)


class ComponentDecl(_Camel):
    key: str
    type: Literal["page", "widget", "panel"] = "widget"
    file: str
    title: str | None = None
    route: str | None = None


class Contributions(_Camel):
    nav_items: list[NavItem] = Field(default_factory=list, alias="navItems")
    widgets: list[WidgetDecl] = Field(default_factory=list)
    api_routes: list[ApiRouteDecl] = Field(default_factory=list, alias="apiRoutes")
    settings: SettingsDecl | None = None
    commands: list[CommandDecl] = Field(default_factory=list)
    components: list[ComponentDecl] = Field(default_factory=list)


class PluginManifest(_Camel):
    id: str
    name: str
    version: str
    description: str = ""
    author: str | None = None
    icon: str | None = None
    min_app_version: str | None = Field(default=None, alias="minAppVersion")
    contributes: Contributions = Field(default_factory=Contributions)

    def command_key(self, key: str) -> str:
        """Namespace a declared command key under this plugin's id."""
        prefix = f"{self.id}:"
        return key if key.startswith(prefix) else prefix + key

    def find_route(self, method: str, path: str) -> ApiRouteDecl | None:
        method = method.upper()
        for route in self.contributes.api_routes:
            if route.method == method and route.path == path:
                return route
        return None

    def path_admin_only(self, path: str) -> bool:
        """True when any declaration for *path*, whatever its method, is admin-only."""
        return any(r.admin_only for r in self.contributes.api_routes if r.path == path)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class RegistryEntry(BaseModel):
    """Persisted enable/config record for one plugin."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    enabled: bool = False
    config: dict[str, Any] = Field(default_factory=dict)
    installed_at: str = Field(default_factory=_now, alias="installedAt")
    version: str = "0.0.0"

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
