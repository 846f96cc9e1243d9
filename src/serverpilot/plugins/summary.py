"""Helpers for summarizing plugins as plain text (CLI output, logs)."""

from __future__ import annotations

from typing import Any


def _line(item: dict[str, Any]) -> str:
    manifest = item.get("manifest") or item
    plugin_id = manifest.get("id", "unknown")
    name = manifest.get("name") or plugin_id
    version = manifest.get("version")
    version_text = f" v{version}" if version else ""
    if "enabled" in item:
        state = "enabled" if item["enabled"] else "disabled"
        return f"- `{plugin_id}` — {name}{version_text} ({state})"
    return f"- `{plugin_id}` — {name}{version_text}"


def format_plugins_summary(plugins: list[dict[str, Any]]) -> str:
    """Render installed plugins as a compact markdown list."""
    if not plugins:
        return "No plugins installed. Use `serverpilot install <id> <url>` to add one."

    lines = [f"Plugins ({len(plugins)}):"]
    lines.extend(_line(item) for item in plugins)
    return "\n".join(lines)


def format_plugins_overview(
    installed: list[dict[str, Any]],
    available: list[dict[str, Any]],
) -> str:
    """Render installed plugins plus catalog entries not installed yet."""
    if not installed and not available:
        return "No plugins found, installed or in the marketplace catalog."

    lines = ["Plugins overview:"]

    lines.append(f"Installed ({len(installed)}):")
    if installed:
        lines.extend(_line(item) for item in installed)
    else:
        lines.append("- (none)")

    lines.append(f"Available in marketplace ({len(available)}):")
    if available:
        lines.extend(_line(item) for item in available)
    else:
        lines.append("- (none)")

    return "\n".join(lines)


def split_catalog(
    installed: list[dict[str, Any]], catalog: dict[str, Any]
) -> list[dict[str, Any]]:
    """Catalog entries whose id is not among *installed*."""
    installed_ids = {str((item.get("manifest") or item).get("id", "")) for item in installed}
    return [p for p in catalog.get("plugins", []) if str(p.get("id", "")) not in installed_ids]
