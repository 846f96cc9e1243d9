"""Manifest reading and validation."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from serverpilot.plugins.models import PluginManifest

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"

ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")


def is_valid_plugin_id(value: Any) -> bool:
    return isinstance(value, str) and ID_PATTERN.fullmatch(value) is not None


@dataclass(frozen=True)
class ManifestCheck:
    """Outcome of :func:`validate_manifest`.  Truthy when the manifest is usable."""

    ok: bool
    reason: str = ""
    manifest: PluginManifest | None = None

    def __bool__(self) -> bool:
        return self.ok


def validate_manifest(raw: Any, expected_dir_name: str) -> ManifestCheck:
    """Check a decoded manifest against the directory it was found in.

    Every rule must hold: *raw* is a mapping, ``id``/``name``/``version`` are
    non-empty strings, ``id`` is lowercase a-z/0-9/hyphens and equals
    *expected_dir_name*, and the contribution blocks have the documented
    shape.
    """
    if not isinstance(raw, dict):
        return ManifestCheck(False, "manifest is not a JSON object")

    for field in ("id", "name", "version"):
        value = raw.get(field)
        if not isinstance(value, str) or not value.strip():
            return ManifestCheck(False, f"missing or empty '{field}'")

    plugin_id = raw["id"]
    if not is_valid_plugin_id(plugin_id):
        return ManifestCheck(False, "id must use lowercase a-z, 0-9 and inner hyphens")
    if plugin_id != expected_dir_name:
        return ManifestCheck(False, f"id '{plugin_id}' does not match '{expected_dir_name}'")

    try:
        manifest = PluginManifest.model_validate(raw)
    except ValidationError as e:
        return ManifestCheck(False, f"malformed manifest ({e.error_count()} error(s))")

    return ManifestCheck(True, manifest=manifest)


def read_manifest_file(plugin_dir: Path, filename: str = MANIFEST_FILENAME) -> Any | None:
    """Decode the manifest JSON at *plugin_dir*, or ``None`` when absent/unreadable."""
    manifest_path = plugin_dir / filename
    if not manifest_path.is_file():
        return None
    try:
        return json.loads(manifest_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logger.warning("Failed to read manifest at %s: %s", manifest_path, e)
        return None


def load_manifest(
    plugin_dir: Path, expected_id: str, filename: str = MANIFEST_FILENAME
) -> ManifestCheck:
    raw = read_manifest_file(plugin_dir, filename)
    if raw is None:
        return ManifestCheck(False, f"no readable {filename}")
    return validate_manifest(raw, expected_id)
