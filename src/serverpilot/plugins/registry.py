"""Persistent plugin registry (``plugins/.registry.json``).

The whole file is read and rewritten on every mutation.  Each
read-modify-write cycle runs under one lock so concurrent requests in
the same process cannot interleave and lose an update.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from serverpilot.plugins.models import RegistryEntry

logger = logging.getLogger(__name__)


class PluginRegistryStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()

    # ─── Raw file access ─────────────────────────────────────────────────

    def _read(self) -> list[RegistryEntry]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Unreadable plugin registry at %s: %s", self.path, e)
            return []
        if not isinstance(data, list):
            logger.warning("Plugin registry at %s is not a list; ignoring it", self.path)
            return []

        entries = []
        for item in data:
            try:
                entries.append(RegistryEntry.model_validate(item))
            except ValidationError:
                logger.warning("Dropping malformed registry entry: %r", item)
        return entries

    def _write(self, entries: list[RegistryEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(
            json.dumps([e.to_json() for e in entries], indent=2), encoding="utf-8"
        )
        os.replace(tmp_path, self.path)

    # ─── Queries ─────────────────────────────────────────────────────────

    def all(self) -> list[RegistryEntry]:
        with self._lock:
            return self._read()

    def get(self, plugin_id: str) -> RegistryEntry | None:
        with self._lock:
            for entry in self._read():
                if entry.id == plugin_id:
                    return entry
        return None

    def ids(self) -> list[str]:
        return [e.id for e in self.all()]

    # ─── Mutations ───────────────────────────────────────────────────────

    def upsert(self, entry: RegistryEntry) -> RegistryEntry:
        with self._lock:
            entries = [e for e in self._read() if e.id != entry.id]
            entries.append(entry.model_copy(deep=True))
            self._write(entries)
        return entry

    def ensure(self, plugin_id: str, version: str) -> RegistryEntry:
        """Return the entry for *plugin_id*, creating a disabled one if needed.

        An existing entry only ever has its ``version`` refreshed; ``enabled``
        and ``config`` are left untouched.
        """
        with self._lock:
            entry = self.get(plugin_id)
            if entry is None:
                entry = RegistryEntry(id=plugin_id, enabled=False, config={}, version=version)
                self.upsert(entry)
                logger.info("Registered plugin '%s' v%s (disabled)", plugin_id, version)
            elif entry.version != version:
                logger.info(
                    "Plugin '%s' version changed %s -> %s", plugin_id, entry.version, version
                )
                entry.version = version
                self.upsert(entry)
            return entry

    def set_enabled(self, plugin_id: str, enabled: bool) -> RegistryEntry | None:
        with self._lock:
            entry = self.get(plugin_id)
            if entry is None:
                return None
            entry.enabled = enabled
            return self.upsert(entry)

    def merge_config(self, plugin_id: str, partial: dict[str, Any]) -> RegistryEntry | None:
        """Shallow-merge *partial* into the stored config.  Keys are never removed."""
        with self._lock:
            entry = self.get(plugin_id)
            if entry is None:
                return None
            entry.config = {**entry.config, **partial}
            return self.upsert(entry)

    def remove(self, plugin_id: str) -> bool:
        with self._lock:
            entries = self._read()
            kept = [e for e in entries if e.id != plugin_id]
            if len(kept) == len(entries):
                return False
            self._write(kept)
            return True
