"""Marketplace — remote catalog and archive install.

Install pipeline for ``install(plugin_id, download_url)``:

    plugins/.install-XXXX/            <- private working dir (same filesystem)
      archive                         <- download (max one redirect)
      src/                            <- extraction
        repo-main/manifest.json       <- single top-level dir becomes the root
    plugins/<plugin_id>/              <- atomic rename of the root, last step

Any failure removes the working dir and anything created under
``plugins/<plugin_id>``; the live tree never holds a half-installed plugin.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import stat
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Any

import httpx

from serverpilot.plugins.manager import PluginManager
from serverpilot.plugins.manifest import is_valid_plugin_id, read_manifest_file, validate_manifest
from serverpilot.plugins.models import PluginError, PluginManifest, PluginResult, RegistryEntry

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 1
_USER_AGENT = "ServerPilot/1.0"


class InstallError(PluginError):
    """Install step failed; the message is safe to return to the caller."""


# ─── Archive helpers ─────────────────────────────────────────────────────


def _inside(base: Path, name: str) -> bool:
    target = (base / name).resolve()
    return target == base or target.is_relative_to(base)


def _check_total(total: int, max_bytes: int | None) -> None:
    if max_bytes is not None and total > max_bytes:
        raise InstallError("Archive expands beyond the size limit")


def _extract_zip(archive: Path, dest: Path, max_bytes: int | None) -> None:
    base = dest.resolve()
    total = 0
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            total += info.file_size
            _check_total(total, max_bytes)
            mode = info.external_attr >> 16
            if stat.S_ISLNK(mode):
                raise InstallError("Archive contains symbolic links")
            if not _inside(base, info.filename):
                raise InstallError("Archive contains paths outside the plugin folder")
        zf.extractall(dest)


def _extract_tar(archive: Path, dest: Path, max_bytes: int | None) -> None:
    base = dest.resolve()
    total = 0
    with tarfile.open(archive, mode="r:*") as tf:
        for member in tf.getmembers():
            total += member.size
            _check_total(total, max_bytes)
            if not (member.isfile() or member.isdir()):
                raise InstallError("Archive contains links or special files")
            if not _inside(base, member.name):
                raise InstallError("Archive contains paths outside the plugin folder")
        tf.extractall(dest, filter="data")


def extract_archive(archive: Path, dest: Path, max_bytes: int | None = None) -> None:
    """Extract a zip or tar(.gz) archive into *dest*, rejecting unsafe members.

    Declared member sizes are summed before anything is written; more than
    *max_bytes* in total rejects the archive.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if zipfile.is_zipfile(archive):
            _extract_zip(archive, dest, max_bytes)
        elif tarfile.is_tarfile(archive):
            _extract_tar(archive, dest, max_bytes)
        else:
            raise InstallError("Unsupported archive format (expected .zip or .tar.gz)")
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise InstallError("Archive is corrupt or unreadable") from e


def resolve_plugin_root(extract_dir: Path) -> Path:
    """A lone top-level directory (``repo-main/``) is the root; otherwise the dir itself."""
    entries = list(extract_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return extract_dir


# ─── Installer ───────────────────────────────────────────────────────────


class MarketplaceInstaller:
    def __init__(
        self,
        manager: PluginManager,
        *,
        catalog_url: str = "",
        catalog_ttl: float = 600.0,
        download_timeout: float = 60.0,
        extract_timeout: float = 120.0,
        max_archive_bytes: int = 50 * 1024 * 1024,
        max_extracted_bytes: int = 200 * 1024 * 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.manager = manager
        self.catalog_url = catalog_url
        self.catalog_ttl = catalog_ttl
        self.download_timeout = download_timeout
        self.extract_timeout = extract_timeout
        self.max_archive_bytes = max_archive_bytes
        self.max_extracted_bytes = max_extracted_bytes
        self._transport = transport
        self._catalog: dict[str, Any] | None = None
        self._catalog_at = 0.0
        self._installing: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Any, manager: PluginManager) -> MarketplaceInstaller:
        return cls(
            manager,
            catalog_url=settings.catalog_url,
            catalog_ttl=settings.catalog_ttl,
            download_timeout=settings.download_timeout,
            extract_timeout=settings.extract_timeout,
            max_archive_bytes=settings.max_archive_bytes,
            max_extracted_bytes=settings.max_extracted_bytes,
        )

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, headers={"User-Agent": _USER_AGENT}, **kwargs
        )

    # ─── Catalog ─────────────────────────────────────────────────────────

    async def fetch_catalog(self, force_refresh: bool = False) -> dict[str, Any]:
        """Return the remote catalog, cached for ``catalog_ttl`` seconds.

        A failed refresh falls back to the last good copy when there is one.
        """
        age = time.monotonic() - self._catalog_at
        if self._catalog is not None and age < self.catalog_ttl and not force_refresh:
            return self._catalog

        try:
            async with self._client(timeout=15.0, follow_redirects=True) as client:
                resp = await client.get(self.catalog_url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError):
            if self._catalog is not None:
                logger.warning("Catalog refresh failed; serving cached copy", exc_info=True)
                return self._catalog
            raise

        if not isinstance(data, dict):
            data = {"plugins": data if isinstance(data, list) else []}
        plugins = [
            p
            for p in data.get("plugins") or []
            if isinstance(p, dict) and is_valid_plugin_id(p.get("id"))
        ]
        self._catalog = {**data, "plugins": plugins}
        self._catalog_at = time.monotonic()
        return self._catalog

    # ─── Download ────────────────────────────────────────────────────────

    async def _download(self, url: str, dest: Path) -> None:
        async with self._client(timeout=self.download_timeout, follow_redirects=False) as client:
            for hop in range(MAX_REDIRECTS + 1):
                async with client.stream("GET", url) as resp:
                    if resp.is_redirect:
                        if hop >= MAX_REDIRECTS:
                            raise InstallError("Download redirected too many times")
                        url = str(resp.url.join(resp.headers["location"]))
                        if not url.startswith(("http://", "https://")):
                            raise InstallError("Download redirected to an unsupported URL")
                        continue
                    if resp.status_code != 200:
                        raise InstallError(f"Download failed (HTTP {resp.status_code})")

                    size = 0
                    with dest.open("wb") as fh:
                        async for chunk in resp.aiter_bytes():
                            size += len(chunk)
                            if size > self.max_archive_bytes:
                                raise InstallError("Archive is too large")
                            fh.write(chunk)
                    logger.info("Downloaded %d bytes from %s", size, url)
                    return

    # ─── Install / uninstall ─────────────────────────────────────────────

    async def install(self, plugin_id: str, download_url: str) -> PluginResult:
        """Download, verify and publish a plugin.  Never auto-enables it."""
        if not is_valid_plugin_id(plugin_id):
            return PluginResult(False, plugin_id, error="Invalid plugin ID format")
        if not isinstance(download_url, str) or not download_url.startswith(
            ("http://", "https://")
        ):
            return PluginResult(False, plugin_id, error="Download URL must be http(s)")
        if plugin_id in self.manager.installed_ids() or plugin_id in self._installing:
            return PluginResult(False, plugin_id, error=f'Plugin "{plugin_id}" is already installed')

        plugins_dir = self.manager.get_plugins_dir()
        dest = plugins_dir / plugin_id
        if dest.exists():
            return PluginResult(
                False, plugin_id, error=f'A folder for plugin "{plugin_id}" already exists'
            )

        self._installing.add(plugin_id)
        work_dir = Path(tempfile.mkdtemp(prefix=".install-", dir=plugins_dir))
        published = False
        try:
            manifest = await self._install_into(plugin_id, download_url, work_dir, dest)
            published = True

            self.manager.registry.upsert(
                RegistryEntry(id=plugin_id, enabled=False, config={}, version=manifest.version)
            )
            if await self.manager.load_plugin(plugin_id) is None:
                raise InstallError("Installed plugin could not be loaded")
        except Exception as e:
            if isinstance(e, InstallError):
                error = str(e)
                logger.warning("Install of '%s' failed: %s", plugin_id, error)
            elif isinstance(e, httpx.HTTPError):
                error = "Download failed"
                logger.warning("Install of '%s' failed: %s", plugin_id, e)
            elif isinstance(e, TimeoutError):
                error = "Installation timed out"
                logger.warning("Install of '%s' timed out", plugin_id)
            else:
                error = "Installation failed"
                logger.exception("Install of '%s' failed", plugin_id)
            if published:
                self.manager.registry.remove(plugin_id)
                shutil.rmtree(dest, ignore_errors=True)
            return PluginResult(False, plugin_id, error=error)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            self._installing.discard(plugin_id)

        logger.info("Installed plugin '%s' v%s (disabled)", plugin_id, manifest.version)
        return PluginResult(
            True,
            plugin_id,
            plugin=manifest,
            message=f'Plugin "{manifest.name}" installed successfully',
        )

    async def _install_into(
        self, plugin_id: str, url: str, work_dir: Path, dest: Path
    ) -> PluginManifest:
        archive = work_dir / "archive"
        extract_dir = work_dir / "src"

        await self._download(url, archive)
        await asyncio.wait_for(
            asyncio.to_thread(extract_archive, archive, extract_dir, self.max_extracted_bytes),
            timeout=self.extract_timeout,
        )

        root = resolve_plugin_root(extract_dir)
        raw = read_manifest_file(root, self.manager.manifest_filename)
        if raw is None:
            raise InstallError(f"Archive has no {self.manager.manifest_filename} at its root")

        # Validate against the requested id, not whatever the archive calls itself.
        check = validate_manifest(raw, plugin_id)
        if not check:
            raise InstallError(f"Invalid plugin manifest: {check.reason}")

        if dest.exists():
            raise InstallError(f'A folder for plugin "{plugin_id}" already exists')
        root.rename(dest)
        return check.manifest

    async def uninstall(self, plugin_id: str) -> PluginResult:
        return await self.manager.uninstall(plugin_id)
