"""
Remote plugin download from a package index.

Remote plugins are published as ordinary distributions. The service asks
the index's JSON API for the latest release, downloads its source
distribution (or a pure-Python wheel), unpacks it under the plugins
directory and validates the result like any local plugin.

Example:
    service = PluginDownloadService.from_settings()
    result = await service.install_package("effectloom-glitch")
    if result.success:
        print(result.path, result.version)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable

import httpx

from effectloom.plugins.errors import PluginError, PluginValidationError
from effectloom.plugins.manifest import PluginManifest, is_valid_plugin_name, validate_plugin

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

SDIST_SUFFIXES = (".tar.gz", ".tgz", ".zip")
UNPACK_SKIP_SUFFIXES = (".dist-info", ".egg-info", ".data")


class DownloadError(PluginError):
    """Raised when a remote plugin cannot be fetched or unpacked."""


@dataclass
class DownloadResult:
    """Outcome of a remote install.

    Attributes:
        success: Whether the plugin was fetched and validated.
        name: Requested package name.
        path: Directory the plugin was unpacked into.
        version: Release version that was fetched.
        manifest: The validated plugin manifest.
        error: Failure reason.
    """

    success: bool
    name: str
    path: Path | None = None
    version: str | None = None
    manifest: PluginManifest | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "name": self.name,
            "path": str(self.path) if self.path else None,
            "version": self.version,
            "error": self.error,
        }


def _is_within(root: Path, target: Path) -> bool:
    root = Path(os.path.realpath(root))
    target = Path(os.path.realpath(target))
    return target == root or root in target.parents


def safe_extract(archive: Path, dest: Path) -> None:
    """Unpack a tar or zip archive, refusing members that escape ``dest``.

    Raises:
        DownloadError: On unsafe members or an unsupported format.
    """
    dest.mkdir(parents=True, exist_ok=True)
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            for name in zf.namelist():
                rel = PurePosixPath(name)
                if rel.is_absolute() or ".." in rel.parts or not _is_within(dest, dest / name):
                    raise DownloadError(f"Unsafe path in archive: {name}")
            zf.extractall(dest)
        return

    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as tf:
            members = tf.getmembers()
            for member in members:
                if not _is_within(dest, dest / member.name):
                    raise DownloadError(f"Unsafe path in archive: {member.name}")
                if member.issym() or member.islnk() or member.isdev():
                    raise DownloadError(f"Links and devices not allowed: {member.name}")
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, members=members, filter="data")
            else:
                tf.extractall(dest, members=members)
        return

    raise DownloadError(f"Unsupported archive format: {archive.name}")


def strip_single_top_level(dest: Path) -> None:
    """Hoist the contents of a lone top-level directory into ``dest``."""
    entries = [p for p in dest.iterdir()]
    if len(entries) != 1 or not entries[0].is_dir():
        return
    inner = entries[0]
    staging = dest.with_name(dest.name + ".staging")
    inner.rename(staging)
    for child in staging.iterdir():
        child.rename(dest / child.name)
    staging.rmdir()


def find_plugin_root(dest: Path) -> Path:
    """The directory inside an unpacked release that holds the plugin.

    Wheels put the plugin one level down, next to their metadata
    directories.
    """
    try:
        validate_plugin(dest)
        return dest
    except PluginValidationError:
        pass
    for child in sorted(dest.iterdir()):
        if not child.is_dir() or child.name.endswith(UNPACK_SKIP_SUFFIXES):
            continue
        try:
            validate_plugin(child)
            return child
        except PluginValidationError:
            continue
    raise PluginValidationError(dest, "release does not contain a plugin")


def pick_release_file(files: list[dict[str, Any]]) -> dict[str, Any]:
    """Choose the file to download from an index release listing.

    Prefers a source distribution, then a pure-Python wheel.

    Raises:
        DownloadError: If the release has neither.
    """
    for info in files:
        if info.get("packagetype") == "sdist" and info.get("filename", "").endswith(SDIST_SUFFIXES):
            return info
    for info in files:
        if info.get("packagetype") == "bdist_wheel" and info.get("filename", "").endswith("-none-any.whl"):
            return info
    raise DownloadError("release has no source distribution or pure-Python wheel")


class PluginDownloadService:
    """Fetches remote plugins from a package index.

    Attributes:
        index_url: Base URL of the index JSON API.
        plugins_dir: Directory remote plugins are unpacked into.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        plugins_dir: str | Path,
        index_url: str = "https://pypi.org/pypi",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.index_url = index_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Any = None) -> "PluginDownloadService":
        if settings is None:
            from effectloom.config.settings import settings
        return cls(
            plugins_dir=settings.plugins_dir,
            index_url=settings.REMOTE_INDEX_URL,
            timeout=settings.DOWNLOAD_TIMEOUT,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch_release(self, client: httpx.AsyncClient, name: str) -> tuple[str, dict[str, Any]]:
        """Latest version and the file to download for ``name``."""
        resp = await client.get(f"{self.index_url}/{name}/json")
        if resp.status_code == 404:
            raise DownloadError(f"Package '{name}' not found on {self.index_url}")
        resp.raise_for_status()
        data = resp.json()
        version = data.get("info", {}).get("version")
        return version, pick_release_file(data.get("urls") or [])

    async def _download(
        self,
        client: httpx.AsyncClient,
        info: dict[str, Any],
        target: Path,
        on_progress: ProgressCallback | None,
    ) -> None:
        digest = hashlib.sha256()
        async with client.stream("GET", info["url"]) as resp:
            resp.raise_for_status()
            total = int(resp.headers.get("content-length") or info.get("size") or 0)
            received = 0
            with open(target, "wb") as fh:
                async for chunk in resp.aiter_bytes():
                    fh.write(chunk)
                    digest.update(chunk)
                    received += len(chunk)
                    if on_progress and total:
                        on_progress(f"Downloaded {received} of {total} bytes", min(received / total, 1.0))

        expected = (info.get("digests") or {}).get("sha256")
        if expected and digest.hexdigest() != expected:
            raise DownloadError(f"Checksum mismatch for {info.get('filename')}")

    async def install_package(
        self,
        name: str,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadResult:
        """Download, unpack and validate a remote plugin.

        Args:
            name: Distribution name on the index.
            on_progress: Called with (message, fraction 0..1) while
                downloading.

        Returns:
            DownloadResult; failures are reported, not raised.
        """
        if not is_valid_plugin_name(name):
            error = f"Invalid plugin name: {name!r}"
            logger.error(f"Remote install refused: {error}")
            return DownloadResult(success=False, name=name, error=error)

        dest = self.plugins_dir / name
        try:
            async with self._client() as client:
                version, info = await self.fetch_release(client, name)
                logger.info(f"Fetching {name} {version} ({info.get('filename')})")
                with tempfile.TemporaryDirectory(prefix="effectloom-dl-") as tmp:
                    archive = Path(tmp) / info.get("filename", "release")
                    await self._download(client, info, archive, on_progress)
                    await asyncio.to_thread(self._unpack, archive, dest)

            root = await asyncio.to_thread(find_plugin_root, dest)
            manifest = validate_plugin(root)
            logger.info(f"Remote plugin {name} {version} unpacked to {root}")
            return DownloadResult(
                success=True,
                name=name,
                path=root,
                version=version,
                manifest=manifest,
            )
        except (httpx.HTTPError, PluginError, OSError, ValueError) as e:
            logger.error(f"Remote install of {name} failed: {e}")
            if dest.exists():
                shutil.rmtree(dest, ignore_errors=True)
            return DownloadResult(success=False, name=name, error=str(e))

    def _unpack(self, archive: Path, dest: Path) -> None:
        if dest.exists():
            shutil.rmtree(dest)
        safe_extract(archive, dest)
        strip_single_top_level(dest)
