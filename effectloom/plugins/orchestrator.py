"""
Plugin lifecycle orchestration.

The orchestrator is the public face of the plugin pipeline. It sequences
validation, materialization, loading and registration, reports progress
in phases, and turns every failure into a result object.

Install phases:
    validating -> (downloading) -> configuring -> processing -> loading
    -> registering -> caching -> complete

    Any phase can end in ``error``. Uninstall and reload add ``finding``,
    ``unregistering``, ``cleaning``, ``removing`` and ``deleting``.

Operations on the same plugin name are serialized; different plugins may
proceed concurrently.

Example:
    from effectloom.plugins.orchestrator import PluginOrchestrator

    orchestrator = PluginOrchestrator.from_settings()

    result = await orchestrator.install("glitch", "~/plugins/glitch")
    if not result.success:
        print(result.error)

    summary = await orchestrator.load_installed()
    print(f"{len(summary.loaded)} loaded, {len(summary.failed)} failed")
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
import time
import traceback
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from effectloom import __version__
from effectloom.plugins.capture import CapturedRegistration, CommittingSink, CaptureSnapshot, commit
from effectloom.plugins.dir_cache import ProcessedDirCache, SweepResult, canonical_source
from effectloom.plugins.download import PluginDownloadService
from effectloom.plugins.errors import LoadTimeoutError, PluginError, PluginValidationError
from effectloom.plugins.loader import ModuleLoader
from effectloom.plugins.manifest import validate_plugin
from effectloom.plugins.materializer import (
    PROCESSED_PREFIX,
    DirectoryMaterializer,
    fingerprint,
    new_processed_dir,
)
from effectloom.plugins.registry import (
    ConfigRegistry,
    EffectRegistry,
    PositionRegistry,
    link_effects_with_configs,
)
from effectloom.plugins.registry_cache import RegistryCache
from effectloom.plugins.store import PluginConfigStore, PluginDescriptor

logger = logging.getLogger(__name__)


class LifecyclePhase(str, Enum):
    """Phases reported to progress observers."""

    VALIDATING = "validating"
    DOWNLOADING = "downloading"
    CONFIGURING = "configuring"
    PROCESSING = "processing"
    LOADING = "loading"
    REGISTERING = "registering"
    CACHING = "caching"
    COMPLETE = "complete"
    ERROR = "error"
    DISCOVERING = "discovering"
    FINDING = "finding"
    UNREGISTERING = "unregistering"
    CLEANING = "cleaning"
    REMOVING = "removing"
    DELETING = "deleting"


@dataclass
class ProgressUpdate:
    """One progress notification.

    Attributes:
        phase: Current lifecycle phase.
        message: Human readable status.
        percent: Overall completion, 0 to 100.
        plugin: Plugin the update is about, if any.
    """

    phase: LifecyclePhase
    message: str
    percent: int
    plugin: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "percent": self.percent,
            "plugin": self.plugin,
        }


ProgressObserver = Callable[[ProgressUpdate], None]


# ======================================================================
# Results
# ======================================================================


def _registrations(items: list[CapturedRegistration]) -> list[dict[str, Any]]:
    return [item.to_dict() for item in items]


def _owned_by(plugin: str, items: list[CapturedRegistration]) -> list[CapturedRegistration]:
    """Copies of ``items`` tagged with the plugin that registered them."""
    return [replace(item, metadata={"plugin": plugin, **item.metadata}) for item in items]


@dataclass
class InstallResult:
    """Outcome of installing or loading one plugin.

    Attributes:
        success: Whether the plugin is loaded and registered.
        name: Plugin name.
        source_path: Plugin source.
        processed_dir: Processed directory the plugin was loaded from.
        reused: True when an unchanged processed directory was reused.
        effects: Effect registrations committed.
        configs: Config registrations committed.
        positions: Position registrations committed.
        error: Failure reason.
    """

    success: bool
    name: str
    source_path: str | None = None
    processed_dir: str | None = None
    reused: bool = False
    effects: list[CapturedRegistration] = field(default_factory=list)
    configs: list[CapturedRegistration] = field(default_factory=list)
    positions: list[CapturedRegistration] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "name": self.name,
            "source_path": self.source_path,
            "processed_dir": self.processed_dir,
            "reused": self.reused,
            "effects": _registrations(self.effects),
            "configs": _registrations(self.configs),
            "positions": _registrations(self.positions),
            "error": self.error,
        }


ReloadResult = InstallResult


@dataclass
class BulkLoadResult:
    """Outcome of loading every enabled plugin.

    Attributes:
        loaded: Names of plugins that loaded.
        failed: Name -> failure reason.
        results: Per-plugin results, in load order.
    """

    loaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    results: list[InstallResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total(self) -> int:
        return len(self.loaded) + len(self.failed)

    @property
    def error(self) -> str | None:
        if not self.failed:
            return None
        return "; ".join(f"{name}: {reason}" for name, reason in self.failed.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "loaded": list(self.loaded),
            "failed": dict(self.failed),
            "total": self.total,
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
        }


@dataclass
class UninstallResult:
    """Outcome of uninstalling a plugin.

    Attributes:
        success: Whether the plugin is no longer configured.
        name: Plugin name.
        unregistered: Registry entries removed in this process.
        removed_dirs: Processed directories deleted.
        deleted_source: Whether the source was deleted.
        restart_required: True when some registrations could not be revoked
            and stay live until the process restarts.
        errors: Best-effort steps that failed.
        error: Failure reason.
    """

    success: bool
    name: str
    unregistered: list[str] = field(default_factory=list)
    removed_dirs: list[str] = field(default_factory=list)
    deleted_source: bool = False
    restart_required: bool = False
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "name": self.name,
            "unregistered": list(self.unregistered),
            "removed_dirs": list(self.removed_dirs),
            "deleted_source": self.deleted_source,
            "restart_required": self.restart_required,
            "errors": list(self.errors),
            "error": self.error,
        }


@dataclass
class CleanupResult:
    """Outcome of an orphan sweep.

    Attributes:
        removed: Processed directories deleted.
        kept: Number of processed directories left in place.
        mappings: Result of the processed-dir cache's own sweep.
        errors: Directories that could not be deleted.
    """

    removed: list[str] = field(default_factory=list)
    kept: int = 0
    mappings: SweepResult = field(default_factory=lambda: SweepResult(0, 0))
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "removed": list(self.removed),
            "kept": self.kept,
            "mappings": self.mappings.to_dict(),
            "errors": list(self.errors),
            "error": self.error,
        }


def is_circular_init_error(error: BaseException) -> bool:
    """True for the transient error raised while a module is half imported."""
    if not isinstance(error, (ImportError, AttributeError)):
        return False
    text = str(error).lower()
    return "partially initialized" in text or "circular import" in text


# ======================================================================
# Orchestrator
# ======================================================================


class PluginOrchestrator:
    """Coordinates plugin install, load, uninstall, reload and cleanup.

    Collaborators are passed in so tests and embedding hosts can swap any
    of them; :meth:`from_settings` wires the defaults.

    Attributes:
        store: Configured plugin descriptors.
        dir_cache: Source -> processed directory mappings.
        materializer: Builds processed directories.
        loader: Imports processed plugins against mock registries.
        effect_registry: Real effect registry.
        config_registry: Real config registry.
        position_registry: Real position registry, optional.
        registry_cache: Registry snapshot invalidated by every operation.
        downloader: Fetches remote plugins, optional.
        data_dir: Where processed directories are created.
        load_timeout: Per-plugin bound during bulk load, in seconds.
        retention_hours: Minimum age before an unreferenced processed
            directory is swept.
    """

    def __init__(
        self,
        store: PluginConfigStore,
        dir_cache: ProcessedDirCache,
        materializer: DirectoryMaterializer,
        loader: ModuleLoader,
        effect_registry: Any,
        config_registry: Any,
        position_registry: Any = None,
        registry_cache: RegistryCache | None = None,
        downloader: PluginDownloadService | None = None,
        data_dir: str | Path | None = None,
        load_timeout: float = 120.0,
        retention_hours: float = 24.0,
        engine_attempts: int = 3,
        engine_backoff: float = 0.1,
        link_source_dependencies: bool = False,
        host_version: str = __version__,
    ):
        self.store = store
        self.dir_cache = dir_cache
        self.materializer = materializer
        self.loader = loader
        self.effect_registry = effect_registry
        self.config_registry = config_registry
        self.position_registry = position_registry
        self.registry_cache = registry_cache
        self.downloader = downloader
        self.data_dir = Path(data_dir) if data_dir else dir_cache.path.parent
        self.load_timeout = load_timeout
        self.retention_hours = retention_hours
        self.engine_attempts = max(1, engine_attempts)
        self.engine_backoff = engine_backoff
        self.link_source_dependencies = link_source_dependencies
        self.host_version = host_version

        self._locks: dict[str, asyncio.Lock] = {}
        self._committed: dict[str, dict[str, list[str]]] = {}
        self._processed: dict[str, Path] = {}

    @classmethod
    def from_settings(cls, settings: Any = None, **overrides: Any) -> "PluginOrchestrator":
        """Wire the default collaborators from application settings."""
        if settings is None:
            from effectloom.config.settings import settings
        components: dict[str, Any] = {
            "store": PluginConfigStore.from_settings(settings),
            "dir_cache": ProcessedDirCache.from_settings(settings),
            "materializer": DirectoryMaterializer.from_settings(settings),
            "loader": ModuleLoader.from_settings(settings),
            "effect_registry": EffectRegistry(engine_package=settings.ENGINE_PACKAGE),
            "config_registry": ConfigRegistry(),
            "position_registry": PositionRegistry(),
            "registry_cache": RegistryCache.from_settings(settings),
            "downloader": PluginDownloadService.from_settings(settings),
            "data_dir": settings.DATA_DIR,
            "load_timeout": settings.PLUGIN_LOAD_TIMEOUT,
            "retention_hours": settings.PROCESSED_RETENTION_HOURS,
            "engine_attempts": settings.ENGINE_REGISTRATION_ATTEMPTS,
            "engine_backoff": settings.ENGINE_RETRY_BACKOFF,
            "link_source_dependencies": settings.LINK_SOURCE_DEPENDENCIES,
        }
        components.update(overrides)
        return cls(**components)

    def close(self) -> None:
        self.loader.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _report(
        self,
        observer: ProgressObserver | None,
        phase: LifecyclePhase,
        message: str,
        percent: int,
        plugin: str | None = None,
    ) -> None:
        if observer is None:
            return
        try:
            observer(ProgressUpdate(phase=phase, message=message, percent=percent, plugin=plugin))
        except Exception as e:
            logger.warning(f"Progress observer raised: {e}")

    def _fail(
        self,
        observer: ProgressObserver | None,
        name: str,
        error: str,
        **fields: Any,
    ) -> InstallResult:
        logger.error(f"Plugin {name}: {error}")
        self._report(observer, LifecyclePhase.ERROR, error, 100, name)
        return InstallResult(success=False, name=name, error=error, **fields)

    def _invalidate_registry_cache(self) -> None:
        if self.registry_cache is None:
            return
        try:
            self.registry_cache.invalidate()
        except Exception as e:
            logger.warning(f"Registry snapshot invalidation failed: {e}")

    @staticmethod
    def _remove_path(path: Path) -> None:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)

    def _engine_location(self) -> Path | None:
        """Directory the engine package imports from, when the host resolves it.

        None leaves the engine to the host's own ``sys.path``.
        """
        package = getattr(self.effect_registry, "engine_package", None)
        if not isinstance(package, str) or not package or package in sys.modules:
            return None
        found = self.materializer.resolver.resolve(package)
        if found is None:
            logger.debug(f"Engine {package} not found in dependency roots; using sys.path")
            return None
        return found.path.parent

    async def _ensure_engine_ready(self) -> None:
        ensure = getattr(self.effect_registry, "ensure_core_effects_loaded", None)
        if not callable(ensure):
            return
        location = self._engine_location()
        for attempt in range(self.engine_attempts):
            try:
                if location is None:
                    ensure()
                else:
                    with self.loader.search_path(location):
                        ensure()
                return
            except (ImportError, AttributeError) as e:
                if not is_circular_init_error(e) or attempt == self.engine_attempts - 1:
                    raise
                delay = self.engine_backoff * (2 ** attempt)
                logger.warning(
                    f"Engine not ready ({e}); retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.engine_attempts})"
                )
                await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    async def _prepare(
        self,
        name: str,
        source: Path,
        force: bool,
        exclude: list[str] | None = None,
    ) -> tuple[Path, bool, str]:
        digest = await asyncio.to_thread(fingerprint, source, self.materializer.dependency_dirname)
        if not force:
            cached = self.dir_cache.get(source, digest)
            if cached is not None:
                logger.info(f"Reusing processed dir {cached} for {name}")
                return cached, True, digest

        processed = new_processed_dir(self.data_dir, name, exclude or ())
        report = await asyncio.to_thread(self.materializer.materialize, source, processed)
        if report.errors:
            logger.warning(f"{len(report.errors)} file(s) of {name} were not materialized")
        if self.link_source_dependencies and source.is_dir():
            await asyncio.to_thread(self.materializer.prepare_source_dependencies, source)
        return processed, False, digest

    async def _process_and_load(
        self,
        name: str,
        source_path: str | Path,
        observer: ProgressObserver | None = None,
        force: bool = False,
        exclude: list[str] | None = None,
    ) -> InstallResult:
        source = Path(os.path.realpath(os.path.expanduser(str(source_path))))
        if not source.exists():
            return self._fail(observer, name, f"Plugin source not found: {source}", source_path=str(source))

        self._report(observer, LifecyclePhase.PROCESSING, f"Processing {name}", 40, name)
        try:
            processed, reused, digest = await self._prepare(name, source, force, exclude)
        except (OSError, PluginError) as e:
            return self._fail(observer, name, f"Processing failed: {e}", source_path=str(source))

        self._report(observer, LifecyclePhase.LOADING, f"Loading {name}", 55, name)
        target = processed / f"{source.stem}.py" if source.is_file() else processed
        loaded = await self.loader.load(target, name=name)
        if not loaded.success:
            return self._fail(
                observer,
                name,
                loaded.error or "Plugin failed to load",
                source_path=str(source),
                processed_dir=str(processed),
            )

        self._report(observer, LifecyclePhase.REGISTERING, f"Registering {name}", 60, name)
        try:
            await self._ensure_engine_ready()
        except Exception as e:
            return self._fail(
                observer,
                name,
                f"Effects engine unavailable: {e}",
                source_path=str(source),
                processed_dir=str(processed),
            )

        snapshot = CaptureSnapshot(
            effects=_owned_by(name, loaded.effects),
            configs=_owned_by(name, loaded.configs),
            positions=_owned_by(name, loaded.positions),
        )
        sink = CommittingSink(self.effect_registry, self.config_registry, self.position_registry)
        committed = commit(snapshot, sink)
        self._report(observer, LifecyclePhase.REGISTERING, f"Registered {len(committed['effect'])} effect(s)", 75, name)

        try:
            link_effects_with_configs(self.effect_registry, self.config_registry, committed["effect"])
        except Exception as e:
            logger.warning(f"Config linking for {name} failed: {e}")
        self._report(observer, LifecyclePhase.REGISTERING, "Linked configs", 80, name)

        tracked = self._committed.setdefault(name, {})
        for kind, names in committed.items():
            tracked.setdefault(kind, [])
            tracked[kind].extend(n for n in names if n not in tracked[kind])

        self._report(observer, LifecyclePhase.CACHING, f"Caching {name}", 85, name)
        if not reused:
            self.dir_cache.put(source, processed, digest)
        self._processed[name] = processed

        return InstallResult(
            success=True,
            name=name,
            source_path=str(source),
            processed_dir=str(processed),
            reused=reused,
            effects=list(snapshot.effects),
            configs=list(snapshot.configs),
            positions=list(snapshot.positions),
        )

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install(
        self,
        name: str,
        path: str | Path | None = None,
        kind: str = "local",
        on_progress: ProgressObserver | None = None,
    ) -> InstallResult:
        """Install a plugin and register its effects.

        Args:
            name: Plugin name; the store's identity key.
            path: Local plugin path, or the index package name for remote
                plugins (defaults to ``name``).
            kind: "local" or "remote".
            on_progress: Optional progress observer.

        Returns:
            InstallResult. On failure the store is left as it was before
            the call.
        """
        async with self._lock(name):
            return await self._install(name, path, kind, on_progress)

    async def _install(
        self,
        name: str,
        path: str | Path | None,
        kind: str,
        observer: ProgressObserver | None,
    ) -> InstallResult:
        self._report(observer, LifecyclePhase.VALIDATING, f"Validating {name}", 10, name)
        if kind not in ("local", "remote"):
            return self._fail(observer, name, f"Unknown plugin type: {kind}")
        version = None

        if kind == "remote":
            if self.downloader is None:
                return self._fail(observer, name, "Remote plugins are not supported here")
            package = str(path or name)
            self._report(observer, LifecyclePhase.DOWNLOADING, f"Downloading {package}", 20, name)

            def relay(message: str, fraction: float) -> None:
                self._report(observer, LifecyclePhase.DOWNLOADING, message, 20 + int(fraction * 10), name)

            downloaded = await self.downloader.install_package(package, on_progress=relay)
            if not downloaded.success:
                return self._fail(observer, name, downloaded.error or "Download failed")
            source = downloaded.path
            version = downloaded.version
        else:
            if path is None:
                return self._fail(observer, name, "A plugin path is required")
            source = Path(path).expanduser()
            try:
                manifest = await asyncio.to_thread(validate_plugin, source)
            except PluginValidationError as e:
                return self._fail(observer, name, str(e), source_path=str(source))
            if not manifest.is_compatible(self.host_version):
                return self._fail(
                    observer,
                    name,
                    f"Requires host version {manifest.min_host_version} or newer",
                    source_path=str(source),
                )
            version = manifest.version if manifest.version != "0.0.0" else None

        self._report(observer, LifecyclePhase.CONFIGURING, f"Saving configuration for {name}", 30, name)
        previous = self.store.get_plugin(name)
        self.store.add_plugin(PluginDescriptor(
            name=name,
            source_path=os.path.realpath(source),
            kind=kind,
            enabled=True,
            version=version,
        ))

        result = await self._process_and_load(name, source, observer)
        if not result.success:
            self._rollback(name, previous)
            return result

        self._report(observer, LifecyclePhase.CACHING, "Invalidating registry snapshot", 90, name)
        self._invalidate_registry_cache()

        self._report(observer, LifecyclePhase.COMPLETE, f"Installed {name}", 100, name)
        logger.info(f"Installed plugin {name} with {len(result.effects)} effect(s)")
        return result

    def _rollback(self, name: str, previous: PluginDescriptor | None) -> None:
        try:
            if previous is None:
                self.store.remove_plugin(name)
            else:
                self.store.add_plugin(previous)
            logger.info(f"Rolled back configuration for {name}")
        except Exception as e:
            logger.error(f"Rollback of {name} failed: {e}")

    # ------------------------------------------------------------------
    # Bulk load
    # ------------------------------------------------------------------

    async def load_installed(self, on_progress: ProgressObserver | None = None) -> BulkLoadResult:
        """Load every enabled plugin, one at a time.

        Each plugin is bounded by ``load_timeout``; a failure or timeout is
        recorded and the batch moves on.
        """
        summary = BulkLoadResult()
        self._report(on_progress, LifecyclePhase.DISCOVERING, "Reading plugin configuration", 0)
        plugins = self.store.get_enabled_plugins()
        count = len(plugins)

        for index, descriptor in enumerate(plugins):
            name = descriptor.name
            percent = 5 + int(90 * index / max(count, 1))
            self._report(on_progress, LifecyclePhase.LOADING, f"Loading {name} ({index + 1}/{count})", percent, name)
            try:
                result = await asyncio.wait_for(
                    self._locked_load(name, descriptor.source_path),
                    timeout=self.load_timeout,
                )
            except asyncio.TimeoutError:
                error = LoadTimeoutError(name, self.load_timeout)
                logger.error(str(error))
                result = InstallResult(success=False, name=name, source_path=descriptor.source_path, error=str(error))
            except Exception as e:
                logger.error(f"Unexpected error loading {name}: {e}")
                logger.debug(traceback.format_exc())
                result = InstallResult(success=False, name=name, source_path=descriptor.source_path, error=str(e))

            summary.results.append(result)
            if result.success:
                summary.loaded.append(name)
            else:
                summary.failed[name] = result.error or "unknown error"

        self._invalidate_registry_cache()
        self._save_snapshot(summary)
        self._report(
            on_progress,
            LifecyclePhase.COMPLETE,
            f"Loaded {len(summary.loaded)} of {count} plugin(s)",
            100,
        )
        logger.info(f"Bulk load: {len(summary.loaded)} loaded, {len(summary.failed)} failed")
        return summary

    async def _locked_load(self, name: str, source_path: str) -> InstallResult:
        async with self._lock(name):
            return await self._process_and_load(name, source_path)

    def _save_snapshot(self, summary: BulkLoadResult) -> None:
        if self.registry_cache is None:
            return
        effects = {
            r.name: [e.to_dict() for e in r.effects]
            for r in summary.results
            if r.success
        }
        try:
            self.registry_cache.save(self.store.get_enabled_plugins(), effects)
        except Exception as e:
            logger.warning(f"Registry snapshot not saved: {e}")

    # ------------------------------------------------------------------
    # Uninstall / reload
    # ------------------------------------------------------------------

    def _unregister(self, name: str) -> tuple[list[str], bool]:
        """Remove a plugin's registrations from the real registries.

        Returns:
            (names removed, restart required). Registries without an
            ``unregister`` primitive keep their entries until restart.
        """
        tracked = self._committed.pop(name, {})
        removed: list[str] = []
        restart_required = False
        registries = (
            ("effect", self.effect_registry),
            ("config", self.config_registry),
            ("position", self.position_registry),
        )
        for kind, registry in registries:
            if registry is None:
                continue
            names = set(tracked.get(kind, []))
            listing = getattr(registry, "all", None)
            if callable(listing):
                names.update(e.name for e in listing() if getattr(e, "plugin", None) == name)
            if not names:
                continue
            unregister = getattr(registry, "unregister", None)
            if not callable(unregister):
                restart_required = True
                logger.warning(
                    f"{kind.capitalize()} registry cannot unregister; "
                    f"{len(names)} entr(ies) of {name} stay until restart"
                )
                continue
            for entry in sorted(names):
                try:
                    if unregister(entry):
                        removed.append(entry)
                except Exception as e:
                    logger.warning(f"Could not unregister {kind} {entry}: {e}")
        return removed, restart_required

    def _discard_processed(self, name: str, source_path: str, errors: list[str]) -> list[str]:
        removed: list[str] = []
        candidates: list[Path] = []
        try:
            mapped = self.dir_cache.invalidate(source_path)
            if mapped is not None:
                candidates.append(mapped)
        except Exception as e:
            errors.append(f"cache mapping: {e}")
        session = self._processed.pop(name, None)
        if session is not None and session not in candidates:
            candidates.append(session)
        for path in candidates:
            if not path.exists():
                continue
            try:
                shutil.rmtree(path)
                removed.append(str(path))
            except OSError as e:
                errors.append(f"processed dir {path}: {e}")
        return removed

    async def uninstall(
        self,
        name: str,
        delete_source: bool | None = None,
        on_progress: ProgressObserver | None = None,
    ) -> UninstallResult:
        """Remove a plugin.

        Every cleanup step is attempted even if an earlier one fails.

        Args:
            name: Plugin name.
            delete_source: Delete the plugin's source too. None deletes it
                only for remote plugins, whose source the host downloaded.
            on_progress: Optional progress observer.
        """
        async with self._lock(name):
            return await self._uninstall(name, delete_source, on_progress)

    async def _uninstall(
        self,
        name: str,
        delete_source: bool | None,
        observer: ProgressObserver | None,
    ) -> UninstallResult:
        self._report(observer, LifecyclePhase.FINDING, f"Finding {name}", 10, name)
        descriptor = self.store.get_plugin(name)
        if descriptor is None:
            error = f"Plugin not found: {name}"
            self._report(observer, LifecyclePhase.ERROR, error, 100, name)
            return UninstallResult(success=False, name=name, error=error)

        result = UninstallResult(success=False, name=name)
        source = Path(descriptor.source_path)

        self._report(observer, LifecyclePhase.UNREGISTERING, "Unregistering effects", 25, name)
        try:
            result.unregistered, result.restart_required = self._unregister(name)
        except Exception as e:
            result.errors.append(f"unregister: {e}")

        self._report(observer, LifecyclePhase.CLEANING, "Removing dependency links", 40, name)
        link = source / self.materializer.dependency_dirname
        if link.is_symlink():
            try:
                link.unlink()
            except OSError as e:
                result.errors.append(f"dependency link: {e}")

        self._report(observer, LifecyclePhase.REMOVING, "Removing processed files", 55, name)
        result.removed_dirs = self._discard_processed(name, descriptor.source_path, result.errors)

        self._report(observer, LifecyclePhase.REMOVING, "Removing configuration", 70, name)
        try:
            result.success = self.store.remove_plugin(name)
        except Exception as e:
            result.errors.append(f"configuration: {e}")

        should_delete = delete_source if delete_source is not None else descriptor.kind == "remote"
        if should_delete:
            self._report(observer, LifecyclePhase.DELETING, "Deleting plugin source", 85, name)
            try:
                self._remove_path(source)
                result.deleted_source = True
            except OSError as e:
                result.errors.append(f"source: {e}")

        self._invalidate_registry_cache()
        for error in result.errors:
            logger.warning(f"Uninstall {name}: {error}")
        if not result.success:
            result.error = "; ".join(result.errors) or "Configuration entry could not be removed"
            self._report(observer, LifecyclePhase.ERROR, result.error, 100, name)
        else:
            self._report(observer, LifecyclePhase.COMPLETE, f"Uninstalled {name}", 100, name)
            logger.info(f"Uninstalled plugin {name}")
        return result

    async def reload(self, name: str, on_progress: ProgressObserver | None = None) -> ReloadResult:
        """Re-materialize and reload a configured plugin.

        The store entry is not touched.
        """
        async with self._lock(name):
            self._report(on_progress, LifecyclePhase.FINDING, f"Finding {name}", 10, name)
            descriptor = self.store.get_plugin(name)
            if descriptor is None:
                return self._fail(on_progress, name, f"Plugin not found: {name}")

            self._report(on_progress, LifecyclePhase.UNREGISTERING, "Unregistering effects", 20, name)
            try:
                _, restart_required = self._unregister(name)
                if restart_required:
                    logger.warning(f"Old registrations of {name} stay active until restart")
            except Exception as e:
                logger.warning(f"Unregistering {name} failed: {e}")

            self._report(on_progress, LifecyclePhase.CLEANING, "Removing processed files", 30, name)
            errors: list[str] = []
            discarded = self._discard_processed(name, descriptor.source_path, errors)
            for error in errors:
                logger.warning(f"Reload {name}: {error}")

            result = await self._process_and_load(
                name, descriptor.source_path, on_progress, force=True, exclude=discarded
            )
            if not result.success:
                return result

            self._invalidate_registry_cache()
            self._report(on_progress, LifecyclePhase.COMPLETE, f"Reloaded {name}", 100, name)
            logger.info(f"Reloaded plugin {name}")
            return result

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup_orphans(self, on_progress: ProgressObserver | None = None) -> CleanupResult:
        """Delete processed directories no current plugin uses.

        A processed directory is kept while the cache maps a configured
        plugin's source to it, while a plugin loaded in this process uses
        it, and while it is younger than the retention window. Mappings from
        sources no longer configured do not keep a directory alive.
        """
        result = CleanupResult()
        self._report(on_progress, LifecyclePhase.DISCOVERING, "Scanning processed directories", 10)
        try:
            candidates = sorted(
                p for p in self.data_dir.glob(f"{PROCESSED_PREFIX}*") if p.is_dir()
            )
        except OSError as e:
            result.error = f"Cannot scan {self.data_dir}: {e}"
            self._report(on_progress, LifecyclePhase.ERROR, result.error, 100)
            return result

        configured = [d.source_path for d in self.store.get_plugins()]
        referenced = set(self.dir_cache.referenced_dirs(configured))
        referenced.update(os.path.realpath(p) for p in self._processed.values())
        cutoff = time.time() - self.retention_hours * 3600

        self._report(on_progress, LifecyclePhase.CLEANING, f"Checking {len(candidates)} directories", 40)
        for path in candidates:
            if os.path.realpath(path) in referenced:
                result.kept += 1
                continue
            try:
                if path.stat().st_mtime > cutoff:
                    result.kept += 1
                    continue
                await asyncio.to_thread(shutil.rmtree, path)
                result.removed.append(str(path))
            except OSError as e:
                result.errors.append(f"{path}: {e}")

        self._report(on_progress, LifecyclePhase.CLEANING, "Sweeping cache mappings", 80)
        result.mappings = self.dir_cache.sweep_orphans()

        self._report(
            on_progress,
            LifecyclePhase.COMPLETE,
            f"Removed {len(result.removed)} processed director(ies)",
            100,
        )
        logger.info(
            f"Cleanup removed {len(result.removed)} dir(s) and "
            f"{result.mappings.removed} mapping(s); kept {result.kept}"
        )
        return result

    def __repr__(self) -> str:
        return (
            f"<PluginOrchestrator configured={len(self.store.get_plugins())} "
            f"loaded={len(self._processed)}>"
        )
