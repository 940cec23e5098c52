"""
Module loading for processed plugins.

The loader imports a plugin's entry module once, calls its ``register``
function with mock registries, and returns what the plugin tried to
register. Nothing reaches the real registries from here; see
:mod:`effectloom.plugins.capture`.

Module identity:
    A processed directory is imported as a top-level package named by its
    anchor (``_elplugin_<digest>``), so ``<dir>/effects/glow.py`` becomes
    ``_elplugin_<digest>.effects.glow``. The anchor and the shared-package
    aliases written by the materializer are served by an
    :class:`AnchoredModuleFinder` the loader owns on ``sys.meta_path``.

Import cache:
    Results are cached per loader by the entry module's real path. Loading
    the same location again returns the first result without executing the
    module or its ``register`` a second time. A changed plugin must be
    materialized to a new directory to be imported again.

Timeouts:
    The import runs in a daemon thread bounded by ``timeout``. On timeout
    the caller stops waiting but the thread is not killed; if it finishes
    later its result still lands in the cache. The thread is never joined,
    so a hung import does not hold up interpreter exit.

Example:
    from effectloom.plugins.loader import ModuleLoader

    loader = ModuleLoader(timeout=10.0)
    result = await loader.load("/data/plugin-processed-glitch-1718000000000")
    if result.success:
        for effect in result.effects:
            print(effect.name, effect.category)
"""

from __future__ import annotations

import asyncio
import importlib
import importlib.abc
import importlib.machinery
import importlib.util
import inspect
import logging
import os
import sys
import threading
import traceback
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import ModuleType
from typing import Any, Iterator

from effectloom.plugins.capture import (
    CapturedRegistration,
    CapturingSink,
    mock_registries,
)
from effectloom.plugins.errors import LoadTimeoutError, PluginLoadError
from effectloom.plugins.manifest import resolve_entry
from effectloom.plugins.materializer import read_anchor_manifest
from effectloom.plugins.rewriter import package_anchor

logger = logging.getLogger(__name__)

REGISTRATION_FUNCTION = "register"
PLUGIN_OBJECT = "PLUGIN"
MAX_REGISTRY_ARGS = 3


@dataclass
class LoadResult:
    """Outcome of loading one plugin.

    Attributes:
        success: Whether the module imported and ``register`` returned.
        effects: Captured effect registrations.
        configs: Captured config registrations.
        positions: Captured position registrations.
        error: Human readable failure reason.
        module_name: Name the entry module was imported under.
        entry_path: Real path of the entry module.
        cached: True when served from the import cache.
    """

    success: bool
    effects: list[CapturedRegistration] = field(default_factory=list)
    configs: list[CapturedRegistration] = field(default_factory=list)
    positions: list[CapturedRegistration] = field(default_factory=list)
    error: str | None = None
    module_name: str | None = None
    entry_path: str | None = None
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "effects": [e.to_dict() for e in self.effects],
            "configs": [c.to_dict() for c in self.configs],
            "positions": [p.to_dict() for p in self.positions],
            "error": self.error,
            "module_name": self.module_name,
            "entry_path": self.entry_path,
            "cached": self.cached,
        }


@dataclass
class _ImportedModule:
    module: ModuleType
    result: LoadResult


class AnchoredModuleFinder(importlib.abc.MetaPathFinder):
    """Serves top-level aliases that are anchored at fixed locations.

    Only top-level names are handled; submodules are found by the regular
    path machinery through the package's ``__path__``.
    """

    def __init__(self):
        self._locations: dict[str, Path] = {}
        self._lock = threading.Lock()

    def register(self, alias: str, location: str | Path) -> None:
        location = Path(location)
        with self._lock:
            previous = self._locations.get(alias)
            if previous is not None and previous != location:
                logger.warning(f"Alias {alias} re-anchored from {previous} to {location}")
            self._locations[alias] = location

    def unregister(self, alias: str) -> None:
        with self._lock:
            self._locations.pop(alias, None)

    def location(self, alias: str) -> Path | None:
        with self._lock:
            return self._locations.get(alias)

    def aliases(self) -> list[str]:
        with self._lock:
            return sorted(self._locations)

    def find_spec(self, fullname, path=None, target=None):
        if "." in fullname:
            return None
        location = self.location(fullname)
        if location is None:
            return None

        if location.is_dir():
            init = location / "__init__.py"
            if init.is_file():
                return importlib.util.spec_from_file_location(
                    fullname, init, submodule_search_locations=[str(location)]
                )
            spec = importlib.machinery.ModuleSpec(fullname, None, is_package=True)
            spec.submodule_search_locations = [str(location)]
            return spec
        if location.is_file():
            return importlib.util.spec_from_file_location(fullname, location)
        logger.debug(f"Anchored location for {fullname} is gone: {location}")
        return None


def positional_arity(func: Any, limit: int = MAX_REGISTRY_ARGS) -> int:
    """How many registries ``func`` accepts positionally, capped at ``limit``."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return limit
    count = 0
    for param in sig.parameters.values():
        if param.kind is inspect.Parameter.VAR_POSITIONAL:
            return limit
        if param.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            count += 1
    return min(count, limit)


async def _await(awaitable: Any) -> Any:
    return await awaitable


class ModuleLoader:
    """Imports plugin entry modules and captures their registrations.

    Each loader owns its import cache and its meta path finder, so
    independent loaders never share state.

    Attributes:
        timeout: Seconds a single load may take.
        dependency_dirname: Dependency directory added to ``sys.path``
            while a processed plugin imports.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        dependency_dirname: str = "site-packages",
        registration_function: str = REGISTRATION_FUNCTION,
    ):
        self.timeout = timeout
        self.dependency_dirname = dependency_dirname
        self.registration_function = registration_function
        self._finder = AnchoredModuleFinder()
        self._cache: dict[str, _ImportedModule] = {}
        self._cache_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._path_refs: Counter[str] = Counter()
        self._path_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any = None) -> "ModuleLoader":
        if settings is None:
            from effectloom.config.settings import settings
        return cls(
            timeout=settings.IMPORT_TIMEOUT,
            dependency_dirname=settings.DEPENDENCY_DIRNAME,
        )

    @property
    def finder(self) -> AnchoredModuleFinder:
        return self._finder

    def _install_finder(self) -> None:
        if self._finder not in sys.meta_path:
            sys.meta_path.append(self._finder)

    def close(self) -> None:
        """Remove the loader's finder from ``sys.meta_path``.

        Modules already imported stay importable through ``sys.modules``.
        """
        try:
            sys.meta_path.remove(self._finder)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def is_loaded(self, entry_path: str | Path) -> bool:
        with self._cache_lock:
            return os.path.realpath(entry_path) in self._cache

    def cached_result(self, entry_path: str | Path) -> LoadResult | None:
        with self._cache_lock:
            imported = self._cache.get(os.path.realpath(entry_path))
        return replace(imported.result, cached=True) if imported else None

    def loaded_locations(self) -> list[str]:
        with self._cache_lock:
            return sorted(self._cache)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._cache_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def locate(self, plugin_path: str | Path) -> tuple[Path, Path]:
        """Entry module and package root for a plugin path.

        Raises:
            PluginLoadError: If no entry module can be found.
        """
        path = Path(plugin_path)
        if path.is_file():
            return Path(os.path.realpath(path)), Path(os.path.realpath(path.parent))
        entry = resolve_entry(path)
        if entry is None:
            raise PluginLoadError(path.name, "no entry module found")
        return Path(os.path.realpath(entry)), Path(os.path.realpath(path))

    async def load(self, plugin_path: str | Path, name: str | None = None) -> LoadResult:
        """Import a plugin and capture its registrations.

        Args:
            plugin_path: Processed plugin directory, or a module file.
            name: Plugin name for messages; defaults to the path's name.

        Returns:
            LoadResult. Failures, including timeouts, are reported in the
            result and never raised.
        """
        name = name or Path(plugin_path).stem
        try:
            entry, root = self.locate(plugin_path)
        except PluginLoadError as e:
            logger.error(str(e))
            return LoadResult(success=False, error=str(e))

        key = str(entry)
        cached = self.cached_result(key)
        if cached is not None:
            logger.debug(f"Plugin {name} already imported from {key}")
            return cached

        self._install_finder()
        try:
            return await asyncio.wait_for(
                self._start_import(name, entry, root),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            error = LoadTimeoutError(name, self.timeout)
            logger.error(f"{error}; import continues in the background")
            return LoadResult(success=False, error=str(error), entry_path=key)
        except PluginLoadError as e:
            logger.error(str(e))
            logger.debug(traceback.format_exc())
            return LoadResult(success=False, error=str(e), entry_path=key)

    def _start_import(self, name: str, entry: Path, root: Path) -> asyncio.Future:
        """Run the import on a daemon thread and return a future for its result.

        The thread is never joined, so a plugin that hangs at import time
        cannot keep the event loop or the interpreter from shutting down.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def settle(result: LoadResult | None, error: BaseException | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def worker() -> None:
            try:
                outcome = self._import_and_register(name, entry, root)
            except Exception as e:
                outcome, error = None, e
            else:
                error = None
            try:
                loop.call_soon_threadsafe(settle, outcome, error)
            except RuntimeError:
                # loop already closed; the result is still cached
                logger.debug(f"Plugin {name} finished after its event loop closed")

        threading.Thread(target=worker, name=f"effectloom-load-{name}", daemon=True).start()
        return future

    def _import_and_register(self, name: str, entry: Path, root: Path) -> LoadResult:
        key = str(entry)
        with self._lock_for(key):
            with self._cache_lock:
                imported = self._cache.get(key)
            if imported is not None:
                return replace(imported.result, cached=True)

            module_name = self._register_anchors(root, entry)
            module = self._import_entry(name, module_name, entry, root)
            result = self._run_registration(name, module)
            result.module_name = module_name
            result.entry_path = key

            with self._cache_lock:
                self._cache[key] = _ImportedModule(module=module, result=result)
            return result

    def _register_anchors(self, root: Path, entry: Path) -> str:
        stamped = read_anchor_manifest(root) or {}
        anchor = stamped.get("anchor") or package_anchor(root)
        self._finder.register(anchor, root)
        for alias, location in (stamped.get("dependencies") or {}).items():
            self._finder.register(alias, location)

        parts = list(entry.relative_to(root).with_suffix("").parts)
        if parts and parts[-1] == "__init__":
            parts.pop()
        return ".".join([anchor, *parts])

    def _import_entry(self, name: str, module_name: str, entry: Path, root: Path) -> ModuleType:
        dep_dir = root / self.dependency_dirname
        search_path = str(dep_dir) if dep_dir.is_dir() else None
        owned = self._acquire_path(search_path)
        try:
            existing = sys.modules.get(module_name)
            if existing is not None:
                return existing

            parent, _, _ = module_name.rpartition(".")
            if parent:
                importlib.import_module(parent)

            is_package = entry.name == "__init__.py"
            spec = importlib.util.spec_from_file_location(
                module_name,
                entry,
                loader=importlib.machinery.SourceFileLoader(module_name, str(entry)),
                submodule_search_locations=[str(entry.parent)] if is_package else None,
            )
            if spec is None or spec.loader is None:
                raise PluginLoadError(name, f"cannot create module spec for {entry}")

            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            try:
                spec.loader.exec_module(module)
            except BaseException:
                sys.modules.pop(module_name, None)
                raise
            if parent:
                setattr(sys.modules[parent], module_name.rpartition(".")[2], module)
            return module
        except PluginLoadError:
            raise
        except Exception as e:
            raise PluginLoadError(name, f"import failed: {type(e).__name__}: {e}", e) from e
        finally:
            self._release_path(search_path, owned)

    def _run_registration(self, name: str, module: ModuleType) -> LoadResult:
        register = getattr(module, self.registration_function, None)
        if not callable(register):
            plugin_object = getattr(module, PLUGIN_OBJECT, None)
            register = getattr(plugin_object, self.registration_function, None)
        if not callable(register):
            error = PluginLoadError(name, f"no {self.registration_function}() function exported")
            logger.error(str(error))
            return LoadResult(success=False, error=str(error))

        sink = CapturingSink()
        registries = mock_registries(sink)
        try:
            outcome = register(*registries[: positional_arity(register)])
            if inspect.isawaitable(outcome):
                asyncio.run(_await(outcome))
        except Exception as e:
            error = PluginLoadError(name, f"{self.registration_function}() raised {type(e).__name__}: {e}", e)
            logger.error(str(error))
            logger.debug(traceback.format_exc())
            return LoadResult(success=False, error=str(error))

        snapshot = sink.snapshot()
        logger.info(
            f"Plugin {name} registered {len(snapshot.effects)} effect(s), "
            f"{len(snapshot.configs)} config(s), {len(snapshot.positions)} position(s)"
        )
        return LoadResult(
            success=True,
            effects=snapshot.effects,
            configs=snapshot.configs,
            positions=snapshot.positions,
        )

    # ------------------------------------------------------------------
    # sys.path bookkeeping
    # ------------------------------------------------------------------

    @contextmanager
    def search_path(self, location: str | Path | None) -> Iterator[None]:
        """Keep ``location`` on ``sys.path`` for the duration of the block.

        Shares the reference counts plugin imports use, so overlapping
        windows never remove an entry another import still needs.
        """
        entry = str(location) if location is not None else None
        owned = self._acquire_path(entry)
        try:
            yield
        finally:
            self._release_path(entry, owned)

    def _acquire_path(self, entry: str | None) -> bool:
        if entry is None:
            return False
        with self._path_lock:
            if self._path_refs[entry] == 0:
                if entry in sys.path:
                    # put there by someone else; not ours to remove
                    return False
                sys.path.insert(0, entry)
            self._path_refs[entry] += 1
            return True

    def _release_path(self, entry: str | None, owned: bool = True) -> None:
        if entry is None or not owned:
            return
        with self._path_lock:
            self._path_refs[entry] -= 1
            if self._path_refs[entry] <= 0:
                del self._path_refs[entry]
                try:
                    sys.path.remove(entry)
                except ValueError:
                    pass

    def __repr__(self) -> str:
        return f"ModuleLoader(timeout={self.timeout}, loaded={len(self._cache)})"
