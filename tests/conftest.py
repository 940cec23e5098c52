"""Shared fixtures for the plugin pipeline tests.

Every test gets its own host layout under ``tmp_path``:

    app/site-packages/fxengine/   engine package, never rewritten
    app/site-packages/fxkit/      shared helper package, rewritten
    data/                         processed dirs and persisted caches
"""

from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path
from types import SimpleNamespace
from typing import Callable

import pytest

from effectloom.plugins.dir_cache import ProcessedDirCache
from effectloom.plugins.loader import ModuleLoader
from effectloom.plugins.materializer import DirectoryMaterializer
from effectloom.plugins.orchestrator import PluginOrchestrator
from effectloom.plugins.registry import ConfigRegistry, EffectRegistry, PositionRegistry
from effectloom.plugins.registry_cache import RegistryCache
from effectloom.plugins.resolver import DependencyResolver
from effectloom.plugins.rewriter import ImportRewriter
from effectloom.plugins.store import PluginConfigStore

ENGINE_SOURCE = '''
class BaseEffect:
    name = "base"
    category = "core"


def register_core_effects(registry):
    registry.register_global(BaseEffect, "core", {"core": True})
'''


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")


@pytest.fixture
def host(tmp_path) -> SimpleNamespace:
    """A host application root with two shared packages."""
    app_root = tmp_path / "app"
    site = app_root / "site-packages"
    _write(site / "fxengine" / "__init__.py", ENGINE_SOURCE)
    _write(site / "fxkit" / "__init__.py", "SCALE = 2\n")
    _write(site / "fxkit" / "colors.py", "RED = (255, 0, 0)\n")
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    cwd = tmp_path / "cwd"
    cwd.mkdir()
    return SimpleNamespace(
        root=tmp_path,
        app_root=app_root,
        site_packages=site,
        data_dir=data_dir,
        cwd=cwd,
        plugins_dir=tmp_path / "plugins",
    )


@pytest.fixture
def make_plugin(host) -> Callable[..., Path]:
    """Write a plugin directory from a mapping of relative path -> source."""

    def _make(name: str, files: dict[str, str], manifest: dict | None = None) -> Path:
        root = host.plugins_dir / name
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            _write(root / rel, content)
        if manifest is not None:
            (root / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
        return root

    return _make


@pytest.fixture
def resolver(host) -> DependencyResolver:
    return DependencyResolver(app_root=host.app_root, cwd=host.cwd)


@pytest.fixture
def rewriter(resolver) -> ImportRewriter:
    return ImportRewriter(resolver, shared_packages=["fxengine", "fxkit"], engine_package="fxengine")


@pytest.fixture
def materializer(rewriter) -> DirectoryMaterializer:
    return DirectoryMaterializer(rewriter)


@pytest.fixture
def loader():
    loader = ModuleLoader(timeout=5.0)
    yield loader
    loader.close()


@pytest.fixture
def orchestrator(host, materializer, loader) -> PluginOrchestrator:
    return PluginOrchestrator(
        store=PluginConfigStore(host.data_dir),
        dir_cache=ProcessedDirCache(host.data_dir),
        materializer=materializer,
        loader=loader,
        effect_registry=EffectRegistry(),
        config_registry=ConfigRegistry(),
        position_registry=PositionRegistry(),
        registry_cache=RegistryCache(host.data_dir),
        data_dir=host.data_dir,
        load_timeout=5.0,
        engine_backoff=0.0,
    )


@pytest.fixture(autouse=True)
def _restore_sys_path():
    """Plugins must never leave entries on sys.path."""
    before = list(sys.path)
    yield
    sys.path[:] = before
