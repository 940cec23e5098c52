"""
Plugin manifests and structural validation.

A directory plugin may carry a ``plugin.json`` manifest:

    {
      "name": "glitch-pack",
      "version": "1.2.0",
      "description": "Datamosh and scanline effects",
      "main": "plugin.py",
      "min_host_version": "0.1.0"
    }

The entry module is taken from ``main``, then ``module``, then
``entry_point``; without any of these the first of ``plugin``, ``index``
and ``main`` found in the directory is used. A single ``.py`` file is a
valid plugin on its own.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from effectloom.plugins.errors import PluginValidationError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "plugin.json"
ENTRY_FALLBACKS = ("plugin", "index", "main")
MODULE_SUFFIX = ".py"
MODULE_SUFFIXES = (".py", ".pyw")

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def is_valid_plugin_name(name: str) -> bool:
    """Whether ``name`` is usable as a plugin name and a directory name."""
    return _NAME_RE.fullmatch(name) is not None


class PluginManifest(BaseModel):
    """Contents of ``plugin.json``.

    Unknown keys are kept so plugins can carry their own metadata.
    """

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    main: str | None = None
    module: str | None = None
    entry_point: str | None = None
    min_host_version: str | None = None

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str | None) -> str | None:
        if v is not None and not is_valid_plugin_name(v):
            raise ValueError(f"Plugin name must be alphanumeric with '.', '_' or '-': {v}")
        return v

    @property
    def declared_entry(self) -> str | None:
        return self.main or self.module or self.entry_point

    def is_compatible(self, host_version: str) -> bool:
        """Check the plugin's minimum host version against ``host_version``."""
        if not self.min_host_version:
            return True
        from packaging import version as pkg_version
        try:
            return pkg_version.parse(host_version) >= pkg_version.parse(self.min_host_version)
        except Exception:
            # unparseable versions are not a reason to refuse a plugin
            return True


def read_manifest(plugin_dir: str | Path) -> PluginManifest | None:
    """Read ``plugin.json`` from a plugin directory.

    Returns:
        The manifest, or None when the directory has none.

    Raises:
        PluginValidationError: If the manifest exists but is malformed.
    """
    path = Path(plugin_dir) / MANIFEST_FILENAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PluginValidationError(plugin_dir, f"unreadable {MANIFEST_FILENAME}: {e}") from e
    if not isinstance(data, dict):
        raise PluginValidationError(plugin_dir, f"{MANIFEST_FILENAME} must be a JSON object")
    try:
        return PluginManifest.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]["msg"] if e.errors() else str(e)
        raise PluginValidationError(plugin_dir, f"invalid {MANIFEST_FILENAME}: {first}") from e


def _entry_candidates(root: Path, entry: str) -> list[Path]:
    entry = entry.strip()
    if entry.startswith("./"):
        entry = entry[2:]
    suffix = Path(entry).suffix
    if suffix in MODULE_SUFFIXES:
        stem = entry[: -len(suffix)]
        return [root / f"{stem}{MODULE_SUFFIX}", root / entry]
    relative = entry.replace(".", "/") if "/" not in entry else entry
    return [
        root / f"{relative}{MODULE_SUFFIX}",
        root / f"{relative}.pyw",
        root / relative / "__init__.py",
    ]


def resolve_entry(plugin_path: str | Path, manifest: PluginManifest | None = None) -> Path | None:
    """Locate the entry module of a plugin.

    The declared name is normalized to the ``.py`` form that materialized
    plugins use, falling back to the name as written.

    Args:
        plugin_path: Plugin directory or single module file.
        manifest: Already-read manifest, to avoid reading it twice.

    Returns:
        Path to the entry module, or None if none exists.
    """
    path = Path(plugin_path)
    if path.is_file():
        return path if path.suffix in MODULE_SUFFIXES else None
    if not path.is_dir():
        return None

    if manifest is None:
        try:
            manifest = read_manifest(path)
        except PluginValidationError as e:
            logger.warning(str(e))
            manifest = None

    names: list[str] = []
    if manifest is not None and manifest.declared_entry:
        names.append(manifest.declared_entry)
    names.extend(ENTRY_FALLBACKS)

    for name in names:
        for candidate in _entry_candidates(path, name):
            if candidate.is_file():
                return candidate
    return None


def validate_plugin(plugin_path: str | Path) -> PluginManifest:
    """Check that a path holds a loadable plugin.

    Args:
        plugin_path: Plugin directory or single module file.

    Returns:
        The plugin's manifest; synthesized from the path when the plugin
        has none.

    Raises:
        PluginValidationError: If the path is missing, has no entry module,
            is not a Python module, or has a malformed manifest.
    """
    path = Path(plugin_path).expanduser()
    if not path.exists():
        raise PluginValidationError(path, "path does not exist")

    if path.is_file():
        if path.suffix not in MODULE_SUFFIXES:
            raise PluginValidationError(path, "single-file plugins must be Python modules")
        return PluginManifest(name=path.stem, main=path.name)

    manifest = read_manifest(path)
    entry = resolve_entry(path, manifest)
    if entry is None:
        if manifest is not None and manifest.declared_entry:
            reason = f"entry module '{manifest.declared_entry}' not found"
        else:
            reason = (
                f"no {MANIFEST_FILENAME} entry and none of "
                f"{', '.join(n + MODULE_SUFFIX for n in ENTRY_FALLBACKS)} present"
            )
        raise PluginValidationError(path, reason)

    if manifest is None:
        manifest = PluginManifest(name=path.name if _NAME_RE.match(path.name) else None)
    if not manifest.declared_entry:
        manifest.main = entry.relative_to(path).as_posix()
    return manifest


def manifest_summary(manifest: PluginManifest) -> dict[str, Any]:
    return manifest.model_dump(exclude_none=True)
