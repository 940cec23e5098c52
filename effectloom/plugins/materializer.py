"""
Materialization of plugin source trees into processed directories.

A processed directory is a rewritten mirror of the plugin's source that can
be imported on its own:

    plugin-processed-<slug>-<ms>/
    ├── .effectloom.json     anchor manifest read by the loader
    ├── plugin.json          copied verbatim
    ├── plugin.py            imports rewritten (see rewriter)
    ├── effects/...          mirrored recursively
    └── site-packages/       one entry per shared host package,
                             symlinked or copied

Directories for version control, build output and dependency trees are not
mirrored; plugins may not ship their own dependencies. Failures on
individual files are logged and recorded in the report but never abort the
walk, so a later import fails with a precise error instead.

Example:
    from effectloom.plugins.materializer import DirectoryMaterializer

    materializer = DirectoryMaterializer.from_settings()
    report = materializer.materialize("~/plugins/glitch", dest)
    print(report.modules_rewritten, report.errors)
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import os
import re
import shutil
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Mapping

from effectloom.plugins.errors import MaterializationError
from effectloom.plugins.resolver import DependencyResolver, ResolvedPath
from effectloom.plugins.rewriter import ImportRewriter, package_anchor

logger = logging.getLogger(__name__)

MANIFEST_NAME = ".effectloom.json"
PROCESSED_PREFIX = "plugin-processed-"
MODULE_SUFFIX = ".py"
MODULE_SUFFIXES = (".py", ".pyw")

SKIP_DIRS = frozenset({
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    "build",
    "dist",
    ".eggs",
    ".venv",
    "venv",
    "node_modules",
    "site-packages",
})
SKIP_DIR_PATTERNS = ("*.egg-info",)


def should_skip_dir(name: str, dependency_dirname: str = "site-packages") -> bool:
    """True for directories that are never mirrored or fingerprinted."""
    if name in SKIP_DIRS or name == dependency_dirname:
        return True
    return any(fnmatch.fnmatch(name, pattern) for pattern in SKIP_DIR_PATTERNS)


def _iter_files(root: Path, dependency_dirname: str = "site-packages"):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not should_skip_dir(d, dependency_dirname)
        )
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def fingerprint(path: str | Path, dependency_dirname: str = "site-packages") -> str:
    """Content fingerprint of a plugin source.

    SHA-256 over every mirrored file's relative path and bytes. Skipped
    directories do not contribute, so rebuilding a plugin's own dependency
    tree does not force re-materialization.
    """
    root = Path(path)
    digest = hashlib.sha256()
    if root.is_file():
        digest.update(root.name.encode("utf-8"))
        digest.update(root.read_bytes())
        return digest.hexdigest()

    for file in _iter_files(root, dependency_dirname):
        rel = file.relative_to(root).as_posix()
        digest.update(rel.encode("utf-8"))
        digest.update(b"\0")
        try:
            digest.update(file.read_bytes())
        except OSError as e:
            logger.debug(f"Unreadable file {file} while fingerprinting: {e}")
        digest.update(b"\0")
    return digest.hexdigest()


def slugify(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-").lower()
    return slug or "plugin"


def new_processed_dir(
    data_dir: str | Path,
    plugin_name: str,
    exclude: Iterable[str | Path] = (),
) -> Path:
    """Fresh processed directory path for a plugin.

    The millisecond timestamp gives every materialization a new location,
    which is what lets a changed plugin bypass the loader's import cache.
    Paths in ``exclude`` are never returned, even after they were deleted.
    """
    base = Path(data_dir)
    taken = {os.path.realpath(p) for p in exclude}
    stamp = int(time.time() * 1000)
    candidate = base / f"{PROCESSED_PREFIX}{slugify(plugin_name)}-{stamp}"
    while candidate.exists() or os.path.realpath(candidate) in taken:
        stamp += 1
        candidate = base / f"{PROCESSED_PREFIX}{slugify(plugin_name)}-{stamp}"
    return candidate


def read_anchor_manifest(processed_dir: str | Path) -> dict[str, Any] | None:
    """Read the anchor manifest of a processed directory, or None."""
    path = Path(processed_dir) / MANIFEST_NAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Unreadable anchor manifest {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


@dataclass
class MaterializationReport:
    """What one materialization did.

    Attributes:
        source: Plugin source path.
        destination: Processed directory.
        anchor: Top-level alias the processed directory imports under.
        modules_rewritten: Module files written through the rewriter.
        files_copied: Non-module files copied verbatim.
        dependencies_linked: Shared packages symlinked into the
            dependency directory.
        dependencies_copied: Shared packages copied or extracted.
        anchors: Alias -> absolute path used by rewritten modules.
        errors: Per-file failures (logged, non-fatal).
    """

    source: str
    destination: str
    anchor: str = ""
    modules_rewritten: int = 0
    files_copied: int = 0
    dependencies_linked: list[str] = field(default_factory=list)
    dependencies_copied: list[str] = field(default_factory=list)
    anchors: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        # per-file errors are reported, never fatal
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "destination": self.destination,
            "anchor": self.anchor,
            "modules_rewritten": self.modules_rewritten,
            "files_copied": self.files_copied,
            "dependencies_linked": self.dependencies_linked,
            "dependencies_copied": self.dependencies_copied,
            "anchors": self.anchors,
            "errors": self.errors,
        }


class DirectoryMaterializer:
    """Builds processed plugin directories.

    Attributes:
        rewriter: Rewrites imports in module files.
        resolver: Locates shared packages for the dependency directory.
        dependency_dirname: Name of the dependency directory to create.
    """

    def __init__(
        self,
        rewriter: ImportRewriter,
        resolver: DependencyResolver | None = None,
        dependency_dirname: str | None = None,
    ):
        self.rewriter = rewriter
        self.resolver = resolver or rewriter.resolver
        self.dependency_dirname = dependency_dirname or self.resolver.dependency_dirname

    @classmethod
    def from_settings(cls, settings: Any = None) -> "DirectoryMaterializer":
        if settings is None:
            from effectloom.config.settings import settings
        resolver = DependencyResolver.from_settings(settings)
        return cls(ImportRewriter.from_settings(resolver, settings), resolver)

    # ------------------------------------------------------------------
    # Materialize
    # ------------------------------------------------------------------

    def materialize(self, source: str | Path, dest: str | Path) -> MaterializationReport:
        """Mirror ``source`` into ``dest`` with imports rewritten.

        Args:
            source: Plugin directory, or a single-module plugin file.
            dest: Processed directory to create.

        Returns:
            MaterializationReport. Per-file failures are listed in
            ``errors``; the operation itself always completes.
        """
        source_path = Path(os.path.realpath(source))
        dest_path = Path(dest)
        dest_path.mkdir(parents=True, exist_ok=True)

        report = MaterializationReport(
            source=str(source_path),
            destination=str(dest_path),
            anchor=package_anchor(dest_path),
        )
        resolved = self.rewriter.resolve_shared()

        if source_path.is_file():
            files = [source_path]
            root = source_path.parent
        else:
            files = list(_iter_files(source_path, self.dependency_dirname))
            root = source_path

        for file in files:
            try:
                self._materialize_file(file, root, dest_path, resolved, report)
            except MaterializationError as e:
                logger.error(str(e))
                report.errors.append(str(e))

        self.prepare_dependencies(dest_path, resolved, report)
        self._write_manifest(report)

        logger.info(
            f"Materialized {source_path} -> {dest_path} "
            f"({report.modules_rewritten} modules, {report.files_copied} files, "
            f"{len(report.errors)} errors)"
        )
        return report

    def _materialize_file(
        self,
        file: Path,
        root: Path,
        dest_root: Path,
        resolved: Mapping[str, ResolvedPath | None],
        report: MaterializationReport,
    ) -> None:
        rel = file.relative_to(root)
        try:
            if file.suffix in MODULE_SUFFIXES:
                target = dest_root / rel.with_suffix(MODULE_SUFFIX)
                if file.suffix != MODULE_SUFFIX and (file.with_suffix(MODULE_SUFFIX)).exists():
                    raise MaterializationError(
                        file, ValueError(f"conflicts with {rel.with_suffix(MODULE_SUFFIX)}")
                    )
                text = file.read_text(encoding="utf-8")
                result = self.rewriter.rewrite_module(
                    text,
                    anchor=report.anchor,
                    package_parts=rel.parent.parts,
                    resolved=resolved,
                )
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(result.text, encoding="utf-8")
                report.anchors.update(result.anchors)
                report.modules_rewritten += 1
            else:
                target = dest_root / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(file, target)
                report.files_copied += 1
        except MaterializationError:
            raise
        except (OSError, UnicodeDecodeError) as e:
            raise MaterializationError(file, e) from e

    def _write_manifest(self, report: MaterializationReport) -> None:
        data = {
            "anchor": report.anchor,
            "source": report.source,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "dependencies": report.anchors,
        }
        path = Path(report.destination) / MANIFEST_NAME
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Dependency directories
    # ------------------------------------------------------------------

    def prepare_dependencies(
        self,
        dest: str | Path,
        resolved: Mapping[str, ResolvedPath | None] | None = None,
        report: MaterializationReport | None = None,
    ) -> Path:
        """Populate ``dest/<dependency dir>`` with the shared packages.

        Packages outside the read-only archive are symlinked; archive
        resident ones are copied out since nothing can link into the archive.

        Returns:
            The dependency directory.
        """
        if resolved is None:
            resolved = self.rewriter.resolve_shared()
        dep_dir = Path(dest) / self.dependency_dirname
        dep_dir.mkdir(parents=True, exist_ok=True)

        for name, location in resolved.items():
            if location is None:
                logger.warning(f"Shared package {name} not found; not linked into {dep_dir}")
                continue
            target = dep_dir / location.path.name
            try:
                mode = self.link_or_copy(location, target)
            except OSError as e:
                error = MaterializationError(target, e)
                logger.error(str(error))
                if report is not None:
                    report.errors.append(str(error))
                continue
            if report is not None:
                bucket = report.dependencies_linked if mode == "linked" else report.dependencies_copied
                bucket.append(name)
        return dep_dir

    def prepare_source_dependencies(self, plugin_dir: str | Path) -> Path | None:
        """Give an unmaterialized plugin directory its own dependency directory.

        Links ``plugin_dir/<dependency dir>`` to the host's dependency root, or
        fills a real directory with copies when the root is read-only. An
        existing entry is left alone.

        Returns:
            The dependency directory, or None when nothing was created.
        """
        plugin_path = Path(plugin_dir)
        if not plugin_path.is_dir():
            return None
        target = plugin_path / self.dependency_dirname
        if target.exists() or target.is_symlink():
            logger.debug(f"{target} already exists; leaving it")
            return None

        root = self.resolver.dependency_root()
        if root is None:
            logger.warning("No host dependency directory found; nothing to link")
            return None

        if not root.is_read_only:
            try:
                os.symlink(root.path, target, target_is_directory=True)
                logger.info(f"Linked {target} -> {root.path}")
                return target
            except OSError as e:
                logger.warning(f"Symlink {target} failed ({e}); copying instead")

        self.prepare_dependencies(plugin_path)
        return target

    def link_or_copy(self, location: ResolvedPath, target: Path) -> str:
        """Make ``location`` available at ``target``.

        Returns:
            "linked" or "copied".
        """
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.is_dir():
            shutil.rmtree(target)

        if location.in_archive:
            self._extract_member(location, target)
            return "copied"

        if not location.is_read_only:
            try:
                os.symlink(location.path, target, target_is_directory=location.is_package)
                return "linked"
            except OSError as e:
                logger.debug(f"Symlink {target} failed ({e}); copying instead")

        if location.path.is_dir():
            shutil.copytree(
                location.path,
                target,
                symlinks=False,
                ignore=shutil.ignore_patterns("__pycache__"),
            )
        else:
            shutil.copy2(location.path, target)
        return "copied"

    def _extract_member(self, location: ResolvedPath, target: Path) -> None:
        member = location.member or ""
        with zipfile.ZipFile(location.archive) as zf:
            if not location.is_package:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(zf.read(member))
                return
            prefix = member.rstrip("/") + "/"
            for info in zf.infolist():
                if not info.filename.startswith(prefix) or info.is_dir():
                    continue
                rel = PurePosixPath(info.filename[len(prefix):])
                if ".." in rel.parts or rel.is_absolute():
                    logger.warning(f"Skipping unsafe archive member {info.filename}")
                    continue
                out = target.joinpath(*rel.parts)
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_bytes(zf.read(info))
