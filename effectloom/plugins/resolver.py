"""
Shared-package resolution across the host's storage roots.

A shared package (the effects engine and anything else plugins are allowed
to import from the host) can live in up to four places depending on how the
host is running:

    1. <cwd>/site-packages                 running from a source checkout
    2. <app_root>/site-packages            installed host application
    3. <archive>.unpacked/site-packages    native modules unpacked beside a
                                           packaged zip archive
    4. <archive>/site-packages             inside the read-only archive

The probe order is fixed so resolution is deterministic. Locations inside the
archive are flagged read-only; callers use the flag to decide between linking
and copying.

Example:
    from effectloom.plugins.resolver import DependencyResolver

    resolver = DependencyResolver.from_settings()
    found = resolver.resolve("fxengine")
    if found is not None:
        print(found.path, found.is_read_only)
"""

from __future__ import annotations

import importlib.machinery
import logging
import os
import sys
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from effectloom.plugins.errors import ResolutionError

logger = logging.getLogger(__name__)

UNPACKED_SUFFIX = ".unpacked"


@dataclass(frozen=True)
class ResolvedPath:
    """A located shared package.

    Attributes:
        path: Canonical location. For archive members this is the archive's
            real path joined with the member name.
        is_read_only: True when the package lives inside an immutable store
            and cannot be symlinked to.
        is_package: True for a package directory, False for a single module.
        archive: Archive file holding the package, if any.
        member: Member name inside ``archive`` (posix separators).
    """

    path: Path
    is_read_only: bool = False
    is_package: bool = True
    archive: Path | None = None
    member: str | None = None

    @property
    def in_archive(self) -> bool:
        return self.archive is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "is_read_only": self.is_read_only,
            "is_package": self.is_package,
            "archive": str(self.archive) if self.archive else None,
            "member": self.member,
        }


def detect_archive(module_file: str | None = None) -> Path | None:
    """Return the zip archive the host is imported from, if any.

    Walks up from ``module_file`` (this module by default) until an existing
    path is found; when that path is a zip file the host is running packaged.
    """
    current = Path(module_file or __file__)
    for candidate in (current, *current.parents):
        if candidate.exists():
            if candidate.is_file() and zipfile.is_zipfile(candidate):
                return candidate
            return None
    return None


class DependencyResolver:
    """Locates shared packages across the host's dependency roots.

    Resolution is stateless: the filesystem is probed on every call and
    nothing is memoized.

    Attributes:
        dependency_dirname: Name of the dependency directory in each root.
        cwd: Working directory for the first probe; ``Path.cwd()`` when None.
        app_root: Host application root.
        archive: Packaged read-only archive, if the host runs packaged.
    """

    def __init__(
        self,
        app_root: str | Path | None = None,
        archive: str | Path | None = None,
        dependency_dirname: str = "site-packages",
        cwd: str | Path | None = None,
    ):
        self.dependency_dirname = dependency_dirname
        self.cwd = Path(cwd) if cwd else None
        self.app_root = Path(app_root) if app_root else None
        self.archive = Path(archive) if archive else None

    @classmethod
    def from_settings(cls, settings: Any = None) -> "DependencyResolver":
        """Build a resolver from application settings."""
        if settings is None:
            from effectloom.config.settings import settings
        archive = settings.ARCHIVE_PATH or detect_archive()
        app_root = settings.APP_ROOT
        if app_root is None:
            app_root = archive.parent if archive else Path(sys.prefix)
        return cls(
            app_root=app_root,
            archive=archive,
            dependency_dirname=settings.DEPENDENCY_DIRNAME,
        )

    @property
    def unpacked_archive(self) -> Path | None:
        if self.archive is None:
            return None
        return self.archive.with_name(self.archive.name + UNPACKED_SUFFIX)

    def search_roots(self) -> list[Path]:
        """On-disk dependency roots in probe order (existing or not)."""
        roots = [(self.cwd or Path.cwd()) / self.dependency_dirname]
        if self.app_root is not None:
            roots.append(self.app_root / self.dependency_dirname)
        unpacked = self.unpacked_archive
        if unpacked is not None:
            roots.append(unpacked / self.dependency_dirname)
        return roots

    def dependency_root(self) -> ResolvedPath | None:
        """First existing dependency directory, on disk or in the archive."""
        for root in self.search_roots():
            if root.is_dir():
                return ResolvedPath(path=Path(os.path.realpath(root)))
        if self.archive is not None:
            try:
                names = self._archive_names()
            except (OSError, zipfile.BadZipFile) as e:
                logger.warning(f"Could not read archive {self.archive}: {e}")
                return None
            prefix = f"{self.dependency_dirname}/"
            if any(name.startswith(prefix) for name in names):
                return ResolvedPath(
                    path=self._archive_real() / self.dependency_dirname,
                    is_read_only=True,
                    archive=self._archive_real(),
                    member=self.dependency_dirname,
                )
        return None

    def resolve(self, package_name: str) -> ResolvedPath | None:
        """Locate ``package_name``.

        Args:
            package_name: Top-level import name of the package.

        Returns:
            The first match in probe order, or None when the package is not
            present anywhere. Never raises.
        """
        for root in self.search_roots():
            try:
                found = self._probe_directory(root, package_name)
            except OSError as e:
                logger.debug(f"Skipping {root} while resolving {package_name}: {e}")
                continue
            if found is not None:
                return found

        if self.archive is not None:
            try:
                return self._probe_archive(package_name)
            except (OSError, zipfile.BadZipFile) as e:
                logger.warning(f"Could not read archive {self.archive}: {e}")
        return None

    def require(self, package_name: str) -> ResolvedPath:
        """Like :meth:`resolve` but raises ResolutionError when not found."""
        found = self.resolve(package_name)
        if found is None:
            searched = [str(root / package_name) for root in self.search_roots()]
            if self.archive is not None:
                searched.append(f"{self.archive}/{self.dependency_dirname}/{package_name}")
            raise ResolutionError(package_name, searched)
        return found

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def _probe_directory(self, root: Path, package_name: str) -> ResolvedPath | None:
        if not root.is_dir():
            return None

        package_dir = root / package_name
        if package_dir.is_dir():
            return ResolvedPath(path=Path(os.path.realpath(package_dir)))

        module_file = root / f"{package_name}.py"
        if module_file.is_file():
            return ResolvedPath(
                path=Path(os.path.realpath(module_file)),
                is_package=False,
            )

        for suffix in importlib.machinery.EXTENSION_SUFFIXES:
            extension = root / f"{package_name}{suffix}"
            if extension.is_file():
                return ResolvedPath(
                    path=Path(os.path.realpath(extension)),
                    is_package=False,
                )
        return None

    def _probe_archive(self, package_name: str) -> ResolvedPath | None:
        names = self._archive_names()
        base = f"{self.dependency_dirname}/{package_name}"
        archive = self._archive_real()

        if f"{base}/" in names or any(n.startswith(f"{base}/") for n in names):
            return ResolvedPath(
                path=archive / self.dependency_dirname / package_name,
                is_read_only=True,
                archive=archive,
                member=base,
            )
        if f"{base}.py" in names:
            return ResolvedPath(
                path=archive / self.dependency_dirname / f"{package_name}.py",
                is_read_only=True,
                is_package=False,
                archive=archive,
                member=f"{base}.py",
            )
        return None

    def _archive_names(self) -> set[str]:
        if self.archive is None or not self.archive.is_file():
            return set()
        with zipfile.ZipFile(self.archive) as zf:
            return set(zf.namelist())

    def _archive_real(self) -> Path:
        return Path(os.path.realpath(self.archive))

    def __repr__(self) -> str:
        return (
            f"DependencyResolver(app_root={self.app_root}, "
            f"archive={self.archive}, dirname={self.dependency_dirname!r})"
        )
