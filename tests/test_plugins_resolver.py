"""Tests for effectloom.plugins.resolver."""

from __future__ import annotations

import os
import zipfile
from pathlib import Path

import pytest

from effectloom.plugins.errors import ResolutionError
from effectloom.plugins.resolver import DependencyResolver, ResolvedPath, detect_archive


def _zip(path: Path, members: dict[str, str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return path


# ===========================================================================
# Probe order
# ===========================================================================

class TestResolve:
    """Tests for DependencyResolver.resolve."""

    def test_finds_package_in_app_root(self, resolver, host):
        found = resolver.resolve("fxkit")
        assert found is not None
        assert found.path == Path(os.path.realpath(host.site_packages / "fxkit"))
        assert found.is_read_only is False
        assert found.is_package is True

    def test_cwd_wins_over_app_root(self, host):
        local = host.cwd / "site-packages" / "fxkit"
        local.mkdir(parents=True)
        (local / "__init__.py").write_text("")
        resolver = DependencyResolver(app_root=host.app_root, cwd=host.cwd)

        results = {resolver.resolve("fxkit").path for _ in range(5)}
        assert results == {Path(os.path.realpath(local))}

    def test_symlinks_are_resolved(self, host, tmp_path):
        real = tmp_path / "elsewhere" / "linked"
        real.mkdir(parents=True)
        (real / "__init__.py").write_text("")
        os.symlink(real, host.site_packages / "linked")

        found = DependencyResolver(app_root=host.app_root, cwd=host.cwd).resolve("linked")
        assert found.path == Path(os.path.realpath(real))

    def test_single_module(self, host):
        (host.site_packages / "tinyfx.py").write_text("X = 1\n")
        found = DependencyResolver(app_root=host.app_root, cwd=host.cwd).resolve("tinyfx")
        assert found.is_package is False
        assert found.path.name == "tinyfx.py"

    def test_not_found_returns_none(self, resolver):
        assert resolver.resolve("does_not_exist") is None

    def test_require_raises(self, resolver):
        with pytest.raises(ResolutionError) as exc:
            resolver.require("does_not_exist")
        assert exc.value.package_name == "does_not_exist"
        assert len(exc.value.searched) == 2

    def test_unpacked_archive_before_archive(self, tmp_path):
        archive = _zip(tmp_path / "app.pyz", {"site-packages/native/__init__.py": ""})
        unpacked = tmp_path / "app.pyz.unpacked" / "site-packages" / "native"
        unpacked.mkdir(parents=True)
        (unpacked / "__init__.py").write_text("")

        resolver = DependencyResolver(archive=archive, cwd=tmp_path / "nowhere")
        found = resolver.resolve("native")
        assert found.path == Path(os.path.realpath(unpacked))
        assert found.is_read_only is False

    def test_archive_member_is_read_only(self, tmp_path):
        archive = _zip(tmp_path / "app.pyz", {
            "site-packages/zipped/__init__.py": "",
            "site-packages/zipped/core.py": "",
        })
        resolver = DependencyResolver(archive=archive, cwd=tmp_path / "nowhere")
        found = resolver.resolve("zipped")

        assert found.is_read_only is True
        assert found.in_archive is True
        assert found.member == "site-packages/zipped"
        assert found.archive == Path(os.path.realpath(archive))

    def test_archive_module_member(self, tmp_path):
        archive = _zip(tmp_path / "app.pyz", {"site-packages/flat.py": "X = 1\n"})
        found = DependencyResolver(archive=archive, cwd=tmp_path / "nowhere").resolve("flat")
        assert found.is_package is False
        assert found.member == "site-packages/flat.py"

    def test_corrupt_archive_is_not_fatal(self, tmp_path):
        archive = tmp_path / "broken.pyz"
        archive.write_bytes(b"PK\x03\x04 not really a zip")
        resolver = DependencyResolver(archive=archive, cwd=tmp_path / "nowhere")
        assert resolver.resolve("anything") is None


# ===========================================================================
# Roots and archive detection
# ===========================================================================

class TestRoots:
    """Tests for root discovery."""

    def test_search_roots_order(self, tmp_path):
        resolver = DependencyResolver(
            app_root=tmp_path / "app",
            archive=tmp_path / "app.pyz",
            cwd=tmp_path / "cwd",
        )
        assert resolver.search_roots() == [
            tmp_path / "cwd" / "site-packages",
            tmp_path / "app" / "site-packages",
            tmp_path / "app.pyz.unpacked" / "site-packages",
        ]

    def test_custom_dependency_dirname(self, tmp_path):
        resolver = DependencyResolver(app_root=tmp_path, cwd=tmp_path, dependency_dirname="vendor")
        assert all(root.name == "vendor" for root in resolver.search_roots())

    def test_dependency_root_on_disk(self, resolver, host):
        root = resolver.dependency_root()
        assert root.path == Path(os.path.realpath(host.site_packages))
        assert root.is_read_only is False

    def test_dependency_root_in_archive(self, tmp_path):
        archive = _zip(tmp_path / "app.pyz", {"site-packages/a/__init__.py": ""})
        root = DependencyResolver(archive=archive, cwd=tmp_path / "nowhere").dependency_root()
        assert root.is_read_only is True

    def test_detect_archive_inside_zip(self, tmp_path):
        archive = _zip(tmp_path / "host.pyz", {"effectloom/__init__.py": ""})
        assert detect_archive(str(archive / "effectloom" / "__init__.py")) == archive

    def test_detect_archive_on_disk(self):
        assert detect_archive(__file__) is None

    def test_to_dict(self, tmp_path):
        data = ResolvedPath(path=tmp_path).to_dict()
        assert data["path"] == str(tmp_path)
        assert data["archive"] is None
