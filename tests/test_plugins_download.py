"""Tests for effectloom.plugins.download."""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
import zipfile

import httpx
import pytest

from effectloom.plugins.download import (
    DownloadError,
    PluginDownloadService,
    pick_release_file,
    safe_extract,
    strip_single_top_level,
)

INDEX = "https://index.test/pypi"


def make_sdist(files: dict[str, str], top: str = "effectloom-glow-1.0.0") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for rel, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{rel}")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


PLUGIN_FILES = {
    "plugin.json": json.dumps({"name": "glow", "version": "1.0.0"}),
    "plugin.py": "def register(effects):\n    pass\n",
}


def index_transport(payload: bytes, sha256: str | None = None, status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/json"):
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, json={
                "info": {"version": "1.0.0"},
                "urls": [
                    {
                        "packagetype": "sdist",
                        "filename": "effectloom-glow-1.0.0.tar.gz",
                        "url": "https://files.test/effectloom-glow-1.0.0.tar.gz",
                        "size": len(payload),
                        "digests": {"sha256": sha256 or hashlib.sha256(payload).hexdigest()},
                    }
                ],
            })
        return httpx.Response(200, content=payload)

    return httpx.MockTransport(handler)


# ===========================================================================
# Service
# ===========================================================================

class TestInstallPackage:
    """Tests for PluginDownloadService.install_package."""

    @pytest.mark.asyncio
    async def test_downloads_and_unpacks(self, tmp_path):
        payload = make_sdist(PLUGIN_FILES)
        service = PluginDownloadService(tmp_path / "plugins", index_url=INDEX, transport=index_transport(payload))
        progress = []

        result = await service.install_package("effectloom-glow", on_progress=lambda m, f: progress.append(f))

        assert result.success, result.error
        assert result.version == "1.0.0"
        assert result.path == tmp_path / "plugins" / "effectloom-glow"
        assert (result.path / "plugin.py").is_file()
        assert result.manifest.name == "glow"
        assert progress and progress[-1] == 1.0

    @pytest.mark.asyncio
    async def test_not_found(self, tmp_path):
        service = PluginDownloadService(tmp_path, index_url=INDEX, transport=index_transport(b"", status=404))

        result = await service.install_package("ghost")

        assert not result.success
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, tmp_path):
        payload = make_sdist(PLUGIN_FILES)
        service = PluginDownloadService(
            tmp_path / "plugins", index_url=INDEX, transport=index_transport(payload, sha256="0" * 64)
        )

        result = await service.install_package("effectloom-glow")

        assert not result.success
        assert "Checksum mismatch" in result.error
        assert not (tmp_path / "plugins" / "effectloom-glow").exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../escape", "nested/name", ".hidden"])
    async def test_unsafe_name_refused(self, tmp_path, name):
        requests = []
        outside = tmp_path / "escape"
        outside.mkdir()
        (outside / "keep.txt").write_text("keep")

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(404)

        service = PluginDownloadService(
            tmp_path / "plugins", index_url=INDEX, transport=httpx.MockTransport(handler)
        )

        result = await service.install_package(name)

        assert not result.success
        assert "Invalid plugin name" in result.error
        assert requests == []
        assert (outside / "keep.txt").exists()

    @pytest.mark.asyncio
    async def test_release_without_plugin(self, tmp_path):
        payload = make_sdist({"README.md": "no plugin here"})
        service = PluginDownloadService(tmp_path / "plugins", index_url=INDEX, transport=index_transport(payload))

        result = await service.install_package("effectloom-glow")

        assert not result.success
        assert "does not contain a plugin" in result.error


# ===========================================================================
# Helpers
# ===========================================================================

class TestHelpers:
    def test_pick_prefers_sdist(self):
        files = [
            {"packagetype": "bdist_wheel", "filename": "x-1.0-py3-none-any.whl"},
            {"packagetype": "sdist", "filename": "x-1.0.tar.gz"},
        ]
        assert pick_release_file(files)["packagetype"] == "sdist"

    def test_pick_pure_wheel(self):
        files = [
            {"packagetype": "bdist_wheel", "filename": "x-1.0-cp311-cp311-linux_x86_64.whl"},
            {"packagetype": "bdist_wheel", "filename": "x-1.0-py3-none-any.whl"},
        ]
        assert pick_release_file(files)["filename"].endswith("none-any.whl")

    def test_pick_nothing(self):
        with pytest.raises(DownloadError):
            pick_release_file([{"packagetype": "bdist_egg", "filename": "x.egg"}])

    def test_zip_traversal_refused(self, tmp_path):
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escape.py", "")
        with pytest.raises(DownloadError, match="Unsafe path"):
            safe_extract(archive, tmp_path / "out")
        assert not (tmp_path / "escape.py").exists()

    def test_tar_symlink_refused(self, tmp_path):
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tf:
            info = tarfile.TarInfo("link")
            info.type = tarfile.SYMTYPE
            info.linkname = "/etc/passwd"
            tf.addfile(info)
        with pytest.raises(DownloadError, match="Links"):
            safe_extract(archive, tmp_path / "out")

    def test_unsupported_format(self, tmp_path):
        archive = tmp_path / "x.bin"
        archive.write_bytes(b"plain bytes")
        with pytest.raises(DownloadError, match="Unsupported"):
            safe_extract(archive, tmp_path / "out")

    def test_strip_single_top_level(self, tmp_path):
        dest = tmp_path / "dest"
        (dest / "inner").mkdir(parents=True)
        (dest / "inner" / "plugin.py").write_text("")
        strip_single_top_level(dest)
        assert (dest / "plugin.py").is_file()
        assert not (dest / "inner").exists()
