"""Tests for effectloom.plugins.dir_cache."""

from __future__ import annotations

import json
import os

import pytest

from effectloom.plugins.dir_cache import (
    CACHE_FILENAME,
    CACHE_VERSION,
    ProcessedDirCache,
    ProcessedDirMapping,
    canonical_source,
)
from effectloom.plugins.errors import CacheError


@pytest.fixture
def cache(tmp_path):
    return ProcessedDirCache(tmp_path / "data")


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "plugins" / "glow"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def processed(tmp_path):
    path = tmp_path / "data" / "plugin-processed-glow-1"
    path.mkdir(parents=True)
    return path


# ===========================================================================
# Get / put
# ===========================================================================

class TestGetPut:
    """Tests for lookups and recording."""

    def test_cold_cache_misses(self, cache, source):
        assert cache.get(source) is None
        assert cache.mappings() == {}

    def test_put_then_get(self, cache, source, processed):
        cache.put(source, processed, fingerprint="abc")

        assert cache.get(source) == processed
        assert cache.get(source, fingerprint="abc") == processed

    def test_fingerprint_mismatch_misses(self, cache, source, processed):
        cache.put(source, processed, fingerprint="abc")
        assert cache.get(source, fingerprint="def") is None

    def test_deleted_dir_misses(self, cache, source, processed):
        cache.put(source, processed)
        processed.rmdir()
        assert cache.get(source) is None

    def test_survives_new_instance(self, cache, source, processed, tmp_path):
        cache.put(source, processed, fingerprint="abc")
        reopened = ProcessedDirCache(tmp_path / "data")
        assert reopened.get(source, fingerprint="abc") == processed

    def test_source_path_canonicalized(self, cache, source, processed, tmp_path):
        link = tmp_path / "glow-link"
        os.symlink(source, link)
        cache.put(link, processed)

        assert cache.get(source) == processed
        assert list(cache.mappings()) == [canonical_source(source)]

    def test_document_layout(self, cache, source, processed):
        cache.put(source, processed, fingerprint="abc")
        doc = json.loads(cache.path.read_text())

        assert doc["version"] == CACHE_VERSION
        assert isinstance(doc["timestamp"], int)
        entry = doc["mappings"][canonical_source(source)]
        assert entry["processedDir"] == str(processed)
        assert entry["sourceHash"] == "abc"
        assert "createdAt" in entry


# ===========================================================================
# Invalidation and sweeps
# ===========================================================================

class TestInvalidation:
    """Tests for invalidate, invalidate_all and sweep_orphans."""

    def test_invalidate_returns_old_dir(self, cache, source, processed):
        cache.put(source, processed)
        assert cache.invalidate(source) == processed
        assert cache.get(source) is None

    def test_invalidate_missing(self, cache, source):
        assert cache.invalidate(source) is None

    def test_invalidate_all(self, cache, source, processed):
        cache.put(source, processed)
        cache.invalidate_all()
        assert cache.mappings() == {}

    def test_sweep_orphans(self, cache, tmp_path, source, processed):
        gone = tmp_path / "data" / "plugin-processed-gone-1"
        other = tmp_path / "plugins" / "other"
        cache.put(source, processed)
        cache.put(other, gone)

        result = cache.sweep_orphans()

        assert result.to_dict() == {"removed": 1, "total": 2}
        assert list(cache.mappings()) == [canonical_source(source)]

    def test_referenced_dirs(self, cache, source, processed):
        cache.put(source, processed)
        assert cache.referenced_dirs() == {os.path.realpath(processed)}

    def test_referenced_dirs_for_sources(self, cache, tmp_path, source, processed):
        other = tmp_path / "plugins" / "other"
        cache.put(source, processed)
        cache.put(other, tmp_path / "data" / "plugin-processed-other-1")

        assert cache.referenced_dirs([source]) == {os.path.realpath(processed)}
        assert cache.referenced_dirs([]) == set()


# ===========================================================================
# Degraded files
# ===========================================================================

class TestDegradedFiles:
    """Unreadable or foreign documents never fail an operation."""

    def test_version_mismatch_discarded(self, cache, source, processed):
        cache.path.parent.mkdir(parents=True, exist_ok=True)
        cache.path.write_text(json.dumps({
            "version": "0.9.0",
            "timestamp": 0,
            "mappings": {canonical_source(source): {"processedDir": str(processed)}},
        }))
        assert cache.get(source) is None

    def test_corrupt_document_is_cold(self, cache, source, processed):
        cache.path.parent.mkdir(parents=True, exist_ok=True)
        cache.path.write_text("{corrupt")

        assert cache.get(source) is None
        cache.put(source, processed)
        assert cache.get(source) == processed

    def test_read_document_raises_cache_error(self, cache):
        cache.path.parent.mkdir(parents=True, exist_ok=True)
        cache.path.write_text(json.dumps({"version": CACHE_VERSION, "mappings": {"x": {"nope": 1}}}))
        with pytest.raises(CacheError):
            cache._read_document()

    def test_unwritable_location_degrades(self, tmp_path, source, processed):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        cache = ProcessedDirCache(blocker)

        cache.put(source, processed)

        assert cache.get(source) is None


class TestMapping:
    def test_accepts_field_names(self):
        mapping = ProcessedDirMapping(processed_dir="/x", source_hash="h")
        assert mapping.model_dump(by_alias=True)["processedDir"] == "/x"

    def test_cache_filename(self, cache, tmp_path):
        assert cache.path == tmp_path / "data" / CACHE_FILENAME
