"""Tests for effectloom.plugins.store and effectloom.plugins.registry_cache."""

from __future__ import annotations

import json

import pytest

from effectloom.plugins.registry_cache import RegistryCache, plugins_checksum
from effectloom.plugins.store import STORE_FILENAME, PluginConfigStore, PluginDescriptor


@pytest.fixture
def store(tmp_path):
    return PluginConfigStore(tmp_path)


def descriptor(name="glow", path="/plugins/glow", **kwargs):
    return PluginDescriptor(name=name, source_path=path, **kwargs)


# ===========================================================================
# PluginConfigStore
# ===========================================================================

class TestPluginConfigStore:
    """Tests for the configured plugin list."""

    def test_empty(self, store):
        assert store.get_plugins() == []
        assert store.get_plugin("glow") is None

    def test_add_and_persist(self, store, tmp_path):
        store.add_plugin(descriptor())

        raw = json.loads((tmp_path / STORE_FILENAME).read_text())
        assert raw[0]["name"] == "glow"
        assert raw[0]["path"] == "/plugins/glow"
        assert raw[0]["type"] == "local"
        assert raw[0]["enabled"] is True
        assert "addedAt" in raw[0] and "updatedAt" in raw[0]

        reopened = PluginConfigStore(tmp_path)
        assert reopened.get_plugin("glow").source_path == "/plugins/glow"

    def test_add_existing_updates(self, store):
        first = store.add_plugin(descriptor())
        updated = store.add_plugin(descriptor(path="/elsewhere/glow", version="2.0"))

        assert len(store.get_plugins()) == 1
        assert updated.source_path == "/elsewhere/glow"
        assert updated.added_at == first.added_at
        assert updated.updated_at >= first.updated_at

    def test_remove(self, store):
        store.add_plugin(descriptor())
        assert store.remove_plugin("glow")
        assert not store.remove_plugin("glow")
        assert store.get_plugins() == []

    def test_toggle(self, store):
        store.add_plugin(descriptor())
        assert store.toggle_plugin("glow") is False
        assert store.get_enabled_plugins() == []
        assert store.toggle_plugin("glow") is True
        assert store.toggle_plugin("ghost") is None

    def test_enabled_filter(self, store):
        store.add_plugin(descriptor("a", "/a"))
        store.add_plugin(descriptor("b", "/b", enabled=False))
        assert [p.name for p in store.get_enabled_plugins()] == ["a"]

    def test_accepts_wire_names(self):
        d = PluginDescriptor.model_validate({"name": "x", "path": "/x", "type": "remote"})
        assert d.kind == "remote"
        assert d.to_dict()["type"] == "remote"

    def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / STORE_FILENAME).write_text("[{broken")
        store = PluginConfigStore(tmp_path)
        assert store.get_plugins() == []

    def test_reload_rereads(self, store, tmp_path):
        store.get_plugins()
        PluginConfigStore(tmp_path).add_plugin(descriptor())
        assert store.get_plugins() == []
        store.reload()
        assert [p.name for p in store.get_plugins()] == ["glow"]


# ===========================================================================
# RegistryCache
# ===========================================================================

class TestRegistryCache:
    """Tests for the registry snapshot."""

    def test_roundtrip_valid(self, tmp_path):
        cache = RegistryCache(tmp_path)
        plugins = [descriptor()]

        assert cache.save(plugins, {"glow": [{"name": "Glow"}]})

        assert cache.is_valid(plugins)
        assert cache.load().effects == {"glow": [{"name": "Glow"}]}

    def test_invalid_when_plugins_change(self, tmp_path):
        cache = RegistryCache(tmp_path)
        cache.save([descriptor()], {})
        assert not cache.is_valid([descriptor(enabled=False)])
        assert not cache.is_valid([])

    def test_invalidate(self, tmp_path):
        cache = RegistryCache(tmp_path)
        cache.save([], {})
        cache.invalidate()
        cache.invalidate()
        assert cache.load() is None

    def test_corrupt_snapshot(self, tmp_path):
        cache = RegistryCache(tmp_path)
        cache.path.write_text("nope")
        assert cache.load() is None
        assert not cache.is_valid([])

    def test_checksum_order_independent(self):
        a, b = descriptor("a", "/a"), descriptor("b", "/b")
        assert plugins_checksum([a, b]) == plugins_checksum([b, a])
