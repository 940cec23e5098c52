"""
Snapshot of what the configured plugins registered.

The snapshot lets a host list plugin effects without loading every plugin.
It is only trusted while the configured plugin set still matches the
checksum it was saved with; every lifecycle operation invalidates it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError

from effectloom.plugins.errors import CacheError
from effectloom.plugins.jsonfile import read_json, write_json
from effectloom.plugins.store import PluginDescriptor

logger = logging.getLogger(__name__)

REGISTRY_CACHE_FILENAME = "registry-cache.json"
REGISTRY_CACHE_VERSION = "1.0.0"


class RegistrySnapshot(BaseModel):
    version: str = REGISTRY_CACHE_VERSION
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    checksum: str = ""
    effects: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)


def plugins_checksum(plugins: Iterable[PluginDescriptor]) -> str:
    """Checksum over the identity of the configured plugins."""
    keyed = sorted(
        (p.name, p.source_path, p.enabled) for p in plugins
    )
    return hashlib.sha256(json.dumps(keyed).encode("utf-8")).hexdigest()


class RegistryCache:
    """File-backed registry snapshot.

    Attributes:
        path: Location of the snapshot document.
    """

    def __init__(self, data_dir: str | Path):
        self.path = Path(data_dir) / REGISTRY_CACHE_FILENAME

    @classmethod
    def from_settings(cls, settings: Any = None) -> "RegistryCache":
        if settings is None:
            from effectloom.config.settings import settings
        return cls(settings.DATA_DIR)

    def _read(self) -> RegistrySnapshot | None:
        try:
            raw = read_json(self.path)
        except (OSError, ValueError) as e:
            raise CacheError(self.path, str(e)) from e
        if raw is None:
            return None
        if not isinstance(raw, dict) or raw.get("version") != REGISTRY_CACHE_VERSION:
            return None
        try:
            return RegistrySnapshot.model_validate(raw)
        except ValidationError as e:
            raise CacheError(self.path, f"malformed snapshot: {e.error_count()} error(s)") from e

    def load(self) -> RegistrySnapshot | None:
        """The saved snapshot, or None when absent or unusable."""
        try:
            return self._read()
        except CacheError as e:
            logger.warning(str(e))
            return None

    def is_valid(self, plugins: Iterable[PluginDescriptor]) -> bool:
        snapshot = self.load()
        return snapshot is not None and snapshot.checksum == plugins_checksum(plugins)

    def save(
        self,
        plugins: Iterable[PluginDescriptor],
        effects_by_plugin: dict[str, list[dict[str, Any]]],
    ) -> bool:
        """Persist a snapshot for the given plugin set.

        Returns:
            True if written. Write failures are logged, not raised.
        """
        snapshot = RegistrySnapshot(
            checksum=plugins_checksum(plugins),
            effects=effects_by_plugin,
        )
        try:
            write_json(self.path, snapshot.model_dump(mode="json"))
        except OSError as e:
            logger.warning(str(CacheError(self.path, str(e))))
            return False
        logger.debug(f"Registry snapshot saved for {len(effects_by_plugin)} plugin(s)")
        return True

    def invalidate(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(str(CacheError(self.path, str(e))))
            return
        logger.debug("Registry snapshot invalidated")
