"""
Persisted list of configured plugins.

Stored as a JSON list in ``<data dir>/plugins-config.json``:

    [
      {
        "name": "glitch-pack",
        "path": "/home/me/plugins/glitch-pack",
        "type": "local",
        "enabled": true,
        "addedAt": "2024-06-10T08:13:20+00:00",
        "updatedAt": "2024-06-10T08:13:20+00:00"
      }
    ]

Names are unique; adding a name that exists updates that entry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from effectloom.plugins.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)

STORE_FILENAME = "plugins-config.json"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PluginDescriptor(BaseModel):
    """One configured plugin."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    source_path: str = Field(alias="path")
    kind: Literal["local", "remote"] = Field(default="local", alias="type")
    enabled: bool = True
    version: str | None = None
    added_at: datetime = Field(default_factory=_now, alias="addedAt")
    updated_at: datetime = Field(default_factory=_now, alias="updatedAt")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_descriptor_list = TypeAdapter(list[PluginDescriptor])


class PluginConfigStore:
    """File-backed plugin descriptor list.

    The file is read on first use and written after every change.

    Attributes:
        path: Location of the descriptor file.
    """

    def __init__(self, data_dir: str | Path):
        self.path = Path(data_dir) / STORE_FILENAME
        self._plugins: list[PluginDescriptor] | None = None

    @classmethod
    def from_settings(cls, settings: Any = None) -> "PluginConfigStore":
        if settings is None:
            from effectloom.config.settings import settings
        return cls(settings.DATA_DIR)

    def _load(self) -> list[PluginDescriptor]:
        if self._plugins is not None:
            return self._plugins
        try:
            raw = read_json(self.path)
            self._plugins = _descriptor_list.validate_python(raw or [])
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Could not read plugin config {self.path}: {e}; starting empty")
            self._plugins = []
        return self._plugins

    def _save(self) -> None:
        data = [p.model_dump(mode="json", by_alias=True, exclude_none=True) for p in self._load()]
        write_json(self.path, data)
        logger.debug(f"Saved {len(data)} plugin(s) to {self.path}")

    def reload(self) -> None:
        """Drop the in-memory copy so the next call re-reads the file."""
        self._plugins = None

    def get_plugins(self) -> list[PluginDescriptor]:
        return list(self._load())

    def get_plugin(self, name: str) -> PluginDescriptor | None:
        for plugin in self._load():
            if plugin.name == name:
                return plugin
        return None

    def get_enabled_plugins(self) -> list[PluginDescriptor]:
        return [p for p in self._load() if p.enabled]

    def add_plugin(self, descriptor: PluginDescriptor) -> PluginDescriptor:
        """Add a plugin, or update the entry with the same name.

        An update keeps the original ``added_at`` and refreshes
        ``updated_at``.

        Returns:
            The stored descriptor.
        """
        plugins = self._load()
        for index, existing in enumerate(plugins):
            if existing.name == descriptor.name:
                updated = descriptor.model_copy(
                    update={"added_at": existing.added_at, "updated_at": _now()}
                )
                plugins[index] = updated
                self._save()
                logger.info(f"Updated plugin: {descriptor.name}")
                return updated
        plugins.append(descriptor)
        self._save()
        logger.info(f"Added plugin: {descriptor.name}")
        return descriptor

    def remove_plugin(self, name: str) -> bool:
        """Remove a plugin.

        Returns:
            True if removed, False if not found.
        """
        plugins = self._load()
        remaining = [p for p in plugins if p.name != name]
        if len(remaining) == len(plugins):
            return False
        self._plugins = remaining
        self._save()
        logger.info(f"Removed plugin: {name}")
        return True

    def toggle_plugin(self, name: str) -> bool | None:
        """Flip a plugin's enabled flag.

        Returns:
            The new flag, or None if the plugin is not configured.
        """
        plugins = self._load()
        for index, plugin in enumerate(plugins):
            if plugin.name == name:
                plugins[index] = plugin.model_copy(
                    update={"enabled": not plugin.enabled, "updated_at": _now()}
                )
                self._save()
                logger.info(f"Plugin {name} {'enabled' if plugins[index].enabled else 'disabled'}")
                return plugins[index].enabled
        return None
