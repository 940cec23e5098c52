"""
Persistent mapping from plugin sources to processed directories.

Unchanged plugins reuse their last processed directory across restarts
instead of being materialized again. The cache lives in
``<data dir>/processed-plugin-dirs-cache.json``:

    {
      "version": "1.0.0",
      "timestamp": 1718000000000,
      "mappings": {
        "/home/me/plugins/glitch": {
          "processedDir": "/home/me/.effectloom/plugin-processed-glitch-1718...",
          "sourceHash": "9f2c...",
          "createdAt": "2024-06-10T08:13:20+00:00"
        }
      }
    }

A mapping is only trusted while its processed directory still exists. A
document with a different version is discarded whole. An unreadable or
unwritable file degrades to a cold cache; it never fails a plugin operation.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from effectloom.plugins.errors import CacheError
from effectloom.plugins.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)

CACHE_FILENAME = "processed-plugin-dirs-cache.json"
CACHE_VERSION = "1.0.0"


class ProcessedDirMapping(BaseModel):
    """One source -> processed directory mapping."""

    model_config = ConfigDict(populate_by_name=True)

    processed_dir: str = Field(alias="processedDir")
    source_hash: str | None = Field(default=None, alias="sourceHash")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )


class ProcessedDirCacheDocument(BaseModel):
    """On-disk document layout."""

    version: str = CACHE_VERSION
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    mappings: dict[str, ProcessedDirMapping] = Field(default_factory=dict)


@dataclass
class SweepResult:
    """Outcome of an orphan sweep."""

    removed: int
    total: int

    def to_dict(self) -> dict[str, int]:
        return {"removed": self.removed, "total": self.total}


def canonical_source(source: str | Path) -> str:
    return os.path.realpath(os.path.expanduser(str(source)))


class ProcessedDirCache:
    """File-backed processed-directory cache.

    Every operation reads the document from disk and writes it back, so
    there is no in-memory state to go stale between calls. Concurrent use
    of one file from several processes is not supported.

    Attributes:
        path: Location of the cache document.
    """

    def __init__(self, data_dir: str | Path):
        self.path = Path(data_dir) / CACHE_FILENAME

    @classmethod
    def from_settings(cls, settings: Any = None) -> "ProcessedDirCache":
        if settings is None:
            from effectloom.config.settings import settings
        return cls(settings.DATA_DIR)

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _read_document(self) -> ProcessedDirCacheDocument:
        try:
            raw = read_json(self.path)
        except (OSError, ValueError) as e:
            raise CacheError(self.path, str(e)) from e
        if raw is None:
            return ProcessedDirCacheDocument()
        if not isinstance(raw, dict) or raw.get("version") != CACHE_VERSION:
            logger.info(
                f"Processed-dir cache version {raw.get('version') if isinstance(raw, dict) else None!r} "
                f"does not match {CACHE_VERSION}; starting empty"
            )
            return ProcessedDirCacheDocument()
        try:
            return ProcessedDirCacheDocument.model_validate(raw)
        except ValidationError as e:
            raise CacheError(self.path, f"malformed document: {e.error_count()} error(s)") from e

    def _write_document(self, doc: ProcessedDirCacheDocument) -> None:
        doc.timestamp = int(time.time() * 1000)
        try:
            write_json(self.path, doc.model_dump(mode="json", by_alias=True))
        except OSError as e:
            raise CacheError(self.path, str(e)) from e

    def _load(self) -> ProcessedDirCacheDocument:
        try:
            return self._read_document()
        except CacheError as e:
            logger.warning(f"{e}; using a cold cache")
            return ProcessedDirCacheDocument()

    def _save(self, doc: ProcessedDirCacheDocument) -> bool:
        try:
            self._write_document(doc)
            return True
        except CacheError as e:
            logger.warning(f"{e}; mapping not persisted")
            return False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(self, source: str | Path, fingerprint: str | None = None) -> Path | None:
        """Processed directory for ``source``, if still valid.

        Args:
            source: Plugin source path.
            fingerprint: Current source fingerprint. When given, a mapping
                recorded with a different fingerprint is a miss.

        Returns:
            The processed directory, or None on a miss. A mapping whose
            directory has been deleted is a miss.
        """
        mapping = self._load().mappings.get(canonical_source(source))
        if mapping is None:
            return None
        if fingerprint is not None and mapping.source_hash != fingerprint:
            logger.debug(f"Fingerprint changed for {source}")
            return None
        processed = Path(mapping.processed_dir)
        if not processed.is_dir():
            logger.debug(f"Processed dir {processed} for {source} no longer exists")
            return None
        return processed

    def put(
        self,
        source: str | Path,
        processed_dir: str | Path,
        fingerprint: str | None = None,
    ) -> None:
        """Record ``processed_dir`` as the current output for ``source``."""
        doc = self._load()
        doc.mappings[canonical_source(source)] = ProcessedDirMapping(
            processed_dir=str(processed_dir),
            source_hash=fingerprint,
        )
        if self._save(doc):
            logger.debug(f"Cached processed dir {processed_dir} for {source}")

    def invalidate(self, source: str | Path) -> Path | None:
        """Drop the mapping for ``source``.

        Returns:
            The processed directory the mapping pointed at, if any.
        """
        doc = self._load()
        mapping = doc.mappings.pop(canonical_source(source), None)
        if mapping is None:
            return None
        self._save(doc)
        return Path(mapping.processed_dir)

    def invalidate_all(self) -> None:
        self._save(ProcessedDirCacheDocument())

    def mappings(self) -> dict[str, ProcessedDirMapping]:
        """All persisted mappings, valid or not."""
        return dict(self._load().mappings)

    def referenced_dirs(self, sources: Iterable[str | Path] | None = None) -> set[str]:
        """Processed directories the cache maps to.

        Args:
            sources: Only count mappings from these plugin sources; None
                counts every mapping.
        """
        mappings = self.mappings()
        if sources is not None:
            wanted = {canonical_source(s) for s in sources}
            mappings = {k: m for k, m in mappings.items() if k in wanted}
        return {os.path.realpath(m.processed_dir) for m in mappings.values()}

    def sweep_orphans(self) -> SweepResult:
        """Drop mappings whose processed directory no longer exists."""
        doc = self._load()
        total = len(doc.mappings)
        orphans = [
            source
            for source, mapping in doc.mappings.items()
            if not Path(mapping.processed_dir).is_dir()
        ]
        for source in orphans:
            del doc.mappings[source]
        if orphans:
            self._save(doc)
            logger.info(f"Removed {len(orphans)} orphaned processed-dir mapping(s)")
        return SweepResult(removed=len(orphans), total=total)
