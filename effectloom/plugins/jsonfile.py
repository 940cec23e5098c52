"""Atomic JSON document persistence shared by the plugin stores."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def read_json(path: str | Path) -> Any:
    """Read a JSON document; returns None when the file does not exist.

    Raises:
        OSError: If the file exists but cannot be read.
        ValueError: If the content is not valid JSON.
    """
    path = Path(path)
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: str | Path, data: Any) -> None:
    """Atomically write a JSON document.

    Writes to a temporary file first, then renames, so readers never see a
    partial write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    tmp.replace(path)
    logger.debug(f"Saved {path}")
