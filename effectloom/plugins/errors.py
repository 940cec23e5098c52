"""
Exception types for the plugin pipeline.

Only a few of these ever cross a public boundary. Lifecycle operations
report failures as result objects; resolver, materializer and cache errors
are absorbed close to where they happen and logged.

Hierarchy:
    PluginError
    ├── PluginValidationError  - malformed plugin structure
    ├── ResolutionError        - shared package not found in any root
    ├── MaterializationError   - a single file could not be processed
    ├── PluginLoadError        - plugin code raised, or had no register()
    │   └── LoadTimeoutError   - import exceeded its time bound
    └── CacheError             - persisted cache unreadable or unwritable
"""

from __future__ import annotations

from pathlib import Path


class PluginError(Exception):
    """Base class for every plugin pipeline error."""


class PluginValidationError(PluginError):
    """Raised when a plugin's structure is invalid.

    Attributes:
        path: Plugin path that failed validation.
        reason: What was wrong with it.
    """

    def __init__(self, path: str | Path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Invalid plugin at {self.path}: {reason}")


class ResolutionError(PluginError):
    """Raised when a shared package cannot be located.

    Attributes:
        package_name: The package that was searched for.
        searched: Candidate locations that were probed, in order.
    """

    def __init__(self, package_name: str, searched: list[str] | None = None):
        self.package_name = package_name
        self.searched = list(searched or [])
        super().__init__(
            f"Package '{package_name}' not found in {len(self.searched)} location(s)"
        )


class MaterializationError(PluginError):
    """Raised when a single file cannot be rewritten or copied."""

    def __init__(self, path: str | Path, original: Exception | None = None):
        self.path = str(path)
        self.original = original
        detail = f": {original}" if original else ""
        super().__init__(f"Failed to materialize {self.path}{detail}")


class PluginLoadError(PluginError):
    """Raised when a plugin fails to load.

    Attributes:
        plugin_name: Name of the plugin that failed.
        reason: Reason for the failure.
        original: Original exception if any.
    """

    def __init__(
        self,
        plugin_name: str,
        reason: str,
        original: Exception | None = None,
    ):
        self.plugin_name = plugin_name
        self.reason = reason
        self.original = original
        super().__init__(f"Failed to load plugin '{plugin_name}': {reason}")


class LoadTimeoutError(PluginLoadError, TimeoutError):
    """Raised when loading a plugin exceeds its time bound."""

    def __init__(self, plugin_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(plugin_name, f"timed out after {timeout:g}s")


class CacheError(PluginError):
    """Raised when a persisted cache file cannot be read or written."""

    def __init__(self, path: str | Path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cache at {self.path} unusable: {reason}")
