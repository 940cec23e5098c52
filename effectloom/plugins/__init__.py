"""
Plugin loading and registration for effectloom.

Third-party plugins contribute effect, config and position classes to the
host's registries. They are untrusted code that imports shared host
packages, so they go through a fixed pipeline before anything is
registered:

Pipeline:
    - DependencyResolver: finds shared packages across the host's
      dependency roots, including a read-only packaged archive
    - ImportRewriter: retargets plugin imports of shared packages to
      location-anchored aliases
    - DirectoryMaterializer: mirrors a plugin into a processed directory
      with rewritten imports and a dependency directory
    - ProcessedDirCache: remembers processed directories across restarts
    - ModuleLoader: imports a processed plugin once and captures what it
      registers against mock registries
    - PluginOrchestrator: install, bulk load, uninstall, reload and
      orphan cleanup, committing captured registrations only on success
    - PluginConfigStore: the persisted list of configured plugins

Security:
    Plugins run with full process privileges. The pipeline isolates the
    host's registries from half-loaded plugins, not the host from the
    plugin.

Example:
    from effectloom.plugins import PluginOrchestrator

    orchestrator = PluginOrchestrator.from_settings()
    result = await orchestrator.install("glitch", "~/plugins/glitch")

    effect = orchestrator.effect_registry.get("GlitchEffect")
"""

from effectloom.plugins.errors import (
    CacheError,
    LoadTimeoutError,
    MaterializationError,
    PluginError,
    PluginLoadError,
    PluginValidationError,
    ResolutionError,
)
from effectloom.plugins.resolver import DependencyResolver, ResolvedPath
from effectloom.plugins.rewriter import ImportRewriter, RewriteResult
from effectloom.plugins.materializer import DirectoryMaterializer, MaterializationReport
from effectloom.plugins.dir_cache import ProcessedDirCache, SweepResult
from effectloom.plugins.capture import (
    CapturedRegistration,
    CapturingSink,
    CommittingSink,
    RegistrationSink,
)
from effectloom.plugins.loader import LoadResult, ModuleLoader
from effectloom.plugins.manifest import PluginManifest, validate_plugin
from effectloom.plugins.registry import (
    ConfigRegistry,
    EffectRegistry,
    PositionRegistry,
    link_effects_with_configs,
)
from effectloom.plugins.store import PluginConfigStore, PluginDescriptor
from effectloom.plugins.orchestrator import (
    BulkLoadResult,
    CleanupResult,
    InstallResult,
    LifecyclePhase,
    PluginOrchestrator,
    ProgressUpdate,
    ReloadResult,
    UninstallResult,
)

__all__ = [
    # Errors
    "CacheError",
    "LoadTimeoutError",
    "MaterializationError",
    "PluginError",
    "PluginLoadError",
    "PluginValidationError",
    "ResolutionError",
    # Pipeline
    "DependencyResolver",
    "ResolvedPath",
    "ImportRewriter",
    "RewriteResult",
    "DirectoryMaterializer",
    "MaterializationReport",
    "ProcessedDirCache",
    "SweepResult",
    "ModuleLoader",
    "LoadResult",
    # Capture
    "CapturedRegistration",
    "CapturingSink",
    "CommittingSink",
    "RegistrationSink",
    # Manifest and store
    "PluginManifest",
    "validate_plugin",
    "PluginConfigStore",
    "PluginDescriptor",
    # Registries
    "ConfigRegistry",
    "EffectRegistry",
    "PositionRegistry",
    "link_effects_with_configs",
    # Lifecycle
    "PluginOrchestrator",
    "LifecyclePhase",
    "ProgressUpdate",
    "InstallResult",
    "BulkLoadResult",
    "UninstallResult",
    "ReloadResult",
    "CleanupResult",
]
