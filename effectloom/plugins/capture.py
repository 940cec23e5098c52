"""
Capture and commit of plugin registrations.

Plugins are first loaded against inert mock registries that only record
what the plugin tried to register. The recorded registrations are replayed
against the real registries once the plugin has loaded cleanly.

    plugin.register(effects, configs, positions)
        │   MockEffectRegistry / MockConfigRegistry / MockPositionRegistry
        ▼
    CapturingSink            records CapturedRegistration objects
        │   (load succeeded)
        ▼
    CommittingSink           forwards to the real registries

Example:
    sink = CapturingSink()
    mocks = mock_registries(sink)
    plugin_module.register(*mocks)
    commit(sink.snapshot(), CommittingSink(effects, configs, positions))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class RegistrationKind(str, Enum):
    """What a captured registration contributes."""

    EFFECT = "effect"
    CONFIG = "config"
    POSITION = "position"


@dataclass
class CapturedRegistration:
    """One registration attempted by a plugin.

    Attributes:
        name: Registration name; the target's ``name`` attribute when it is
            a string, otherwise its ``__name__``.
        category: Effect category ("primary", "secondary", ...).
        metadata: Free-form metadata passed by the plugin.
        target: The effect, config or position class itself.
        kind: Which registry the plugin called.
    """

    name: str
    category: str | None
    metadata: dict[str, Any]
    target: Any
    kind: RegistrationKind = RegistrationKind.EFFECT

    def to_dict(self) -> dict[str, Any]:
        """Serializable view; the class itself is reduced to its path."""
        target = self.target
        qualname = getattr(target, "__qualname__", type(target).__name__)
        module = getattr(target, "__module__", None)
        return {
            "name": self.name,
            "category": self.category,
            "metadata": dict(self.metadata),
            "kind": self.kind.value,
            "target": f"{module}.{qualname}" if module else qualname,
        }


def registration_name(target: Any, explicit: str | None = None) -> str:
    if explicit:
        return explicit
    name = getattr(target, "name", None)
    if isinstance(name, str) and name:
        return name
    return getattr(target, "__name__", type(target).__name__)


@dataclass
class CaptureSnapshot:
    """Registrations captured during one load."""

    effects: list[CapturedRegistration] = field(default_factory=list)
    configs: list[CapturedRegistration] = field(default_factory=list)
    positions: list[CapturedRegistration] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.effects) + len(self.configs) + len(self.positions)


@runtime_checkable
class RegistrationSink(Protocol):
    """Receives registrations from the facades a plugin sees."""

    def register_effect(self, target: Any, category: str | None, metadata: dict[str, Any]) -> Any:
        ...

    def register_config(self, target: Any, metadata: dict[str, Any]) -> Any:
        ...

    def register_position(self, target: Any, metadata: dict[str, Any]) -> Any:
        ...


class CapturingSink:
    """Records registrations without touching any real registry."""

    def __init__(self):
        self._snapshot = CaptureSnapshot()

    def register_effect(self, target: Any, category: str | None, metadata: dict[str, Any]) -> bool:
        self._snapshot.effects.append(
            CapturedRegistration(
                name=registration_name(target, metadata.get("name")),
                category=category,
                metadata=dict(metadata),
                target=target,
                kind=RegistrationKind.EFFECT,
            )
        )
        return True

    def register_config(self, target: Any, metadata: dict[str, Any]) -> bool:
        self._snapshot.configs.append(
            CapturedRegistration(
                name=registration_name(target, metadata.get("name")),
                category=metadata.get("category"),
                metadata=dict(metadata),
                target=target,
                kind=RegistrationKind.CONFIG,
            )
        )
        return True

    def register_position(self, target: Any, metadata: dict[str, Any]) -> bool:
        self._snapshot.positions.append(
            CapturedRegistration(
                name=registration_name(target, metadata.get("name")),
                category=None,
                metadata=dict(metadata),
                target=target,
                kind=RegistrationKind.POSITION,
            )
        )
        return True

    def snapshot(self) -> CaptureSnapshot:
        return CaptureSnapshot(
            effects=list(self._snapshot.effects),
            configs=list(self._snapshot.configs),
            positions=list(self._snapshot.positions),
        )


class CommittingSink:
    """Forwards registrations to the real registries.

    Args:
        effect_registry: Object with ``register_global(cls, category, metadata)``.
        config_registry: Object with ``register_global(cls, metadata)``.
        position_registry: Object with ``register(cls, metadata)``; optional.
    """

    def __init__(self, effect_registry: Any, config_registry: Any, position_registry: Any = None):
        self.effect_registry = effect_registry
        self.config_registry = config_registry
        self.position_registry = position_registry

    def register_effect(self, target: Any, category: str | None, metadata: dict[str, Any]) -> Any:
        return self.effect_registry.register_global(target, category, metadata)

    def register_config(self, target: Any, metadata: dict[str, Any]) -> Any:
        return self.config_registry.register_global(target, metadata)

    def register_position(self, target: Any, metadata: dict[str, Any]) -> Any:
        if self.position_registry is None:
            logger.debug(f"No position registry; skipping {registration_name(target)}")
            return None
        return self.position_registry.register(target, metadata)


def commit(snapshot: CaptureSnapshot, sink: RegistrationSink) -> dict[str, list[str]]:
    """Replay captured registrations into ``sink``.

    Registrations that raise are logged and skipped so one bad class does
    not keep the rest of the plugin out of the registry.

    Returns:
        Names committed, keyed by kind ("effect", "config", "position").
    """
    committed: dict[str, list[str]] = {kind.value: [] for kind in RegistrationKind}
    for reg in snapshot.effects:
        try:
            sink.register_effect(reg.target, reg.category, {**reg.metadata, "name": reg.name})
            committed["effect"].append(reg.name)
        except Exception as e:
            logger.error(f"Failed to register effect {reg.name}: {e}")
    for reg in snapshot.configs:
        try:
            sink.register_config(reg.target, {**reg.metadata, "name": reg.name})
            committed["config"].append(reg.name)
        except Exception as e:
            logger.error(f"Failed to register config {reg.name}: {e}")
    for reg in snapshot.positions:
        try:
            sink.register_position(reg.target, {**reg.metadata, "name": reg.name})
            committed["position"].append(reg.name)
        except Exception as e:
            logger.error(f"Failed to register position {reg.name}: {e}")
    return committed


# ======================================================================
# Facades handed to plugin code
# ======================================================================


class MockEffectRegistry:
    """Effect registry facade passed to a plugin's ``register``.

    Mirrors the real registry's calls so plugins need no special casing.
    Lookups always report an empty registry so a plugin never skips its own
    registrations because the class looks registered already.
    """

    def __init__(self, sink: RegistrationSink):
        self._sink = sink

    def register_global(
        self,
        effect_class: Any,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        self._sink.register_effect(effect_class, category, dict(metadata or {}))
        return True

    register = register_global

    def has_global(self, name: str) -> bool:
        return False

    def get_by_category_global(self, category: str) -> dict[str, Any]:
        return {}

    def get_by_category(self, category: str) -> dict[str, Any]:
        return {}

    def get(self, name: str) -> Any:
        return None


class MockConfigRegistry:
    """Config registry facade passed to a plugin's ``register``."""

    def __init__(self, sink: RegistrationSink):
        self._sink = sink

    def register_global(self, config_class: Any, metadata: dict[str, Any] | None = None) -> bool:
        self._sink.register_config(config_class, dict(metadata or {}))
        return True

    register = register_global

    def has_global(self, name: str) -> bool:
        return False

    def get(self, name: str) -> Any:
        return None


class MockPositionRegistry:
    """Position registry facade passed to a plugin's ``register``."""

    def __init__(self, sink: RegistrationSink):
        self._sink = sink

    def register(self, position_class: Any, metadata: dict[str, Any] | None = None) -> bool:
        self._sink.register_position(position_class, dict(metadata or {}))
        return True

    register_global = register

    def get(self, name: str) -> Any:
        return None


def mock_registries(sink: RegistrationSink) -> tuple[MockEffectRegistry, MockConfigRegistry, MockPositionRegistry]:
    """The three facades in the order ``register`` receives them."""
    return MockEffectRegistry(sink), MockConfigRegistry(sink), MockPositionRegistry(sink)
