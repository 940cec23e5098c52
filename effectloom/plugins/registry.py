"""
In-process effect, config and position registries.

These are the real registries that captured plugin registrations are
committed into. Hosts that embed a different engine registry only need to
provide the same ``register_global`` / ``get`` / ``get_by_category`` calls;
``unregister`` is optional and makes uninstall and reload take effect
without a restart.

Registry Features:
    - Registration by name, idempotent (a second registration replaces)
    - Lookup by name or category
    - Effect/config linking by naming convention
    - Registry event notifications

Example:
    from effectloom.plugins.registry import EffectRegistry, ConfigRegistry

    effects = EffectRegistry()
    configs = ConfigRegistry()
    effects.register_global(GlowEffect, "primary", {"plugin": "glow"})
    configs.register_global(GlowConfig, {"plugin": "glow"})
    link_effects_with_configs(effects, configs)

    effects.get("GlowEffect").config   # -> GlowConfig
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
import importlib
import logging
import threading

from effectloom.plugins.capture import registration_name

logger = logging.getLogger(__name__)

CORE_REGISTRATION_HOOK = "register_core_effects"


@dataclass
class RegisteredEffect:
    """An entry in one of the registries.

    Attributes:
        name: Registration name.
        target: The registered class.
        category: Effect category; None for configs and positions.
        metadata: Metadata passed at registration.
        registered_at: When it was registered.
        config: Linked config class, effects only.
    """

    name: str
    target: Any
    category: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    registered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    config: Any = None

    @property
    def plugin(self) -> str | None:
        """Name of the plugin that contributed this entry, if recorded."""
        return self.metadata.get("plugin")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "target": getattr(self.target, "__qualname__", repr(self.target)),
            "category": self.category,
            "plugin": self.plugin,
            "registered_at": self.registered_at.isoformat(),
            "config": getattr(self.config, "__qualname__", None),
        }


@dataclass
class RegistryEvent:
    """A registry change, delivered to listeners.

    Attributes:
        event_type: "registered" or "unregistered".
        name: Affected entry name.
        registry: Which registry changed ("effect", "config", "position").
        timestamp: When it happened.
        details: Additional event details.
    """

    event_type: str
    name: str
    registry: str
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = field(default_factory=dict)


# Type for event listeners
EventListener = Callable[[RegistryEvent], None]


class _Registry:
    """Shared storage and events for the concrete registries."""

    kind = "registry"

    def __init__(self):
        self._entries: dict[str, RegisteredEffect] = {}
        self._event_listeners: list[EventListener] = []
        self._lock = threading.RLock()

    def _store(self, entry: RegisteredEffect) -> bool:
        with self._lock:
            replaced = entry.name in self._entries
            self._entries[entry.name] = entry
        if replaced:
            logger.debug(f"Replaced {self.kind} registration: {entry.name}")
        else:
            logger.info(f"Registered {self.kind}: {entry.name}")
        self._emit_event(RegistryEvent(
            event_type="registered",
            name=entry.name,
            registry=self.kind,
            details={"replaced": replaced, "category": entry.category},
        ))
        return True

    def get(self, name: str) -> RegisteredEffect | None:
        """Get an entry by name, or None."""
        with self._lock:
            return self._entries.get(name)

    def has_global(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def all(self) -> list[RegisteredEffect]:
        with self._lock:
            return list(self._entries.values())

    def unregister(self, name: str) -> bool:
        """Remove an entry.

        Returns:
            True if removed, False if not found.
        """
        with self._lock:
            if self._entries.pop(name, None) is None:
                return False
        self._emit_event(RegistryEvent(
            event_type="unregistered",
            name=name,
            registry=self.kind,
        ))
        logger.info(f"Unregistered {self.kind}: {name}")
        return True

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def remove_event_listener(self, listener: EventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def _emit_event(self, event: RegistryEvent) -> None:
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return self.has_global(name)


class EffectRegistry(_Registry):
    """Registry of effect classes, grouped by category.

    Attributes:
        engine_package: Engine package whose core effects are registered
            by :meth:`ensure_core_effects_loaded`; None to skip.
    """

    kind = "effect"

    def __init__(self, engine_package: str | None = None):
        super().__init__()
        self.engine_package = engine_package
        self._core_loaded = False

    def register_global(
        self,
        effect_class: Any,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Register an effect class.

        Args:
            effect_class: The effect class.
            category: Effect category ("primary", "secondary", ...).
            metadata: Extra metadata; a "name" key overrides the class name.

        Returns:
            True once registered.
        """
        metadata = dict(metadata or {})
        return self._store(RegisteredEffect(
            name=registration_name(effect_class, metadata.get("name")),
            target=effect_class,
            category=category,
            metadata=metadata,
        ))

    def get_by_category(self, category: str) -> dict[str, RegisteredEffect]:
        """All effects in a category, by name."""
        with self._lock:
            return {
                name: entry
                for name, entry in self._entries.items()
                if entry.category == category
            }

    get_by_category_global = get_by_category

    def categories(self) -> list[str]:
        with self._lock:
            return sorted({e.category for e in self._entries.values() if e.category})

    def ensure_core_effects_loaded(self) -> bool:
        """Register the engine's own effects, once.

        Imports the engine package and calls its ``register_core_effects``
        hook with this registry.

        Raises:
            ImportError: If the engine cannot be imported, including the
                transient partially-initialized case callers may retry.
        """
        if self._core_loaded or not self.engine_package:
            return True
        module = importlib.import_module(self.engine_package)
        hook = getattr(module, CORE_REGISTRATION_HOOK, None)
        if callable(hook):
            hook(self)
            logger.info(f"Core effects from {self.engine_package} registered")
        self._core_loaded = True
        return True

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        return {
            "total_effects": len(entries),
            "categories": {c: sum(1 for e in entries if e.category == c) for c in self.categories()},
            "linked_configs": sum(1 for e in entries if e.config is not None),
            "plugins": len({e.plugin for e in entries if e.plugin}),
        }

    def __repr__(self) -> str:
        return f"<EffectRegistry effects={len(self)} categories={len(self.categories())}>"


class ConfigRegistry(_Registry):
    """Registry of effect config classes."""

    kind = "config"

    def register_global(self, config_class: Any, metadata: dict[str, Any] | None = None) -> bool:
        metadata = dict(metadata or {})
        return self._store(RegisteredEffect(
            name=registration_name(config_class, metadata.get("name")),
            target=config_class,
            metadata=metadata,
        ))

    def __repr__(self) -> str:
        return f"<ConfigRegistry configs={len(self)}>"


class PositionRegistry(_Registry):
    """Registry of position classes."""

    kind = "position"

    def register(self, position_class: Any, metadata: dict[str, Any] | None = None) -> bool:
        metadata = dict(metadata or {})
        return self._store(RegisteredEffect(
            name=registration_name(position_class, metadata.get("name")),
            target=position_class,
            metadata=metadata,
        ))

    register_global = register

    def __repr__(self) -> str:
        return f"<PositionRegistry positions={len(self)}>"


def _config_candidates(entry: RegisteredEffect) -> list[str]:
    names = [entry.name]
    class_name = getattr(entry.target, "__name__", None)
    for base in (entry.name, class_name):
        if not base:
            continue
        stem = base[: -len("Effect")] if base.endswith("Effect") else base
        names.append(f"{stem}Config")
        names.append(f"{base}Config")
    return list(dict.fromkeys(names))


def link_effects_with_configs(
    effects: EffectRegistry,
    configs: ConfigRegistry,
    names: Iterable[str] | None = None,
) -> list[tuple[str, str]]:
    """Attach config classes to effects by naming convention.

    ``GlowEffect`` links with ``GlowConfig`` (or ``GlowEffectConfig``), and
    any effect links with a config registered under its own name. Effects
    that already have a config are left alone.

    Args:
        effects: Effect registry.
        configs: Config registry.
        names: Restrict linking to these effect names.

    Returns:
        (effect name, config name) pairs that were linked.
    """
    wanted = set(names) if names is not None else None
    linked: list[tuple[str, str]] = []
    for entry in effects.all():
        if wanted is not None and entry.name not in wanted:
            continue
        if entry.config is not None:
            continue
        for candidate in _config_candidates(entry):
            config = configs.get(candidate)
            if config is not None:
                entry.config = config.target
                linked.append((entry.name, config.name))
                break
    if linked:
        logger.info(f"Linked {len(linked)} effect(s) with configs")
    return linked
