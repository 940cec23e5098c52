"""
Import rewriting for plugin source files.

Plugins reference shared host packages by their plain import names. Once a
plugin is materialized into a processed directory those names may no longer
be importable from where the plugin runs, so references are rewritten to a
location-anchored alias: a module name derived from the package's resolved
absolute path (``_elpkg_<name>_<digest>``). The loader's meta path finder
maps each alias back to that path at import time.

Each syntax form is handled by its own rule:

    StaticFromImportRule   from pkg.sub import x
    StaticImportRule       import pkg.sub as y, other
    DynamicImportRule      importlib.import_module("pkg.sub")  (one per quote)
    DunderImportRule       __import__('pkg')                   (one per quote)
    RelativeImportRule     from ..util import helper

References are left untouched when:
    - the package is the effects engine, whose module identity must stay the
      host's own;
    - the package lives inside the read-only archive, where the dependency
      directory prepared by the materializer resolves it instead;
    - the package cannot be resolved at all.

Example:
    from effectloom.plugins.rewriter import ImportRewriter

    rewriter = ImportRewriter(resolver, shared_packages=["fxengine", "fxutils"])
    result = rewriter.rewrite_module(text, anchor="_elplugin_1a2b", package_parts=[])
    print(result.text, result.anchors)
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from effectloom.plugins.resolver import DependencyResolver, ResolvedPath

logger = logging.getLogger(__name__)

PACKAGE_ALIAS_PREFIX = "_elpkg_"
PLUGIN_ALIAS_PREFIX = "_elplugin_"

_SUBPATH = r"((?:\.[A-Za-z_]\w*)*)"


def _digest(value: str, length: int) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]


def anchor_alias(package_name: str, path: str | Path) -> str:
    """Module alias anchored at a resolved package location.

    The alias is deterministic for a given name and path, so two plugins
    importing the same resolved package share one module object.
    """
    safe = re.sub(r"\W", "_", package_name)
    return f"{PACKAGE_ALIAS_PREFIX}{safe}_{_digest(str(path), 10)}"


def package_anchor(processed_dir: str | Path) -> str:
    """Top-level package name a processed plugin directory is imported under."""
    return f"{PLUGIN_ALIAS_PREFIX}{_digest(os.path.realpath(processed_dir), 12)}"


@dataclass
class RewriteResult:
    """Outcome of rewriting one module.

    Attributes:
        text: Rewritten source.
        anchors: Alias -> absolute path for every alias the text now uses.
        replacements: Number of references rewritten.
    """

    text: str
    anchors: dict[str, str] = field(default_factory=dict)
    replacements: int = 0

    @property
    def changed(self) -> bool:
        return self.replacements > 0


# ======================================================================
# Rules
# ======================================================================


class RewriteRule(ABC):
    """One substitution over module source text."""

    @abstractmethod
    def apply(self, text: str) -> tuple[str, int]:
        """Return the rewritten text and the number of substitutions."""


class PackageRule(RewriteRule):
    """Base for rules that retarget references to one package."""

    def __init__(self, package_name: str, alias: str):
        self.package_name = package_name
        self.alias = alias
        self.pattern = re.compile(self.build_pattern(re.escape(package_name)), re.MULTILINE)

    @abstractmethod
    def build_pattern(self, escaped_name: str) -> str:
        ...

    def apply(self, text: str) -> tuple[str, int]:
        return self.pattern.subn(self.replace, text)

    @abstractmethod
    def replace(self, match: re.Match) -> str:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.package_name!r} -> {self.alias!r})"


class StaticFromImportRule(PackageRule):
    """``from pkg[.sub] import name``."""

    def build_pattern(self, escaped_name: str) -> str:
        return rf"^([ \t]*from[ \t]+){escaped_name}{_SUBPATH}(?=[ \t]+import\b)"

    def replace(self, match: re.Match) -> str:
        return f"{match.group(1)}{self.alias}{match.group(2)}"


class StaticImportRule(PackageRule):
    """``import pkg[.sub] [as name]``, including comma separated lists.

    A bare ``import pkg.sub`` binds ``pkg`` in the importing namespace, so it
    becomes ``import <alias> as pkg, <alias>.sub`` to keep that binding.
    """

    def build_pattern(self, escaped_name: str) -> str:
        self._item = re.compile(
            rf"^{escaped_name}{_SUBPATH}(?:\s+as\s+([A-Za-z_]\w*))?$"
        )
        return r"^([ \t]*import[ \t]+)([^#;\n]+?)([ \t]*(?:[#;].*)?)$"

    def apply(self, text: str) -> tuple[str, int]:
        self._count = 0
        rewritten = self.pattern.sub(self.replace, text)
        return rewritten, self._count

    def replace(self, match: re.Match) -> str:
        items = [item.strip() for item in match.group(2).split(",")]
        out: list[str] = []
        changed = False
        for item in items:
            hit = self._item.match(item)
            if not hit:
                out.append(item)
                continue
            changed = True
            subpath, bound = hit.group(1), hit.group(2)
            if bound:
                out.append(f"{self.alias}{subpath} as {bound}")
            elif subpath:
                out.append(f"{self.alias} as {self.package_name}")
                out.append(f"{self.alias}{subpath}")
            else:
                out.append(f"{self.alias} as {self.package_name}")
        if not changed:
            return match.group(0)
        self._count += 1
        return f"{match.group(1)}{', '.join(out)}{match.group(3)}"


class _StringImportRule(PackageRule):
    """Import by string literal, parameterized by quote character."""

    call = ""

    def __init__(self, package_name: str, alias: str, quote: str = '"'):
        if quote not in ("'", '"'):
            raise ValueError(f"Unsupported quote character: {quote!r}")
        self.quote = quote
        super().__init__(package_name, alias)

    def build_pattern(self, escaped_name: str) -> str:
        q = re.escape(self.quote)
        return rf"({self.call}\(\s*{q}){escaped_name}{_SUBPATH}(?={q})"

    def replace(self, match: re.Match) -> str:
        return f"{match.group(1)}{self.alias}{match.group(2)}"


class DynamicImportRule(_StringImportRule):
    """``importlib.import_module("pkg.sub")`` and bare ``import_module(...)``."""

    call = r"\bimport_module"


class DunderImportRule(_StringImportRule):
    """``__import__("pkg")``."""

    call = r"(?<![\w.])__import__"


class RelativeImportRule(RewriteRule):
    """``from .x import y`` anchored at the processed plugin package.

    Args:
        anchor: Top-level alias of the processed plugin directory.
        package_parts: Package of the module being rewritten, relative to the
            plugin root (empty for modules at the root).
    """

    pattern = re.compile(
        r"^([ \t]*from[ \t]+)(\.+)((?:[A-Za-z_]\w*)(?:\.[A-Za-z_]\w*)*)?(?=[ \t]+import\b)",
        re.MULTILINE,
    )

    def __init__(self, anchor: str, package_parts: Sequence[str]):
        self.anchor = anchor
        self.package_parts = list(package_parts)

    def apply(self, text: str) -> tuple[str, int]:
        self._count = 0
        rewritten = self.pattern.sub(self.replace, text)
        return rewritten, self._count

    def replace(self, match: re.Match) -> str:
        levels = len(match.group(2)) - 1
        if levels > len(self.package_parts):
            # climbs above the plugin root; leave as written
            return match.group(0)
        self._count += 1
        base = self.package_parts[: len(self.package_parts) - levels]
        parts = [self.anchor, *base]
        if match.group(3):
            parts.append(match.group(3))
        return f"{match.group(1)}{'.'.join(parts)}"


def package_rules(package_name: str, alias: str) -> list[RewriteRule]:
    """Every rule needed to retarget one package."""
    return [
        StaticFromImportRule(package_name, alias),
        StaticImportRule(package_name, alias),
        DynamicImportRule(package_name, alias, quote="'"),
        DynamicImportRule(package_name, alias, quote='"'),
        DunderImportRule(package_name, alias, quote="'"),
        DunderImportRule(package_name, alias, quote='"'),
    ]


# ======================================================================
# Rewriter
# ======================================================================


class ImportRewriter:
    """Applies the rewrite rules for the host's shared packages.

    Attributes:
        resolver: Locates shared packages.
        shared_packages: Packages plugins may import from the host.
        engine_package: The one shared package that is never rewritten.
    """

    def __init__(
        self,
        resolver: DependencyResolver,
        shared_packages: Iterable[str] = ("fxengine",),
        engine_package: str = "fxengine",
    ):
        self.resolver = resolver
        self.shared_packages = list(dict.fromkeys(shared_packages))
        self.engine_package = engine_package

    @classmethod
    def from_settings(
        cls,
        resolver: DependencyResolver | None = None,
        settings: Any = None,
    ) -> "ImportRewriter":
        if settings is None:
            from effectloom.config.settings import settings
        return cls(
            resolver or DependencyResolver.from_settings(settings),
            shared_packages=settings.SHARED_PACKAGES,
            engine_package=settings.ENGINE_PACKAGE,
        )

    def should_rewrite(self, package_name: str, resolved: ResolvedPath | None) -> bool:
        if package_name == self.engine_package:
            return False
        if resolved is None:
            return False
        if resolved.is_read_only or resolved.in_archive:
            return False
        if not resolved.is_package and resolved.path.suffix != ".py":
            # extension modules only initialize under their real name
            return False
        return True

    def rewrite(
        self,
        source: str,
        package_name: str,
        resolved: ResolvedPath | None,
    ) -> str:
        """Rewrite references to one package.

        Args:
            source: Module source text.
            package_name: Package whose references are retargeted.
            resolved: Where the package was found, or None.

        Returns:
            The rewritten text, or ``source`` unchanged when the package is
            not eligible for rewriting or does not appear in the text.
        """
        return self._rewrite_package(source, package_name, resolved)[0]

    def _rewrite_package(
        self,
        source: str,
        package_name: str,
        resolved: ResolvedPath | None,
    ) -> tuple[str, int, str | None]:
        if package_name not in source:
            return source, 0, None
        if not self.should_rewrite(package_name, resolved):
            return source, 0, None

        alias = anchor_alias(package_name, resolved.path)
        text, total = source, 0
        for rule in package_rules(package_name, alias):
            text, count = rule.apply(text)
            total += count
        return text, total, alias if total else None

    def rewrite_relative(
        self,
        source: str,
        anchor: str,
        package_parts: Sequence[str],
    ) -> str:
        """Anchor relative imports at the processed plugin package."""
        return RelativeImportRule(anchor, package_parts).apply(source)[0]

    def resolve_shared(self) -> dict[str, ResolvedPath | None]:
        """Resolve every shared package once.

        Resolution failures are logged and mapped to None so references to
        that package are left as written.
        """
        resolved: dict[str, ResolvedPath | None] = {}
        for name in self.shared_packages:
            try:
                resolved[name] = self.resolver.resolve(name)
            except Exception as e:
                logger.warning(f"Resolving shared package {name} failed: {e}")
                resolved[name] = None
            if resolved[name] is None and name != self.engine_package:
                logger.debug(f"Shared package {name} not found; imports left unchanged")
        return resolved

    def rewrite_module(
        self,
        source: str,
        anchor: str | None = None,
        package_parts: Sequence[str] = (),
        resolved: Mapping[str, ResolvedPath | None] | None = None,
    ) -> RewriteResult:
        """Rewrite every shared-package and relative import in one module.

        Args:
            source: Module source text.
            anchor: Processed plugin package alias. Relative imports are left
                alone when None.
            package_parts: Module's package relative to the plugin root.
            resolved: Pre-resolved shared packages, from :meth:`resolve_shared`.

        Returns:
            RewriteResult with the new text and the aliases it depends on.
        """
        if resolved is None:
            resolved = self.resolve_shared()

        result = RewriteResult(text=source)
        for name in self.shared_packages:
            location = resolved.get(name)
            text, count, alias = self._rewrite_package(result.text, name, location)
            if alias:
                result.text = text
                result.replacements += count
                result.anchors[alias] = str(location.path)

        if anchor:
            text, count = RelativeImportRule(anchor, package_parts).apply(result.text)
            result.text = text
            result.replacements += count
        return result
