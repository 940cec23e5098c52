"""
effectloom CLI - Plugin Commands

Commands:
    list      - List configured plugins
    info      - Show one plugin's configuration
    install   - Install a local or remote plugin
    uninstall - Uninstall a plugin
    reload    - Re-process and reload a plugin
    toggle    - Enable or disable a plugin
    load      - Load every enabled plugin
    cleanup   - Remove orphaned processed directories
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer

from effectloom.cli import plugin_app, console
from effectloom.cli.output import (
    create_progress,
    format_timestamp,
    print_error,
    print_json,
    print_key_value,
    print_success,
    print_table,
    print_warning,
)
from effectloom.config.settings import Settings
from effectloom.plugins.orchestrator import (
    InstallResult,
    PluginOrchestrator,
    ProgressObserver,
    ProgressUpdate,
)
from effectloom.plugins.store import PluginConfigStore


def get_settings() -> Settings:
    """Settings read fresh from the environment for each command."""
    return Settings()


def get_orchestrator() -> PluginOrchestrator:
    return PluginOrchestrator.from_settings(get_settings())


def get_store() -> PluginConfigStore:
    return PluginConfigStore.from_settings(get_settings())


@contextmanager
def progress_observer(quiet: bool = False) -> Iterator[ProgressObserver | None]:
    """Rich progress bar driven by orchestrator progress updates."""
    if quiet:
        yield None
        return
    with create_progress() as progress:
        task = progress.add_task("Starting...", total=100)

        def observe(update: ProgressUpdate) -> None:
            progress.update(task, completed=update.percent, description=update.message)

        yield observe


def _report_install(result: InstallResult, verb: str) -> None:
    if not result.success:
        print_error(f"{verb} failed for {result.name}", details=result.error)
        raise typer.Exit(1)

    print_success(f"{verb} {result.name}")
    if result.effects:
        print_table(
            title="Effects",
            columns=["Name", "Category"],
            rows=[[e.name, e.category or ""] for e in result.effects],
            styles=["cyan", "green"],
        )
    else:
        print_warning(f"{result.name} registered no effects")
    if result.configs:
        console.print(f"[dim]{len(result.configs)} config class(es) registered[/dim]")


@plugin_app.command("list")
def list_plugins(
    enabled: bool = typer.Option(
        False,
        "--enabled",
        "-e",
        help="Show only enabled plugins.",
    ),
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table, json, simple.",
    ),
) -> None:
    """
    List configured plugins.
    """
    store = get_store()
    plugins = store.get_enabled_plugins() if enabled else store.get_plugins()

    if format == "json":
        print_json([p.to_dict() for p in plugins])
        return

    if not plugins:
        console.print("No plugins configured.")
        return

    if format == "simple":
        for p in plugins:
            console.print(f"{p.name} ({'enabled' if p.enabled else 'disabled'})")
        return

    print_table(
        title="Plugins",
        columns=["Name", "Type", "Status", "Version", "Path"],
        rows=[
            [
                p.name,
                p.kind,
                "[green]enabled[/green]" if p.enabled else "[dim]disabled[/dim]",
                p.version or "-",
                p.source_path,
            ]
            for p in plugins
        ],
        styles=["cyan", None, None, None, "dim"],
    )


@plugin_app.command("info")
def plugin_info(
    name: str = typer.Argument(..., help="Plugin name."),
) -> None:
    """
    Show a plugin's configuration.
    """
    descriptor = get_store().get_plugin(name)
    if descriptor is None:
        print_error(f"Plugin not found: {name}")
        raise typer.Exit(1)

    print_key_value(
        [
            ("Name", descriptor.name),
            ("Type", descriptor.kind),
            ("Enabled", "yes" if descriptor.enabled else "no"),
            ("Version", descriptor.version or "-"),
            ("Path", descriptor.source_path),
            ("Added", format_timestamp(descriptor.added_at)),
            ("Updated", format_timestamp(descriptor.updated_at)),
        ],
        title=f"Plugin: {descriptor.name}",
    )


@plugin_app.command("install")
def install_plugin(
    source: str = typer.Argument(
        ...,
        help="Plugin directory or module file; package name with --remote.",
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="Plugin name (defaults to the directory or package name).",
    ),
    remote: bool = typer.Option(
        False,
        "--remote",
        "-r",
        help="Download the plugin from the package index.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Do not show progress.",
    ),
) -> None:
    """
    Install a plugin.

    Validates the plugin, processes it, loads it and registers its
    effects. A failed install leaves the configuration unchanged.
    """
    plugin_name = name or (source if remote else Path(source).expanduser().stem)
    orchestrator = get_orchestrator()
    try:
        with progress_observer(quiet) as observer:
            result = asyncio.run(orchestrator.install(
                plugin_name,
                source,
                kind="remote" if remote else "local",
                on_progress=observer,
            ))
    finally:
        orchestrator.close()
    _report_install(result, "Installed")


@plugin_app.command("uninstall")
def uninstall_plugin(
    name: str = typer.Argument(..., help="Plugin name to uninstall."),
    delete_source: Optional[bool] = typer.Option(
        None,
        "--delete-source/--keep-source",
        help="Delete the plugin's source (default: only for remote plugins).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Uninstall without confirmation.",
    ),
) -> None:
    """
    Uninstall a plugin.
    """
    if get_store().get_plugin(name) is None:
        print_error(f"Plugin not found: {name}")
        raise typer.Exit(1)

    if not force:
        if not typer.confirm(f"Uninstall plugin {name}?"):
            console.print("Cancelled")
            raise typer.Exit(0)

    orchestrator = get_orchestrator()
    try:
        result = asyncio.run(orchestrator.uninstall(name, delete_source=delete_source))
    finally:
        orchestrator.close()

    if not result.success:
        print_error(f"Uninstall failed for {name}", details=result.error)
        raise typer.Exit(1)

    print_success(f"Uninstalled {name}")
    for error in result.errors:
        print_warning(error)
    if result.restart_required:
        print_warning("Some registrations stay active until the host restarts")


@plugin_app.command("reload")
def reload_plugin(
    name: str = typer.Argument(..., help="Plugin name to reload."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not show progress."),
) -> None:
    """
    Re-process and reload a plugin from its source.
    """
    orchestrator = get_orchestrator()
    try:
        with progress_observer(quiet) as observer:
            result = asyncio.run(orchestrator.reload(name, on_progress=observer))
    finally:
        orchestrator.close()
    _report_install(result, "Reloaded")


@plugin_app.command("toggle")
def toggle_plugin(
    name: str = typer.Argument(..., help="Plugin name."),
) -> None:
    """
    Enable a disabled plugin, or disable an enabled one.
    """
    enabled = get_store().toggle_plugin(name)
    if enabled is None:
        print_error(f"Plugin not found: {name}")
        raise typer.Exit(1)
    print_success(f"Plugin {name} {'enabled' if enabled else 'disabled'}")


@plugin_app.command("load")
def load_plugins(
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table, json.",
    ),
) -> None:
    """
    Load every enabled plugin.

    Exits non-zero when any plugin fails.
    """
    orchestrator = get_orchestrator()
    try:
        with progress_observer(format == "json") as observer:
            summary = asyncio.run(orchestrator.load_installed(on_progress=observer))
    finally:
        orchestrator.close()

    if format == "json":
        print_json(summary.to_dict())
    else:
        rows = [
            [r.name, "[green]loaded[/green]" if r.success else "[red]failed[/red]",
             str(len(r.effects)), r.error or ""]
            for r in summary.results
        ]
        if rows:
            print_table(
                title="Plugin Load",
                columns=["Name", "Status", "Effects", "Error"],
                rows=rows,
                styles=["cyan", None, None, "dim"],
            )
        console.print(f"{len(summary.loaded)} loaded, {len(summary.failed)} failed")

    if summary.failed:
        raise typer.Exit(1)


@plugin_app.command("cleanup")
def cleanup_plugins() -> None:
    """
    Remove processed directories no configured plugin uses.
    """
    orchestrator = get_orchestrator()
    try:
        result = asyncio.run(orchestrator.cleanup_orphans())
    finally:
        orchestrator.close()

    if not result.success:
        print_error("Cleanup failed", details=result.error)
        raise typer.Exit(1)
    print_success(
        f"Removed {len(result.removed)} processed director(ies)",
        details=f"{result.mappings.removed} stale cache mapping(s) dropped, {result.kept} kept",
    )
    for error in result.errors:
        print_warning(error)
