"""
effectloom - Command Line Interface

Manage the plugins an effectloom host loads. Built with Typer, output
with Rich.

Usage:
    $ effectloom --help
    $ effectloom plugin list
    $ effectloom plugin install ~/plugins/glitch --name glitch
    $ effectloom plugin load
    $ effectloom config show

Sub-command Groups:
    plugin - Plugin lifecycle commands
    config - Configuration inspection

For detailed help on any command:
    $ effectloom <group> <command> --help
"""

from __future__ import annotations

import logging

import typer

from effectloom import __version__
from effectloom.cli.output import console, err_console

# Create main application
app = typer.Typer(
    name="effectloom",
    help="effectloom - plugin management for generative effect hosts",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

# Create sub-command groups
plugin_app = typer.Typer(
    name="plugin",
    help="Plugin lifecycle commands",
    no_args_is_help=True,
)

config_app = typer.Typer(
    name="config",
    help="Configuration inspection commands",
    no_args_is_help=True,
)

# Register sub-commands
app.add_typer(plugin_app, name="plugin")
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"effectloom version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    """Set verbose mode."""
    if value:
        logging.basicConfig(level=logging.DEBUG)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable verbose output.",
    ),
) -> None:
    """
    effectloom - plugin management for generative effect hosts

    Installs, loads and removes third-party effect plugins.

    Use --help on any subcommand for detailed information.
    """


def _register_subcommands() -> None:
    """Register all subcommand modules."""
    from effectloom.cli import config  # noqa: F401
    from effectloom.cli import plugins  # noqa: F401


_register_subcommands()

# Expose the apps for use in submodules
__all__ = [
    "app",
    "plugin_app",
    "config_app",
    "console",
    "err_console",
    "__version__",
]


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
