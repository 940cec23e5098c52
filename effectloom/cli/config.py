"""
effectloom CLI - Config Commands

Commands:
    show - Show effective configuration
"""

from __future__ import annotations

import typer

from effectloom.cli import config_app
from effectloom.cli.output import print_json, print_table


@config_app.command("show")
def show_config(
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table, json.",
    ),
) -> None:
    """
    Show the effective configuration.

    Values come from EFFECTLOOM_* environment variables and .env.
    """
    from effectloom.cli.plugins import get_settings

    data = get_settings().model_dump(mode="json")

    if format == "json":
        print_json(data)
        return

    print_table(
        title="effectloom Configuration",
        columns=["Setting", "Value"],
        rows=[[key, str(value)] for key, value in data.items()],
        styles=["cyan", None],
    )
