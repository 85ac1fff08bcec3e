################################################################################
# DOCKYARD
#
# @file:        main.py
# @module:      dockyard.cli.main
# @description: Typer application, global options and console entry point.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Main CLI application using Typer

Entry point for the ``dockyard`` command.
"""

import configparser
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from ..exceptions import DockyardError
from ..helpers.config import Config
from ..helpers.constants import VERSION
from ..helpers.logging import log_manager
from . import archives, backup, config, restore, service

app = typer.Typer(
    name="dockyard",
    help="Back up and restore Docker containers, volumes and bind mounts",
    add_completion=False,
)

console = Console()

backup.register_to_main_app(app)
restore.register_to_main_app(app)
service.register_to_main_app(app)
archives.register_to_main_app(app)
config.register_to_main_app(app)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
):
    """
    Dockyard - Docker backup and restore

    Archives land in <root>/volumes, <root>/binds, <root>/containers and
    <root>/directories, one timestamped file per backup.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path

    try:
        cfg = Config(config_path)
    except (configparser.Error, UnicodeDecodeError, OSError) as e:
        console.print(f"[red]Error:[/red] Cannot load configuration: {escape(str(e))}")
        raise typer.Exit(1)
    ctx.obj.setdefault("config", cfg)

    # The config commands must still run so a broken file can be fixed
    if ctx.invoked_subcommand != "config":
        errors = cfg.validate()
        if errors:
            console.print(f"[red]Error:[/red] Invalid configuration in "
                          f"{escape(str(cfg.config_file or 'defaults'))}")
            for error in errors:
                console.print(f"  [red]•[/red] {escape(error)}")
            raise typer.Exit(1)

    level = log_level or cfg.get('logging', 'level', 'INFO')
    try:
        log_manager.configure(level=level, log_file=cfg.get('logging', 'file') or None,
                              use_colors=cfg.log_colors)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


@app.command()
def version():
    """Show version information"""
    console.print(f"[cyan]Dockyard[/cyan] v{VERSION}")


def cli_main():
    """
    Entry point for CLI

    This function is called by the console script entry point.
    """
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        sys.exit(130)
    except DockyardError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
