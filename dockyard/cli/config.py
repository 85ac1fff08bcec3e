"""
Configuration commands for Dockyard

Show, create and change the INI configuration file.
"""

import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from ..helpers.config import create_default_config
from ..helpers.constants import DEFAULT_CONFIG_PATHS
from ..helpers.ui_utils import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_success,
    print_warning,
)
from . import utils

app = typer.Typer(help="Configuration management commands")


@app.command(name="show")
def config_show(ctx: typer.Context):
    """Show the effective configuration and any validation problems."""
    cfg = utils.get_config(ctx)
    source = cfg.config_file if cfg.config_file and cfg.config_file.exists() else None
    print_header("Configuration", str(source) if source else "built-in defaults")

    table = create_table(
        "Effective settings",
        [("Section", "cyan", 10), ("Option", "white", 20), ("Value", "green", None)]
    )
    for section, options in cfg.as_dict().items():
        for option, value in options.items():
            table.add_row(section, option, value)
    console.print(table)

    errors = cfg.validate()
    if errors:
        for error in errors:
            print_error(error)
        raise typer.Exit(1)
    print_success("Configuration valid")
    if source is None:
        print_info("Create a config file with: dockyard config new")


@app.command(name="new")
def config_new(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
    path: Optional[Path] = typer.Option(None, "--path", help="Where to write the config"),
):
    """
    Create a configuration file holding every default value.

    An existing file is only replaced with --force, and a timestamped copy
    of it is kept next to the new one.
    """
    target = path or ctx.obj.get("config_path")
    if target is None:
        target = DEFAULT_CONFIG_PATHS['user']
    target = Path(target).expanduser()

    if target.exists():
        if not force:
            print_warning(f"Config already exists at {target}")
            print_info("Use --force to replace it")
            raise typer.Exit(1)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        backup_path = target.parent / f"{target.stem}.{timestamp}.backup"
        shutil.copy2(target, backup_path)
        print_success(f"Old config backed up to: {backup_path}")

    created = create_default_config(target, force=True)
    print_success(f"Config created at: {created}")


@app.command(name="set")
def config_set(
    ctx: typer.Context,
    section: str = typer.Argument(..., help="Section, e.g. watch"),
    option: str = typer.Argument(..., help="Option, e.g. cron"),
    value: str = typer.Argument(..., help="New value"),
):
    """Change one setting and save the file."""
    cfg = utils.get_config(ctx)
    if cfg.get(section, option) is None:
        print_error(f"Unknown setting: [{section}] {option}")
        raise typer.Exit(1)

    cfg.set(section, option, value)
    errors = cfg.validate()
    if errors:
        for error in errors:
            print_error(error)
        print_warning("Configuration not saved")
        raise typer.Exit(1)

    saved = cfg.save(cfg.config_file)
    print_success(f"[{section}] {option} = {value} saved to {saved}")


def register_to_main_app(main_app: typer.Typer):
    """Register config commands to main CLI app"""
    main_app.add_typer(app, name="config")
