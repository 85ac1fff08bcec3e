"""
Archive listing for Dockyard

Shows what a backup location holds, newest last per resource.
"""

import posixpath

import typer

from ..cores.addressing import timestamp_from_path
from ..helpers.ui_utils import console, create_table, print_info, print_warning
from ..types import DestinationKind
from . import utils


def archive_list(
    ctx: typer.Context,
    location: str = typer.Argument(..., metavar="INPUT", help="Location of backups"),
    prefix: str = typer.Argument("", help="Only list below this path (e.g. containers/nginx)"),
    input_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--input-type", help="Type of resource holding the backups"),
):
    """List committed archives and descriptors."""
    with utils.command_guard(ctx):
        destination = utils.get_destination(ctx, input_type, location)
        paths = destination.list(prefix.strip("/"))
        if not paths:
            print_warning(f"No backups found in {destination.ref}")
            return

        table = create_table(
            f"Backups in {destination.ref}",
            [
                ("Type", "cyan", 10),
                ("Resource", "white", 30),
                ("Timestamp", "yellow", 34),
                ("Path", "green", None),
            ]
        )
        for path in paths:
            parts = path.split("/")
            if len(parts) != 3:
                continue
            try:
                created_at = timestamp_from_path(path)
            except ValueError:
                continue
            table.add_row(parts[0], parts[1], created_at.isoformat(), posixpath.basename(path))

        console.print(table)
        print_info(f"Total: {table.row_count} backups")


def register_to_main_app(main_app: typer.Typer):
    """Register archive commands to main CLI app"""
    main_app.command(name="list")(archive_list)
