"""
Backup commands for Dockyard

Back up a volume (or bind path), a whole container, or a local directory.
"""

from typing import List, Optional

import typer

from ..cores.addressing import sanitize_path
from ..helpers.ui_utils import console, print_header, print_info, print_success
from ..types import DestinationKind, MountDescriptor, MountKind
from . import utils

app = typer.Typer(help="Back up a Docker resource")


@app.command(name="volume")
def backup_volume(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Volume name (or host path with --volume-type bind)"),
    output: str = typer.Argument(..., help="Location to write the backup"),
    output_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--output-type", help="Type of output resource"),
    volume_type: MountKind = typer.Option(
        MountKind.VOLUME, "--volume-type", help="Type of volume"),
):
    """Archive one named volume or bind path."""
    with utils.command_guard(ctx):
        if volume_type == MountKind.VOLUME:
            mount = MountDescriptor(MountKind.VOLUME, name, "", name=name)
        else:
            name = utils.bind_source(name, "backup")
            mount = MountDescriptor(MountKind.BIND, name, name, name=sanitize_path(name))
        destination = utils.get_destination(ctx, output_type, output)
        entry = utils.get_engine(ctx).backup_mount(mount, destination)
        print_success(f"Backed up {volume_type.value} {name} to {entry}")


@app.command(name="container")
def backup_container(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Container to back up"),
    output: str = typer.Argument(..., help="Location to write the backup"),
    output_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--output-type", help="Type of output resource"),
    volumes: Optional[List[str]] = typer.Option(
        None, "--volumes", help="Back up only these volumes (repeat or comma separate)"),
    exclude_volumes: Optional[List[str]] = typer.Option(
        None, "--exclude-volumes", help="Volumes to leave out"),
):
    """
    Archive every mount of a container and write its descriptor.

    The descriptor is only written once all mounts were archived.
    """
    with utils.command_guard(ctx):
        print_header(f"Backup of {name}", f"{output_type.value}: {output}")
        destination = utils.get_destination(ctx, output_type, output)
        snapshot, relative_path = utils.get_manager(ctx).backup_container(
            name,
            destination,
            mount_filter=utils.split_names(volumes) or None,
            exclude_volumes=utils.split_names(exclude_volumes),
        )
        for record in snapshot.mounts:
            print_info(f"{record.kind} {record.name} -> {record.archive_relative_path}")
        print_success(f"Backed up container {snapshot.name} to {relative_path}")


@app.command(name="directory")
def backup_directory(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Local directory or file"),
    output: str = typer.Argument(..., help="Location to write the backup"),
    output_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--output-type", help="Type of output resource"),
):
    """Archive a local directory or file."""
    with utils.command_guard(ctx):
        destination = utils.get_destination(ctx, output_type, output)
        entry = utils.get_engine(ctx, runtime=False).backup_directory(path, destination)
        console.print(f"[dim]{entry.relative_path}[/dim]")
        print_success(f"Backed up {path} to {entry}")


def register_to_main_app(main_app: typer.Typer):
    """Register backup commands to main CLI app"""
    main_app.add_typer(app, name="backup")
