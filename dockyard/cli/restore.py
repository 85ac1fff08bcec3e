"""
Restore commands for Dockyard

Restore archives into volumes, bind paths, containers or local directories.
"""

from typing import Optional

import typer

from ..cores.addressing import timestamp_from_path
from ..cores.transfer_engine import entry_for_path
from ..helpers.constants import DESCRIPTOR_SUFFIX
from ..helpers.ui_utils import print_header, print_info, print_success
from ..types import DestinationKind, MountKind, ResourceRef
from . import utils

app = typer.Typer(help="Restore a Docker resource")


@app.command(name="volume")
def restore_volume(
    ctx: typer.Context,
    archive: str = typer.Argument(..., help="Archive path relative to INPUT"),
    input_location: str = typer.Argument(..., metavar="INPUT", help="Location of backups"),
    volume: str = typer.Argument(..., help="Volume name (or host path with --volume-type bind)"),
    input_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--input-type", help="Type of resource holding the backups"),
    volume_type: MountKind = typer.Option(
        MountKind.VOLUME, "--volume-type", help="Type of volume to restore into"),
):
    """Extract a volume or bind archive into a volume or bind path."""
    with utils.command_guard(ctx):
        destination = utils.get_destination(ctx, input_type, input_location)
        entry = entry_for_path(archive, destination.ref)
        if volume_type == MountKind.VOLUME:
            target = ResourceRef.volume(volume)
        else:
            target = ResourceRef.bind(utils.bind_source(volume, "restore"))
        utils.get_engine(ctx).restore_mount(entry, target)
        print_success(f"Restored {archive} into {target}")


@app.command(name="container")
def restore_container(
    ctx: typer.Context,
    descriptor: str = typer.Argument(
        ..., help="Descriptor path relative to INPUT, or a container name for its latest backup"),
    input_location: str = typer.Argument(..., metavar="INPUT", help="Location of backups"),
    name: Optional[str] = typer.Argument(None, help="Restored container name (default: original)"),
    input_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--input-type", help="Type of resource holding the backups"),
):
    """
    Recreate a container from its descriptor.

    Mounts are restored one after another before the container is started.
    """
    with utils.command_guard(ctx):
        destination = utils.get_destination(ctx, input_type, input_location)
        manager = utils.get_manager(ctx)
        if descriptor.endswith(DESCRIPTOR_SUFFIX):
            relative_path = descriptor.strip("/")
        else:
            relative_path = manager.latest_snapshot(descriptor, destination)
            print_info(f"Using latest backup {relative_path} "
                       f"({timestamp_from_path(relative_path).isoformat()})")
        snapshot = manager.load_snapshot(relative_path, destination)
        target = name or snapshot.name
        print_header(f"Restore of {target}", f"from {relative_path}")
        container_id = manager.restore_container(snapshot, target, destination)
        print_success(f"Restored container {target} ({container_id[:12]})")


@app.command(name="directory")
def restore_directory(
    ctx: typer.Context,
    archive: str = typer.Argument(..., help="Archive path relative to INPUT"),
    input_location: str = typer.Argument(..., metavar="INPUT", help="Location of backups"),
    output: str = typer.Argument(..., help="Directory to extract into"),
    input_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--input-type", help="Type of resource holding the backups"),
):
    """Extract an archive into a local directory."""
    with utils.command_guard(ctx):
        destination = utils.get_destination(ctx, input_type, input_location)
        entry = entry_for_path(archive, destination.ref)
        target = utils.get_engine(ctx, runtime=False).restore_directory(entry, output)
        print_success(f"Restored {archive} into {target}")


def register_to_main_app(main_app: typer.Typer):
    """Register restore commands to main CLI app"""
    main_app.add_typer(app, name="restore")
