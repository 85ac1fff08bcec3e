################################################################################
# DOCKYARD
#
# @file:        utils.py
# @module:      dockyard.cli.utils
# @description: Shared CLI plumbing: lazily built engine objects on ctx.obj,
#               error reporting, interrupt cleanup.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
CLI helpers.

Every command receives the typer context; the objects it needs (config,
Docker client, helper runner, engines) are created on first use and kept
in ``ctx.obj`` so a command never builds them twice.
"""

import os
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

import typer

from ..cores.destination import Destination
from ..cores.helper_runner import HelperRunner
from ..cores.janitor import Janitor
from ..cores.runtime import create_client
from ..cores.snapshot_manager import SnapshotManager, snapshot_failures
from ..cores.transfer_engine import TransferEngine
from ..exceptions import DockyardError, PartialBackupFailure, ResourceNotFound
from ..helpers.config import Config
from ..helpers.logging import get_logger
from ..helpers.ui_utils import print_error, print_warning
from ..types import DestinationKind, OutputDestinationRef, ResourceRef

logger = get_logger(__name__)


# -------------------------
# Tool bench
# -------------------------

def get_config(ctx: typer.Context) -> Config:
    obj = ctx.ensure_object(dict)
    if obj.get("config") is None:
        obj["config"] = Config(obj.get("config_path"))
    return obj["config"]


def get_client(ctx: typer.Context):
    obj = ctx.ensure_object(dict)
    if obj.get("client") is None:
        obj["client"] = create_client(get_config(ctx))
    return obj["client"]


def get_runner(ctx: typer.Context) -> HelperRunner:
    obj = ctx.ensure_object(dict)
    if obj.get("runner") is None:
        obj["runner"] = HelperRunner(get_client(ctx), image=get_config(ctx).helper_image)
    return obj["runner"]


def get_engine(ctx: typer.Context, runtime: bool = True) -> TransferEngine:
    """Transfer engine; with ``runtime=False`` no Docker connection is made."""
    obj = ctx.ensure_object(dict)
    engine = obj.get("engine")
    if engine is None:
        engine = obj["engine"] = TransferEngine(get_runner(ctx) if runtime else None)
    elif runtime and engine.runner is None:
        engine.runner = get_runner(ctx)
    return engine


def get_manager(ctx: typer.Context) -> SnapshotManager:
    obj = ctx.ensure_object(dict)
    if obj.get("manager") is None:
        obj["manager"] = SnapshotManager(
            get_client(ctx),
            get_engine(ctx),
            mount_workers=get_config(ctx).mount_workers,
        )
    return obj["manager"]


def get_destination(ctx: typer.Context, kind: DestinationKind, location: str) -> Destination:
    """Destination for a CLI ``OUTPUT``/``INPUT`` argument."""
    if kind == DestinationKind.DIRECTORY:
        ref = OutputDestinationRef.directory(location)
    else:
        ref = OutputDestinationRef.volume(location)
    return get_engine(ctx, runtime=kind == DestinationKind.VOLUME).destination(ref)


def split_names(values: Optional[Iterable[str]]) -> List[str]:
    """Flatten repeated and comma separated option values."""
    names = []
    for value in values or []:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names


def bind_source(path: str, phase: str) -> str:
    """
    Host path for a bind given on the command line.

    Absolute paths are passed to the daemon untouched, since it may run on
    another host. Relative paths are resolved against the current directory
    and must exist here.
    """
    expanded = os.path.expanduser(path)
    if os.path.isabs(expanded):
        return expanded
    absolute = os.path.abspath(expanded)
    if not os.path.exists(absolute):
        raise ResourceNotFound(f"No such file or directory: {absolute}",
                               resource=ResourceRef.bind(absolute), phase=phase)
    return absolute


# -------------------------
# Error handling
# -------------------------

def cleanup_children(ctx: typer.Context) -> int:
    """Remove helper containers created by this process, if a client exists."""
    client = ctx.ensure_object(dict).get("client")
    if client is None:
        return 0
    try:
        return Janitor(client).cleanup_children()
    except DockyardError as e:
        logger.error(f"Could not remove helper containers: {e}")
        return 0


@contextmanager
def command_guard(ctx: typer.Context) -> Iterator[None]:
    """
    Report Dockyard errors in red and exit 1; on Ctrl+C remove this
    process's helper containers and exit 130.
    """
    try:
        yield
    except KeyboardInterrupt:
        print_warning("Interrupted, removing helper containers...")
        removed = cleanup_children(ctx)
        if removed:
            print_warning(f"Removed {removed} helper containers")
        raise typer.Exit(130)
    except PartialBackupFailure as e:
        print_error(str(e))
        for line in snapshot_failures(e):
            print_error(f"  {line}")
        raise typer.Exit(1)
    except DockyardError as e:
        print_error(str(e))
        raise typer.Exit(1)
