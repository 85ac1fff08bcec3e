"""
Service commands for Dockyard

The unattended watch loop and helper container cleanup.
"""

import signal
from typing import List, Optional

import typer

from ..cores.janitor import Janitor
from ..cores.scheduler import Scheduler
from ..helpers.ui_utils import console, print_header, print_info, print_success, print_warning
from ..types import DestinationKind, ScheduleState
from . import utils


def watch(
    ctx: typer.Context,
    output: str = typer.Argument(..., help="Location to write backups"),
    output_type: DestinationKind = typer.Option(
        DestinationKind.DIRECTORY, "--output-type", help="Type of output resource"),
    cron: Optional[str] = typer.Option(
        None, "--cron", help="Cron expression (default: from config, daily at 00:00)"),
    exclude_containers: Optional[List[str]] = typer.Option(
        None, "--exclude-containers", help="Containers to skip"),
    exclude_volumes: Optional[List[str]] = typer.Option(
        None, "--exclude-volumes", help="Volumes to skip in every container"),
):
    """
    Periodically back up all running containers.

    Ctrl+C once stops scheduling and waits for running backups; a second
    Ctrl+C cancels them and removes their helper containers.
    """
    with utils.command_guard(ctx):
        cfg = utils.get_config(ctx)
        state = ScheduleState(
            cron_expr=cron or cfg.cron,
            excluded_containers=set(utils.split_names(exclude_containers) or cfg.exclude_containers),
            excluded_volumes=set(utils.split_names(exclude_volumes) or cfg.exclude_volumes),
        )
        destination = utils.get_destination(ctx, output_type, output)
        scheduler = Scheduler(
            utils.get_client(ctx),
            utils.get_manager(ctx),
            destination,
            state,
            container_workers=cfg.container_workers,
        )

        print_header("Dockyard watch", f"{state.cron_expr} -> {output_type.value}: {output}")
        if state.excluded_containers:
            console.print(f"[cyan]Excluded containers:[/cyan] {', '.join(sorted(state.excluded_containers))}")
        if state.excluded_volumes:
            console.print(f"[cyan]Excluded volumes:[/cyan] {', '.join(sorted(state.excluded_volumes))}")
        print_info("Running... (Ctrl+C to stop)")

        def _handle_signal(signum, frame):
            if scheduler.cancel.is_set():
                return
            if _handle_signal.stopping:
                print_warning("Cancelling running backups...")
                scheduler.abort()
                return
            _handle_signal.stopping = True
            print_warning("Stopping; waiting for running backups (Ctrl+C again to cancel)")
            scheduler.stop()

        _handle_signal.stopping = False
        previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            scheduler.run()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        if scheduler.cancel.is_set():
            removed = utils.cleanup_children(ctx)
            if removed:
                print_warning(f"Removed {removed} helper containers")
        print_success("Watch stopped")


def cleanup(
    ctx: typer.Context,
    pid: Optional[int] = typer.Option(
        None, "--pid", help="Only remove helpers created by this process id"),
):
    """Remove helper containers left behind by crashed runs."""
    with utils.command_guard(ctx):
        janitor = Janitor(utils.get_client(ctx))
        removed = janitor.cleanup() if pid is None else janitor.cleanup_children(pid)
        if removed:
            print_success(f"Removed {removed} helper containers")
        else:
            print_info("No helper containers to remove")


def register_to_main_app(main_app: typer.Typer):
    """Register service commands to main CLI app"""
    main_app.command(name="watch")(watch)
    main_app.command(name="cleanup")(cleanup)
