################################################################################
# DOCKYARD
#
# @file:        scheduler.py
# @module:      dockyard.cores.scheduler
# @description: Cron-driven watch loop with exclusions and admission control.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - A container is never backed up twice at once (ScheduleState.in_flight)
# - stop() ends scheduling and lets running jobs finish
# - abort() also cancels running transfers at the next chunk boundary
################################################################################

"""
Watch loop.

Idle until the next cron fire time, then list running containers and
submit one backup job per eligible container to a bounded thread pool.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional

import docker
from croniter import croniter

from ..exceptions import ConfigurationError, DockyardError
from ..helpers.constants import ENABLED_LABEL, MANAGED_LABEL
from ..helpers.logging import get_logger
from ..types import ScheduleState
from .destination import Destination
from .runtime import list_running_containers
from .snapshot_manager import SnapshotManager

logger = get_logger(__name__)


class Scheduler:
    """
    Unattended backup driver.

    Args:
        client: Docker client used to list running containers
        manager: Snapshot manager that performs each backup
        destination: Where every backup goes
        state: Cron expression, exclusions and the in-flight set
        container_workers: Containers backed up at the same time
        now: Clock returning an aware datetime (for tests)
    """

    def __init__(self, client: docker.DockerClient, manager: SnapshotManager,
                 destination: Destination, state: ScheduleState,
                 container_workers: int = 4,
                 now: Optional[Callable[[], datetime]] = None):
        if not croniter.is_valid(state.cron_expr):
            raise ConfigurationError(f"Invalid cron expression: {state.cron_expr!r}",
                                     phase="watch")
        self.client = client
        self.manager = manager
        self.destination = destination
        self.state = state
        self.container_workers = max(1, container_workers)
        self.cancel = threading.Event()
        self._now = now or (lambda: datetime.now().astimezone())
        self._stopped = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None

    def run(self) -> None:
        """Block until :meth:`stop` or :meth:`abort`; drain running jobs before returning."""
        schedule = croniter(self.state.cron_expr, self._now())
        self._executor = ThreadPoolExecutor(max_workers=self.container_workers,
                                            thread_name_prefix="backup")
        logger.info(f"Watching containers with schedule '{self.state.cron_expr}'",
                    extra={'cron': self.state.cron_expr, 'workers': self.container_workers})
        try:
            while not self._stopped.is_set():
                fire_at = schedule.get_next(datetime)
                logger.debug(f"Next backup at {fire_at.isoformat()}")
                delay = (fire_at - self._now()).total_seconds()
                if self._stopped.wait(max(0.0, delay)):
                    break
                self.tick()
        finally:
            in_flight = self.state.snapshot_in_flight()
            if in_flight:
                logger.info(f"Waiting for {len(in_flight)} running backups: "
                            f"{', '.join(sorted(in_flight))}")
            self._executor.shutdown(wait=True)
            self._executor = None
            logger.info("Watch loop stopped")

    def stop(self) -> None:
        self._stopped.set()

    def abort(self) -> None:
        """Stop scheduling and cancel running transfers."""
        self.cancel.set()
        self._stopped.set()

    def tick(self) -> List[str]:
        """
        Dispatch one round of backups.

        Returns:
            Names of the containers a job was submitted for
        """
        self.state.last_tick = self._now()
        try:
            containers = list_running_containers(self.client)
        except DockyardError as e:
            logger.error(f"Cannot list containers, waiting for next tick: {e}",
                         extra={'phase': 'watch'})
            return []

        submitted = []
        for container in containers:
            name = container.name
            labels = container.labels or {}
            if MANAGED_LABEL in labels:
                continue
            if name in self.state.excluded_containers:
                logger.debug(f"Skipping excluded container {name}", extra={'container': name})
                continue
            if labels.get(ENABLED_LABEL, '').lower() == 'false':
                logger.debug(f"Skipping disabled container {name}", extra={'container': name})
                continue
            if not self.state.try_admit(name):
                logger.info(f"Backup of {name} still running, skipping this tick",
                            extra={'container': name, 'phase': 'watch'})
                continue
            self._submit(name)
            submitted.append(name)
        return submitted

    def _submit(self, name: str) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.container_workers,
                                                thread_name_prefix="backup")
        try:
            self._executor.submit(self._job, name)
        except RuntimeError:
            self.state.release(name)
            raise

    def _job(self, name: str) -> None:
        try:
            _, relative_path = self.manager.backup_container(
                name, self.destination,
                exclude_volumes=self.state.excluded_volumes,
                cancel=self.cancel,
            )
            logger.info(f"Scheduled backup of {name} written to {relative_path}",
                        extra={'container': name, 'descriptor': relative_path})
        except Exception as e:
            logger.error(f"Scheduled backup of {name} failed: {e}",
                         extra={'container': name, 'phase': 'backup'})
        finally:
            self.state.release(name)

    def drain(self) -> None:
        """Wait for every submitted job (used when ticking manually)."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
