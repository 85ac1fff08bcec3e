################################################################################
# DOCKYARD
#
# @file:        janitor.py
# @module:      dockyard.cores.janitor
# @description: Removes helper containers left behind by crashed runs.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""Orphaned helper cleanup, keyed on the managed-by label."""

from __future__ import annotations

import os
from typing import List, Optional

import docker
from docker.errors import DockerException, NotFound

from ..helpers.constants import MANAGED_LABEL, MANAGED_VALUE, PID_LABEL
from ..helpers.logging import get_logger
from .runtime import list_containers_by_label

logger = get_logger(__name__)


class Janitor:
    """Finds and force-removes Dockyard helper containers."""

    def __init__(self, client: docker.DockerClient):
        self.client = client

    def cleanup(self) -> int:
        """
        Remove every managed helper, whoever created it.

        Returns:
            Number of containers removed
        """
        return self._remove_all([f"{MANAGED_LABEL}={MANAGED_VALUE}"], scope="all processes")

    def cleanup_children(self, pid: Optional[int] = None) -> int:
        """Remove helpers created by process ``pid`` (default: this one)."""
        pid = pid if pid is not None else os.getpid()
        return self._remove_all(
            [f"{MANAGED_LABEL}={MANAGED_VALUE}", f"{PID_LABEL}={pid}"],
            scope=f"pid {pid}",
        )

    def _remove_all(self, labels: List[str], scope: str) -> int:
        containers = list_containers_by_label(self.client, labels)
        if not containers:
            logger.debug(f"No helper containers to clean up ({scope})")
            return 0

        logger.info(f"Removing {len(containers)} helper containers ({scope})",
                    extra={'phase': 'cleanup', 'count': len(containers)})
        removed = 0
        for container in containers:
            name = container.name
            try:
                container.remove(force=True)
                removed += 1
                logger.debug(f"Removed helper {name}", extra={'helper': name})
            except NotFound:
                logger.debug(f"Helper {name} already gone", extra={'helper': name})
            except (DockerException, OSError) as e:
                logger.error(f"Failed to remove helper {name}: {e}",
                             extra={'helper': name, 'phase': 'cleanup'})
        return removed
