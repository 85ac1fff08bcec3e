################################################################################
# DOCKYARD
#
# @file:        mount_resolver.py
# @module:      dockyard.cores.mount_resolver
# @description: Turns a container's mount table into named backup units.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Mount discovery.

Only ``volume`` and ``bind`` mounts are backed up. The Docker socket bind
and NFS-backed volumes are always skipped: the first is runtime plumbing,
the second lives on a server that has its own backups.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import docker

from ..exceptions import ResourceNotFound
from ..helpers.constants import DOCKER_SOCKET_PATH, NETWORK_VOLUME_TYPES
from ..helpers.logging import get_logger
from ..types import MountDescriptor, MountKind
from .addressing import mount_name
from .runtime import docker_errors

logger = get_logger(__name__)


class MountResolver:
    """Inspects containers and classifies their mounts."""

    def __init__(self, client: docker.DockerClient):
        self.client = client
        self._volume_types: Dict[str, Optional[str]] = {}

    def inspect(self, container: str) -> Dict[str, Any]:
        """
        Raw inspect payload of ``container``.

        Raises:
            ResourceNotFound: If no such container exists
        """
        with docker_errors(container, "inspect"):
            return self.client.api.inspect_container(container)

    def resolve(self, container: str) -> List[MountDescriptor]:
        """Volume and bind mounts of ``container`` in inspect order."""
        return self.from_inspect(self.inspect(container))

    def from_inspect(self, data: Dict[str, Any]) -> List[MountDescriptor]:
        name = data.get('Name', '').lstrip('/')
        mounts = []
        for raw in data.get('Mounts') or []:
            mount_type = raw.get('Type')
            destination = raw.get('Destination', '')
            if mount_type == 'volume':
                kind = MountKind.VOLUME
                source = raw.get('Name', '')
            elif mount_type == 'bind':
                kind = MountKind.BIND
                source = raw.get('Source', '')
            else:
                logger.info(f"Skipping {mount_type} mount at {destination}",
                            extra={'container': name, 'mount': destination})
                continue
            mounts.append(MountDescriptor(
                kind=kind,
                source=source,
                destination=destination,
                read_only=not raw.get('RW', True),
                name=mount_name(kind, source, destination),
            ))
        return mounts

    def select(self, mounts: Iterable[MountDescriptor],
               include: Optional[Iterable[str]] = None,
               exclude: Optional[Iterable[str]] = None) -> List[MountDescriptor]:
        """
        Filter resolved mounts.

        Args:
            mounts: Output of :meth:`resolve`
            include: If given, keep only mounts whose name is listed
            exclude: Mount names to drop

        Returns:
            The mounts to back up, order preserved
        """
        include_set = set(include) if include else None
        exclude_set = set(exclude or ())
        selected = []
        for mount in mounts:
            if include_set is not None and mount.name not in include_set:
                continue
            if mount.name in exclude_set or mount.source in exclude_set:
                logger.info(f"Excluding {mount}", extra={'mount': mount.name})
                continue
            if mount.kind == MountKind.BIND and mount.source == DOCKER_SOCKET_PATH:
                logger.debug("Skipping Docker socket bind", extra={'mount': mount.name})
                continue
            if mount.kind == MountKind.VOLUME and self._is_network_volume(mount.source):
                logger.info(f"Skipping network volume {mount.source}",
                            extra={'mount': mount.name})
                continue
            selected.append(mount)
        return selected

    def _is_network_volume(self, volume: str) -> bool:
        if volume not in self._volume_types:
            try:
                with docker_errors(volume, "inspect"):
                    info = self.client.api.inspect_volume(volume)
            except ResourceNotFound:
                info = {}
            options = info.get('Options') or {}
            self._volume_types[volume] = options.get('type')
        return self._volume_types[volume] in NETWORK_VOLUME_TYPES
