################################################################################
# DOCKYARD
#
# @file:        snapshot_manager.py
# @module:      dockyard.cores.snapshot_manager
# @description: Whole-container capture (config, mount archives, descriptor)
#               and restore.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - Mount backups run in parallel; the descriptor is written last
# - A failed mount means no descriptor; finished archives are kept
# - Restore: create, fill mounts one by one, start; remove on failure
################################################################################

"""
Snapshot management.

A container snapshot is a descriptor (``containers/<name>/<ts>.json``)
pointing at one archive per mount. The descriptor only ever appears after
every archive it references has been committed.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Tuple

import docker
from docker.errors import DockerException, NotFound
from docker.types import Mount

from ..exceptions import (
    DockyardError,
    PartialBackupFailure,
    ResourceNotFound,
    RestoreFailed,
)
from ..helpers.constants import DEFAULT_MOUNT_WORKERS
from ..helpers.logging import get_logger
from ..types import ArchiveEntry, MountDescriptor, ResourceRef
from .addressing import archive_directory, archive_path, timestamp_from_path
from .descriptor import ContainerSnapshot, MountRecord, dump_snapshot, load_snapshot_bytes
from .destination import Destination
from .mount_resolver import MountResolver
from .runtime import docker_errors
from .transfer_engine import TransferEngine

logger = get_logger(__name__)

# Network modes that are not user-defined networks
_BUILTIN_NETWORK_MODES = ('bridge', 'host', 'none')


class SnapshotManager:
    """
    Backs up and restores whole containers.

    Args:
        client: Docker client
        engine: Transfer engine used for every mount
        resolver: Mount resolver; created from ``client`` if omitted
        mount_workers: Parallel mount backups per container
    """

    def __init__(self, client: docker.DockerClient, engine: TransferEngine,
                 resolver: Optional[MountResolver] = None,
                 mount_workers: int = DEFAULT_MOUNT_WORKERS):
        self.client = client
        self.engine = engine
        self.resolver = resolver or MountResolver(client)
        self.mount_workers = max(1, mount_workers)

    # --------------- Backup ---------------

    def backup_container(self, container: str, destination: Destination,
                         mount_filter: Optional[Iterable[str]] = None,
                         exclude_volumes: Optional[Iterable[str]] = None,
                         cancel: Optional[threading.Event] = None
                         ) -> Tuple[ContainerSnapshot, str]:
        """
        Archive every selected mount of ``container`` and commit its descriptor.

        Args:
            container: Container name or id
            destination: Where archives and the descriptor go
            mount_filter: Back up only mounts with these names
            exclude_volumes: Mount names to leave out
            cancel: Cooperative cancellation for all mount transfers

        Returns:
            ``(snapshot, descriptor relative path)``

        Raises:
            ResourceNotFound: No such container
            PartialBackupFailure: At least one mount failed; no descriptor written
        """
        data = self.resolver.inspect(container)
        name = data.get('Name', container).lstrip('/')
        resource = ResourceRef.container(name)
        mounts = self.resolver.select(self.resolver.from_inspect(data),
                                      include=mount_filter, exclude=exclude_volumes)
        start_time = time.time()

        logger.info(f"Starting backup of container {name} ({len(mounts)} mounts)",
                    extra={'container': name, 'phase': 'backup', 'mounts': len(mounts)})

        entries, failures = self._backup_mounts(name, mounts, destination, cancel)
        if failures:
            failed = ", ".join(mount.name for mount, _ in failures)
            raise PartialBackupFailure(
                f"{len(failures)} of {len(mounts)} mounts failed ({failed}); "
                f"no descriptor written",
                resource=resource, failures=failures, completed=list(entries.values()),
            )

        created_at = self.engine.clock.next(archive_directory(resource))
        records = [MountRecord.from_mount(mount, entries[index].relative_path)
                   for index, mount in enumerate(mounts)]
        snapshot = ContainerSnapshot.from_inspect(data, records, created_at)
        relative_path = archive_path(resource, created_at)
        destination.write_bytes(relative_path, dump_snapshot(snapshot))

        duration = time.time() - start_time
        logger.info(f"Backup of container {name} completed in {duration:.2f}s",
                    extra={'container': name, 'descriptor': relative_path,
                           'duration': duration})
        return snapshot, relative_path

    def _backup_mounts(self, name: str, mounts: List[MountDescriptor],
                       destination: Destination, cancel: Optional[threading.Event]
                       ) -> Tuple[Dict[int, ArchiveEntry], List[Tuple[MountDescriptor, BaseException]]]:
        entries: Dict[int, ArchiveEntry] = {}
        failures: List[Tuple[MountDescriptor, BaseException]] = []
        if not mounts:
            return entries, failures

        with ThreadPoolExecutor(max_workers=self.mount_workers,
                                thread_name_prefix=f"mount-{name}") as executor:
            futures = [
                (index, mount, executor.submit(self.engine.backup_mount, mount, destination, cancel))
                for index, mount in enumerate(mounts)
            ]
            for index, mount, future in futures:
                try:
                    entries[index] = future.result()
                except Exception as e:
                    failures.append((mount, e))
                    logger.error(f"Backup of mount {mount.name} failed: {e}",
                                 extra={'container': name, 'mount': mount.name,
                                        'phase': 'backup'})
        return entries, failures

    # --------------- Descriptors ---------------

    def load_snapshot(self, relative_path: str, destination: Destination) -> ContainerSnapshot:
        """
        Read and validate a committed descriptor.

        Raises:
            ResourceNotFound: No descriptor at ``relative_path``
            DescriptorError: The descriptor is malformed
        """
        data = destination.read_bytes(relative_path)
        return load_snapshot_bytes(data, source=destination.describe(relative_path))

    def list_snapshots(self, container: str, destination: Destination) -> List[str]:
        """Descriptor paths of ``container``, oldest first."""
        prefix = archive_directory(ResourceRef.container(container))
        return sorted(destination.list(prefix), key=timestamp_from_path)

    def latest_snapshot(self, container: str, destination: Destination) -> str:
        snapshots = self.list_snapshots(container, destination)
        if not snapshots:
            raise ResourceNotFound(f"No snapshots of {container} in {destination.ref}",
                                   resource=ResourceRef.container(container), phase="restore")
        return snapshots[-1]

    # --------------- Restore ---------------

    def restore_container(self, snapshot: ContainerSnapshot, name: Optional[str],
                          destination: Destination,
                          cancel: Optional[threading.Event] = None) -> str:
        """
        Recreate a container from ``snapshot`` and start it.

        The container is created stopped, each mount is filled from its
        archive in descriptor order, and only then is it started. Unarchived
        mounts are attached as they were but receive no data.

        Returns:
            Id of the new container

        Raises:
            RestoreFailed: Anything failed after creation; the container is gone
        """
        name = name or snapshot.name
        resource = ResourceRef.container(name)
        start_time = time.time()

        logger.info(f"Restoring container {name} from snapshot of {snapshot.name}",
                    extra={'container': name, 'phase': 'restore'})
        self._ensure_image(snapshot.image, resource)
        with docker_errors(resource, "restore", api_error=RestoreFailed):
            container = self.client.containers.create(snapshot.image, **self._create_args(snapshot, name))

        current: Optional[MountRecord] = None
        try:
            for record in snapshot.mounts:
                current = record
                mount = record.to_mount()
                entry = ArchiveEntry(
                    resource=mount.resource,
                    created_at=timestamp_from_path(record.archive_relative_path),
                    relative_path=record.archive_relative_path,
                    destination=destination.ref,
                )
                self.engine.restore_mount(entry, mount.resource, cancel)
                logger.info(f"Restored mount {record.name}",
                            extra={'container': name, 'mount': record.name})
            current = None
            with docker_errors(resource, "restore"):
                container.start()
        except Exception as e:
            self._discard(container, name)
            what = f"mount {current.name}" if current is not None else "container start"
            raise RestoreFailed(f"Restore failed at {what}: {e}",
                                resource=resource, mount=current, cause=e) from e

        duration = time.time() - start_time
        logger.info(f"Restored container {name} in {duration:.2f}s",
                    extra={'container': name, 'duration': duration})
        return container.id

    def _create_args(self, snapshot: ContainerSnapshot, name: str) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            'name': name,
            'environment': list(snapshot.env),
            'labels': dict(snapshot.labels),
            'mounts': [
                Mount(target=record.destination, source=record.source,
                      type=record.kind, read_only=record.read_only)
                for record in list(snapshot.mounts) + list(snapshot.unarchived_mounts)
            ],
            'detach': True,
        }
        if snapshot.hostname:
            args['hostname'] = snapshot.hostname
        if snapshot.user:
            args['user'] = snapshot.user
        if snapshot.port_bindings:
            args['ports'] = {
                port: [(binding.host_ip, binding.host_port or None) for binding in bindings]
                for port, bindings in snapshot.port_bindings.items()
            }
        if snapshot.restart_policy is not None:
            args['restart_policy'] = {
                'Name': snapshot.restart_policy.name,
                'MaximumRetryCount': snapshot.restart_policy.maximum_retry_count,
            }
        if snapshot.privileged:
            args['privileged'] = True
        if snapshot.cap_add:
            args['cap_add'] = list(snapshot.cap_add)
        if snapshot.cap_drop:
            args['cap_drop'] = list(snapshot.cap_drop)
        if snapshot.tmpfs:
            args['tmpfs'] = dict(snapshot.tmpfs)
        if snapshot.command:
            args['command'] = list(snapshot.command)
        if snapshot.entrypoint:
            args['entrypoint'] = list(snapshot.entrypoint)
        if snapshot.working_dir:
            args['working_dir'] = snapshot.working_dir
        network = snapshot.network
        if network:
            if network in _BUILTIN_NETWORK_MODES or network.startswith('container:'):
                args['network_mode'] = network
            else:
                args['network'] = network
        return args

    def _ensure_image(self, image: str, resource: ResourceRef) -> None:
        with docker_errors(resource, "restore", api_error=RestoreFailed):
            try:
                self.client.images.get(image)
            except NotFound:
                logger.info(f"Pulling image {image}", extra={'container': resource.identifier})
                self.client.images.pull(image)

    def _discard(self, container, name: str) -> None:
        try:
            container.remove(force=True, v=False)
            logger.info(f"Removed partially restored container {name}",
                        extra={'container': name, 'phase': 'restore'})
        except NotFound:
            pass
        except (DockerException, OSError) as e:
            logger.error(f"Could not remove partially restored container {name}: {e}",
                         extra={'container': name, 'phase': 'restore'})


def snapshot_failures(error: DockyardError) -> List[str]:
    """Human-readable per-mount failure lines of a :class:`PartialBackupFailure`."""
    if not isinstance(error, PartialBackupFailure):
        return [str(error)]
    return [f"{mount.name}: {cause}" for mount, cause in error.failures]
