################################################################################
# DOCKYARD
#
# @file:        transfer_engine.py
# @module:      dockyard.cores.transfer_engine
# @description: Single backup or restore of one mount or local directory.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - Runtime mounts are archived by `tar` inside a helper container
# - Local directories are archived with `tarfile` in streaming mode
# - An archive entry is only returned after the destination committed it
################################################################################

"""
Transfer engine.

One call moves exactly one resource between its live location and an
archive. Failures leave no addressable archive behind; restores extract on
top of whatever is already in the target (last write wins).
"""

from __future__ import annotations

import io
import os
import queue
import tarfile
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from ..exceptions import ResourceNotFound, TransferCancelled, TransferFailed
from ..helpers.constants import (
    BIND_BACKUP_DIR,
    CONTAINER_BACKUP_DIR,
    DIRECTORY_BACKUP_DIR,
    VOLUME_BACKUP_DIR,
)
from ..helpers.logging import get_logger
from ..types import ArchiveEntry, MountDescriptor, OutputDestinationRef, ResourceKind, ResourceRef
from .addressing import (
    ArchiveClock,
    archive_directory,
    archive_path,
    mount_archive_path,
    timestamp_from_path,
)
from .destination import Destination, open_destination
from .helper_runner import HelperRunner

logger = get_logger(__name__)

_PIPE_DEPTH = 8
_PIPE_POLL = 0.1


class TransferEngine:
    """
    Backs up and restores individual resources.

    Args:
        runner: Helper runner for volumes, binds and volume destinations;
            may be None when only local directories are involved
        clock: Timestamp source; share one per process so keys never repeat
    """

    def __init__(self, runner: Optional[HelperRunner], clock: Optional[ArchiveClock] = None):
        self.runner = runner
        self.clock = clock or ArchiveClock()
        self._destinations: Dict[OutputDestinationRef, Destination] = {}
        self._lock = threading.Lock()

    def destination(self, ref: OutputDestinationRef) -> Destination:
        with self._lock:
            if ref not in self._destinations:
                self._destinations[ref] = open_destination(ref, self.runner)
            return self._destinations[ref]

    # --------------- Runtime mounts ---------------

    def backup_mount(self, mount: MountDescriptor, destination: Destination,
                     cancel: Optional[threading.Event] = None) -> ArchiveEntry:
        """
        Archive one volume or bind into ``destination``.

        Raises:
            TransferFailed: The helper failed or the stream broke
            TransferCancelled: ``cancel`` was set mid-stream
        """
        created_at = self.clock.next(archive_directory(mount.resource, mount.name))
        relative_path = mount_archive_path(mount, created_at)
        start_time = time.time()

        logger.info(f"Backing up {mount.kind.value} {mount.name}",
                    extra={'mount': mount.name, 'phase': 'backup'})
        with self.runner.read_stream(mount.resource, cancel=cancel) as chunks:
            destination.write(relative_path, chunks, cancel)

        duration = time.time() - start_time
        logger.info(f"Archived {mount.name} to {relative_path} in {duration:.2f}s",
                    extra={'mount': mount.name, 'archive': relative_path, 'duration': duration})
        return ArchiveEntry(mount.resource, created_at, relative_path, destination.ref)

    def restore_mount(self, entry: ArchiveEntry, target: ResourceRef,
                      cancel: Optional[threading.Event] = None) -> None:
        """
        Extract ``entry`` into the volume or bind ``target``.

        Raises:
            ResourceNotFound: The archive does not exist
            TransferFailed: Extraction failed
        """
        destination = self.destination(entry.destination)
        start_time = time.time()

        logger.info(f"Restoring {entry.relative_path} into {target}",
                    extra={'archive': entry.relative_path, 'phase': 'restore'})
        with destination.read_stream(entry.relative_path, cancel) as chunks:
            self.runner.run_write(target, chunks, cancel=cancel)

        duration = time.time() - start_time
        logger.info(f"Restored {target} in {duration:.2f}s",
                    extra={'archive': entry.relative_path, 'duration': duration})

    # --------------- Local directories ---------------

    def backup_directory(self, path: Union[str, Path], destination: Destination,
                         cancel: Optional[threading.Event] = None) -> ArchiveEntry:
        """
        Archive a local directory (or single file) into ``destination``.

        Raises:
            ResourceNotFound: ``path`` does not exist
        """
        source = Path(path).expanduser().resolve()
        if not source.exists():
            raise ResourceNotFound(f"No such file or directory: {source}",
                                   resource=ResourceRef.directory(str(source)), phase="backup")
        resource = ResourceRef.directory(str(source))
        created_at = self.clock.next(archive_directory(resource))
        relative_path = archive_path(resource, created_at)

        logger.info(f"Backing up directory {source}",
                    extra={'path': str(source), 'phase': 'backup'})
        destination.write(relative_path, _tar_chunks(source, resource, cancel), cancel)
        logger.info(f"Archived {source} to {relative_path}",
                    extra={'path': str(source), 'archive': relative_path})
        return ArchiveEntry(resource, created_at, relative_path, destination.ref)

    def restore_directory(self, entry: ArchiveEntry, output: Union[str, Path],
                          cancel: Optional[threading.Event] = None) -> Path:
        """
        Extract ``entry`` into the local directory ``output``.

        Members that would land outside ``output`` abort the restore.
        """
        target = Path(output).expanduser().resolve()
        target.mkdir(parents=True, exist_ok=True)
        destination = self.destination(entry.destination)
        resource = ResourceRef.directory(str(target))

        logger.info(f"Restoring {entry.relative_path} into {target}",
                    extra={'archive': entry.relative_path, 'phase': 'restore'})
        with destination.read_stream(entry.relative_path, cancel) as chunks:
            try:
                with tarfile.open(fileobj=_ChunkReader(chunks), mode='r|gz') as tar:
                    for member in tar:
                        _check_member(member, target, resource)
                        tar.extract(member, target, **_EXTRACT_ARGS)
            except (tarfile.TarError, OSError) as e:
                raise TransferFailed(f"Extraction of {entry.relative_path} failed: {e}",
                                     resource=resource, phase="restore") from e
        logger.info(f"Restored {target}", extra={'archive': entry.relative_path})
        return target


_KIND_BY_DIRECTORY = {
    VOLUME_BACKUP_DIR: ResourceKind.VOLUME,
    BIND_BACKUP_DIR: ResourceKind.BIND,
    CONTAINER_BACKUP_DIR: ResourceKind.CONTAINER,
    DIRECTORY_BACKUP_DIR: ResourceKind.DIRECTORY,
}


def entry_for_path(relative_path: str, destination: OutputDestinationRef) -> ArchiveEntry:
    """
    Rebuild the archive entry behind a path the user pointed at.

    Raises:
        ResourceNotFound: The path is not inside the archive layout
    """
    parts = relative_path.strip('/').split('/')
    kind = _KIND_BY_DIRECTORY.get(parts[0]) if len(parts) == 3 else None
    try:
        created_at = timestamp_from_path(relative_path)
    except ValueError:
        kind = None
    if kind is None:
        raise ResourceNotFound(f"Not an archive path: {relative_path}",
                               resource=destination, phase="restore")
    return ArchiveEntry(ResourceRef(kind, parts[1]), created_at, relative_path.strip('/'),
                        destination)


# --------------- tarfile plumbing ---------------

_EXTRACT_ARGS = {'filter': 'data'} if hasattr(tarfile, 'data_filter') else {}


def _check_member(member: tarfile.TarInfo, target: Path, resource: ResourceRef) -> None:
    candidate = (target / member.name).resolve()
    if candidate != target and target not in candidate.parents:
        raise TransferFailed(f"Archive member escapes output directory: {member.name}",
                             resource=resource, phase="restore")
    if member.issym() or member.islnk():
        link_base = candidate.parent if member.issym() else target
        link_target = (link_base / member.linkname).resolve()
        if link_target != target and target not in link_target.parents:
            raise TransferFailed(f"Archive link escapes output directory: {member.name}",
                                 resource=resource, phase="restore")


class _ChunkReader(io.RawIOBase):
    """Readable file object over an iterator of byte chunks."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = iter(chunks)
        self._pending = b''

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


class _ChunkPipe(io.RawIOBase):
    """Writable file object handing its writes to a reader thread in chunks."""

    def __init__(self):
        self._queue: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=_PIPE_DEPTH)
        self.abandoned = threading.Event()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self.put(bytes(data))
        return len(data)

    def put(self, item: Optional[bytes]) -> None:
        while True:
            if self.abandoned.is_set():
                raise BrokenPipeError("Archive reader went away")
            try:
                self._queue.put(item, timeout=_PIPE_POLL)
                return
            except queue.Full:
                continue

    def get(self) -> Optional[bytes]:
        return self._queue.get()


def _tar_chunks(source: Path, resource: ResourceRef,
                cancel: Optional[threading.Event]) -> Iterator[bytes]:
    """Gzip tar stream of ``source``; raises after the last chunk if packing failed."""
    pipe = _ChunkPipe()
    errors = []

    def produce():
        try:
            with tarfile.open(fileobj=pipe, mode='w|gz') as tar:
                if source.is_dir():
                    tar.add(str(source), arcname='.')
                else:
                    tar.add(str(source), arcname=os.path.basename(source))
        except (OSError, tarfile.TarError) as e:
            errors.append(e)
        finally:
            try:
                pipe.put(None)
            except BrokenPipeError:
                pass

    worker = threading.Thread(target=produce, name=f"tar-{source.name}", daemon=True)
    worker.start()
    try:
        while True:
            if cancel is not None and cancel.is_set():
                raise TransferCancelled("Cancelled while packing", resource=resource,
                                        phase="backup")
            chunk = pipe.get()
            if chunk is None:
                break
            yield chunk
    finally:
        pipe.abandoned.set()
        worker.join()

    if errors:
        raise TransferFailed(f"Packing {source} failed: {errors[0]}",
                             resource=resource, phase="backup") from errors[0]
