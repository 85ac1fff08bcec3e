################################################################################
# DOCKYARD
#
# @file:        destination.py
# @module:      dockyard.cores.destination
# @description: Local-directory and named-volume archive stores with atomic
#               commit (temp name first, link into place last).
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Output destinations.

A destination stores archive bytes under relative paths produced by
:mod:`dockyard.cores.addressing`. Writes go to a hidden ``.partial``
sibling and are linked into place only after the whole stream arrived, so
a reader never sees half an archive. Existing archives are never replaced.
"""

from __future__ import annotations

import errno
import os
import posixpath
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from ..exceptions import (
    DockyardError,
    ResourceNotFound,
    TransferCancelled,
    TransferFailed,
)
from ..helpers.constants import HELPER_BACKUP_PATH, STREAM_CHUNK_SIZE
from ..helpers.logging import get_logger
from ..types import DestinationKind, HelperPurpose, OutputDestinationRef, ResourceRef
from .addressing import is_partial, partial_path
from .helper_runner import HelperRunner

logger = get_logger(__name__)

# Exit code the volume read command uses for "no such archive".
_MISSING_EXIT_CODE = 44

# errno values os.link raises on filesystems that cannot hard link
_NO_HARDLINK_ERRNOS = (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP)


class Destination(ABC):
    """Byte store for archives and descriptors."""

    def __init__(self, ref: OutputDestinationRef):
        self.ref = ref

    @abstractmethod
    def write(self, relative_path: str, chunks: Iterable[bytes],
              cancel: Optional[threading.Event] = None) -> None:
        """Store ``chunks`` at ``relative_path``; nothing is visible unless all arrive."""

    @abstractmethod
    @contextmanager
    def read_stream(self, relative_path: str,
                    cancel: Optional[threading.Event] = None) -> Iterator[Iterator[bytes]]:
        """Yield an iterator over the stored bytes."""

    @abstractmethod
    def exists(self, relative_path: str) -> bool:
        """True if a committed object exists at ``relative_path``."""

    @abstractmethod
    def remove(self, relative_path: str) -> None:
        """Delete ``relative_path`` if present."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Committed relative paths below ``prefix``, sorted."""

    def read(self, relative_path: str, consumer: Callable[[bytes], None],
             cancel: Optional[threading.Event] = None) -> None:
        with self.read_stream(relative_path, cancel) as chunks:
            for chunk in chunks:
                consumer(chunk)

    def read_bytes(self, relative_path: str) -> bytes:
        buffer = bytearray()
        self.read(relative_path, buffer.extend)
        return bytes(buffer)

    def write_bytes(self, relative_path: str, data: bytes) -> None:
        self.write(relative_path, [data])

    def describe(self, relative_path: str) -> str:
        return f"{self.ref}/{relative_path}"


class DirectoryDestination(Destination):
    """Archives in a directory the controlling process can reach itself."""

    def __init__(self, ref: OutputDestinationRef):
        super().__init__(ref)
        self.root = Path(ref.location).expanduser() / ref.relative_root

    def _path(self, relative_path: str) -> Path:
        return self.root / relative_path

    def write(self, relative_path: str, chunks: Iterable[bytes],
              cancel: Optional[threading.Event] = None) -> None:
        final = self._path(relative_path)
        partial = self._path(partial_path(relative_path))
        if final.exists():
            raise TransferFailed(f"Refusing to overwrite existing archive {final}",
                                 resource=self.ref, phase="commit")
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, 'wb') as f:
                for chunk in chunks:
                    if cancel is not None and cancel.is_set():
                        raise TransferCancelled(f"Cancelled while writing {final}",
                                                resource=self.ref, phase="write")
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            self._commit(partial, final)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise TransferFailed(f"Failed to write {final}: {e}",
                                 resource=self.ref, phase="write") from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        logger.debug(f"Committed {final}", extra={'archive': str(final)})

    def _commit(self, partial: Path, final: Path) -> None:
        """
        Publish ``partial`` as ``final`` unless ``final`` already exists.

        A hard link fails atomically when the name is taken, so a concurrent
        writer cannot be overwritten. Filesystems without hard links fall
        back to a checked rename.
        """
        try:
            os.link(partial, final)
        except FileExistsError as e:
            raise TransferFailed(f"Refusing to overwrite existing archive {final}",
                                 resource=self.ref, phase="commit") from e
        except OSError as e:
            if e.errno not in _NO_HARDLINK_ERRNOS:
                raise
            logger.debug(f"No hard links on {final.parent}, committing by rename")
            if final.exists():
                raise TransferFailed(f"Refusing to overwrite existing archive {final}",
                                     resource=self.ref, phase="commit") from e
            os.replace(partial, final)
            return
        partial.unlink()

    @contextmanager
    def read_stream(self, relative_path: str,
                    cancel: Optional[threading.Event] = None) -> Iterator[Iterator[bytes]]:
        path = self._path(relative_path)
        try:
            handle = open(path, 'rb')
        except FileNotFoundError as e:
            raise ResourceNotFound(f"Archive not found: {path}",
                                   resource=self.ref, phase="read") from e
        with handle:
            yield self._chunks(handle, path, cancel)

    def _chunks(self, handle, path: Path, cancel: Optional[threading.Event]) -> Iterator[bytes]:
        while True:
            if cancel is not None and cancel.is_set():
                raise TransferCancelled(f"Cancelled while reading {path}",
                                        resource=self.ref, phase="read")
            chunk = handle.read(STREAM_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def exists(self, relative_path: str) -> bool:
        return self._path(relative_path).is_file()

    def remove(self, relative_path: str) -> None:
        self._path(relative_path).unlink(missing_ok=True)

    def list(self, prefix: str = "") -> List[str]:
        base = self._path(prefix) if prefix else self.root
        if not base.is_dir():
            return []
        found = []
        for path in base.rglob('*'):
            if path.is_file():
                relative = path.relative_to(self.root).as_posix()
                if not is_partial(relative):
                    found.append(relative)
        return sorted(found)


class VolumeDestination(Destination):
    """
    Archives inside a named volume.

    Every operation runs in a helper container with the volume mounted at
    ``/backup``: the same mechanism that moves source data.
    """

    def __init__(self, ref: OutputDestinationRef, runner: HelperRunner):
        super().__init__(ref)
        self.runner = runner
        self.volume = ResourceRef.volume(ref.location)

    def _path(self, relative_path: str) -> str:
        return posixpath.join(HELPER_BACKUP_PATH, self.ref.relative_root, relative_path)

    def write(self, relative_path: str, chunks: Iterable[bytes],
              cancel: Optional[threading.Event] = None) -> None:
        final = self._path(relative_path)
        partial = self._path(partial_path(relative_path))
        with self.runner.helper(self.volume, HelperPurpose.WRITE, HELPER_BACKUP_PATH,
                                cancel=cancel) as helper:
            self.runner.exec_command(helper, ['mkdir', '-p', posixpath.dirname(final)])
            try:
                self.runner.exec_stdin(helper, ['sh', '-c', 'cat > "$1"', 'sh', partial],
                                       chunks, cancel)
                self.runner.exec_command(helper, [
                    'sh', '-c',
                    'if [ -e "$2" ]; then echo "$2 already exists" >&2; exit 1; fi; mv "$1" "$2"',
                    'sh', partial, final,
                ])
            except BaseException:
                self._discard(helper, partial)
                raise
        logger.debug(f"Committed {final} on volume {self.ref.location}",
                     extra={'archive': final, 'volume': self.ref.location})

    def _discard(self, helper, partial: str) -> None:
        try:
            self.runner.exec_command(helper, ['rm', '-f', partial], check=False)
        except DockyardError as e:
            logger.warning(f"Could not remove partial archive {partial}: {e}",
                           extra={'archive': partial, 'volume': self.ref.location})

    @contextmanager
    def read_stream(self, relative_path: str,
                    cancel: Optional[threading.Event] = None) -> Iterator[Iterator[bytes]]:
        path = self._path(relative_path)
        command = ['sh', '-c', f'[ -f "$1" ] || exit {_MISSING_EXIT_CODE}; cat "$1"', 'sh', path]
        with self.runner.read_stream(self.volume, command, cancel,
                                     mount_point=HELPER_BACKUP_PATH) as chunks:
            yield self._translate_missing(chunks, path)

    def _translate_missing(self, chunks: Iterator[bytes], path: str) -> Iterator[bytes]:
        try:
            yield from chunks
        except TransferFailed as e:
            if e.exit_code == _MISSING_EXIT_CODE:
                raise ResourceNotFound(f"Archive not found: {path} on volume {self.ref.location}",
                                       resource=self.ref, phase="read") from e
            raise

    def exists(self, relative_path: str) -> bool:
        code, _ = self.runner.run_command(self.volume, ['test', '-f', self._path(relative_path)],
                                          mount_point=HELPER_BACKUP_PATH, check=False)
        return code == 0

    def remove(self, relative_path: str) -> None:
        self.runner.run_command(self.volume, ['rm', '-f', self._path(relative_path)],
                                mount_point=HELPER_BACKUP_PATH, read_only=False)

    def list(self, prefix: str = "") -> List[str]:
        root = self._path("")
        base = self._path(prefix) if prefix else root
        _, output = self.runner.run_command(
            self.volume,
            ['sh', '-c', '[ -d "$1" ] && find "$1" -type f || true', 'sh', base],
            mount_point=HELPER_BACKUP_PATH,
        )
        found = []
        for line in output.decode(errors='replace').splitlines():
            line = line.strip()
            if not line:
                continue
            relative = posixpath.relpath(line, root)
            if not is_partial(relative):
                found.append(relative)
        return sorted(found)


def open_destination(ref: OutputDestinationRef,
                     runner: Optional[HelperRunner] = None) -> Destination:
    """Build the destination implementation for ``ref``."""
    if ref.kind == DestinationKind.DIRECTORY:
        return DirectoryDestination(ref)
    if runner is None:
        raise ValueError("Volume destinations need a helper runner")
    return VolumeDestination(ref, runner)
