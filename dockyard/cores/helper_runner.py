################################################################################
# DOCKYARD
#
# @file:        helper_runner.py
# @module:      dockyard.cores.helper_runner
# @description: Ephemeral helper containers that stream bytes in and out of
#               volumes and binds through the Docker exec channel.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - A helper is created, used for one transfer and removed in `finally`
# - Every helper carries the managed-by and pid labels for the janitor
# - Cancellation is checked between stream chunks only
################################################################################

"""
Helper container runner.

Dockyard never touches runtime-managed storage from the host. Instead it
mounts the volume (or bind) into a disposable container running an idle
process and execs ``tar``/``cat`` inside it, streaming the bytes over the
exec channel.
"""

from __future__ import annotations

import os
import socket
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

import docker
from docker.errors import DockerException, NotFound
from docker.types import Mount
from docker.utils.socket import STDERR, frames_iter

from ..exceptions import DockyardError, TransferCancelled, TransferFailed
from ..helpers.constants import (
    DEFAULT_HELPER_IMAGE,
    EXEC_POLL_INTERVAL,
    HELPER_DATA_PATH,
    HELPER_IDLE_COMMAND,
    HELPER_NAME_PREFIX,
    MANAGED_LABEL,
    MANAGED_VALUE,
    PID_LABEL,
    PURPOSE_LABEL,
)
from ..helpers.logging import get_logger
from ..types import HelperContainer, HelperPurpose, ResourceKind, ResourceRef
from .runtime import docker_errors

logger = get_logger(__name__)


def archive_command(mount_point: str = HELPER_DATA_PATH) -> List[str]:
    """Pack ``mount_point`` into a gzip tarball on stdout."""
    return ['tar', '-czf', '-', '-C', mount_point, '.']


def extract_command(mount_point: str = HELPER_DATA_PATH) -> List[str]:
    """Unpack a gzip tarball from stdin into ``mount_point``."""
    return ['tar', '-xzf', '-', '-C', mount_point]


class HelperRunner:
    """
    Creates, uses and tears down helper containers.

    Args:
        client: Docker client
        image: Image providing ``sh``, ``tar`` (with gzip), ``cat`` and ``mv``
        pid: Value of the pid label; defaults to this process
        exec_timeout: Seconds to wait for an exec to report its exit code
            after its output stream ended
    """

    def __init__(self, client: docker.DockerClient, image: str = DEFAULT_HELPER_IMAGE,
                 pid: Optional[int] = None, exec_timeout: float = 60.0):
        self.client = client
        self.image = image
        self.pid = pid if pid is not None else os.getpid()
        self.exec_timeout = exec_timeout
        self._image_ready = False
        self._image_lock = threading.Lock()

    # --------------- Public API ---------------

    def run_read(self, resource: ResourceRef, consumer: Callable[[bytes], None],
                 command: Optional[Sequence[str]] = None,
                 cancel: Optional[threading.Event] = None,
                 mount_point: str = HELPER_DATA_PATH) -> None:
        """
        Stream the output of ``command`` (default: tar of the mount) to ``consumer``.

        Raises:
            TransferFailed: Exec exited non-zero or the stream broke
            TransferCancelled: ``cancel`` was set between two chunks
        """
        with self.read_stream(resource, command, cancel, mount_point) as chunks:
            for chunk in chunks:
                consumer(chunk)

    def run_write(self, resource: ResourceRef, producer: Iterable[bytes],
                  command: Optional[Sequence[str]] = None,
                  cancel: Optional[threading.Event] = None,
                  mount_point: str = HELPER_DATA_PATH) -> None:
        """
        Feed ``producer`` into the stdin of ``command`` (default: tar extract).

        Raises:
            TransferFailed: Exec exited non-zero or the stream broke
            TransferCancelled: ``cancel`` was set between two chunks
        """
        with self.helper(resource, HelperPurpose.WRITE, mount_point, cancel=cancel) as helper:
            self.exec_stdin(helper, command or extract_command(mount_point), producer, cancel)

    def run_command(self, resource: ResourceRef, command: Sequence[str],
                    mount_point: str = HELPER_DATA_PATH, read_only: bool = True,
                    check: bool = True) -> Tuple[int, bytes]:
        """Run a short, non-streaming command against ``resource``."""
        purpose = HelperPurpose.READ if read_only else HelperPurpose.WRITE
        with self.helper(resource, purpose, mount_point) as helper:
            return self.exec_command(helper, command, check=check)

    @contextmanager
    def read_stream(self, resource: ResourceRef, command: Optional[Sequence[str]] = None,
                    cancel: Optional[threading.Event] = None,
                    mount_point: str = HELPER_DATA_PATH) -> Iterator[Iterator[bytes]]:
        """
        Yield an iterator over the stdout chunks of ``command``.

        The iterator raises :class:`TransferFailed` after the last chunk if
        the command failed, so a consumer never mistakes a truncated stream
        for a complete one.
        """
        with self.helper(resource, HelperPurpose.READ, mount_point,
                         read_only=True, cancel=cancel) as helper:
            chunks = self.exec_output(helper, command or archive_command(mount_point), cancel)
            try:
                yield chunks
            finally:
                chunks.close()

    @contextmanager
    def helper(self, resource: ResourceRef, purpose: HelperPurpose,
               mount_point: str = HELPER_DATA_PATH, read_only: bool = False,
               cancel: Optional[threading.Event] = None) -> Iterator[HelperContainer]:
        """
        Acquire a running helper with ``resource`` mounted at ``mount_point``.

        The helper is removed when the block exits, however it exits.
        """
        if cancel is not None and cancel.is_set():
            raise TransferCancelled("Cancelled before helper creation",
                                    resource=resource, phase=purpose.value)

        self.ensure_image()
        name = f"{HELPER_NAME_PREFIX}{uuid4()}"
        labels = self.labels(purpose)
        mount = Mount(
            target=mount_point,
            source=resource.identifier,
            type=self._mount_type(resource),
            read_only=read_only,
        )

        logger.debug(f"Creating helper {name} for {resource}",
                     extra={'helper': name, 'resource': str(resource), 'purpose': purpose.value})
        with docker_errors(resource, purpose.value, api_error=TransferFailed):
            container = self.client.containers.create(
                self.image,
                command=HELPER_IDLE_COMMAND,
                name=name,
                labels=labels,
                mounts=[mount],
                detach=True,
            )
        try:
            with docker_errors(resource, purpose.value, api_error=TransferFailed):
                container.start()
            yield HelperContainer(
                id=container.id,
                name=name,
                purpose=purpose,
                mounted_resource=resource,
                labels=labels,
            )
        finally:
            self.remove(container.id, name)

    def labels(self, purpose: HelperPurpose) -> dict:
        return {
            MANAGED_LABEL: MANAGED_VALUE,
            PID_LABEL: str(self.pid),
            PURPOSE_LABEL: purpose.value,
        }

    def remove(self, container_id: str, name: Optional[str] = None) -> bool:
        """
        Force-remove a helper; an already removed helper counts as success.

        Failures are logged, never raised: a leaked helper is the janitor's
        concern and must not mask the transfer result.
        """
        display = name or container_id[:12]
        try:
            self.client.api.remove_container(container_id, force=True, v=False)
            logger.debug(f"Removed helper {display}", extra={'helper': display})
            return True
        except NotFound:
            return True
        except (DockerException, OSError) as e:
            logger.warning(f"Failed to remove helper {display}: {e}",
                           extra={'helper': display})
            return False

    def ensure_image(self) -> None:
        """Pull the helper image once if the daemon does not have it."""
        if self._image_ready:
            return
        with self._image_lock:
            if self._image_ready:
                return
            with docker_errors(self.image, "pull", api_error=TransferFailed):
                try:
                    self.client.images.get(self.image)
                except NotFound:
                    logger.info(f"Pulling helper image {self.image}")
                    self.client.images.pull(self.image)
            self._image_ready = True

    # --------------- Exec primitives ---------------

    def exec_output(self, helper: HelperContainer, command: Sequence[str],
                    cancel: Optional[threading.Event] = None) -> Iterator[bytes]:
        """Generator over the stdout of ``command``; validates the exit code at the end."""
        resource = helper.mounted_resource
        with docker_errors(resource, helper.purpose.value, api_error=TransferFailed):
            exec_id = self.client.api.exec_create(
                helper.id, list(command), stdout=True, stderr=True
            )['Id']
            stream = self.client.api.exec_start(exec_id, stream=True, demux=True)

        stderr: List[bytes] = []
        iterator = iter(stream)
        total = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise TransferCancelled("Cancelled while reading",
                                        resource=resource, phase=helper.purpose.value)
            try:
                out, err = next(iterator)
            except StopIteration:
                break
            except (DockerException, OSError) as e:
                raise TransferFailed(f"Stream from helper broke: {e}",
                                     resource=resource, phase=helper.purpose.value) from e
            if err:
                stderr.append(err)
            if out:
                total += len(out)
                yield out

        self._check_exit(helper, exec_id, command, b''.join(stderr))
        logger.debug(f"Read {total} bytes from {resource}",
                     extra={'helper': helper.name, 'bytes': total})

    def exec_stdin(self, helper: HelperContainer, command: Sequence[str],
                   producer: Iterable[bytes],
                   cancel: Optional[threading.Event] = None) -> None:
        """Stream ``producer`` into the stdin of ``command`` and wait for it to succeed."""
        resource = helper.mounted_resource
        with docker_errors(resource, helper.purpose.value, api_error=TransferFailed):
            exec_id = self.client.api.exec_create(
                helper.id, list(command), stdin=True, stdout=True, stderr=True
            )['Id']
            sock = self.client.api.exec_start(exec_id, socket=True)

        raw = getattr(sock, '_sock', sock)
        total = 0
        completed = False
        try:
            for chunk in producer:
                if cancel is not None and cancel.is_set():
                    raise TransferCancelled("Cancelled while writing",
                                            resource=resource, phase=helper.purpose.value)
                if not chunk:
                    continue
                try:
                    raw.sendall(chunk)
                except OSError as e:
                    raise TransferFailed(f"Stream into helper broke: {e}",
                                         resource=resource, phase=helper.purpose.value) from e
                total += len(chunk)

            try:
                raw.shutdown(socket.SHUT_WR)
                stderr = b''.join(
                    data for stream_id, data in frames_iter(raw, tty=False)
                    if stream_id == STDERR
                )
            except OSError as e:
                raise TransferFailed(f"Stream into helper broke: {e}",
                                     resource=resource, phase=helper.purpose.value) from e
            completed = True
        finally:
            sock.close()
            if not completed:
                self._settle(helper, exec_id)

        self._check_exit(helper, exec_id, command, stderr)
        logger.debug(f"Wrote {total} bytes to {resource}",
                     extra={'helper': helper.name, 'bytes': total})

    def exec_command(self, helper: HelperContainer, command: Sequence[str],
                     check: bool = True) -> Tuple[int, bytes]:
        """Run ``command`` to completion; returns ``(exit_code, stdout)``."""
        resource = helper.mounted_resource
        with docker_errors(resource, helper.purpose.value, api_error=TransferFailed):
            exec_id = self.client.api.exec_create(
                helper.id, list(command), stdout=True, stderr=True
            )['Id']
            stdout, stderr = self.client.api.exec_start(exec_id, demux=True)
        exit_code = self._wait_exit(helper, exec_id)
        if check and exit_code != 0:
            raise TransferFailed(
                f"'{' '.join(command)}' exited with {exit_code}: "
                f"{(stderr or b'').decode(errors='replace').strip()}",
                resource=resource, phase=helper.purpose.value,
                exit_code=exit_code, stderr=(stderr or b'').decode(errors='replace'),
            )
        return exit_code, stdout or b''

    # --------------- Internals ---------------

    def _check_exit(self, helper: HelperContainer, exec_id: str,
                    command: Sequence[str], stderr: bytes) -> None:
        exit_code = self._wait_exit(helper, exec_id)
        message = stderr.decode(errors='replace').strip()
        if exit_code != 0:
            logger.error(f"[{helper.name}] {message}",
                         extra={'helper': helper.name, 'exit_code': exit_code})
            raise TransferFailed(
                f"'{' '.join(command)}' exited with {exit_code}: {message}",
                resource=helper.mounted_resource, phase=helper.purpose.value,
                exit_code=exit_code, stderr=message,
            )
        if message:
            logger.debug(f"[{helper.name}] {message}", extra={'helper': helper.name})

    def _settle(self, helper: HelperContainer, exec_id: str) -> None:
        """Wait for an exec whose stdin was cut off, so its writes are done."""
        try:
            code = self._wait_exit(helper, exec_id)
            logger.debug(f"[{helper.name}] interrupted exec exited with {code}",
                         extra={'helper': helper.name, 'exit_code': code})
        except DockyardError as e:
            logger.warning(f"[{helper.name}] interrupted exec did not settle: {e}",
                           extra={'helper': helper.name})

    def _wait_exit(self, helper: HelperContainer, exec_id: str) -> int:
        """Poll the exec until the daemon reports its exit code."""
        deadline = time.monotonic() + self.exec_timeout
        while True:
            with docker_errors(helper.mounted_resource, helper.purpose.value,
                               api_error=TransferFailed):
                info = self.client.api.exec_inspect(exec_id)
            if not info.get('Running') and info.get('ExitCode') is not None:
                return int(info['ExitCode'])
            if time.monotonic() >= deadline:
                raise TransferFailed(
                    f"Exec did not finish within {self.exec_timeout}s",
                    resource=helper.mounted_resource, phase=helper.purpose.value,
                )
            time.sleep(EXEC_POLL_INTERVAL)

    @staticmethod
    def _mount_type(resource: ResourceRef) -> str:
        if resource.kind == ResourceKind.VOLUME:
            return 'volume'
        if resource.kind in (ResourceKind.BIND, ResourceKind.DIRECTORY):
            return 'bind'
        raise ValueError(f"{resource} cannot be mounted into a helper container")
