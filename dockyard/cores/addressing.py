################################################################################
# DOCKYARD
#
# @file:        addressing.py
# @module:      dockyard.cores.addressing
# @description: Maps resource identities and timestamps to archive paths.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Archive addressing.

Layout below a destination root::

    volumes/<volume-name>/<timestamp>.tgz
    binds/<sanitized-destination>/<timestamp>.tgz
    containers/<container-name>/<timestamp>.json
    directories/<sanitized-path>/<timestamp>.tgz

Timestamps are ISO 8601 in UTC with microseconds. They are the only version
key, so :class:`ArchiveClock` hands out strictly increasing values per
resource.
"""

from __future__ import annotations

import posixpath
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..helpers.constants import (
    ARCHIVE_SUFFIX,
    BIND_BACKUP_DIR,
    CONTAINER_BACKUP_DIR,
    DESCRIPTOR_SUFFIX,
    DIRECTORY_BACKUP_DIR,
    PARTIAL_PREFIX,
    PARTIAL_SUFFIX,
    VOLUME_BACKUP_DIR,
)
from ..types import MountDescriptor, MountKind, ResourceKind, ResourceRef

_ONE_TICK = timedelta(microseconds=1)


def sanitize_path(path: str) -> str:
    """
    Turn an absolute path into a single filesystem-safe name.

    ``/data`` -> ``_data``, ``/var/lib/app`` -> ``_var_lib_app``.
    """
    normalized = posixpath.normpath(path) if path else "/"
    return normalized.replace("/", "_")


def mount_name(mount_kind: MountKind, source: str, destination: str) -> str:
    """Stable archive name: the volume name, or the sanitized in-container path."""
    if mount_kind == MountKind.VOLUME:
        return source
    return sanitize_path(destination)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def archive_directory(resource: ResourceRef, name: Optional[str] = None) -> str:
    """Directory (relative to the root) that holds every archive of ``resource``."""
    if resource.kind == ResourceKind.VOLUME:
        return posixpath.join(VOLUME_BACKUP_DIR, name or resource.identifier)
    if resource.kind == ResourceKind.BIND:
        if not name:
            raise ValueError("Bind archives are addressed by their in-container destination")
        return posixpath.join(BIND_BACKUP_DIR, name)
    if resource.kind == ResourceKind.CONTAINER:
        return posixpath.join(CONTAINER_BACKUP_DIR, name or resource.identifier)
    return posixpath.join(DIRECTORY_BACKUP_DIR, name or sanitize_path(resource.identifier))


def archive_path(resource: ResourceRef, created_at: datetime, name: Optional[str] = None) -> str:
    """Relative path of one archive (``.tgz``) or descriptor (``.json``)."""
    suffix = DESCRIPTOR_SUFFIX if resource.kind == ResourceKind.CONTAINER else ARCHIVE_SUFFIX
    return posixpath.join(archive_directory(resource, name), format_timestamp(created_at) + suffix)


def mount_archive_path(mount: MountDescriptor, created_at: datetime) -> str:
    return archive_path(mount.resource, created_at, name=mount.name)


def partial_path(relative_path: str) -> str:
    """Temporary sibling used while an archive is being written."""
    head, tail = posixpath.split(relative_path)
    return posixpath.join(head, f"{PARTIAL_PREFIX}{tail}{PARTIAL_SUFFIX}")


def is_partial(relative_path: str) -> bool:
    tail = posixpath.basename(relative_path)
    return tail.startswith(PARTIAL_PREFIX) and tail.endswith(PARTIAL_SUFFIX)


def timestamp_from_path(relative_path: str) -> datetime:
    """Recover the version key from an archive or descriptor path."""
    tail = posixpath.basename(relative_path)
    for suffix in (ARCHIVE_SUFFIX, DESCRIPTOR_SUFFIX):
        if tail.endswith(suffix):
            tail = tail[:-len(suffix)]
            break
    return parse_timestamp(tail)


class ArchiveClock:
    """
    Issues strictly increasing UTC timestamps per archive directory.

    Two backups of the same resource inside one process never share a key,
    even if the wall clock stalls or steps backwards.
    """

    def __init__(self, now: Optional[Callable[[], datetime]] = None):
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._last: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def next(self, key: str) -> datetime:
        with self._lock:
            moment = self._now().astimezone(timezone.utc)
            last = self._last.get(key)
            if last is not None and moment <= last:
                moment = last + _ONE_TICK
            self._last[key] = moment
            return moment
