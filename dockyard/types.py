################################################################################
# DOCKYARD
#
# @file:        types.py
# @module:      dockyard.types
# @description: Shared data models for resources, mounts, archives and helpers.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - ResourceRef is the immutable identity used for addressing and logging
# - MountDescriptor and ArchiveEntry are frozen once produced
# - ScheduleState.in_flight is the only mutable shared state
################################################################################

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Set


# ---- Resource identities ----

class ResourceKind(str, Enum):
    VOLUME = "volume"
    BIND = "bind"
    DIRECTORY = "directory"
    CONTAINER = "container"


@dataclass(frozen=True)
class ResourceRef:
    """Identity of a backup subject: ``Volume(name)``, ``Bind(host path)``, ..."""

    kind: ResourceKind
    identifier: str

    @classmethod
    def volume(cls, name: str) -> "ResourceRef":
        return cls(ResourceKind.VOLUME, name)

    @classmethod
    def bind(cls, host_path: str) -> "ResourceRef":
        return cls(ResourceKind.BIND, host_path)

    @classmethod
    def directory(cls, path: str) -> "ResourceRef":
        return cls(ResourceKind.DIRECTORY, path)

    @classmethod
    def container(cls, name: str) -> "ResourceRef":
        return cls(ResourceKind.CONTAINER, name)

    @property
    def is_runtime_mount(self) -> bool:
        """True for resources only reachable through a helper container."""
        return self.kind in (ResourceKind.VOLUME, ResourceKind.BIND)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


# ---- Mounts ----

class MountKind(str, Enum):
    VOLUME = "volume"
    BIND = "bind"


@dataclass(frozen=True)
class MountDescriptor:
    """One mount of a container as captured by the mount resolver."""

    kind: MountKind
    source: str          # volume name or host path
    destination: str     # mount point inside the container
    read_only: bool = False
    name: str = ""       # stable archive name

    @property
    def resource(self) -> ResourceRef:
        if self.kind == MountKind.VOLUME:
            return ResourceRef.volume(self.source)
        return ResourceRef.bind(self.source)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name} -> {self.destination}"


# ---- Destinations & archives ----

class DestinationKind(str, Enum):
    DIRECTORY = "directory"
    VOLUME = "volume"


@dataclass(frozen=True)
class OutputDestinationRef:
    """Where archives live: a local directory or a named volume."""

    kind: DestinationKind
    location: str            # directory path or volume name
    relative_root: str = ""  # prefix below the location

    @classmethod
    def directory(cls, path: str, relative_root: str = "") -> "OutputDestinationRef":
        return cls(DestinationKind.DIRECTORY, path, relative_root)

    @classmethod
    def volume(cls, name: str, relative_root: str = "") -> "OutputDestinationRef":
        return cls(DestinationKind.VOLUME, name, relative_root)

    def __str__(self) -> str:
        root = f"/{self.relative_root}" if self.relative_root else ""
        return f"{self.kind.value}:{self.location}{root}"


@dataclass(frozen=True)
class ArchiveEntry:
    """One immutable, timestamped archive of a single resource."""

    resource: ResourceRef
    created_at: datetime
    relative_path: str
    destination: OutputDestinationRef

    def __str__(self) -> str:
        return f"{self.destination}/{self.relative_path}"


# ---- Helper containers ----

class HelperPurpose(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass
class HelperContainer:
    id: str
    name: str
    purpose: HelperPurpose
    mounted_resource: ResourceRef
    labels: Dict[str, str] = field(default_factory=dict)


# ---- Scheduler state ----

@dataclass
class ScheduleState:
    """Process-lifetime watch loop state; ``in_flight`` is guarded by ``lock``."""

    cron_expr: str
    excluded_containers: Set[str] = field(default_factory=set)
    excluded_volumes: Set[str] = field(default_factory=set)
    in_flight: Set[str] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    last_tick: Optional[datetime] = None

    def try_admit(self, container: str) -> bool:
        """Mark ``container`` in flight; False if it already is."""
        with self.lock:
            if container in self.in_flight:
                return False
            self.in_flight.add(container)
            return True

    def release(self, container: str) -> None:
        with self.lock:
            self.in_flight.discard(container)

    def snapshot_in_flight(self) -> Set[str]:
        with self.lock:
            return set(self.in_flight)
