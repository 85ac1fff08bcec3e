################################################################################
# DOCKYARD
#
# @file:        descriptor.py
# @module:      dockyard.cores.descriptor
# @description: Versioned container descriptor (pydantic model + JSON schema).
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Container snapshot descriptor.

The descriptor is the only persisted record of a container's configuration.
It is a closed format: unknown fields and unknown versions are rejected, so
an old Dockyard never half-restores a descriptor written by a newer one.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..exceptions import DescriptorError
from ..helpers.constants import DESCRIPTOR_VERSION, SUPPORTED_DESCRIPTOR_VERSIONS
from ..types import MountDescriptor, MountKind


DESCRIPTOR_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Dockyard container descriptor",
    "type": "object",
    "additionalProperties": False,
    "required": ["version", "name", "image", "env", "command", "mounts"],
    "properties": {
        "version": {"enum": list(SUPPORTED_DESCRIPTOR_VERSIONS)},
        "name": {"type": "string", "minLength": 1},
        "image": {"type": "string", "minLength": 1},
        "env": {"type": "array", "items": {"type": "string"}},
        "command": {"type": "array", "items": {"type": "string"}},
        "entrypoint": {"type": ["array", "null"], "items": {"type": "string"}},
        "network": {"type": ["string", "null"]},
        "workingDir": {"type": ["string", "null"]},
        "labels": {"type": "object", "additionalProperties": {"type": "string"}},
        "createdAt": {"type": ["string", "null"], "format": "date-time"},
        "hostname": {"type": ["string", "null"]},
        "user": {"type": ["string", "null"]},
        "exposedPorts": {"type": "array", "items": {"type": "string"}},
        "portBindings": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "hostIp": {"type": "string"},
                        "hostPort": {"type": "string"},
                    },
                },
            },
        },
        "restartPolicy": {
            "type": ["object", "null"],
            "additionalProperties": False,
            "required": ["name"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "maximumRetryCount": {"type": "integer", "minimum": 0},
            },
        },
        "privileged": {"type": "boolean"},
        "capAdd": {"type": "array", "items": {"type": "string"}},
        "capDrop": {"type": "array", "items": {"type": "string"}},
        "tmpfs": {"type": "object", "additionalProperties": {"type": "string"}},
        "mounts": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["kind", "destination", "archiveRelativePath", "source", "name"],
                "properties": {
                    "kind": {"enum": ["volume", "bind"]},
                    "destination": {"type": "string", "minLength": 1},
                    "archiveRelativePath": {"type": "string", "minLength": 1},
                    "source": {"type": "string", "minLength": 1},
                    "name": {"type": "string", "minLength": 1},
                    "readOnly": {"type": "boolean"},
                },
            },
        },
        "unarchivedMounts": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["kind", "destination"],
                "properties": {
                    "kind": {"enum": ["volume", "bind", "tmpfs"]},
                    "destination": {"type": "string", "minLength": 1},
                    "source": {"type": ["string", "null"]},
                    "readOnly": {"type": "boolean"},
                },
            },
        },
    },
}


class MountRecord(BaseModel):
    """One mount of the snapshot and the archive holding its data."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    kind: Literal["volume", "bind"]
    destination: str
    archive_relative_path: str = Field(..., alias="archiveRelativePath")
    source: str
    name: str
    read_only: bool = Field(default=False, alias="readOnly")

    @classmethod
    def from_mount(cls, mount: MountDescriptor, archive_relative_path: str) -> "MountRecord":
        return cls(
            kind=mount.kind.value,
            destination=mount.destination,
            archive_relative_path=archive_relative_path,
            source=mount.source,
            name=mount.name,
            read_only=mount.read_only,
        )

    def to_mount(self) -> MountDescriptor:
        return MountDescriptor(
            kind=MountKind(self.kind),
            source=self.source,
            destination=self.destination,
            read_only=self.read_only,
            name=self.name,
        )


class UnarchivedMount(BaseModel):
    """
    A mount recreated on restore without data: excluded volumes, the Docker
    socket, network volumes and tmpfs.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    kind: Literal["volume", "bind", "tmpfs"]
    destination: str
    source: Optional[str] = None
    read_only: bool = Field(default=False, alias="readOnly")

    @classmethod
    def from_inspect_mount(cls, raw: Dict[str, Any]) -> Optional["UnarchivedMount"]:
        """Build from one ``Mounts`` entry; None for mount types Docker cannot recreate."""
        kind = raw.get("Type")
        if kind == "volume":
            source = raw.get("Name") or None
        elif kind == "bind":
            source = raw.get("Source") or None
        elif kind == "tmpfs":
            source = None
        else:
            return None
        if kind != "tmpfs" and source is None:
            return None
        return cls(kind=kind, destination=raw.get("Destination", ""), source=source,
                   read_only=not raw.get("RW", True))


class PortBinding(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    host_ip: str = Field(default="", alias="hostIp")
    host_port: str = Field(default="", alias="hostPort")


class RestartPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: str
    maximum_retry_count: int = Field(default=0, alias="maximumRetryCount")


class ContainerSnapshot(BaseModel):
    """Everything needed to recreate a container, plus where its data lives."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    version: Literal[1, 2] = DESCRIPTOR_VERSION
    name: str
    image: str
    env: List[str] = Field(default_factory=list)
    command: List[str] = Field(default_factory=list)
    entrypoint: Optional[List[str]] = None
    network: Optional[str] = None
    working_dir: Optional[str] = Field(default=None, alias="workingDir")
    labels: Dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    hostname: Optional[str] = None
    user: Optional[str] = None
    exposed_ports: List[str] = Field(default_factory=list, alias="exposedPorts")
    port_bindings: Dict[str, List[PortBinding]] = Field(default_factory=dict,
                                                        alias="portBindings")
    restart_policy: Optional[RestartPolicy] = Field(default=None, alias="restartPolicy")
    privileged: bool = False
    cap_add: List[str] = Field(default_factory=list, alias="capAdd")
    cap_drop: List[str] = Field(default_factory=list, alias="capDrop")
    tmpfs: Dict[str, str] = Field(default_factory=dict)
    mounts: List[MountRecord] = Field(default_factory=list)
    unarchived_mounts: List[UnarchivedMount] = Field(default_factory=list,
                                                     alias="unarchivedMounts")

    @field_validator("name", "image")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @classmethod
    def from_inspect(cls, data: Dict[str, Any], mounts: List[MountRecord],
                     created_at: Optional[datetime] = None) -> "ContainerSnapshot":
        """
        Capture the recreatable part of a ``docker inspect`` payload.

        Every configured mount not listed in ``mounts`` is kept as an
        unarchived mount, so the restored container has the same mount
        points as the original.
        """
        config = data.get("Config") or {}
        host_config = data.get("HostConfig") or {}
        network = host_config.get("NetworkMode") or None
        if network == "default":
            network = None

        # Docker defaults the hostname to the short container id
        hostname = config.get("Hostname") or None
        if hostname and hostname == data.get("Id", "")[:12]:
            hostname = None

        restart = host_config.get("RestartPolicy") or {}
        restart_policy = None
        if restart.get("Name") and restart["Name"] != "no":
            restart_policy = RestartPolicy(
                name=restart["Name"],
                maximum_retry_count=restart.get("MaximumRetryCount") or 0,
            )

        port_bindings = {
            port: [PortBinding(host_ip=b.get("HostIp") or "", host_port=b.get("HostPort") or "")
                   for b in bindings]
            for port, bindings in (host_config.get("PortBindings") or {}).items()
            if bindings
        }

        tmpfs = dict(host_config.get("Tmpfs") or {})
        archived = {record.destination for record in mounts}
        unarchived = []
        for raw in data.get("Mounts") or []:
            destination = raw.get("Destination")
            if destination in archived or destination in tmpfs:
                continue
            mount = UnarchivedMount.from_inspect_mount(raw)
            if mount is not None:
                unarchived.append(mount)

        return cls(
            name=data.get("Name", "").lstrip("/"),
            image=config.get("Image") or data.get("Image", ""),
            env=list(config.get("Env") or []),
            command=list(config.get("Cmd") or []),
            entrypoint=list(config["Entrypoint"]) if config.get("Entrypoint") else None,
            network=network,
            working_dir=config.get("WorkingDir") or None,
            labels=dict(config.get("Labels") or {}),
            created_at=created_at,
            hostname=hostname,
            user=config.get("User") or None,
            exposed_ports=sorted(config.get("ExposedPorts") or {}),
            port_bindings=port_bindings,
            restart_policy=restart_policy,
            privileged=bool(host_config.get("Privileged")),
            cap_add=list(host_config.get("CapAdd") or []),
            cap_drop=list(host_config.get("CapDrop") or []),
            tmpfs=tmpfs,
            mounts=mounts,
            unarchived_mounts=unarchived,
        )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def validate_document(document: Any) -> None:
    """
    Check a parsed descriptor against :data:`DESCRIPTOR_SCHEMA`.

    Raises:
        DescriptorError: With the path of the first violation
    """
    try:
        jsonschema.validate(document, DESCRIPTOR_SCHEMA)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise DescriptorError(f"Invalid descriptor at {location}: {e.message}",
                              phase="descriptor") from e


def dump_snapshot(snapshot: ContainerSnapshot) -> bytes:
    document = snapshot.to_document()
    validate_document(document)
    return json.dumps(document, indent=2, sort_keys=True).encode("utf-8")


def load_snapshot_bytes(data: bytes, source: Any = None) -> ContainerSnapshot:
    """
    Parse and validate descriptor bytes.

    Raises:
        DescriptorError: Not JSON, wrong version or shape
    """
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DescriptorError(f"Descriptor is not valid JSON: {e}",
                              resource=source, phase="descriptor") from e
    validate_document(document)
    try:
        return ContainerSnapshot.model_validate(document)
    except ValidationError as e:
        raise DescriptorError(f"Invalid descriptor: {e}", resource=source,
                              phase="descriptor") from e
