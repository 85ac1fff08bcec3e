################################################################################
# DOCKYARD
#
# @file:        exceptions.py
# @module:      dockyard.exceptions
# @description: Error taxonomy shared by every backup/restore component.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Exceptions raised by Dockyard.

Every error carries the resource it concerns and the phase it happened in
(``backup``/``restore``/``cleanup``/...), so a message alone is enough to
tell which mount of which container needs a retry.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple


class DockyardError(Exception):
    """Base class for all Dockyard errors."""

    def __init__(self, message: str, resource: Any = None, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.resource = resource
        self.phase = phase

    def __str__(self) -> str:
        parts = []
        if self.phase:
            parts.append(self.phase)
        if self.resource is not None:
            parts.append(str(self.resource))
        prefix = f"[{' '.join(parts)}] " if parts else ""
        return f"{prefix}{self.message}"


class ConfigurationError(DockyardError):
    """Invalid configuration or command-line input."""


class ResourceNotFound(DockyardError):
    """Referenced container, volume, path or archive does not exist."""


class RuntimeUnavailable(DockyardError):
    """The Docker daemon could not be reached."""


class TransferFailed(DockyardError):
    """A helper exec exited non-zero or a byte stream broke."""

    def __init__(self, message: str, resource: Any = None, phase: Optional[str] = None,
                 exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message, resource=resource, phase=phase)
        self.exit_code = exit_code
        self.stderr = stderr


class TransferCancelled(TransferFailed):
    """A transfer stopped at a chunk boundary because cancellation was requested."""


class DescriptorError(DockyardError):
    """A container descriptor is malformed or has an unsupported version."""


class PartialBackupFailure(DockyardError):
    """
    One or more mount backups of a container failed.

    Attributes:
        failures: ``(mount, exception)`` pairs for every failed mount
        completed: archive entries that were committed and remain valid
    """

    def __init__(self, message: str, resource: Any = None,
                 failures: Sequence[Tuple[Any, BaseException]] = (),
                 completed: Sequence[Any] = ()):
        super().__init__(message, resource=resource, phase="backup")
        self.failures: List[Tuple[Any, BaseException]] = list(failures)
        self.completed: List[Any] = list(completed)


class RestoreFailed(DockyardError):
    """A container restore failed; the partially created container was removed."""

    def __init__(self, message: str, resource: Any = None, mount: Any = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, resource=resource, phase="restore")
        self.mount = mount
        self.cause = cause
