################################################################################
# DOCKYARD
#
# @file:        __init__.py
# @module:      dockyard
# @description: Exposes version, logging and the core engine for package consumers.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Dockyard: backup and restore for Docker containers, volumes and bind mounts.

Volume and bind data is streamed through short-lived helper containers into
timestamped ``.tgz`` archives; a JSON descriptor per container backup holds
everything needed to recreate the container.
"""

from .helpers.constants import VERSION

__version__ = VERSION

from .helpers.logging import get_logger, log_manager, setup_logging
from .helpers.config import Config
from .exceptions import (
    DockyardError,
    PartialBackupFailure,
    ResourceNotFound,
    RestoreFailed,
    RuntimeUnavailable,
    TransferFailed,
)
from .types import OutputDestinationRef, ResourceRef
from .cores import (
    HelperRunner,
    Janitor,
    MountResolver,
    Scheduler,
    SnapshotManager,
    TransferEngine,
    open_destination,
)

__all__ = [
    "VERSION",
    "Config",
    "DockyardError",
    "PartialBackupFailure",
    "ResourceNotFound",
    "RestoreFailed",
    "RuntimeUnavailable",
    "TransferFailed",
    "OutputDestinationRef",
    "ResourceRef",
    "HelperRunner",
    "Janitor",
    "MountResolver",
    "Scheduler",
    "SnapshotManager",
    "TransferEngine",
    "open_destination",
    "get_logger",
    "log_manager",
    "setup_logging",
]
