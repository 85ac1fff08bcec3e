"""Core backup/restore engine of Dockyard."""

from .addressing import ArchiveClock, archive_path, sanitize_path
from .descriptor import ContainerSnapshot, MountRecord
from .destination import Destination, DirectoryDestination, VolumeDestination, open_destination
from .helper_runner import HelperRunner
from .janitor import Janitor
from .mount_resolver import MountResolver
from .runtime import create_client
from .scheduler import Scheduler
from .snapshot_manager import SnapshotManager
from .transfer_engine import TransferEngine

__all__ = [
    'ArchiveClock',
    'archive_path',
    'sanitize_path',
    'ContainerSnapshot',
    'MountRecord',
    'Destination',
    'DirectoryDestination',
    'VolumeDestination',
    'open_destination',
    'HelperRunner',
    'Janitor',
    'MountResolver',
    'create_client',
    'Scheduler',
    'SnapshotManager',
    'TransferEngine',
]
