################################################################################
# DOCKYARD
#
# @file:        constants.py
# @module:      dockyard.helpers.constants
# @description: Shared constants: labels, layout directories, defaults.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Constants used throughout Dockyard.

This module defines all constant values used across different modules
to ensure consistency and ease of maintenance.
"""

from pathlib import Path

# Version information
VERSION = "0.2.0"

# Default paths
DEFAULT_CONFIG_PATHS = {
    'root': Path('/etc/dockyard.conf'),
    'user': Path.home() / '.config' / 'dockyard' / 'config.conf'
}

# Docker labels
LABEL_PREFIX = 'com.github.dockyard'
MANAGED_LABEL = f'{LABEL_PREFIX}.managed-by'
MANAGED_VALUE = 'dockyard'
PID_LABEL = f'{LABEL_PREFIX}.pid'
PURPOSE_LABEL = f'{LABEL_PREFIX}.purpose'
ENABLED_LABEL = f'{LABEL_PREFIX}.enabled'

# Archive layout below the destination root
VOLUME_BACKUP_DIR = 'volumes'
BIND_BACKUP_DIR = 'binds'
CONTAINER_BACKUP_DIR = 'containers'
DIRECTORY_BACKUP_DIR = 'directories'
ARCHIVE_SUFFIX = '.tgz'
DESCRIPTOR_SUFFIX = '.json'
PARTIAL_PREFIX = '.'
PARTIAL_SUFFIX = '.partial'

# Helper containers
DEFAULT_HELPER_IMAGE = 'alpine:3.20'
HELPER_NAME_PREFIX = 'dockyard_'
HELPER_DATA_PATH = '/volume'
HELPER_BACKUP_PATH = '/backup'
HELPER_IDLE_COMMAND = ['tail', '-f', '/dev/null']
STREAM_CHUNK_SIZE = 64 * 1024

# Mounts that are never backed up
DOCKER_SOCKET_PATH = '/var/run/docker.sock'
NETWORK_VOLUME_TYPES = ('nfs', 'nfs4')

# Descriptor format
DESCRIPTOR_VERSION = 2
SUPPORTED_DESCRIPTOR_VERSIONS = (1, 2)

# Scheduling
DEFAULT_CRON = '0 0 * * *'
DEFAULT_MOUNT_WORKERS = 2
MAX_MOUNT_WORKERS = 8

RAM_WORKER_THRESHOLDS = [
    (2, 1),    # <= 2GB: 1 worker
    (4, 2),    # <= 4GB: 2 workers
    (8, 4),    # <= 8GB: 4 workers
    (float('inf'), 6)  # > 8GB: 6 workers
]

# Timeouts (in seconds)
DOCKER_API_TIMEOUT = 120
EXEC_POLL_INTERVAL = 0.2

# Logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
