#!/usr/bin/env python3
################################################################################
# DOCKYARD
#
# @file:        config.py
# @module:      dockyard.helpers.config
# @description: INI configuration loading, defaults and atomic persistence.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Configuration management for Dockyard.

Handles loading, validation, and access to configuration settings. Every
option has a built-in default, so a missing config file is not an error.
"""

from __future__ import annotations

import configparser
import os
import tempfile
from pathlib import Path
from typing import Optional, List, Dict, Any

from .constants import (
    DEFAULT_CONFIG_PATHS,
    DEFAULT_CRON,
    DEFAULT_HELPER_IMAGE,
    DEFAULT_MOUNT_WORKERS,
    DOCKER_API_TIMEOUT,
    MAX_MOUNT_WORKERS,
)
from .logging import get_logger

logger = get_logger(__name__)


class Config:
    """
    Configuration manager for Dockyard.

    Loads configuration from an INI file on top of the built-in defaults.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Optional path to config file
        """
        # Interpolation off: cron expressions and paths may contain '%'
        self._config = configparser.ConfigParser(interpolation=None)
        self._config.read_dict(self._get_default_config())

        self.config_file = self._find_config_file(config_path)
        if self.config_file is not None and self.config_file.exists():
            self._load_config()

    # --------------- Properties ---------------

    @property
    def docker_base_url(self) -> Optional[str]:
        """Docker daemon URL; empty means the SDK environment defaults."""
        return self.get('docker', 'base_url') or None

    @property
    def docker_timeout(self) -> int:
        return self.getint('docker', 'timeout', DOCKER_API_TIMEOUT)

    @property
    def helper_image(self) -> str:
        return self.get('docker', 'helper_image') or DEFAULT_HELPER_IMAGE

    @property
    def mount_workers(self) -> int:
        """Concurrent mount transfers inside one container backup."""
        return self.getint('backup', 'mount_workers', DEFAULT_MOUNT_WORKERS)

    @property
    def container_workers(self) -> int:
        """Concurrent container backups dispatched by the watch loop."""
        value = self.get('backup', 'container_workers', 'auto')
        if value == 'auto':
            from .system_utils import SystemUtils
            return SystemUtils.get_optimal_workers()
        return int(value)

    @property
    def cron(self) -> str:
        return self.get('watch', 'cron') or DEFAULT_CRON

    @property
    def exclude_containers(self) -> List[str]:
        return self.getlist('watch', 'exclude_containers')

    @property
    def exclude_volumes(self) -> List[str]:
        return self.getlist('watch', 'exclude_volumes')

    @property
    def log_colors(self) -> Optional[bool]:
        """Coloured console logging; ``None`` (``auto``) means only on a TTY."""
        value = self.get('logging', 'color', 'auto')
        if not value or value.strip().lower() == 'auto':
            return None
        return self.getboolean('logging', 'color', False)

    # --------------- Core Methods ---------------

    def get(self, section: str, option: str, fallback: Any = None) -> Any:
        """Get configuration value with fallback."""
        try:
            return self._config.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        """Get integer value; malformed values fall back with a warning."""
        value = self.get(section, option)
        if value is None or str(value).strip() == '':
            return fallback
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for [{section}] {option}: {value!r}, "
                           f"using {fallback}")
            return fallback

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        """Get boolean value (true/false, yes/no, on/off, 1/0)."""
        try:
            return self._config.getboolean(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getlist(self, section: str, option: str, fallback: Optional[List[str]] = None) -> List[str]:
        """Get a comma or newline separated list."""
        value = self.get(section, option)
        if not value:
            return list(fallback or [])
        items = value.replace('\n', ',').split(',')
        return [item.strip() for item in items if item.strip()]

    def as_dict(self) -> Dict[str, Dict[str, str]]:
        """Every section and option with its effective value."""
        return {section: dict(self._config.items(section))
                for section in self._config.sections()}

    def set(self, section: str, option: str, value: Any) -> None:
        """Set configuration value."""
        if not self._config.has_section(section):
            self._config.add_section(section)
        if isinstance(value, (list, tuple, set)):
            value = ','.join(str(v) for v in value)
        self._config.set(section, option, str(value))

    def save(self, path: Optional[Path] = None) -> Path:
        """Save configuration to file atomically with proper permissions."""
        target = Path(path) if path else self.config_file
        if target is None:
            target = DEFAULT_CONFIG_PATHS['user']
        target = target.expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)

        temp_fd, temp_path = tempfile.mkstemp(
            dir=target.parent,
            prefix='.dockyard-config-',
            suffix='.tmp'
        )
        try:
            with os.fdopen(temp_fd, 'w', encoding='utf-8') as f:
                self._config.write(f)
            os.replace(temp_path, target)
            os.chmod(target, 0o600)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            logger.error(f"Failed to save configuration to {target}")
            raise

        self.config_file = target
        logger.info(f"Configuration saved to {target}")
        return target

    def validate(self) -> List[str]:
        """
        Validate configuration values.

        Returns:
            List of error messages (empty if everything is OK)
        """
        errors = []

        workers = self.get('backup', 'mount_workers')
        try:
            if not 1 <= int(workers) <= MAX_MOUNT_WORKERS:
                errors.append(f"mount_workers out of range (1-{MAX_MOUNT_WORKERS}): {workers}")
        except (TypeError, ValueError):
            errors.append(f"mount_workers must be an integer: {workers}")

        container_workers = self.get('backup', 'container_workers', 'auto')
        if container_workers != 'auto':
            try:
                if int(container_workers) < 1:
                    errors.append(f"container_workers must be >= 1: {container_workers}")
            except ValueError:
                errors.append(
                    f"container_workers must be 'auto' or integer: {container_workers}")

        from croniter import croniter
        if not croniter.is_valid(self.cron):
            errors.append(f"Invalid cron expression: {self.cron}")

        color = (self.get('logging', 'color') or 'auto').strip().lower()
        if color != 'auto' and color not in configparser.ConfigParser.BOOLEAN_STATES:
            errors.append(f"color must be 'auto' or a boolean: {color}")

        return errors

    # --------------- Private Methods ---------------

    @staticmethod
    def _get_default_config() -> Dict[str, Dict[str, Any]]:
        """
        Get default configuration structure.

        Returns:
            Dictionary of default configuration sections and values
        """
        return {
            'docker': {
                'base_url': '',
                'timeout': str(DOCKER_API_TIMEOUT),
                'helper_image': DEFAULT_HELPER_IMAGE,
            },
            'backup': {
                'mount_workers': str(DEFAULT_MOUNT_WORKERS),
                'container_workers': 'auto',
            },
            'watch': {
                'cron': DEFAULT_CRON,
                'exclude_containers': '',
                'exclude_volumes': '',
            },
            'logging': {
                'level': 'INFO',
                'file': '',
                'color': 'auto',
            },
        }

    def _find_config_file(self, config_path: Optional[Path] = None) -> Optional[Path]:
        """
        Determine the configuration file path.

        An explicit path is respected even if it does not exist yet.
        """
        if config_path:
            return Path(config_path).expanduser().resolve()

        for location in (DEFAULT_CONFIG_PATHS['user'], DEFAULT_CONFIG_PATHS['root']):
            expanded = Path(location).expanduser()
            if expanded.exists():
                if os.access(expanded, os.R_OK):
                    logger.debug(f"Using config file: {expanded}")
                    return expanded
                logger.warning(f"Config file exists but not readable: {expanded}")

        return None

    def _load_config(self) -> None:
        """Load configuration from file with UTF-8 encoding."""
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                self._config.read_file(f)
            logger.debug(f"Configuration loaded from {self.config_file}")
        except (configparser.Error, UnicodeDecodeError) as e:
            logger.error(f"Failed to load configuration {self.config_file}: {e}")
            raise


def create_default_config(path: Optional[Path] = None, force: bool = False) -> Path:
    """
    Write a configuration file holding every default value.

    Args:
        path: Optional path where to create the config file
        force: Overwrite existing file if True

    Returns:
        Path to the config file
    """
    if path is None:
        path = DEFAULT_CONFIG_PATHS['root'] if os.geteuid() == 0 else DEFAULT_CONFIG_PATHS['user']
    path = Path(path).expanduser()

    if path.exists() and not force:
        logger.warning(f"Configuration file already exists at {path}")
        return path

    config = Config.__new__(Config)
    config._config = configparser.ConfigParser(interpolation=None)
    config._config.read_dict(Config._get_default_config())
    config.config_file = path
    return config.save(path)
