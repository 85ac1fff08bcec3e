################################################################################
# DOCKYARD
#
# @file:        logging.py
# @module:      dockyard.helpers.logging
# @description: Logger factory, structured formatter and central log manager.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Logging utilities for Dockyard.

Every module obtains its logger through :func:`get_logger`. Operational log
lines carry context via ``extra={...}`` (container, mount, phase, ...);
:class:`StructuredFormatter` appends those fields to the rendered message so
a partial backup can be diagnosed from the log alone.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from .constants import LOG_FORMAT, LOG_DATE_FORMAT

# Attributes every LogRecord has; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord(
    'x', logging.INFO, __file__, 0, '', None, None
))) | {'message', 'asctime'}


class Colors:
    """ANSI colour codes used for console output."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'

    LEVELS = {
        logging.DEBUG: DIM,
        logging.INFO: CYAN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD + RED,
    }


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders ``extra`` context as ``key=value`` pairs.

    Args:
        use_colors: Colourize the level name (console handlers only)
    """

    def __init__(self, fmt: str = LOG_FORMAT, datefmt: str = LOG_DATE_FORMAT,
                 use_colors: bool = False):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        context = {
            key: value for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith('_')
        }

        levelname = record.levelname
        if self.use_colors:
            color = Colors.LEVELS.get(record.levelno, '')
            record.levelname = f"{color}{levelname}{Colors.RESET}"
        try:
            message = super().format(record)
        finally:
            record.levelname = levelname

        if context:
            rendered = ' '.join(f"{k}={v}" for k, v in sorted(context.items()))
            message = f"{message} [{rendered}]"
        return message


class LogManager:
    """Central configuration point for the ``dockyard`` logger hierarchy."""

    ROOT_LOGGER = 'dockyard'

    def __init__(self):
        self.level = logging.INFO
        self.log_file: Optional[Path] = None
        self._configured = False

    def configure(self, level: Union[str, int] = 'INFO',
                  log_file: Optional[Union[str, Path]] = None,
                  use_colors: Optional[bool] = None) -> None:
        """
        Configure handlers for the package logger.

        Args:
            level: Log level name or number
            log_file: Optional file that receives a copy of every record
            use_colors: Force colour on/off (default: only on a TTY)
        """
        if isinstance(level, str):
            resolved = logging.getLevelName(level.upper())
            if not isinstance(resolved, int):
                raise ValueError(f"Unknown log level: {level}")
            level = resolved

        logger = logging.getLogger(self.ROOT_LOGGER)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

        if use_colors is None:
            use_colors = sys.stderr.isatty()

        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(StructuredFormatter(use_colors=use_colors))
        logger.addHandler(console)

        if log_file:
            path = Path(log_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding='utf-8')
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
            self.log_file = path

        logger.setLevel(level)
        logger.propagate = False
        self.level = level
        self._configured = True

    @property
    def configured(self) -> bool:
        return self._configured


log_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """Return a logger below the ``dockyard`` hierarchy."""
    return logging.getLogger(name)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: Enable debug logging if True
        log_file: Optional log file path
    """
    log_manager.configure(level='DEBUG' if verbose else 'INFO', log_file=log_file)
