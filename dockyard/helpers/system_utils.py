"""
System utilities module for Dockyard.

Resource probing used to size the worker pools.
"""

import logging

import psutil

from .constants import RAM_WORKER_THRESHOLDS


logger = logging.getLogger(__name__)


class SystemUtils:
    """System resource helpers used for pool sizing."""

    @staticmethod
    def get_available_ram() -> float:
        """
        Get total system RAM in gigabytes.

        Returns:
            RAM in GB
        """
        try:
            memory = psutil.virtual_memory()
            return memory.total / (1024 ** 3)
        except Exception as e:
            logger.error(f"Failed to get RAM info: {e}")
            return 2.0  # Conservative default

    @staticmethod
    def get_cpu_count() -> int:
        """
        Get number of CPU cores.

        Returns:
            Number of CPU cores
        """
        try:
            return psutil.cpu_count(logical=True) or 1
        except Exception:
            return 1

    @staticmethod
    def get_optimal_workers() -> int:
        """
        Calculate how many container backups may run at once.

        Each container backup streams through the Docker API, so the bound
        follows RAM and never exceeds the CPU count.

        Returns:
            Recommended number of workers
        """
        ram_gb = SystemUtils.get_available_ram()
        cpu_count = SystemUtils.get_cpu_count()

        ram_workers = 1
        for threshold_gb, workers in RAM_WORKER_THRESHOLDS:
            if ram_gb <= threshold_gb:
                ram_workers = workers
                break

        optimal = max(1, min(ram_workers, cpu_count))

        logger.debug(f"System has {ram_gb:.1f}GB RAM, {cpu_count} CPUs. "
                     f"Recommending {optimal} workers.")

        return optimal
