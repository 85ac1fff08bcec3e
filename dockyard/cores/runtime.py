################################################################################
# DOCKYARD
#
# @file:        runtime.py
# @module:      dockyard.cores.runtime
# @description: Docker client factory and SDK-to-Dockyard error mapping.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Access to the Docker Engine.

All components receive a ``docker.DockerClient``; this module builds one from
configuration and translates SDK exceptions into the Dockyard taxonomy.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Type

import docker
from docker.errors import APIError, DockerException, NotFound

from ..exceptions import DockyardError, ResourceNotFound, RuntimeUnavailable
from ..helpers.config import Config
from ..helpers.logging import get_logger

logger = get_logger(__name__)


def create_client(config: Optional[Config] = None) -> docker.DockerClient:
    """
    Connect to the Docker daemon.

    Uses ``[docker] base_url`` when set, otherwise the SDK's environment
    defaults (``DOCKER_HOST``, the local socket).

    Raises:
        RuntimeUnavailable: If the daemon cannot be reached
    """
    base_url = config.docker_base_url if config else None
    timeout = config.docker_timeout if config else None
    try:
        if base_url:
            client = docker.DockerClient(base_url=base_url, timeout=timeout)
        elif timeout:
            client = docker.from_env(timeout=timeout)
        else:
            client = docker.from_env()
        client.ping()
    except (DockerException, OSError) as e:
        raise RuntimeUnavailable(f"Docker daemon not accessible: {e}", phase="connect") from e
    logger.debug(f"Connected to Docker daemon at {client.api.base_url}")
    return client


@contextmanager
def docker_errors(resource: Any = None, phase: Optional[str] = None,
                  api_error: Type[DockyardError] = DockyardError) -> Iterator[None]:
    """
    Translate Docker SDK exceptions raised inside the block.

    ``NotFound`` becomes :class:`ResourceNotFound`; other API errors become
    ``api_error``; connection-level failures become
    :class:`RuntimeUnavailable`. Dockyard errors pass through untouched.
    """
    try:
        yield
    except DockyardError:
        raise
    except NotFound as e:
        raise ResourceNotFound(_explain(e), resource=resource, phase=phase) from e
    except APIError as e:
        raise api_error(_explain(e), resource=resource, phase=phase) from e
    except (DockerException, OSError) as e:
        raise RuntimeUnavailable(f"Docker daemon not accessible: {e}",
                                 resource=resource, phase=phase) from e


def _explain(error: APIError) -> str:
    explanation = getattr(error, "explanation", None)
    return str(explanation or error)


def list_running_containers(client: docker.DockerClient) -> List[Any]:
    """Running containers, in daemon order."""
    with docker_errors(phase="list"):
        return client.containers.list()


def list_containers_by_label(client: docker.DockerClient, labels: List[str]) -> List[Any]:
    """All containers (running or not) matching every ``key`` or ``key=value`` label."""
    with docker_errors(phase="list"):
        return client.containers.list(all=True, filters={"label": labels})
