"""Merges live engine state onto persisted container records for display."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

from gpu_devbox.models.containers import Container
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.docker_cli import EngineClient
from gpu_devbox.utils.exceptions import EngineError, EngineTimeoutError

logger = get_logger(__name__)


@dataclass
class ContainerView:
    """A persisted container together with its live engine status.

    ``status`` is None when the engine has no such container or could not be
    asked; it is never written back to the database.
    """

    id: int
    name: str
    image_name: str
    ssh_port: int
    jupyter_port: int
    password: str
    cpu: str
    ram: str
    gpu: str
    user_id: int
    created_at: datetime | None
    status: str | None = None

    @classmethod
    def from_record(cls, container: Container, status: str | None = None) -> "ContainerView":
        """Copy the fields of a persisted record."""
        return cls(
            id=container.id,
            name=container.name,
            image_name=container.image_name,
            ssh_port=container.ssh_port,
            jupyter_port=container.jupyter_port,
            password=container.password,
            cpu=container.cpu,
            ram=container.ram,
            gpu=container.gpu,
            user_id=container.user_id,
            created_at=container.created_at,
            status=status,
        )


class StatusReconciler:
    """Read-only merge of engine state onto persisted records."""

    def __init__(self, engine: EngineClient, fanout_limit: int = 8) -> None:
        """
        Initialize status reconciler.

        Args:
            engine: Container engine client
            fanout_limit: Maximum concurrent per-container status queries
        """
        self.engine = engine
        self._semaphore = asyncio.Semaphore(max(1, fanout_limit))

    async def status_of(self, name: str) -> str | None:
        """
        Get the live status of one container.

        Returns:
            Engine state, or None when the container is missing or the query failed
        """
        async with self._semaphore:
            try:
                return await self.engine.inspect_status(name)
            except (EngineError, EngineTimeoutError) as e:
                logger.warning(
                    "Status query failed, reporting unknown",
                    extra={"container": name, "error": str(e)},
                )
                return None

    async def merge(self, containers: Sequence[Container]) -> List[ContainerView]:
        """
        Attach live status to each container with bounded concurrency.

        Args:
            containers: Persisted containers

        Returns:
            Views in the same order as the input
        """
        statuses = await asyncio.gather(*(self.status_of(c.name) for c in containers))
        return [
            ContainerView.from_record(container, status)
            for container, status in zip(containers, statuses)
        ]
