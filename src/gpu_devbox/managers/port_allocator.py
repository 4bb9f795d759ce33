"""Host port allocation for container service bindings."""

import asyncio
import random
from typing import Iterable, Iterator, Set, Tuple

from sqlalchemy.exc import IntegrityError

from gpu_devbox.models.database import DatabaseManager
from gpu_devbox.repositories.containers import ContainerRepository
from gpu_devbox.repositories.port_claims import PortClaimRepository
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.exceptions import ResourceExhaustedError, ValidationError
from gpu_devbox.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


class PortAllocator:
    """Picks and reserves free host ports inside a configured range.

    A port is reserved by inserting a PortClaim row whose primary key is the
    port, so two concurrent allocations can never hand out the same port.
    Allocation tries a bounded number of random candidates, then scans the
    rest of the range once in random order before giving up.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        port_min: int,
        port_max: int,
        attempts: int = 64,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize port allocator.

        Args:
            db_manager: Database manager holding port claims
            port_min: Lowest allocatable port (inclusive)
            port_max: Highest allocatable port (inclusive)
            attempts: Random candidates tried before the full scan
            rng: Random source (seedable for tests)
        """
        if port_min > port_max:
            raise ValidationError(f"Empty port range [{port_min}, {port_max}]")
        self.db_manager = db_manager
        self.port_min = port_min
        self.port_max = port_max
        self.attempts = attempts
        self.rng = rng or random.SystemRandom()
        self.metrics = get_metrics_collector()
        self._lock = asyncio.Lock()

    def _candidates(self, taken: Set[int]) -> Iterator[int]:
        tried: Set[int] = set()
        for _ in range(self.attempts):
            port = self.rng.randint(self.port_min, self.port_max)
            if port in taken or port in tried:
                continue
            tried.add(port)
            yield port

        remaining = [
            port
            for port in range(self.port_min, self.port_max + 1)
            if port not in taken and port not in tried
        ]
        self.rng.shuffle(remaining)
        for port in remaining:
            if port not in taken:
                yield port

    async def _taken_ports(self) -> Set[int]:
        async with self.db_manager.get_session() as session:
            claimed = await PortClaimRepository(session).claimed_in_range(
                self.port_min, self.port_max
            )
            bound = await ContainerRepository(session).ports_in_use()
        return claimed | bound

    async def allocate(
        self, container_name: str, purpose: str, exclude: Iterable[int] = ()
    ) -> int:
        """
        Reserve one free port for a container.

        Args:
            container_name: Container the port is reserved for
            purpose: Service the port is bound to (ssh, jupyter)
            exclude: Ports that must not be returned

        Returns:
            Reserved port

        Raises:
            ResourceExhaustedError: If no port in the range can be claimed
        """
        async with self._lock:
            taken = await self._taken_ports()
            taken.update(exclude)

            for port in self._candidates(taken):
                try:
                    async with self.db_manager.get_session() as session:
                        await PortClaimRepository(session).claim(port, container_name, purpose)
                except IntegrityError:
                    # Claimed by another process since the snapshot
                    self.metrics.record_port_allocation("contended")
                    taken.add(port)
                    continue

                self.metrics.record_port_allocation("claimed")
                logger.debug(
                    "Port claimed",
                    extra={"port": port, "container": container_name, "purpose": purpose},
                )
                return port

        self.metrics.record_port_allocation("exhausted")
        logger.error(
            "Port range exhausted",
            extra={"port_min": self.port_min, "port_max": self.port_max},
        )
        raise ResourceExhaustedError(self.port_min, self.port_max)

    async def allocate_pair(self, container_name: str) -> Tuple[int, int]:
        """
        Reserve distinct SSH and Jupyter ports for a container.

        Returns:
            Tuple of (ssh_port, jupyter_port)
        """
        ssh_port = await self.allocate(container_name, "ssh")
        try:
            jupyter_port = await self.allocate(container_name, "jupyter", exclude={ssh_port})
        except Exception:
            await self.release(container_name)
            raise
        return ssh_port, jupyter_port

    async def release(self, container_name: str) -> int:
        """
        Release every port reserved for a container.

        Returns:
            Number of ports released
        """
        async with self.db_manager.get_session() as session:
            released = await PortClaimRepository(session).release_for_container(container_name)
        logger.debug("Ports released", extra={"container": container_name, "count": released})
        return released
