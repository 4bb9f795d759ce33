"""Repository for PortClaim model operations."""

from datetime import datetime, timezone
from typing import Set

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from gpu_devbox.models.port_claims import PortClaim

from .base import BaseRepository


class PortClaimRepository(BaseRepository[PortClaim]):
    """Repository for host port reservations."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize port claim repository.

        Args:
            session: Database session
        """
        super().__init__(session, PortClaim)

    async def claimed_in_range(self, port_min: int, port_max: int) -> Set[int]:
        """
        Get every claimed port inside a range.

        Args:
            port_min: Lowest port (inclusive)
            port_max: Highest port (inclusive)

        Returns:
            Set of claimed ports
        """
        stmt = select(PortClaim.port).where(
            PortClaim.port >= port_min, PortClaim.port <= port_max
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def claim(self, port: int, container_name: str, purpose: str) -> PortClaim:
        """
        Insert a claim and flush it.

        Raises:
            IntegrityError: If the port is already claimed
        """
        claim = PortClaim(
            port=port,
            container_name=container_name,
            purpose=purpose,
            claimed_at=datetime.now(timezone.utc),
        )
        self.session.add(claim)
        await self.session.flush()
        return claim

    async def release_for_container(self, container_name: str) -> int:
        """
        Release every port held by a container.

        Args:
            container_name: Container name

        Returns:
            Number of claims released
        """
        stmt = delete(PortClaim).where(PortClaim.container_name == container_name)
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0
