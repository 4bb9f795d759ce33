"""Repository for Ticket model operations."""

from datetime import datetime, timezone
from typing import List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gpu_devbox.models.containers import Container
from gpu_devbox.models.tickets import Ticket
from gpu_devbox.models.users import User

from .base import BaseRepository


class TicketRepository(BaseRepository[Ticket]):
    """Repository for ticket CRUD operations."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize ticket repository.

        Args:
            session: Database session
        """
        super().__init__(session, Ticket)

    async def open_for_container(
        self, container: Container, owner: User, description: str
    ) -> Ticket:
        """
        Open a ticket against a container, snapshotting container and owner details.

        Args:
            container: Container the ticket is about
            owner: Owner of the container
            description: Ticket text

        Returns:
            Created ticket
        """
        ticket = Ticket(
            container_id=container.id,
            container_name=container.name,
            user_name=owner.full_name,
            user_email=owner.email,
            description=description,
            status="open",
            created_at=datetime.now(timezone.utc),
        )
        return await self.create(ticket)

    async def get_by_container(self, container_id: int) -> List[Ticket]:
        """
        Get all tickets referencing a container.

        Args:
            container_id: Container ID

        Returns:
            List of tickets
        """
        stmt = select(Ticket).where(Ticket.container_id == container_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def detach_container(self, container_id: int) -> int:
        """
        Null the container reference of every ticket pointing at a container.

        Ticket rows and their snapshot fields are kept.

        Args:
            container_id: Container ID being deleted

        Returns:
            Number of tickets detached
        """
        stmt = (
            update(Ticket)
            .where(Ticket.container_id == container_id)
            .values(container_id=None)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0
