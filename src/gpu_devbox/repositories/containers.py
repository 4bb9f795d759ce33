"""Repository for Container model operations."""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gpu_devbox.models.containers import Container

from .base import BaseRepository


class ContainerRepository(BaseRepository[Container]):
    """Repository for container CRUD operations."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize container repository.

        Args:
            session: Database session
        """
        super().__init__(session, Container)

    async def get_by_name(self, name: str) -> Container | None:
        """
        Get container by its engine name.

        Args:
            name: Container name

        Returns:
            Container or None if not found
        """
        stmt = select(Container).where(Container.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_user(self, user_id: int) -> List[Container]:
        """
        List containers owned by a user.

        Args:
            user_id: Owning user ID

        Returns:
            List of containers ordered by creation
        """
        stmt = select(Container).where(Container.user_id == user_id).order_by(Container.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self) -> List[Container]:
        """
        List every container.

        Returns:
            List of containers ordered by creation
        """
        result = await self.session.execute(select(Container).order_by(Container.id))
        return list(result.scalars().all())

    async def list_names(self) -> List[str]:
        """
        List the names of every persisted container.

        Returns:
            List of container names
        """
        result = await self.session.execute(select(Container.name))
        return list(result.scalars().all())

    async def update_password(self, name: str, password: str) -> Container | None:
        """
        Store a new root password.

        Args:
            name: Container name
            password: New password

        Returns:
            Updated container or None if not found
        """
        container = await self.get_by_name(name)
        if container:
            container.password = password
            await self.session.flush()
            await self.session.refresh(container)
        return container

    async def ports_in_use(self) -> set[int]:
        """
        Get every host port bound by a persisted container.

        Returns:
            Set of SSH and Jupyter ports
        """
        result = await self.session.execute(select(Container.ssh_port, Container.jupyter_port))
        ports: set[int] = set()
        for ssh_port, jupyter_port in result.all():
            ports.update((ssh_port, jupyter_port))
        return ports
