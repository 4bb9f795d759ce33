"""Ticket model for support requests raised against a container."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Ticket(Base):
    """Model for support tickets.

    ``container_id`` is nulled when the container is deleted; the
    denormalized container and user fields keep the ticket readable.
    """

    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    container_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("containers.id", ondelete="SET NULL"), nullable=True
    )

    # Snapshot taken when the ticket is opened
    container_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="open"
    )  # open, in_progress, closed

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        """String representation of Ticket."""
        return (
            f"<Ticket(id={self.id}, container_id={self.container_id}, "
            f"container_name={self.container_name}, status={self.status})>"
        )
