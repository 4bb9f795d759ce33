"""Container model for tracking rented development containers."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Container(Base):
    """Model for containers provisioned on behalf of a user."""

    __tablename__ = "containers"

    # Surrogate key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Engine-side container name, immutable
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    image_name: Mapped[str] = mapped_column(String(500), nullable=False)

    # Host port bindings (22 and 8888 inside the container)
    ssh_port: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    jupyter_port: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)

    # Root credential for SSH
    password: Mapped[str] = mapped_column(String(128), nullable=False)

    # Resource quota, re-used verbatim on reset
    cpu: Mapped[str] = mapped_column(String(20), nullable=False)
    ram: Mapped[str] = mapped_column(String(20), nullable=False)
    gpu: Mapped[str] = mapped_column(String(100), nullable=False)

    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        """String representation of Container."""
        return (
            f"<Container(id={self.id}, name={self.name}, "
            f"image={self.image_name}, user_id={self.user_id})>"
        )
