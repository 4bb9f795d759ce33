"""Port claim model reserving host ports for container bindings."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PortClaim(Base):
    """A host port held by one container.

    The port itself is the primary key, so a port can be claimed once
    regardless of whether it serves SSH or Jupyter.
    """

    __tablename__ = "port_claims"

    port: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    container_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    purpose: Mapped[str] = mapped_column(String(20), nullable=False)  # ssh, jupyter

    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        """String representation of PortClaim."""
        return (
            f"<PortClaim(port={self.port}, container_name={self.container_name}, "
            f"purpose={self.purpose})>"
        )
