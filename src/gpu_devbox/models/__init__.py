"""SQLAlchemy models for GPU DevBox."""

from .base import Base
from .containers import Container
from .port_claims import PortClaim
from .tickets import Ticket
from .users import User

__all__ = ["Base", "Container", "PortClaim", "Ticket", "User"]
