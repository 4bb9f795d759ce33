"""Repository pattern implementations for data access."""

from .base import BaseRepository
from .containers import ContainerRepository
from .port_claims import PortClaimRepository
from .tickets import TicketRepository
from .users import UserRepository

__all__ = [
    "BaseRepository",
    "ContainerRepository",
    "PortClaimRepository",
    "TicketRepository",
    "UserRepository",
]
