"""Actor identity and the authorization check shared by every operation."""

from dataclasses import dataclass
from enum import Enum

from gpu_devbox.config import Settings
from gpu_devbox.models.containers import Container
from gpu_devbox.models.database import DatabaseManager
from gpu_devbox.repositories.users import UserRepository
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.exceptions import AuthenticationError, AuthorizationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""

    user_id: int
    is_admin: bool = False


class Access(str, Enum):
    """Access levels an operation can require."""

    ADMIN = "admin"
    OWNER = "owner"
    OWNER_OR_ADMIN = "owner_or_admin"


def authorize(
    actor: Actor, operation: str, access: Access, container: Container | None = None
) -> None:
    """
    Check that an actor may perform an operation.

    Every lifecycle and read operation goes through this function before any
    engine call is made.

    Args:
        actor: Acting user
        operation: Operation name used in the error message
        access: Required access level
        container: Target container for ownership checks

    Raises:
        AuthorizationError: If the actor lacks the role or ownership
    """
    is_owner = container is not None and container.user_id == actor.user_id

    if access is Access.ADMIN:
        allowed = actor.is_admin
        reason = "administrator role required"
    elif access is Access.OWNER:
        allowed = is_owner
        reason = "only the container owner may do this"
    else:
        allowed = is_owner or actor.is_admin
        reason = "owner or administrator required"

    if not allowed:
        logger.warning(
            "Authorization refused",
            extra={
                "operation": operation,
                "user_id": actor.user_id,
                "container": container.name if container else None,
            },
        )
        raise AuthorizationError(operation, reason)


async def resolve_actor(
    db_manager: DatabaseManager,
    settings: Settings,
    user_id_header: str | None = None,
    authorization_header: str | None = None,
) -> Actor:
    """
    Resolve the acting user from request headers.

    In ``header`` mode a trusted gateway passes the user id in ``X-User-Id``.
    In ``bearer`` mode the ``Authorization: Bearer <token>`` value is looked
    up in the static token map.

    Raises:
        AuthenticationError: If no known user can be identified
    """
    if settings.auth_mode == "bearer":
        scheme, _, token = (authorization_header or "").partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("Missing bearer token")
        user_id = settings.bearer_tokens_map.get(token.strip())
        if user_id is None:
            raise AuthenticationError("Unknown bearer token")
    else:
        if not user_id_header or not user_id_header.strip().isdigit():
            raise AuthenticationError("Missing or malformed X-User-Id header")
        user_id = int(user_id_header.strip())

    async with db_manager.get_session() as session:
        user = await UserRepository(session).get(user_id)

    if user is None:
        raise AuthenticationError(f"Unknown user: {user_id}")
    return Actor(user_id=user.id, is_admin=user.is_admin)
