"""Container lifecycle manager for rented development containers."""

import asyncio
import re
import secrets
import string
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from gpu_devbox.auth import Access, Actor, authorize
from gpu_devbox.config import Settings
from gpu_devbox.managers.batch_stats import BatchSnapshot, BatchStatsCollector
from gpu_devbox.managers.command_builder import SSH_START_ARGV, CommandBuilder, ContainerSpec
from gpu_devbox.managers.port_allocator import PortAllocator
from gpu_devbox.managers.status_reconciler import ContainerView, StatusReconciler
from gpu_devbox.models.containers import Container
from gpu_devbox.models.database import DatabaseManager
from gpu_devbox.repositories.containers import ContainerRepository
from gpu_devbox.repositories.port_claims import PortClaimRepository
from gpu_devbox.repositories.tickets import TicketRepository
from gpu_devbox.repositories.users import UserRepository
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.audit_logger import AuditEventType, get_audit_logger
from gpu_devbox.utils.docker_cli import EngineClient, ImageSearchResult
from gpu_devbox.utils.exceptions import (
    AuthorizationError,
    ConflictError,
    ContainerNotFoundError,
    EngineError,
    EngineTimeoutError,
    PartialFailureError,
    UserNotFoundError,
    ValidationError,
)
from gpu_devbox.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
# chpasswd reads "user:password" lines
PASSWORD_PATTERN = re.compile(r"^[^\s:]+$")
MIN_SEARCH_TERM_LENGTH = 2

AUDIT_EVENTS = {
    "create": AuditEventType.CONTAINER_CREATE,
    "reset": AuditEventType.CONTAINER_RESET,
    "start": AuditEventType.CONTAINER_START,
    "stop": AuditEventType.CONTAINER_STOP,
    "restart": AuditEventType.CONTAINER_RESTART,
    "delete": AuditEventType.CONTAINER_DELETE,
    "change_password": AuditEventType.CONTAINER_PASSWORD_CHANGE,
}


@dataclass
class CreateContainerRequest:
    """Administrator request to provision a container for a user."""

    image_name: str | None
    memory_limit: str | None
    cpus: str | None
    gpus: str | None
    user_id: int | None


def generate_password(length: int = 8) -> str:
    """Generate a random alphanumeric password."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def make_container_name(full_name: str) -> str:
    """
    Derive a unique engine container name from the owner's name.

    Args:
        full_name: Owner's full name

    Returns:
        Lower-case slug of the name followed by a random suffix
    """
    slug = re.sub(r"[^a-z0-9]+", "", full_name.lower())[:40] or "user"
    return f"{slug}-{uuid4().hex[:8]}"


class ContainerManager:
    """Manager for container lifecycle operations.

    Engine calls always come first and database writes second. At most one
    lifecycle operation runs per container name at a time.
    """

    def __init__(
        self,
        engine: EngineClient,
        db_manager: DatabaseManager,
        settings: Settings,
        allocator: PortAllocator | None = None,
        builder: CommandBuilder | None = None,
    ) -> None:
        """
        Initialize container manager.

        Args:
            engine: Container engine client
            db_manager: Database manager
            settings: Application settings
            allocator: Port allocator (built from settings when omitted)
            builder: Command builder (built from settings when omitted)
        """
        self.engine = engine
        self.db_manager = db_manager
        self.settings = settings
        self.allocator = allocator or PortAllocator(
            db_manager,
            settings.port_range_min,
            settings.port_range_max,
            settings.port_allocation_attempts,
        )
        self.builder = builder or CommandBuilder.from_settings(settings)
        self.reconciler = StatusReconciler(engine, settings.status_fanout_limit)
        self.collector = BatchStatsCollector(engine)
        self.audit = get_audit_logger()
        self.metrics = get_metrics_collector()

        # One lock per container name serializes lifecycle operations;
        # an entry lives only while some operation holds or awaits it
        self._name_locks: Dict[str, asyncio.Lock] = {}
        self._name_lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        """
        Hold the lock for a container name.

        Args:
            name: Container name
        """
        lock = self._name_locks.setdefault(name, asyncio.Lock())
        self._name_lock_users[name] = self._name_lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._name_lock_users[name] -= 1
            if not self._name_lock_users[name]:
                del self._name_lock_users[name]
                del self._name_locks[name]

    @asynccontextmanager
    async def _track(
        self, operation: str, actor: Actor, name: str | None = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Record metrics and an audit event for one lifecycle operation."""
        context: Dict[str, Any] = {"container_name": name, "details": {}}
        try:
            yield context
        except AuthorizationError as e:
            self.metrics.record_lifecycle_operation(operation, type(e).__name__)
            self.audit.log_event(
                AuditEventType.AUTHORIZATION_DENIED,
                container_name=context["container_name"],
                user_id=actor.user_id,
                details={"operation": operation},
            )
            raise
        except Exception as e:
            self.metrics.record_lifecycle_operation(operation, type(e).__name__)
            self.audit.log_event(
                AuditEventType.LIFECYCLE_FAILURE,
                container_name=context["container_name"],
                user_id=actor.user_id,
                details={"operation": operation, "error": str(e)},
            )
            raise

        self.metrics.record_lifecycle_operation(operation, "success")
        self.audit.log_event(
            AUDIT_EVENTS[operation],
            container_name=context["container_name"],
            user_id=actor.user_id,
            details=context["details"],
        )

    async def get_record(self, name: str) -> Container:
        """
        Get a persisted container by name.

        Raises:
            ContainerNotFoundError: If no record exists
        """
        async with self.db_manager.get_session() as session:
            container = await ContainerRepository(session).get_by_name(name)
        if not container:
            raise ContainerNotFoundError(name)
        return container

    async def _start_ssh(self, name: str) -> None:
        """Start the SSH daemon inside a container if one is installed."""
        try:
            result = await self.engine.exec(name, SSH_START_ARGV, check=False)
        except (EngineError, EngineTimeoutError) as e:
            logger.warning(
                "Could not start SSH service",
                extra={"container": name, "error": str(e)},
            )
            return
        if result.exit_code != 0:
            logger.info(
                "SSH service not available in container",
                extra={"container": name, "exit_code": result.exit_code},
            )

    @staticmethod
    def _spec_from_record(container: Container) -> ContainerSpec:
        return ContainerSpec(
            image_name=container.image_name,
            memory_limit=container.ram,
            cpus=container.cpu,
            gpus=container.gpu,
            container_name=container.name,
            user_id=container.user_id,
            ssh_port=container.ssh_port,
            jupyter_port=container.jupyter_port,
            password=container.password,
        )

    def _validate_create(self, request: CreateContainerRequest) -> None:
        missing = [
            field
            for field, value in (
                ("imageName", request.image_name),
                ("memoryLimit", request.memory_limit),
                ("cpus", request.cpus),
                ("gpus", request.gpus),
                ("userContainer", request.user_id),
            )
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", field=missing[0]
            )
        self.builder.validate_resources(
            request.image_name.strip(),
            request.memory_limit.strip(),
            str(request.cpus).strip(),
            request.gpus.strip(),
        )

    async def _discard_engine_container(self, name: str) -> bool:
        """Best-effort removal of an engine container left behind by a failed create."""
        try:
            await self.engine.remove(name, missing_ok=True)
            return True
        except (EngineError, EngineTimeoutError) as e:
            logger.error(
                "Failed to remove engine container after failed create",
                extra={"container": name, "error": str(e)},
            )
            return False

    async def create_container(self, actor: Actor, request: CreateContainerRequest) -> Container:
        """
        Provision a container for a user.

        Args:
            actor: Acting administrator
            request: Image, resources and target user

        Returns:
            Persisted container

        Raises:
            ValidationError: If a required field is missing or malformed
            AuthorizationError: If the actor is not an administrator
            UserNotFoundError: If the target user does not exist
            ResourceExhaustedError: If no ports are left
            EngineError: If the engine refuses to run the container
            EngineTimeoutError: If the engine does not answer in time
            PartialFailureError: If the container runs but could not be recorded or removed
        """
        async with self._track("create", actor) as ctx:
            self._validate_create(request)
            authorize(actor, "create container", Access.ADMIN)

            async with self.db_manager.get_session() as session:
                user = await UserRepository(session).get(request.user_id)
            if not user:
                raise UserNotFoundError(request.user_id)

            name = make_container_name(user.full_name)
            ctx["container_name"] = name

            async with self._name_lock(name):
                async with self.db_manager.get_session() as session:
                    if await ContainerRepository(session).get_by_name(name):
                        raise ConflictError(name)

                ssh_port, jupyter_port = await self.allocator.allocate_pair(name)
                spec = ContainerSpec(
                    image_name=request.image_name.strip(),
                    memory_limit=request.memory_limit.strip(),
                    cpus=str(request.cpus).strip(),
                    gpus=request.gpus.strip(),
                    container_name=name,
                    user_id=user.id,
                    ssh_port=ssh_port,
                    jupyter_port=jupyter_port,
                    password=generate_password(self.settings.generated_password_length),
                )

                try:
                    docker_id = await self.engine.run(self.builder.build_run_args(spec))
                except (EngineError, EngineTimeoutError) as e:
                    # run may fail after the container was created, e.g. on port binding
                    await self._discard_engine_container(name)
                    await self.allocator.release(name)
                    logger.error(
                        "Engine failed to create container",
                        extra={"container": name, "error": str(e)},
                    )
                    raise
                except Exception:
                    await self.allocator.release(name)
                    raise

                logger.info(
                    "Engine container created",
                    extra={
                        "container": name,
                        "docker_id": docker_id,
                        "image": spec.image_name,
                        "user_id": user.id,
                        "ssh_port": ssh_port,
                        "jupyter_port": jupyter_port,
                    },
                )

                container = Container(
                    name=name,
                    image_name=spec.image_name,
                    ssh_port=ssh_port,
                    jupyter_port=jupyter_port,
                    password=spec.password,
                    cpu=spec.cpus,
                    ram=spec.memory_limit,
                    gpu=spec.gpus,
                    user_id=user.id,
                    created_at=datetime.now(timezone.utc),
                )
                try:
                    async with self.db_manager.get_session() as session:
                        await ContainerRepository(session).create(container)
                except SQLAlchemyError as e:
                    logger.error(
                        "Failed to record container, removing engine container",
                        extra={"container": name, "operation": "create", "error": str(e)},
                    )
                    if not await self._discard_engine_container(name):
                        self.audit.log_event(
                            AuditEventType.PARTIAL_FAILURE,
                            container_name=name,
                            user_id=actor.user_id,
                            details={"operation": "create", "engine_done": True, "db_done": False},
                        )
                        raise PartialFailureError(
                            "create", name, engine_done=True, db_done=False, original_error=e
                        ) from e
                    await self.allocator.release(name)
                    raise

            ctx["details"] = {"image": spec.image_name, "owner_id": user.id}
            return container

    async def reset_container(self, actor: Actor, name: str) -> Container:
        """
        Recreate a container from its recorded parameters.

        The engine container is force-removed and re-run with the same name,
        ports, quota and password. The database record is not modified.

        Args:
            actor: Owner of the container
            name: Container name

        Returns:
            The unchanged persisted container
        """
        async with self._track("reset", actor, name):
            async with self._name_lock(name):
                container = await self.get_record(name)
                authorize(actor, "reset container", Access.OWNER, container)

                run_args = self.builder.build_run_args(self._spec_from_record(container))
                await self.engine.remove(name, missing_ok=True)
                try:
                    await self.engine.run(run_args)
                except (EngineError, EngineTimeoutError) as e:
                    logger.error(
                        "Container removed but re-creation failed",
                        extra={"container": name, "operation": "reset", "error": str(e)},
                    )
                    raise

                logger.info("Container reset", extra={"container": name})
                return container

    async def start_container(self, actor: Actor, name: str) -> Container:
        """Start a stopped container and its SSH daemon (administrators only)."""
        async with self._track("start", actor, name):
            async with self._name_lock(name):
                container = await self.get_record(name)
                authorize(actor, "start container", Access.ADMIN, container)
                await self.engine.start(name)
                await self._start_ssh(name)
                logger.info("Container started", extra={"container": name})
                return container

    async def stop_container(self, actor: Actor, name: str) -> Container:
        """Stop a running container (administrators only)."""
        async with self._track("stop", actor, name):
            async with self._name_lock(name):
                container = await self.get_record(name)
                authorize(actor, "stop container", Access.ADMIN, container)
                await self.engine.stop(name)
                logger.info("Container stopped", extra={"container": name})
                return container

    async def restart_container(self, actor: Actor, name: str) -> Container:
        """Restart a container and its SSH daemon (owner only)."""
        async with self._track("restart", actor, name):
            async with self._name_lock(name):
                container = await self.get_record(name)
                authorize(actor, "restart container", Access.OWNER, container)
                await self.engine.restart(name)
                await self._start_ssh(name)
                logger.info("Container restarted", extra={"container": name})
                return container

    async def delete_container(self, actor: Actor, name: str) -> Container:
        """
        Remove a container from the engine and the database.

        Tickets referencing the container are kept with their container
        reference nulled; the container's port claims are released.

        Args:
            actor: Acting administrator
            name: Container name

        Returns:
            The deleted record

        Raises:
            PartialFailureError: If the engine container is gone but the record could not be deleted
        """
        async with self._track("delete", actor, name) as ctx:
            async with self._name_lock(name):
                container = await self.get_record(name)
                authorize(actor, "delete container", Access.ADMIN, container)

                await self.engine.remove(name, missing_ok=True)

                try:
                    async with self.db_manager.get_session() as session:
                        detached = await TicketRepository(session).detach_container(container.id)
                        await PortClaimRepository(session).release_for_container(name)
                        repo = ContainerRepository(session)
                        record = await repo.get(container.id)
                        if record:
                            await repo.delete(record)
                except SQLAlchemyError as e:
                    logger.error(
                        "Engine container removed but record deletion failed",
                        extra={"container": name, "operation": "delete", "error": str(e)},
                    )
                    self.audit.log_event(
                        AuditEventType.PARTIAL_FAILURE,
                        container_name=name,
                        user_id=actor.user_id,
                        details={"operation": "delete", "engine_done": True, "db_done": False},
                    )
                    raise PartialFailureError(
                        "delete", name, engine_done=True, db_done=False, original_error=e
                    ) from e

            ctx["details"] = {"tickets_detached": detached}
            logger.info(
                "Container deleted",
                extra={"container": name, "tickets_detached": detached},
            )
            return container

    async def change_password(self, actor: Actor, name: str, new_password: str | None) -> Container:
        """
        Change the root password of a container.

        The password is set inside the container first and persisted only if
        that succeeded.

        Args:
            actor: Owner of the container
            name: Container name
            new_password: New root password

        Returns:
            Updated container
        """
        async with self._track("change_password", actor, name):
            async with self._name_lock(name):
                container = await self.get_record(name)
                authorize(actor, "change container password", Access.OWNER, container)

                if not new_password:
                    raise ValidationError("Password is required", field="password")
                if len(new_password) < self.settings.min_password_length:
                    raise ValidationError(
                        f"Password must be at least {self.settings.min_password_length} characters",
                        field="password",
                    )
                if not PASSWORD_PATTERN.match(new_password):
                    raise ValidationError(
                        "Password must not contain whitespace or ':'", field="password"
                    )

                await self.engine.exec(name, self.builder.build_password_argv(new_password))

                try:
                    async with self.db_manager.get_session() as session:
                        updated = await ContainerRepository(session).update_password(
                            name, new_password
                        )
                except SQLAlchemyError as e:
                    logger.error(
                        "Password changed in container but not persisted",
                        extra={"container": name, "operation": "change_password", "error": str(e)},
                    )
                    self.audit.log_event(
                        AuditEventType.PARTIAL_FAILURE,
                        container_name=name,
                        user_id=actor.user_id,
                        details={
                            "operation": "change_password",
                            "engine_done": True,
                            "db_done": False,
                        },
                    )
                    raise PartialFailureError(
                        "change_password", name, engine_done=True, db_done=False, original_error=e
                    ) from e

                logger.info("Container password changed", extra={"container": name})
                return updated or container

    async def get_container(self, actor: Actor, name: str) -> ContainerView:
        """Get one container with its live status (owner or administrator)."""
        container = await self.get_record(name)
        authorize(actor, "access container", Access.OWNER_OR_ADMIN, container)
        status = await self.reconciler.status_of(name)
        return ContainerView.from_record(container, status)

    async def get_logs(self, actor: Actor, name: str, tail: int | None = None) -> str:
        """Get the engine log of a container (owner or administrator)."""
        container = await self.get_record(name)
        authorize(actor, "read container logs", Access.OWNER_OR_ADMIN, container)
        return await self.engine.logs(name, tail=tail)

    async def get_stats(self, actor: Actor, name: str) -> Dict[str, Any]:
        """Get a one-shot resource snapshot of a container (owner or administrator)."""
        container = await self.get_record(name)
        authorize(actor, "read container stats", Access.OWNER_OR_ADMIN, container)
        return await self.engine.stats(name)

    async def get_jupyter_link(self, actor: Actor, name: str) -> str:
        """Get the Jupyter URL of a container (owner or administrator)."""
        container = await self.get_record(name)
        authorize(actor, "access container", Access.OWNER_OR_ADMIN, container)
        return f"http://{self.settings.jupyter_host}:{container.jupyter_port}"

    async def list_my_containers(self, actor: Actor) -> List[ContainerView]:
        """List the actor's own containers with live status."""
        async with self.db_manager.get_session() as session:
            containers = await ContainerRepository(session).list_by_user(actor.user_id)
        return await self.reconciler.merge(containers)

    async def list_all_containers(self, actor: Actor) -> List[ContainerView]:
        """List every container with live status (administrators only)."""
        authorize(actor, "list all containers", Access.ADMIN)
        async with self.db_manager.get_session() as session:
            containers = await ContainerRepository(session).list_all()
        self.metrics.set_managed_containers(len(containers))
        return await self.reconciler.merge(containers)

    async def batch_stats(self, actor: Actor) -> BatchSnapshot:
        """Get stats and state of every container in two engine calls (administrators only)."""
        authorize(actor, "read fleet stats", Access.ADMIN)
        async with self.db_manager.get_session() as session:
            names = await ContainerRepository(session).list_names()
        return await self.collector.collect(names)

    async def search_images(self, actor: Actor, term: str) -> List[ImageSearchResult]:
        """
        Search available images by name substring.

        Raises:
            ValidationError: If the term is shorter than two characters
        """
        term = (term or "").strip()
        if len(term) < MIN_SEARCH_TERM_LENGTH:
            raise ValidationError(
                f"Image name must be at least {MIN_SEARCH_TERM_LENGTH} characters long",
                field="imageName",
            )
        logger.debug("Searching images", extra={"term": term, "user_id": actor.user_id})
        return await self.engine.search(term)
