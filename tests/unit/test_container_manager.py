"""Tests for ContainerManager."""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from gpu_devbox.managers.command_builder import CommandBuilder
from gpu_devbox.managers.container_manager import (
    CreateContainerRequest,
    generate_password,
    make_container_name,
)
from gpu_devbox.repositories.containers import ContainerRepository
from gpu_devbox.repositories.port_claims import PortClaimRepository
from gpu_devbox.repositories.tickets import TicketRepository
from gpu_devbox.repositories.users import UserRepository
from gpu_devbox.utils.exceptions import (
    AuthorizationError,
    ContainerNotFoundError,
    EngineError,
    EngineTimeoutError,
    PartialFailureError,
    UserNotFoundError,
    ValidationError,
)


def make_request(**overrides) -> CreateContainerRequest:
    fields = dict(
        image_name="pytorch/pytorch:latest",
        memory_limit="2g",
        cpus="2",
        gpus="none",
        user_id=42,
    )
    fields.update(overrides)
    return CreateContainerRequest(**fields)


async def claimed_ports(db_manager) -> set:
    async with db_manager.get_session() as session:
        return await PortClaimRepository(session).claimed_in_range(0, 65535)


async def load(db_manager, name):
    async with db_manager.get_session() as session:
        return await ContainerRepository(session).get_by_name(name)


def test_make_container_name_slug():
    """Test that container names are a slug of the owner name plus a suffix."""
    name = make_container_name("Ada Lovelace")
    slug, suffix = name.rsplit("-", 1)
    assert slug == "adalovelace"
    assert len(suffix) == 8
    assert make_container_name("Ada Lovelace") != name


def test_make_container_name_without_usable_characters():
    assert make_container_name("---").startswith("user-")


def test_generate_password_is_alphanumeric():
    password = generate_password(12)
    assert len(password) == 12
    assert password.isalnum()


@pytest.mark.asyncio
async def test_create_container(container_manager, engine, db_manager, admin):
    """Test a full create: two distinct ports, one run, one persisted record."""
    container = await container_manager.create_container(admin, make_request())

    assert container.name.startswith("adalovelace-")
    assert container.user_id == 42
    assert container.ssh_port != container.jupyter_port
    assert 20000 <= container.ssh_port <= 20019
    assert 20000 <= container.jupyter_port <= 20019
    assert len(container.password) == 8
    assert (container.cpu, container.ram, container.gpu) == ("2", "2g", "none")

    assert engine.verbs == ["run"]
    args = engine.calls[0][1]
    assert "--memory=2g" in args
    assert "--cpus=2" in args
    assert "--gpus" not in args
    assert f"{container.ssh_port}:22" in args
    assert f"{container.jupyter_port}:8888" in args
    assert f"PASSWORD={container.password}" in args

    stored = await load(db_manager, container.name)
    assert stored is not None
    assert stored.password == container.password
    assert await claimed_ports(db_manager) == {container.ssh_port, container.jupyter_port}


@pytest.mark.asyncio
async def test_create_container_with_gpu(container_manager, engine, admin):
    await container_manager.create_container(admin, make_request(gpus="all"))

    args = engine.calls[0][1]
    assert args.count("--gpus") == 1
    assert args[args.index("--gpus") + 1] == "all"


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["image_name", "memory_limit", "cpus", "gpus", "user_id"])
async def test_create_missing_field_fails_fast(
    container_manager, engine, db_manager, admin, missing
):
    """Test that a missing field is rejected before ports or engine are touched."""
    with pytest.raises(ValidationError):
        await container_manager.create_container(admin, make_request(**{missing: None}))

    assert engine.calls == []
    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_create_rejects_invalid_gpu_value(container_manager, engine, admin):
    with pytest.raises(ValidationError) as exc_info:
        await container_manager.create_container(admin, make_request(gpus="all; rm -rf /"))

    assert exc_info.value.field == "gpus"
    assert engine.calls == []


@pytest.mark.asyncio
async def test_create_requires_admin(container_manager, engine, db_manager, owner):
    with pytest.raises(AuthorizationError):
        await container_manager.create_container(owner, make_request())

    assert engine.calls == []
    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_create_for_unknown_user(container_manager, engine, admin):
    with pytest.raises(UserNotFoundError):
        await container_manager.create_container(admin, make_request(user_id=999))

    assert engine.calls == []


@pytest.mark.asyncio
async def test_create_engine_failure_releases_ports(container_manager, engine, db_manager, admin):
    """Test that a refused run leaves no record and no claims behind."""
    engine.failures["run"] = EngineError(["run"], 125, "Unable to find image")

    with pytest.raises(EngineError):
        await container_manager.create_container(admin, make_request())

    assert engine.verbs == ["run", "rm"]
    assert await claimed_ports(db_manager) == set()
    async with db_manager.get_session() as session:
        assert await ContainerRepository(session).list_all() == []


@pytest.mark.asyncio
async def test_create_failing_after_container_exists_removes_it(
    container_manager, engine, db_manager, admin
):
    """Test that a run failing at port binding does not leave its container behind."""

    async def run_then_fail(args):
        engine.calls.append(("run", list(args)))
        engine.containers[args[args.index("--name") + 1]] = "created"
        raise EngineError(["run"], 125, "Bind for 0.0.0.0:20001 failed: port is already allocated")

    engine.run = run_then_fail

    with pytest.raises(EngineError):
        await container_manager.create_container(admin, make_request())

    assert engine.verbs == ["run", "rm"]
    assert engine.containers == {}
    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_create_rejected_diagnostic_removes_container(
    container_manager, engine, db_manager, admin
):
    """Test that a zero-exit run with a real diagnostic is cleaned up from the engine."""
    engine.failures["run"] = EngineError(["run"], 0, "WARNING: something unexpected")

    with pytest.raises(EngineError):
        await container_manager.create_container(admin, make_request())

    assert engine.verbs == ["run", "rm"]
    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_create_timeout_removes_container(container_manager, engine, db_manager, admin):
    engine.failures["run"] = EngineTimeoutError(["run"], 900)

    with pytest.raises(EngineTimeoutError):
        await container_manager.create_container(admin, make_request())

    assert engine.verbs == ["run", "rm"]
    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_create_database_failure_removes_engine_container(
    container_manager, engine, db_manager, admin
):
    """Test that a failed insert is compensated by removing the engine container."""
    error = OperationalError("INSERT", {}, Exception("disk I/O error"))

    with patch.object(ContainerRepository, "create", AsyncMock(side_effect=error)):
        with pytest.raises(OperationalError):
            await container_manager.create_container(admin, make_request())

    assert engine.verbs == ["run", "rm"]
    assert engine.containers == {}
    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_create_database_and_cleanup_failure_is_partial(
    container_manager, engine, db_manager, admin
):
    """Test that a failed insert plus a failed removal surfaces a partial failure."""
    error = OperationalError("INSERT", {}, Exception("disk I/O error"))
    engine.failures["rm"] = EngineError(["rm"], 1, "Cannot connect to the Docker daemon")

    with patch.object(ContainerRepository, "create", AsyncMock(side_effect=error)):
        with pytest.raises(PartialFailureError) as exc_info:
            await container_manager.create_container(admin, make_request())

    assert exc_info.value.engine_done is True
    assert exc_info.value.db_done is False
    # The engine container still binds its ports
    assert len(await claimed_ports(db_manager)) == 2


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_ports(container_manager, admin):
    containers = await asyncio.gather(
        *(container_manager.create_container(admin, make_request()) for _ in range(3))
    )

    ports = [p for c in containers for p in (c.ssh_port, c.jupyter_port)]
    assert len(ports) == len(set(ports))
    assert len({c.name for c in containers}) == 3


@pytest.mark.asyncio
async def test_reset_preserves_identity(
    container_manager, engine, db_manager, owner, persisted_container
):
    """Test that reset recreates the container with the same name, ports and password."""
    container = await container_manager.reset_container(owner, persisted_container.name)

    assert engine.verbs == ["rm", "run"]
    args = engine.calls[1][1]
    assert args[args.index("--name") + 1] == persisted_container.name
    assert "20001:22" in args
    assert "20002:8888" in args
    assert "PASSWORD=initialpw" in args
    assert "--memory=2g" in args

    stored = await load(db_manager, persisted_container.name)
    assert stored.id == container.id
    assert stored.password == "initialpw"


@pytest.mark.asyncio
async def test_reset_by_non_owner_is_refused(
    container_manager, engine, admin, stranger, persisted_container
):
    for actor in (admin, stranger):
        with pytest.raises(AuthorizationError):
            await container_manager.reset_container(actor, persisted_container.name)

    assert engine.calls == []


@pytest.mark.asyncio
async def test_reset_unknown_container(container_manager, engine, owner):
    with pytest.raises(ContainerNotFoundError):
        await container_manager.reset_container(owner, "nope")

    assert engine.calls == []


@pytest.mark.asyncio
async def test_start_tolerates_missing_ssh(container_manager, engine, admin, persisted_container):
    """Test that start succeeds when the image has no ssh service."""
    engine.containers[persisted_container.name] = "exited"
    engine.exec_exit_code = 1

    await container_manager.start_container(admin, persisted_container.name)

    assert engine.verbs == ["start", "exec"]
    assert engine.containers[persisted_container.name] == "running"


@pytest.mark.asyncio
async def test_start_and_stop_require_admin(
    container_manager, engine, owner, persisted_container
):
    with pytest.raises(AuthorizationError):
        await container_manager.start_container(owner, persisted_container.name)
    with pytest.raises(AuthorizationError):
        await container_manager.stop_container(owner, persisted_container.name)

    assert engine.calls == []


@pytest.mark.asyncio
async def test_stop_container(container_manager, engine, admin, persisted_container):
    await container_manager.stop_container(admin, persisted_container.name)

    assert engine.verbs == ["stop"]
    assert engine.containers[persisted_container.name] == "exited"


@pytest.mark.asyncio
async def test_restart_by_owner(container_manager, engine, owner, admin, persisted_container):
    await container_manager.restart_container(owner, persisted_container.name)
    assert engine.verbs == ["restart", "exec"]

    with pytest.raises(AuthorizationError):
        await container_manager.restart_container(admin, persisted_container.name)


@pytest.mark.asyncio
async def test_delete_keeps_tickets(
    container_manager, engine, db_manager, admin, persisted_container
):
    """Test that deleting a container nulls ticket references but keeps the tickets."""
    async with db_manager.get_session() as session:
        owner_user = await UserRepository(session).get(42)
        ticket = await TicketRepository(session).open_for_container(
            persisted_container, owner_user, "GPU not visible"
        )
    ticket_id = ticket.id

    await container_manager.delete_container(admin, persisted_container.name)

    assert engine.verbs == ["rm"]
    assert persisted_container.name not in engine.containers
    assert await load(db_manager, persisted_container.name) is None

    async with db_manager.get_session() as session:
        kept = await TicketRepository(session).get(ticket_id)
    assert kept is not None
    assert kept.container_id is None
    assert kept.container_name == persisted_container.name
    assert kept.user_email == "ada@example.com"
    assert kept.description == "GPU not visible"

    async with db_manager.get_session() as session:
        assert await TicketRepository(session).get_by_container(persisted_container.id) == []


@pytest.mark.asyncio
async def test_delete_releases_port_claims(container_manager, db_manager, admin):
    container = await container_manager.create_container(admin, make_request())
    assert len(await claimed_ports(db_manager)) == 2

    await container_manager.delete_container(admin, container.name)

    assert await claimed_ports(db_manager) == set()


@pytest.mark.asyncio
async def test_delete_when_engine_container_is_gone(
    container_manager, engine, db_manager, admin, persisted_container
):
    engine.containers.clear()

    await container_manager.delete_container(admin, persisted_container.name)

    assert await load(db_manager, persisted_container.name) is None


@pytest.mark.asyncio
async def test_delete_requires_admin(container_manager, engine, owner, persisted_container):
    with pytest.raises(AuthorizationError):
        await container_manager.delete_container(owner, persisted_container.name)

    assert engine.calls == []


@pytest.mark.asyncio
async def test_delete_database_failure_is_partial(
    container_manager, engine, db_manager, admin, persisted_container
):
    """Test that a failed record deletion after engine removal is reported as partial."""
    error = OperationalError("UPDATE", {}, Exception("database is locked"))

    with patch.object(TicketRepository, "detach_container", AsyncMock(side_effect=error)):
        with pytest.raises(PartialFailureError) as exc_info:
            await container_manager.delete_container(admin, persisted_container.name)

    assert exc_info.value.operation == "delete"
    assert exc_info.value.engine_done is True
    assert persisted_container.name not in engine.containers
    assert await load(db_manager, persisted_container.name) is not None


@pytest.mark.asyncio
async def test_name_locks_do_not_accumulate(container_manager, owner, persisted_container):
    """Test that lookups of unknown names leave no per-name lock behind."""
    for i in range(50):
        with pytest.raises(ContainerNotFoundError):
            await container_manager.restart_container(owner, f"ghost-{i}")

    await container_manager.restart_container(owner, persisted_container.name)

    assert container_manager._name_locks == {}
    assert container_manager._name_lock_users == {}


@pytest.mark.asyncio
async def test_lifecycle_operations_on_one_name_do_not_interleave(
    container_manager, engine, owner, admin, persisted_container
):
    """Test that a delete waits until a reset on the same name has finished."""
    name = persisted_container.name
    entered = asyncio.Event()
    gate = asyncio.Event()
    remove = engine.remove

    async def gated_remove(target, missing_ok=False):
        if not entered.is_set():
            entered.set()
            await gate.wait()
        await remove(target, missing_ok=missing_ok)

    engine.remove = gated_remove

    reset = asyncio.create_task(container_manager.reset_container(owner, name))
    await entered.wait()
    delete = asyncio.create_task(container_manager.delete_container(admin, name))
    await asyncio.sleep(0.05)

    assert engine.verbs == []
    assert not delete.done()

    gate.set()
    await asyncio.gather(reset, delete)

    assert engine.verbs == ["rm", "run", "rm"]
    assert name not in engine.containers
    assert container_manager._name_locks == {}


@pytest.mark.asyncio
async def test_change_password(container_manager, engine, db_manager, owner, persisted_container):
    """Test that the password is set inside the container before it is stored."""
    await container_manager.change_password(owner, persisted_container.name, "s3cretPass")

    assert engine.calls == [
        ("exec", persisted_container.name, CommandBuilder.build_password_argv("s3cretPass"))
    ]
    stored = await load(db_manager, persisted_container.name)
    assert stored.password == "s3cretPass"


@pytest.mark.asyncio
async def test_change_password_database_failure_is_partial(
    container_manager, engine, owner, persisted_container, caplog
):
    """Test that a password set in the container but not stored is audited as partial."""
    error = OperationalError("UPDATE", {}, Exception("database is locked"))

    with caplog.at_level(logging.INFO, logger="audit"):
        with patch.object(ContainerRepository, "update_password", AsyncMock(side_effect=error)):
            with pytest.raises(PartialFailureError) as exc_info:
                await container_manager.change_password(
                    owner, persisted_container.name, "s3cretPass"
                )

    assert exc_info.value.operation == "change_password"
    events = [r for r in caplog.records if r.name == "audit"]
    partial = [r for r in events if r.event_type == "partial_failure"]
    assert len(partial) == 1
    assert partial[0].details == {
        "operation": "change_password",
        "engine_done": True,
        "db_done": False,
    }


@pytest.mark.asyncio
async def test_change_password_engine_failure_keeps_old_password(
    container_manager, engine, db_manager, owner, persisted_container
):
    engine.failures["exec"] = EngineError(["exec"], 1, "chpasswd: (user root) pam_chauthtok() failed")

    with pytest.raises(EngineError):
        await container_manager.change_password(owner, persisted_container.name, "s3cretPass")

    stored = await load(db_manager, persisted_container.name)
    assert stored.password == "initialpw"


@pytest.mark.asyncio
@pytest.mark.parametrize("password", [None, "", "short", "has space1", "colon:pass1"])
async def test_change_password_rejects_bad_input(
    container_manager, engine, owner, persisted_container, password
):
    with pytest.raises(ValidationError):
        await container_manager.change_password(owner, persisted_container.name, password)

    assert engine.calls == []


@pytest.mark.asyncio
async def test_change_password_by_non_owner_is_refused(
    container_manager, engine, db_manager, stranger, persisted_container
):
    with pytest.raises(AuthorizationError):
        await container_manager.change_password(stranger, persisted_container.name, "s3cretPass")

    assert engine.calls == []
    stored = await load(db_manager, persisted_container.name)
    assert stored.password == "initialpw"


@pytest.mark.asyncio
async def test_get_container_reports_orphan_as_unknown(
    container_manager, engine, owner, persisted_container
):
    """Test that a record without an engine container is shown with no status."""
    engine.containers.clear()

    view = await container_manager.get_container(owner, persisted_container.name)

    assert view.name == persisted_container.name
    assert view.status is None


@pytest.mark.asyncio
async def test_read_operations_allow_owner_and_admin(
    container_manager, owner, admin, stranger, persisted_container
):
    name = persisted_container.name
    for actor in (owner, admin):
        assert (await container_manager.get_container(actor, name)).status == "running"
        assert "jupyter" in await container_manager.get_logs(actor, name)
        assert (await container_manager.get_stats(actor, name))["Name"] == name

    with pytest.raises(AuthorizationError):
        await container_manager.get_logs(stranger, name)
    with pytest.raises(AuthorizationError):
        await container_manager.get_stats(stranger, name)


@pytest.mark.asyncio
async def test_get_logs_passes_tail(container_manager, engine, owner, persisted_container):
    await container_manager.get_logs(owner, persisted_container.name, tail=50)
    assert engine.calls == [("logs", persisted_container.name, 50)]


@pytest.mark.asyncio
async def test_jupyter_link_uses_local_host(container_manager, engine, owner, persisted_container):
    url = await container_manager.get_jupyter_link(owner, persisted_container.name)

    assert url == "http://localhost:20002"
    assert engine.calls == []


@pytest.mark.asyncio
async def test_list_my_containers(container_manager, admin, owner, stranger):
    created = await container_manager.create_container(admin, make_request())

    mine = await container_manager.list_my_containers(owner)
    assert [view.name for view in mine] == [created.name]
    assert mine[0].status == "running"

    assert await container_manager.list_my_containers(stranger) == []


@pytest.mark.asyncio
async def test_list_all_containers_requires_admin(
    container_manager, engine, admin, owner, persisted_container
):
    views = await container_manager.list_all_containers(admin)
    assert [view.name for view in views] == [persisted_container.name]

    engine.calls.clear()
    with pytest.raises(AuthorizationError):
        await container_manager.list_all_containers(owner)
    assert engine.calls == []


@pytest.mark.asyncio
async def test_batch_stats_uses_two_engine_calls(container_manager, engine, admin):
    first = await container_manager.create_container(admin, make_request())
    second = await container_manager.create_container(admin, make_request())
    engine.containers[second.name] = "exited"
    engine.calls.clear()

    snapshot = await container_manager.batch_stats(admin)

    assert sorted(engine.verbs) == ["inspect_batch", "stats_batch"]
    assert snapshot.status[first.name].status == "running"
    assert snapshot.status[second.name].status == "exited"
    assert first.name in snapshot.stats
    assert second.name not in snapshot.stats


@pytest.mark.asyncio
async def test_batch_stats_with_no_containers(container_manager, engine, admin):
    snapshot = await container_manager.batch_stats(admin)

    assert engine.calls == []
    assert snapshot.status == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("term", ["", " ", "a"])
async def test_search_images_requires_two_characters(container_manager, engine, owner, term):
    with pytest.raises(ValidationError):
        await container_manager.search_images(owner, term)

    assert engine.calls == []


@pytest.mark.asyncio
async def test_search_images(container_manager, engine, owner):
    await container_manager.search_images(owner, " pytorch ")
    assert engine.calls == [("search", "pytorch")]
