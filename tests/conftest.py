"""Test configuration and fixtures."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

import pytest

from gpu_devbox.auth import Actor
from gpu_devbox.config import Settings
from gpu_devbox.managers.container_manager import ContainerManager
from gpu_devbox.models.containers import Container
from gpu_devbox.models.database import DatabaseManager
from gpu_devbox.models.users import User
from gpu_devbox.utils.docker_cli import CommandResult, ImageSearchResult
from gpu_devbox.utils.exceptions import EngineError

ADMIN_ID = 1
OWNER_ID = 42
STRANGER_ID = 7


class FakeEngine:
    """In-memory EngineClient that records every call."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.containers: Dict[str, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.exec_exit_code = 0
        self.search_results: List[ImageSearchResult] = []

    def _record(self, verb: str, *args: Any) -> None:
        self.calls.append((verb, *args))
        if verb in self.failures:
            raise self.failures[verb]

    def _require(self, verb: str, name: str) -> None:
        if name not in self.containers:
            raise EngineError([verb, name], 1, f"Error: No such container: {name}")

    @property
    def verbs(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def run(self, args: Sequence[str]) -> str:
        args = list(args)
        self._record("run", args)
        self.containers[args[args.index("--name") + 1]] = "running"
        return "0123456789ab"

    async def remove(self, name: str, missing_ok: bool = False) -> None:
        self._record("rm", name)
        if not missing_ok:
            self._require("rm", name)
        self.containers.pop(name, None)

    async def start(self, name: str) -> None:
        self._record("start", name)
        self._require("start", name)
        self.containers[name] = "running"

    async def stop(self, name: str) -> None:
        self._record("stop", name)
        self._require("stop", name)
        self.containers[name] = "exited"

    async def restart(self, name: str) -> None:
        self._record("restart", name)
        self._require("restart", name)
        self.containers[name] = "running"

    async def exec(self, name: str, argv: Sequence[str], check: bool = True) -> CommandResult:
        self._record("exec", name, list(argv))
        self._require("exec", name)
        result = CommandResult(["exec", name, *argv], self.exec_exit_code, "", "")
        if check and result.exit_code != 0:
            raise EngineError(result.args, result.exit_code, "exec failed")
        return result

    async def logs(self, name: str, tail: int | None = None) -> str:
        self._record("logs", name, tail)
        self._require("logs", name)
        return "jupyter started\n"

    async def inspect_status(self, name: str) -> str | None:
        self._record("inspect", name)
        return self.containers.get(name)

    async def stats(self, name: str) -> Dict[str, Any]:
        self._record("stats", name)
        self._require("stats", name)
        return {"Name": name, "CPUPerc": "0.50%", "MemUsage": "100MiB / 2GiB"}

    async def stats_batch(self, names: Sequence[str]) -> str:
        self._record("stats_batch", list(names))
        # docker stats prints nothing when any target is missing
        for name in names:
            self._require("stats", name)
        return "\n".join(
            json.dumps({"Name": name, "CPUPerc": "1.00%"})
            for name in names
            if self.containers.get(name) == "running"
        )

    async def inspect_batch(self, names: Sequence[str]) -> str:
        self._record("inspect_batch", list(names))
        return "\n".join(
            f"/{name}:{self.containers[name]}:{100 + index}"
            for index, name in enumerate(names)
            if name in self.containers
        )

    async def search(self, term: str, limit: int = 25) -> List[ImageSearchResult]:
        self._record("search", term)
        return [image for image in self.search_results if term in image.name]

    async def list_managed(self) -> List[str]:
        self._record("ps")
        return sorted(self.containers)

    async def version(self) -> str:
        self._record("version")
        return "27.0.1"


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway database and a small port range."""
    return Settings(
        state_db=str(tmp_path / "devbox.db"),
        port_range_min=20000,
        port_range_max=20019,
        reconcile_interval_s=0,
        deployment_mode="local",
    )


@pytest.fixture
async def db_manager(settings):
    """Create test database with all tables."""
    manager = DatabaseManager(settings=settings)
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
async def users(db_manager):
    """Seed an administrator, a container owner and an unrelated user."""
    async with db_manager.get_session() as session:
        session.add_all(
            [
                User(id=ADMIN_ID, full_name="Grace Admin", email="admin@example.com", is_admin=True),
                User(id=OWNER_ID, full_name="Ada Lovelace", email="ada@example.com"),
                User(id=STRANGER_ID, full_name="Eve Other", email="eve@example.com"),
            ]
        )
    return {"admin": ADMIN_ID, "owner": OWNER_ID, "stranger": STRANGER_ID}


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def admin():
    return Actor(user_id=ADMIN_ID, is_admin=True)


@pytest.fixture
def owner():
    return Actor(user_id=OWNER_ID)


@pytest.fixture
def stranger():
    return Actor(user_id=STRANGER_ID)


@pytest.fixture
def container_manager(engine, db_manager, settings, users):
    """ContainerManager wired to the fake engine and the test database."""
    return ContainerManager(engine, db_manager, settings)


@pytest.fixture
async def persisted_container(db_manager, engine, users):
    """A container owned by the owner user, present in database and engine."""
    container = Container(
        name="adalovelace-0a1b2c3d",
        image_name="pytorch/pytorch:latest",
        ssh_port=20001,
        jupyter_port=20002,
        password="initialpw",
        cpu="2",
        ram="2g",
        gpu="none",
        user_id=OWNER_ID,
        created_at=datetime.now(timezone.utc),
    )
    async with db_manager.get_session() as session:
        session.add(container)
    engine.containers[container.name] = "running"
    return container
