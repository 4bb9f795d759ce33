"""Container engine client driving the docker CLI for GPU DevBox.

Every call spawns the engine binary with an explicit argument list (no shell),
under a deadline. Lifecycle code depends on the ``EngineClient`` protocol so a
fake engine can stand in for it in tests.
"""

import asyncio
import contextlib
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Sequence

from gpu_devbox.config import Settings
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.exceptions import EngineError, EngineTimeoutError
from gpu_devbox.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

JSON_FORMAT = "{{json .}}"
STATUS_FORMAT = "{{.State.Status}}"
BATCH_STATUS_FORMAT = "{{.Name}}:{{.State.Status}}:{{.State.Pid}}"


@dataclass
class CommandResult:
    """Outcome of one engine process."""

    args: List[str]
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class ImageSearchResult:
    """One image returned by a registry search."""

    name: str
    description: str
    stars: int
    official: bool


class EngineClient(Protocol):
    """Capabilities the lifecycle code needs from a container engine."""

    async def run(self, args: Sequence[str]) -> str: ...

    async def remove(self, name: str, missing_ok: bool = False) -> None: ...

    async def start(self, name: str) -> None: ...

    async def stop(self, name: str) -> None: ...

    async def restart(self, name: str) -> None: ...

    async def exec(self, name: str, argv: Sequence[str], check: bool = True) -> CommandResult: ...

    async def logs(self, name: str, tail: int | None = None) -> str: ...

    async def inspect_status(self, name: str) -> str | None: ...

    async def stats(self, name: str) -> Dict[str, Any]: ...

    async def stats_batch(self, names: Sequence[str]) -> str: ...

    async def inspect_batch(self, names: Sequence[str]) -> str: ...

    async def search(self, term: str, limit: int = 25) -> List[ImageSearchResult]: ...

    async def list_managed(self) -> List[str]: ...

    async def version(self) -> str: ...


class DockerCLI:
    """EngineClient implementation backed by the docker command-line tool."""

    def __init__(
        self,
        binary: str = "docker",
        timeout_s: float = 60.0,
        create_timeout_s: float = 900.0,
        benign_warnings: Sequence[str] = (),
        label_prefix: str = "devbox",
    ) -> None:
        """
        Initialize the docker CLI client.

        Args:
            binary: Engine executable
            timeout_s: Deadline for ordinary invocations
            create_timeout_s: Deadline for ``docker run``
            benign_warnings: stderr fragments tolerated by ``docker run``
            label_prefix: Label namespace marking managed containers
        """
        self.binary = binary
        self.timeout_s = timeout_s
        self.create_timeout_s = create_timeout_s
        self.benign_warnings = list(benign_warnings)
        self.label_prefix = label_prefix
        self.metrics = get_metrics_collector()

    @classmethod
    def from_settings(cls, settings: Settings) -> "DockerCLI":
        """Build a client from application settings."""
        return cls(
            binary=settings.docker_binary,
            timeout_s=settings.engine_timeout_s,
            create_timeout_s=settings.create_timeout_s,
            benign_warnings=settings.benign_engine_warnings_list,
            label_prefix=settings.container_label_prefix,
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        """Kill an engine process that may already have exited."""
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()

    async def _invoke(
        self,
        args: Sequence[str],
        timeout_s: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Spawn the engine and wait for it under a deadline.

        Args:
            args: Engine arguments (without the binary)
            timeout_s: Deadline override
            check: Raise EngineError on a non-zero exit

        Returns:
            CommandResult of the process

        Raises:
            EngineError: If the process cannot start or exits non-zero
            EngineTimeoutError: If the deadline expires
        """
        args = list(args)
        verb = args[0] if args else "?"
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.metrics.record_engine_invocation(verb, "failure", time.monotonic() - started)
            raise EngineError(args, None, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.CancelledError:
            await self._kill(proc)
            raise
        except asyncio.TimeoutError:
            await self._kill(proc)
            self.metrics.record_engine_invocation(verb, "timeout", time.monotonic() - started)
            logger.error(
                "Engine command timed out",
                extra={"command": verb, "timeout_s": timeout},
            )
            raise EngineTimeoutError(args, timeout)

        result = CommandResult(
            args=args,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        outcome = "success" if result.exit_code == 0 else "failure"
        self.metrics.record_engine_invocation(verb, outcome, time.monotonic() - started)
        logger.debug(
            "Engine command finished",
            extra={"command": verb, "exit_code": result.exit_code},
        )

        if check and result.exit_code != 0:
            raise EngineError(args, result.exit_code, result.stderr)
        return result

    def is_benign(self, stderr: str) -> bool:
        """Whether every non-blank stderr line matches a known harmless warning."""
        lines = [line for line in stderr.splitlines() if line.strip()]
        return all(
            any(warning in line for warning in self.benign_warnings) for line in lines
        )

    async def run(self, args: Sequence[str]) -> str:
        """
        Create and start a detached container.

        Args:
            args: ``run`` arguments as built by the command builder

        Returns:
            Engine container ID

        Raises:
            EngineError: On non-zero exit or a non-benign diagnostic
        """
        result = await self._invoke(args, timeout_s=self.create_timeout_s)
        if result.stderr.strip():
            if not self.is_benign(result.stderr):
                raise EngineError(args, result.exit_code, result.stderr)
            logger.warning(
                "Ignoring benign engine warning",
                extra={"stderr": result.stderr.strip()},
            )
        return result.stdout.strip()

    async def remove(self, name: str, missing_ok: bool = False) -> None:
        """Force-remove a container by name."""
        try:
            await self._invoke(["rm", "-f", name])
        except EngineError as e:
            if missing_ok and e.is_not_found:
                logger.info("Container already absent from engine", extra={"container": name})
                return
            raise

    async def start(self, name: str) -> None:
        """Start a container by name."""
        await self._invoke(["start", name])

    async def stop(self, name: str) -> None:
        """Stop a container by name."""
        await self._invoke(["stop", name])

    async def restart(self, name: str) -> None:
        """Restart a container by name."""
        await self._invoke(["restart", name])

    async def exec(self, name: str, argv: Sequence[str], check: bool = True) -> CommandResult:
        """Run a command inside a running container."""
        return await self._invoke(["exec", name, *argv], check=check)

    async def logs(self, name: str, tail: int | None = None) -> str:
        """
        Fetch container logs.

        Args:
            name: Container name
            tail: Number of trailing lines (all when None)

        Returns:
            Combined stdout and stderr of the container
        """
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        result = await self._invoke([*args, name])
        return result.stdout + result.stderr

    async def inspect_status(self, name: str) -> str | None:
        """
        Get the engine state of a container.

        Returns:
            State string (running, exited, ...) or None when the engine has no such container
        """
        try:
            result = await self._invoke(["inspect", "--format", STATUS_FORMAT, name])
        except EngineError as e:
            if e.is_not_found:
                return None
            raise
        return result.stdout.strip() or None

    async def stats(self, name: str) -> Dict[str, Any]:
        """Get a one-shot resource snapshot of a single container."""
        result = await self._invoke(["stats", "--no-stream", "--format", JSON_FORMAT, name])
        line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else "{}"
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            raise EngineError(
                result.args, result.exit_code, message=f"Unparseable stats output: {e}"
            ) from e

    async def stats_batch(self, names: Sequence[str]) -> str:
        """Get one-shot stats for many containers in one invocation (raw JSON lines)."""
        result = await self._invoke(
            ["stats", "--no-stream", "--format", JSON_FORMAT, *names]
        )
        return result.stdout

    async def inspect_batch(self, names: Sequence[str]) -> str:
        """
        Get name, state and pid for many containers in one invocation.

        The engine exits non-zero when some names are unknown but still prints
        the records it found; those are returned.
        """
        args = ["inspect", "--format", BATCH_STATUS_FORMAT, *names]
        result = await self._invoke(args, check=False)
        if result.exit_code != 0:
            error = EngineError(args, result.exit_code, result.stderr)
            if not error.is_not_found:
                raise error
        return result.stdout

    async def search(self, term: str, limit: int = 25) -> List[ImageSearchResult]:
        """Search the registry for images matching a substring."""
        result = await self._invoke(
            ["search", "--no-trunc", "--limit", str(limit), "--format", JSON_FORMAT, term]
        )
        images = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unparseable search line", extra={"line": line})
                continue
            images.append(
                ImageSearchResult(
                    name=raw.get("Name", ""),
                    description=raw.get("Description", ""),
                    stars=_to_int(raw.get("StarCount")),
                    official=str(raw.get("IsOfficial", "")).lower() in ("true", "[ok]"),
                )
            )
        return images

    async def list_managed(self) -> List[str]:
        """List the names of every engine container carrying the managed label."""
        result = await self._invoke(
            [
                "ps",
                "-a",
                "--filter",
                f"label={self.label_prefix}.managed=true",
                "--format",
                "{{.Names}}",
            ]
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def version(self) -> str:
        """Get the engine server version (doubles as a connectivity check)."""
        result = await self._invoke(["version", "--format", "{{.Server.Version}}"])
        return result.stdout.strip()


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0

