"""Batch resource telemetry for many containers in a fixed number of engine calls."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Sequence

from gpu_devbox.utils import get_logger
from gpu_devbox.utils.docker_cli import EngineClient
from gpu_devbox.utils.exceptions import EngineError, EngineTimeoutError

logger = get_logger(__name__)

NOT_FOUND = "not_found"


@dataclass
class ContainerState:
    """Engine state and main process id of one container."""

    status: str
    pid: int = 0


@dataclass
class BatchSnapshot:
    """Stats and state for a set of containers, keyed by container name."""

    stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    status: Dict[str, ContainerState] = field(default_factory=dict)


def parse_stats_lines(output: str) -> Dict[str, Dict[str, Any]]:
    """
    Parse ``docker stats --format '{{json .}}'`` output.

    Each line is one JSON object; lines that fail to parse or carry no name
    are skipped with a warning.
    """
    stats: Dict[str, Dict[str, Any]] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping unparseable stats line", extra={"line": line, "error": str(e)})
            continue
        name = record.get("Name") if isinstance(record, dict) else None
        if not name:
            logger.warning("Skipping stats line without a name", extra={"line": line})
            continue
        stats[name] = record
    return stats


def parse_status_lines(output: str) -> Dict[str, ContainerState]:
    """
    Parse ``/<name>:<status>:<pid>`` records from a multi-target inspect.

    Malformed records are skipped with a warning.
    """
    states: Dict[str, ContainerState] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(":")
        if len(parts) != 3 or not parts[0].strip("/"):
            logger.warning("Skipping malformed status line", extra={"line": line})
            continue
        name, status, pid = parts
        try:
            pid_value = int(pid) if pid else 0
        except ValueError:
            logger.warning("Skipping status line with bad pid", extra={"line": line})
            continue
        states[name.lstrip("/")] = ContainerState(status=status or "unknown", pid=pid_value)
    return states


class BatchStatsCollector:
    """Collects stats and state for N containers with at most two engine invocations."""

    def __init__(self, engine: EngineClient) -> None:
        """
        Initialize batch stats collector.

        Args:
            engine: Container engine client
        """
        self.engine = engine

    async def collect(self, names: Sequence[str]) -> BatchSnapshot:
        """
        Fetch stats and state for a set of containers.

        One multi-target inspect query finds which containers exist, then one
        multi-target stats query covers only those, so a missing container
        cannot fail the stats of the others. Nothing is invoked for an empty
        input. A failure of one query leaves its half of the snapshot empty.

        Args:
            names: Container names

        Returns:
            BatchSnapshot keyed by container name
        """
        names = list(dict.fromkeys(names))
        snapshot = BatchSnapshot()
        if not names:
            return snapshot

        present = names
        try:
            status_out = await self.engine.inspect_batch(names)
        except (EngineError, EngineTimeoutError) as e:
            logger.warning(
                "Batch status query failed",
                extra={"count": len(names), "error": str(e)},
            )
        else:
            snapshot.status = parse_status_lines(status_out)
            present = [name for name in names if name in snapshot.status]
            for name in names:
                snapshot.status.setdefault(name, ContainerState(status=NOT_FOUND))

        if not present:
            return snapshot

        try:
            stats_out = await self.engine.stats_batch(present)
        except (EngineError, EngineTimeoutError) as e:
            logger.warning(
                "Batch stats query failed",
                extra={"count": len(present), "error": str(e)},
            )
        else:
            snapshot.stats = parse_stats_lines(stats_out)

        return snapshot
