"""Reconciliation manager comparing persisted containers with the engine."""

from dataclasses import dataclass, field
from typing import List

from gpu_devbox.models.database import DatabaseManager
from gpu_devbox.repositories.containers import ContainerRepository
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.audit_logger import AuditEventType, get_audit_logger
from gpu_devbox.utils.docker_cli import EngineClient
from gpu_devbox.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    """Differences between the database and the engine."""

    persisted_without_engine: List[str] = field(default_factory=list)
    engine_without_persisted: List[str] = field(default_factory=list)
    checked: int = 0

    @property
    def consistent(self) -> bool:
        return not self.persisted_without_engine and not self.engine_without_persisted


class ReconciliationManager:
    """Manager reporting containers left behind by partial failures.

    Only reports; nothing is removed from the engine or the database.
    """

    def __init__(self, engine: EngineClient, db_manager: DatabaseManager) -> None:
        """
        Initialize reconciliation manager.

        Args:
            engine: Container engine client
            db_manager: Database manager
        """
        self.engine = engine
        self.db_manager = db_manager
        self.audit = get_audit_logger()
        self.metrics = get_metrics_collector()

    async def reconcile(self) -> ReconcileReport:
        """
        Compare persisted container names with managed engine containers.

        Returns:
            Report of names present on only one side
        """
        logger.info("Starting container reconciliation")

        async with self.db_manager.get_session() as session:
            persisted = set(await ContainerRepository(session).list_names())
        managed = set(await self.engine.list_managed())

        report = ReconcileReport(
            persisted_without_engine=sorted(persisted - managed),
            engine_without_persisted=sorted(managed - persisted),
            checked=len(persisted | managed),
        )
        self.metrics.set_managed_containers(len(persisted))

        if report.consistent:
            logger.info("Container reconciliation found no drift", extra={"checked": report.checked})
        else:
            logger.warning(
                "Container reconciliation found drift",
                extra={
                    "persisted_without_engine": report.persisted_without_engine,
                    "engine_without_persisted": report.engine_without_persisted,
                },
            )
        self.audit.log_event(
            AuditEventType.SYSTEM_RECONCILE,
            details={
                "checked": report.checked,
                "persisted_without_engine": len(report.persisted_without_engine),
                "engine_without_persisted": len(report.engine_without_persisted),
            },
        )
        return report
