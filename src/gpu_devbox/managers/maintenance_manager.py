"""Background maintenance manager for periodic tasks."""

import asyncio

from sqlalchemy.exc import SQLAlchemyError

from gpu_devbox.managers.reconciliation_manager import ReconcileReport, ReconciliationManager
from gpu_devbox.utils import get_logger
from gpu_devbox.utils.exceptions import DevBoxError

logger = get_logger(__name__)

MAINTENANCE_ERROR_RETRY_SECONDS = 60


class MaintenanceManager:
    """Manager for background maintenance tasks."""

    def __init__(
        self, reconciler: ReconciliationManager, interval_s: float = 3600
    ) -> None:
        """
        Initialize maintenance manager.

        Args:
            reconciler: Reconciliation manager run on every cycle
            interval_s: Seconds between cycles
        """
        self.reconciler = reconciler
        self.interval_s = interval_s
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start background maintenance tasks."""
        if self._running:
            logger.warning("Maintenance manager already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_maintenance_loop())
        logger.info("Maintenance manager started", extra={"interval_s": self.interval_s})

    async def stop(self) -> None:
        """Stop background maintenance tasks."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Maintenance manager stopped")

    async def _run_maintenance_loop(self) -> None:
        """Run periodic maintenance tasks."""
        while self._running:
            try:
                await self.run_maintenance()
                await asyncio.sleep(self.interval_s)
            except asyncio.CancelledError:
                break
            except (DevBoxError, SQLAlchemyError, OSError) as e:
                logger.error("Maintenance task failed", extra={"error": str(e)})
                await asyncio.sleep(MAINTENANCE_ERROR_RETRY_SECONDS)

    async def run_maintenance(self) -> ReconcileReport:
        """
        Run one maintenance cycle.

        Returns:
            Reconciliation report of the cycle
        """
        logger.info("Running maintenance tasks")
        return await self.reconciler.reconcile()
