"""Manager modules for business logic."""

from .batch_stats import BatchSnapshot, BatchStatsCollector, ContainerState
from .command_builder import CommandBuilder, ContainerSpec
from .container_manager import ContainerManager, CreateContainerRequest
from .maintenance_manager import MaintenanceManager
from .port_allocator import PortAllocator
from .reconciliation_manager import ReconcileReport, ReconciliationManager
from .status_reconciler import ContainerView, StatusReconciler

__all__ = [
    "BatchSnapshot",
    "BatchStatsCollector",
    "CommandBuilder",
    "ContainerManager",
    "ContainerSpec",
    "ContainerState",
    "ContainerView",
    "CreateContainerRequest",
    "MaintenanceManager",
    "PortAllocator",
    "ReconcileReport",
    "ReconciliationManager",
    "StatusReconciler",
]
