"""Request and response models for the REST API."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from gpu_devbox.managers.batch_stats import BatchSnapshot
from gpu_devbox.managers.container_manager import CreateContainerRequest
from gpu_devbox.managers.reconciliation_manager import ReconcileReport
from gpu_devbox.managers.status_reconciler import ContainerView
from gpu_devbox.models.containers import Container


class Meta(BaseModel):
    """Envelope metadata."""

    code: int = Field(..., description="HTTP status code")
    message: str = Field(..., description="Human-readable outcome")
    error: Optional[str] = Field(None, description="Error class name on failure")


class Envelope(BaseModel):
    """Every response body is wrapped in this envelope."""

    data: Any = Field(None, description="Operation result")
    meta: Meta


# Requests


class CreateContainerInput(BaseModel):
    """Input model for container creation.

    Fields are optional here so missing ones are reported by the lifecycle
    manager with the regular validation error envelope.
    """

    model_config = ConfigDict(populate_by_name=True)

    image_name: Optional[str] = Field(None, alias="imageName", description="Image reference")
    memory_limit: Optional[str] = Field(
        None, alias="memoryLimit", description="Memory quota, e.g. 2g"
    )
    cpus: Optional[Union[str, float, int]] = Field(None, description="CPU quota")
    gpus: Optional[Union[str, int]] = Field(
        None, description="GPU reservation, or 'none' for no GPU"
    )
    user_container: Optional[int] = Field(
        None, alias="userContainer", description="ID of the owning user"
    )

    def to_request(self) -> CreateContainerRequest:
        return CreateContainerRequest(
            image_name=self.image_name,
            memory_limit=self.memory_limit,
            cpus=None if self.cpus is None else str(self.cpus),
            gpus=None if self.gpus is None else str(self.gpus),
            user_id=self.user_container,
        )


class ChangePasswordInput(BaseModel):
    """Input model for password change."""

    password: Optional[str] = Field(None, description="New root password")


# Responses


class ContainerOutput(BaseModel):
    """A persisted container, with live status where it was queried."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str = Field(..., description="Engine container name")
    image_name: str
    ssh_port: int
    jupyter_port: int
    password: str = Field(..., description="Root password for SSH and Jupyter")
    cpu: str
    ram: str
    gpu: str
    user_id: int
    created_at: Optional[datetime] = None
    status: Optional[str] = Field(
        None, description="Live engine status; null when the engine has no such container"
    )

    @classmethod
    def from_container(cls, container: Union[Container, ContainerView]) -> "ContainerOutput":
        return cls.model_validate(container)


class ContainerStateOutput(BaseModel):
    """Fleet entry of the batch stats response."""

    status: str
    pid: int = 0
    stats: Optional[Dict[str, Any]] = None


class BatchStatsOutput(BaseModel):
    """Stats and state of every container, keyed by name."""

    containers: Dict[str, ContainerStateOutput]

    @classmethod
    def from_snapshot(cls, snapshot: BatchSnapshot) -> "BatchStatsOutput":
        return cls(
            containers={
                name: ContainerStateOutput(
                    status=state.status, pid=state.pid, stats=snapshot.stats.get(name)
                )
                for name, state in snapshot.status.items()
            }
        )


class JupyterLinkOutput(BaseModel):
    url: str


class LogsOutput(BaseModel):
    logs: str


class ImageOutput(BaseModel):
    """One image search hit."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    description: str = ""
    stars: int = 0
    official: bool = False


class ReconcileOutput(BaseModel):
    """Output model for the reconciliation sweep."""

    persisted_without_engine: List[str]
    engine_without_persisted: List[str]
    checked: int

    @classmethod
    def from_report(cls, report: ReconcileReport) -> "ReconcileOutput":
        return cls(
            persisted_without_engine=report.persisted_without_engine,
            engine_without_persisted=report.engine_without_persisted,
            checked=report.checked,
        )


class HealthCheckResponse(BaseModel):
    """Health check response model."""

    status: str
    engine_connected: bool
    engine_version: Optional[str] = None
    database_initialized: bool = True
    version: str = "0.1.0"
