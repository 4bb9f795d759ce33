"""GPU DevBox REST server implementation using FastAPI."""

import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy.exc import SQLAlchemyError

from gpu_devbox.auth import Access, Actor, authorize, resolve_actor
from gpu_devbox.config import Settings, get_settings
from gpu_devbox.managers.container_manager import ContainerManager
from gpu_devbox.managers.maintenance_manager import MaintenanceManager
from gpu_devbox.managers.reconciliation_manager import ReconciliationManager
from gpu_devbox.models.database import DatabaseManager
from gpu_devbox.schemas import (
    BatchStatsOutput,
    ChangePasswordInput,
    ContainerOutput,
    CreateContainerInput,
    Envelope,
    HealthCheckResponse,
    ImageOutput,
    JupyterLinkOutput,
    LogsOutput,
    Meta,
    ReconcileOutput,
)
from gpu_devbox.utils import get_logger, setup_logging
from gpu_devbox.utils.audit_logger import AuditEventType, get_audit_logger
from gpu_devbox.utils.docker_cli import DockerCLI, EngineClient
from gpu_devbox.utils.exceptions import DevBoxError, EngineError, EngineTimeoutError
from gpu_devbox.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

API_PREFIX = "/api/v1/docker"


def envelope(data: Any = None, message: str = "OK", code: int = 200) -> dict:
    """Wrap a result in the response envelope."""
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in data]
    return Envelope(data=data, meta=Meta(code=code, message=message)).model_dump(mode="json")


def error_response(code: int, message: str, error: str) -> JSONResponse:
    body = Envelope(data=None, meta=Meta(code=code, message=message, error=error))
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[EngineClient] = None,
    db_manager: Optional[DatabaseManager] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the cached settings)
        engine: Container engine client (defaults to the docker CLI)
        db_manager: Database manager (defaults to one built from settings)

    Returns:
        Configured application
    """
    settings = settings or get_settings()
    engine = engine or DockerCLI.from_settings(settings)
    db_manager = db_manager or DatabaseManager(settings)

    manager = ContainerManager(engine, db_manager, settings)
    reconciliation_manager = ReconciliationManager(engine, db_manager)
    maintenance_manager = MaintenanceManager(
        reconciliation_manager, interval_s=settings.reconcile_interval_s
    )
    audit_logger = get_audit_logger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown tasks."""
        logger.info("Starting GPU DevBox server", extra={"version": "0.1.0"})

        await db_manager.create_tables()
        logger.info("Database initialized successfully")

        if settings.reconcile_interval_s > 0:
            await maintenance_manager.start()

        audit_logger.log_event(
            AuditEventType.SYSTEM_STARTUP,
            details={"deployment_mode": settings.deployment_mode, "auth_mode": settings.auth_mode},
        )

        yield

        logger.info("Shutting down GPU DevBox server")
        await maintenance_manager.stop()
        await db_manager.close()
        audit_logger.log_event(AuditEventType.SYSTEM_SHUTDOWN)
        logger.info("GPU DevBox server stopped")

    app = FastAPI(title="GPU DevBox", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.container_manager = manager
    app.state.reconciliation_manager = reconciliation_manager
    app.state.maintenance_manager = maintenance_manager

    @app.exception_handler(DevBoxError)
    async def devbox_error_handler(request: Request, exc: DevBoxError) -> JSONResponse:
        if exc.code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error": str(exc), "error_type": type(exc).__name__},
            )
        return error_response(exc.code, str(exc), type(exc).__name__)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {field} {first.get('msg', '')}".strip()
        return error_response(400, message, "ValidationError")

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error", extra={"path": request.url.path, "error": str(exc)})
        return error_response(500, "Internal database error", "DatabaseError")

    async def current_actor(
        x_user_id: Optional[str] = Header(None),
        authorization: Optional[str] = Header(None),
    ) -> Actor:
        return await resolve_actor(db_manager, settings, x_user_id, authorization)

    router = APIRouter(prefix=API_PREFIX)

    @router.post("/createContainer", status_code=201)
    async def create_container(
        body: CreateContainerInput, actor: Actor = Depends(current_actor)
    ) -> dict:
        container = await manager.create_container(actor, body.to_request())
        return envelope(ContainerOutput.from_container(container), "Container created", 201)

    @router.post("/container/{name}/reset")
    async def reset_container(name: str, actor: Actor = Depends(current_actor)) -> dict:
        container = await manager.reset_container(actor, name)
        return envelope(ContainerOutput.from_container(container), "Container reset")

    @router.post("/container/{name}/start")
    async def start_container(name: str, actor: Actor = Depends(current_actor)) -> dict:
        container = await manager.start_container(actor, name)
        return envelope(ContainerOutput.from_container(container), "Container started")

    @router.post("/container/{name}/stop")
    async def stop_container(name: str, actor: Actor = Depends(current_actor)) -> dict:
        container = await manager.stop_container(actor, name)
        return envelope(ContainerOutput.from_container(container), "Container stopped")

    @router.post("/container/{name}/restart")
    async def restart_container(name: str, actor: Actor = Depends(current_actor)) -> dict:
        container = await manager.restart_container(actor, name)
        return envelope(ContainerOutput.from_container(container), "Container restarted")

    @router.delete("/container/{name}")
    async def delete_container(name: str, actor: Actor = Depends(current_actor)) -> dict:
        container = await manager.delete_container(actor, name)
        return envelope(ContainerOutput.from_container(container), "Container deleted")

    @router.get("/container/{name}")
    async def get_container(name: str, actor: Actor = Depends(current_actor)) -> dict:
        view = await manager.get_container(actor, name)
        return envelope(ContainerOutput.from_container(view))

    @router.get("/container/{name}/log")
    async def get_logs(
        name: str,
        tail: Optional[int] = Query(None, ge=1),
        actor: Actor = Depends(current_actor),
    ) -> dict:
        logs = await manager.get_logs(actor, name, tail=tail)
        return envelope(LogsOutput(logs=logs))

    @router.get("/container/{name}/stats")
    async def get_stats(name: str, actor: Actor = Depends(current_actor)) -> dict:
        return envelope(await manager.get_stats(actor, name))

    @router.get("/container/{name}/jupyterlink")
    async def get_jupyter_link(name: str, actor: Actor = Depends(current_actor)) -> dict:
        url = await manager.get_jupyter_link(actor, name)
        return envelope(JupyterLinkOutput(url=url))

    @router.post("/container/{name}/changePassword")
    async def change_password(
        name: str, body: ChangePasswordInput, actor: Actor = Depends(current_actor)
    ) -> dict:
        container = await manager.change_password(actor, name, body.password)
        return envelope(ContainerOutput.from_container(container), "Password changed")

    @router.get("/mycontainer")
    async def list_my_containers(actor: Actor = Depends(current_actor)) -> dict:
        views = await manager.list_my_containers(actor)
        return envelope([ContainerOutput.from_container(view) for view in views])

    @router.get("/allcontainer")
    async def list_all_containers(actor: Actor = Depends(current_actor)) -> dict:
        views = await manager.list_all_containers(actor)
        return envelope([ContainerOutput.from_container(view) for view in views])

    @router.get("/batch-stats")
    async def batch_stats(actor: Actor = Depends(current_actor)) -> dict:
        snapshot = await manager.batch_stats(actor)
        return envelope(BatchStatsOutput.from_snapshot(snapshot))

    @router.get("/search/{image_name}")
    async def search_images(image_name: str, actor: Actor = Depends(current_actor)) -> dict:
        results = await manager.search_images(actor, image_name)
        return envelope([ImageOutput.model_validate(result) for result in results])

    @router.post("/reconcile")
    async def reconcile(actor: Actor = Depends(current_actor)) -> dict:
        authorize(actor, "reconcile containers", Access.ADMIN)
        report = await reconciliation_manager.reconcile()
        return envelope(ReconcileOutput.from_report(report))

    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint reporting engine connectivity."""
        try:
            version = await engine.version()
            connected = True
        except (EngineError, EngineTimeoutError) as e:
            logger.warning("Engine health check failed", extra={"error": str(e)})
            version = None
            connected = False

        response = HealthCheckResponse(
            status="healthy" if connected else "degraded",
            engine_connected=connected,
            engine_version=version,
        )
        return envelope(response)

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics in text exposition format."""
        return Response(
            content=get_metrics_collector().get_metrics(), media_type=CONTENT_TYPE_LATEST
        )

    return app


def main() -> None:
    """Main entry point for the GPU DevBox server."""
    settings = get_settings()

    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "Starting server",
        extra={
            "host": settings.host,
            "port": settings.port,
            "auth_mode": settings.auth_mode,
            "deployment_mode": settings.deployment_mode,
            "state_db": settings.state_db,
        },
    )

    try:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
