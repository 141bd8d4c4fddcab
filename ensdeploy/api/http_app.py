from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import Awaitable, Callable
import logging

from fastapi import Body, FastAPI, HTTPException, Query

from ensdeploy.api.handlers.deployments import (
    cancel_deployment_handler,
    confirm_naming_handler,
    create_deployment_handler,
    get_deployment_handler,
    list_deployments_handler,
    mark_upload_failed_handler,
    report_status_handler,
)
from ensdeploy.api.handlers.deps import ApiDeps
from ensdeploy.api.schemas import (
    CancelDeploymentResponse,
    ConfirmNamingRequest,
    ConfirmNamingResponse,
    CreateDeploymentRequest,
    CreateDeploymentResponse,
    DeploymentResponse,
    ErrorResponse,
    FinalizerMetrics,
    HealthResponse,
    ReadyResponse,
    ReportStatusRequest,
    UploadFailedRequest,
)
from ensdeploy.domain.errors import (
    DeploymentBusyError,
    DeploymentNotFoundError,
    DomainError,
)
from ensdeploy.domain.models import DeploymentStatus
from ensdeploy.finalizer.orchestrator import FinalizationOrchestrator
from ensdeploy.finalizer.runner import (
    FinalizerRuntimeSettings,
    FinalizerService,
    finalizer_runtime_settings_from_env,
)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _http_error(exc: DomainError) -> HTTPException:
    if isinstance(exc, DeploymentNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DeploymentBusyError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def build_app(
    role: str,
    run_id: str,
    orchestrator: FinalizationOrchestrator | None = None,
    finalizer_settings: FinalizerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    finalizer: FinalizerService | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal finalizer
        del app

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if orchestrator is not None:
            finalizer = FinalizerService(
                orchestrator=orchestrator,
                role=role,
                run_id=run_id,
                settings=finalizer_settings or finalizer_runtime_settings_from_env(),
                logger=logger,
            )
            finalizer.start()

        yield

        if finalizer is not None:
            await finalizer.stop()

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="ensdeploy", version="0.1.0", lifespan=lifespan)

    def _deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="skeleton")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        finalizer_enabled = orchestrator is not None
        finalizer_ready = True
        metrics = FinalizerMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            skipped_ticks_total=0,
            processed_total=0,
            errors_total=0,
        )
        if finalizer_enabled:
            finalizer_ready = finalizer is not None and finalizer.state.started and finalizer.running
            if finalizer is not None:
                state = finalizer.state
                metrics = FinalizerMetrics(
                    started=state.started,
                    stopped=state.stopped,
                    ticks_total=state.ticks_total,
                    skipped_ticks_total=state.skipped_ticks_total,
                    processed_total=state.processed_total,
                    errors_total=state.errors_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode="skeleton",
            finalizer_enabled=finalizer_enabled,
            finalizer_ready=finalizer_ready,
            finalizer_metrics=metrics,
        )

    @app.post(
        "/deployments",
        response_model=CreateDeploymentResponse,
        status_code=201,
        responses=_ERROR_RESPONSES,
        tags=["Deployments"],
    )
    async def create_deployment(request: CreateDeploymentRequest) -> CreateDeploymentResponse:
        deps = _deps()
        try:
            return await create_deployment_handler(request=request, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get("/deployments", response_model=list[DeploymentResponse], tags=["Deployments"])
    async def list_deployments(
        status: DeploymentStatus | None = Query(default=None),
        project_id: str | None = Query(default=None),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> list[DeploymentResponse]:
        return await list_deployments_handler(status=status, project_id=project_id, limit=limit, api_deps=_deps())

    @app.get(
        "/deployments/{deployment_id}",
        response_model=DeploymentResponse,
        responses=_ERROR_RESPONSES,
        tags=["Deployments"],
    )
    async def get_deployment(deployment_id: str) -> DeploymentResponse:
        deployment = await get_deployment_handler(deployment_id=deployment_id, api_deps=_deps())
        if deployment is None:
            raise HTTPException(status_code=404, detail="Deployment not found")
        return deployment

    @app.post(
        "/deployments/{deployment_id}/status",
        response_model=DeploymentResponse,
        responses=_ERROR_RESPONSES,
        tags=["Deployments"],
    )
    async def report_status(deployment_id: str, request: ReportStatusRequest) -> DeploymentResponse:
        deps = _deps()
        try:
            return await report_status_handler(deployment_id=deployment_id, request=request, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/deployments/{deployment_id}/cancel",
        response_model=CancelDeploymentResponse,
        responses=_ERROR_RESPONSES,
        tags=["Deployments"],
    )
    async def cancel_deployment(deployment_id: str) -> CancelDeploymentResponse:
        deps = _deps()
        try:
            return await cancel_deployment_handler(deployment_id=deployment_id, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/deployments/{deployment_id}/upload/fail",
        response_model=DeploymentResponse,
        responses=_ERROR_RESPONSES,
        tags=["Deployments"],
    )
    async def mark_upload_failed(
        deployment_id: str,
        request: UploadFailedRequest | None = Body(default=None),
    ) -> DeploymentResponse:
        deps = _deps()
        try:
            return await mark_upload_failed_handler(
                deployment_id=deployment_id,
                message=request.message if request is not None else None,
                api_deps=deps,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/deployments/{deployment_id}/naming/confirm",
        response_model=ConfirmNamingResponse,
        responses=_ERROR_RESPONSES,
        tags=["Deployments"],
    )
    async def confirm_naming(deployment_id: str, request: ConfirmNamingRequest) -> ConfirmNamingResponse:
        deps = _deps()
        try:
            return await confirm_naming_handler(deployment_id=deployment_id, tx_ref=request.tx_ref, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    return app
