from __future__ import annotations

from ensdeploy.api.handlers.deps import ApiDeps
from ensdeploy.api.schemas import (
    CancelDeploymentResponse,
    ConfirmNamingResponse,
    CreateDeploymentRequest,
    CreateDeploymentResponse,
    DeploymentResponse,
    ReportStatusRequest,
)
from ensdeploy.domain.dto import CreateDeploymentCommand, ReportBuildStatusCommand
from ensdeploy.domain.models import DeploymentListQuery, DeploymentStatus
from ensdeploy.domain.use_cases import deployments as use_cases


async def create_deployment_handler(
    *,
    request: CreateDeploymentRequest,
    api_deps: ApiDeps,
) -> CreateDeploymentResponse:
    created = await use_cases.create_deployment(
        CreateDeploymentCommand(
            project_id=request.project_id,
            triggered_by=request.triggered_by,
            resume_from_previous=request.resume_from_previous,
            commit_ref=request.commit_ref,
            commit_message=request.commit_message,
        ),
        repository=api_deps.repository,
    )
    return CreateDeploymentResponse(
        deployment_id=created.deployment_id,
        status=created.status,
        resumed_from=created.resumed_from,
    )


async def list_deployments_handler(
    *,
    status: DeploymentStatus | None,
    project_id: str | None,
    limit: int,
    api_deps: ApiDeps,
) -> list[DeploymentResponse]:
    query = DeploymentListQuery(
        statuses=(status,) if status is not None else None,
        project_id=project_id,
        limit=limit,
    )
    items = await api_deps.repository.list_deployments(query=query)
    return [DeploymentResponse.from_domain(item) for item in items]


async def get_deployment_handler(*, deployment_id: str, api_deps: ApiDeps) -> DeploymentResponse | None:
    deployment = await api_deps.repository.get_deployment(deployment_id=deployment_id)
    if deployment is None:
        return None
    return DeploymentResponse.from_domain(deployment)


async def report_status_handler(
    *,
    deployment_id: str,
    request: ReportStatusRequest,
    api_deps: ApiDeps,
) -> DeploymentResponse:
    updated = await use_cases.report_build_status(
        ReportBuildStatusCommand(
            deployment_id=deployment_id,
            status=request.status,
            content_address=request.content_address,
            error_message=request.error_message,
        ),
        repository=api_deps.repository,
    )
    return DeploymentResponse.from_domain(updated)


async def cancel_deployment_handler(*, deployment_id: str, api_deps: ApiDeps) -> CancelDeploymentResponse:
    result = await use_cases.cancel_deployment(
        deployment_id=deployment_id,
        repository=api_deps.repository,
        build_canceller=api_deps.build_canceller,
    )
    return CancelDeploymentResponse(status=result.status, killed=result.killed)


async def mark_upload_failed_handler(
    *,
    deployment_id: str,
    message: str | None,
    api_deps: ApiDeps,
) -> DeploymentResponse:
    failed = await use_cases.mark_upload_failed(
        deployment_id=deployment_id,
        message=message,
        repository=api_deps.repository,
    )
    return DeploymentResponse.from_domain(failed)


async def confirm_naming_handler(*, deployment_id: str, tx_ref: str, api_deps: ApiDeps) -> ConfirmNamingResponse:
    result = await use_cases.confirm_naming_update(
        deployment_id=deployment_id,
        tx_ref=tx_ref,
        repository=api_deps.repository,
        confirmer=api_deps.confirmer,
    )
    return ConfirmNamingResponse(status=result.status, tx_ref=result.tx_ref, verified=result.verified)
