from __future__ import annotations

import logging

from ensdeploy.domain.contracts import BuildCanceller, ConfirmationReporter, DeploymentRepository
from ensdeploy.domain.dto import CreateDeploymentCommand, ReportBuildStatusCommand
from ensdeploy.domain.errors import (
    DeploymentBusyError,
    DeploymentNotFoundError,
    DomainInvariantError,
    NoResumableDeploymentError,
)
from ensdeploy.domain.lifecycle import CANCELLABLE_STATUSES, pipeline_index
from ensdeploy.domain.models import CancelResult, ConfirmationResult, Deployment, DeploymentStatus

logger = logging.getLogger("runtime")

# Statuses the build worker may write; signing and confirmation belong to the finalizer.
BUILD_WORKER_STATUSES: frozenset[DeploymentStatus] = frozenset(
    {
        DeploymentStatus.CLONING,
        DeploymentStatus.BUILDING,
        DeploymentStatus.PENDING_UPLOAD,
        DeploymentStatus.UPLOADING,
        DeploymentStatus.AWAITING_SIGNATURE,
        DeploymentStatus.FAILED,
    }
)


async def create_deployment(cmd: CreateDeploymentCommand, *, repository: DeploymentRepository) -> Deployment:
    """Create a deployment, refusing when the project already has one running."""
    active = await repository.find_active_deployment(project_id=cmd.project_id)
    if active is not None:
        raise DeploymentBusyError(
            "A deployment is already running for this project. "
            "Please wait until it completes or cancel it before starting another."
        )

    initial_status = DeploymentStatus.PENDING_BUILD
    content_address: str | None = None
    resumed_from: str | None = None

    if cmd.resume_from_previous:
        previous = await repository.find_latest_terminal_deployment(project_id=cmd.project_id)
        initial_status, content_address = resume_point(previous)
        resumed_from = previous.deployment_id if previous is not None else None
        logger.info(
            "deployment will resume from previous",
            extra={"project_id": cmd.project_id, "resumed_from": resumed_from, "status": initial_status.value},
        )

    return await repository.create_deployment(
        project_id=cmd.project_id,
        triggered_by=cmd.triggered_by,
        initial_status=initial_status,
        content_address=content_address,
        commit_ref=cmd.commit_ref,
        commit_message=cmd.commit_message,
        resumed_from=resumed_from,
    )


def resume_point(previous: Deployment | None) -> tuple[DeploymentStatus, str | None]:
    """Starting status (and carried content address) for a resumed deployment."""
    if previous is None:
        raise NoResumableDeploymentError(
            "No previous deployment with reusable build artifacts was found. Please run a full deployment."
        )
    if previous.content_address:
        return DeploymentStatus.AWAITING_SIGNATURE, previous.content_address

    reached = previous.halted_at or previous.status
    if pipeline_index(reached) >= pipeline_index(DeploymentStatus.PENDING_UPLOAD):
        return DeploymentStatus.PENDING_UPLOAD, None

    raise NoResumableDeploymentError(
        "Previous build artifacts are missing. Please run a full deployment to recreate the build output."
    )


async def cancel_deployment(
    *,
    deployment_id: str,
    repository: DeploymentRepository,
    build_canceller: BuildCanceller,
) -> CancelResult:
    deployment = await _require(repository, deployment_id)
    if deployment.status not in CANCELLABLE_STATUSES:
        raise DomainInvariantError("Deployment is no longer running.")

    result = await repository.cancel(deployment_id=deployment_id)
    killed = build_canceller.cancel_build(deployment_id=deployment_id)
    logger.info(
        "deployment cancelled",
        extra={"deployment_id": deployment_id, "killed": str(killed).lower()},
    )
    return CancelResult(status=result.status, killed=killed)


async def report_build_status(cmd: ReportBuildStatusCommand, *, repository: DeploymentRepository) -> Deployment:
    """Status transitions reported by the build worker."""
    if cmd.status not in BUILD_WORKER_STATUSES:
        raise DomainInvariantError(f"build worker cannot report {cmd.status.value}")
    await _require(repository, cmd.deployment_id)
    return await repository.update_status(
        deployment_id=cmd.deployment_id,
        status=cmd.status,
        content_address=cmd.content_address,
        error_message=cmd.error_message,
    )


async def mark_upload_failed(
    *,
    deployment_id: str,
    message: str | None,
    repository: DeploymentRepository,
) -> Deployment:
    await _require(repository, deployment_id)
    return await repository.mark_failed(deployment_id=deployment_id, message=message or "Upload failed")


async def confirm_naming_update(
    *,
    deployment_id: str,
    tx_ref: str,
    repository: DeploymentRepository,
    confirmer: ConfirmationReporter,
) -> ConfirmationResult:
    await _require(repository, deployment_id)
    return await confirmer.confirm(deployment_id=deployment_id, tx_ref=tx_ref)


async def _require(repository: DeploymentRepository, deployment_id: str) -> Deployment:
    deployment = await repository.get_deployment(deployment_id=deployment_id)
    if deployment is None:
        raise DeploymentNotFoundError("Deployment not found")
    return deployment
