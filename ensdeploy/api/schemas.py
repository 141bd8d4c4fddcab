from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ensdeploy.domain.models import Deployment, DeploymentStatus, TriggeredBy


DEPLOYMENT_ID_PATTERN = r"^dep_[0-9A-HJKMNP-TV-Z]{26}$"
TX_REF_PATTERN = r"^0x[0-9a-fA-F]{64}$"


class ErrorResponse(BaseModel):
    detail: str


class FinalizerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    skipped_ticks_total: int
    processed_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    finalizer_enabled: bool
    finalizer_ready: bool
    finalizer_metrics: FinalizerMetrics


class CreateDeploymentRequest(BaseModel):
    project_id: str = Field(min_length=1, max_length=128)
    triggered_by: TriggeredBy = TriggeredBy.MANUAL
    resume_from_previous: bool = False
    commit_ref: str | None = Field(default=None, min_length=1, max_length=64)
    commit_message: str | None = Field(default=None, max_length=4096)


class CreateDeploymentResponse(BaseModel):
    deployment_id: str = Field(pattern=DEPLOYMENT_ID_PATTERN)
    status: DeploymentStatus
    resumed_from: str | None = None
    message: str = "Deployment started"


class DeploymentResponse(BaseModel):
    deployment_id: str
    project_id: str
    status: DeploymentStatus
    triggered_by: TriggeredBy
    content_address: str | None = None
    naming_tx_ref: str | None = None
    commit_ref: str | None = None
    commit_message: str | None = None
    error_message: str | None = None
    resumed_from: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_domain(cls, deployment: Deployment) -> DeploymentResponse:
        return cls(
            deployment_id=deployment.deployment_id,
            project_id=deployment.project_id,
            status=deployment.status,
            triggered_by=deployment.triggered_by,
            content_address=deployment.content_address,
            naming_tx_ref=deployment.naming_tx_ref,
            commit_ref=deployment.commit_ref,
            commit_message=deployment.commit_message,
            error_message=deployment.error_message,
            resumed_from=deployment.resumed_from,
            created_at=deployment.created_at,
            updated_at=deployment.updated_at,
            completed_at=deployment.completed_at,
        )


class ReportStatusRequest(BaseModel):
    status: DeploymentStatus
    content_address: str | None = Field(default=None, min_length=1, max_length=256)
    error_message: str | None = Field(default=None, max_length=4096)


class CancelDeploymentResponse(BaseModel):
    status: DeploymentStatus
    killed: bool


class UploadFailedRequest(BaseModel):
    message: str | None = Field(default=None, max_length=4096)


class ConfirmNamingRequest(BaseModel):
    tx_ref: str = Field(pattern=TX_REF_PATTERN)


class ConfirmNamingResponse(BaseModel):
    status: DeploymentStatus
    tx_ref: str
    verified: bool
