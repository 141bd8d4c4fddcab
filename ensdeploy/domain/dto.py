from __future__ import annotations

from dataclasses import dataclass

from ensdeploy.domain.models import DeploymentStatus, TriggeredBy


@dataclass(frozen=True)
class CreateDeploymentCommand:
    project_id: str
    triggered_by: TriggeredBy = TriggeredBy.MANUAL
    resume_from_previous: bool = False
    commit_ref: str | None = None
    commit_message: str | None = None


@dataclass(frozen=True)
class ReportBuildStatusCommand:
    deployment_id: str
    status: DeploymentStatus
    content_address: str | None = None
    error_message: str | None = None
