from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


# Canonical deployment lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with ensdeploy/domain/lifecycle.py
#   (PIPELINE_ORDER and ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class DeploymentStatus(StrEnum):
    # Build worker states.
    PENDING_BUILD = "pending_build"
    CLONING = "cloning"
    BUILDING = "building"
    PENDING_UPLOAD = "pending_upload"
    UPLOADING = "uploading"

    # Finalizer states.
    AWAITING_SIGNATURE = "awaiting_signature"
    AWAITING_CONFIRMATION = "awaiting_confirmation"

    # Terminal states.
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggeredBy(StrEnum):
    MANUAL = "manual"
    WEBHOOK = "webhook"


class FinalizationStage(StrEnum):
    UPLOAD = "upload"
    PREPARE = "prepare"
    CHAIN_CHECK = "chain_check"
    SIGN = "sign"
    CONFIRM = "confirm"


class FinalizationOutcome(StrEnum):
    COMPLETED = "completed"
    UNCONFIRMED = "unconfirmed"
    REJECTED = "rejected"
    CHAIN_MISMATCH = "chain_mismatch"
    FAILED = "failed"
    RETRY = "retry"
    SKIPPED = "skipped"


class NoticeLevel(StrEnum):
    SUCCESS = "success"
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class Deployment:
    deployment_id: str
    project_id: str
    status: DeploymentStatus
    triggered_by: TriggeredBy = TriggeredBy.MANUAL
    content_address: str | None = None
    naming_tx_ref: str | None = None
    commit_ref: str | None = None
    commit_message: str | None = None
    error_message: str | None = None
    resumed_from: str | None = None
    # Last non-terminal status held before the record became terminal.
    halted_at: DeploymentStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def short_label(self) -> str:
        if self.commit_ref:
            return self.commit_ref[:7]
        return self.deployment_id[:6]


@dataclass(frozen=True)
class DeploymentListQuery:
    statuses: tuple[DeploymentStatus, ...] | None = None
    project_id: str | None = None
    limit: int = 20


@dataclass(frozen=True)
class NamingUpdatePayload:
    """Unsigned naming-record update ready to be broadcast by a signer."""

    target_contract: str
    call_data: str
    chain_id: int
    signer_address: str | None = None


@dataclass(frozen=True)
class ConfirmationResult:
    status: DeploymentStatus
    tx_ref: str
    verified: bool


@dataclass(frozen=True)
class CancelResult:
    status: DeploymentStatus
    killed: bool


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    deployment_id: str
    message: str


@dataclass(frozen=True)
class ProcessReport:
    deployment_id: str
    outcome: FinalizationOutcome
    stage: FinalizationStage | None = None
    detail: str = ""


@dataclass
class PollReport:
    ran: bool
    reason: str = ""
    processed: list[ProcessReport] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)

    def outcome_for(self, deployment_id: str) -> FinalizationOutcome | None:
        for report in self.processed:
            if report.deployment_id == deployment_id:
                return report.outcome
        return None
