from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from ensdeploy.domain.errors import DeploymentNotFoundError, DomainInvariantError
from ensdeploy.domain.ids import new_deployment_id
from ensdeploy.domain.lifecycle import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    validate_initial_status,
    validate_transition,
)
from ensdeploy.domain.models import (
    CancelResult,
    Deployment,
    DeploymentListQuery,
    DeploymentStatus,
    TriggeredBy,
)


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class InMemoryDeploymentRepository:
    """Non-network record store with deterministic behavior for skeleton mode."""

    deployments: dict[str, Deployment] = field(default_factory=dict)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    async def create_deployment(
        self,
        *,
        project_id: str,
        triggered_by: TriggeredBy,
        initial_status: DeploymentStatus = DeploymentStatus.PENDING_BUILD,
        content_address: str | None = None,
        commit_ref: str | None = None,
        commit_message: str | None = None,
        resumed_from: str | None = None,
    ) -> Deployment:
        validate_initial_status(status=initial_status, content_address=content_address)
        created_at = _now()
        deployment = Deployment(
            deployment_id=new_deployment_id(),
            project_id=project_id,
            status=DeploymentStatus(initial_status),
            triggered_by=TriggeredBy(triggered_by),
            content_address=content_address,
            commit_ref=commit_ref,
            commit_message=commit_message,
            resumed_from=resumed_from,
            created_at=created_at,
            updated_at=created_at,
        )
        self.deployments[deployment.deployment_id] = deployment
        return deployment

    async def get_deployment(self, *, deployment_id: str) -> Deployment | None:
        return self.deployments.get(deployment_id)

    async def list_deployments(self, *, query: DeploymentListQuery) -> list[Deployment]:
        items = [
            deployment
            for deployment in self.deployments.values()
            if (query.statuses is None or deployment.status in set(query.statuses))
            and (query.project_id is None or deployment.project_id == query.project_id)
        ]
        items.sort(key=lambda item: item.created_at or _now(), reverse=True)
        return items[: query.limit]

    async def update_status(
        self,
        *,
        deployment_id: str,
        status: DeploymentStatus,
        content_address: str | None = None,
        naming_tx_ref: str | None = None,
        error_message: str | None = None,
    ) -> Deployment:
        current = self._require(deployment_id)
        merged_content_address = content_address or current.content_address
        merged_tx_ref = naming_tx_ref or current.naming_tx_ref
        validate_transition(
            current=current.status,
            to_status=status,
            content_address=merged_content_address,
            naming_tx_ref=merged_tx_ref,
            error_message=error_message,
        )

        target = DeploymentStatus(status)
        now = _now()
        updated = replace(
            current,
            status=target,
            content_address=merged_content_address,
            naming_tx_ref=merged_tx_ref,
            error_message=error_message if target is DeploymentStatus.FAILED else None,
            halted_at=current.status if target in TERMINAL_STATUSES else None,
            updated_at=now,
            completed_at=now if target in TERMINAL_STATUSES else None,
        )
        self.deployments[deployment_id] = updated
        self.transitions.append((deployment_id, current.status.value, target.value))
        return updated

    async def cancel(self, *, deployment_id: str) -> CancelResult:
        current = self._require(deployment_id)
        if current.status not in CANCELLABLE_STATUSES:
            raise DomainInvariantError("Deployment is no longer running.")
        updated = await self.update_status(deployment_id=deployment_id, status=DeploymentStatus.CANCELLED)
        return CancelResult(status=updated.status, killed=False)

    async def mark_failed(self, *, deployment_id: str, message: str) -> Deployment:
        return await self.update_status(
            deployment_id=deployment_id,
            status=DeploymentStatus.FAILED,
            error_message=message,
        )

    async def find_active_deployment(self, *, project_id: str) -> Deployment | None:
        active = [
            deployment
            for deployment in self.deployments.values()
            if deployment.project_id == project_id and deployment.status in set(ACTIVE_STATUSES)
        ]
        return max(active, key=lambda item: item.created_at or _now(), default=None)

    async def find_latest_terminal_deployment(self, *, project_id: str) -> Deployment | None:
        finished = [
            deployment
            for deployment in self.deployments.values()
            if deployment.project_id == project_id and deployment.status in TERMINAL_STATUSES
        ]
        return max(finished, key=lambda item: item.created_at or _now(), default=None)

    def _require(self, deployment_id: str) -> Deployment:
        deployment = self.deployments.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"deployment is not found: {deployment_id}")
        return deployment
