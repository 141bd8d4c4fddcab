from __future__ import annotations

from dataclasses import dataclass
import importlib
from typing import Any

from ensdeploy.domain.errors import DeploymentBusyError, DeploymentNotFoundError, DomainInvariantError
from ensdeploy.domain.ids import new_deployment_id
from ensdeploy.domain.lifecycle import (
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
from ensdeploy.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_CREATE_DEPLOYMENT = load_sql("create_deployment.sql")
SQL_GET_DEPLOYMENT = load_sql("get_deployment.sql")
SQL_LIST_DEPLOYMENTS = load_sql("list_deployments.sql")
SQL_UPDATE_STATUS = load_sql("update_status.sql")
SQL_FIND_ACTIVE_DEPLOYMENT = load_sql("find_active_deployment.sql")
SQL_FIND_LATEST_TERMINAL_DEPLOYMENT = load_sql("find_latest_terminal_deployment.sql")

_TERMINAL_VALUES = sorted(status.value for status in TERMINAL_STATUSES)


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


def _row_to_deployment(row: Any) -> Deployment:
    halted_at = row["halted_at"]
    return Deployment(
        deployment_id=row["id"],
        project_id=row["project_id"],
        status=DeploymentStatus(row["status"]),
        triggered_by=TriggeredBy(row["triggered_by"]),
        content_address=row["content_address"],
        naming_tx_ref=row["naming_tx_ref"],
        commit_ref=row["commit_ref"],
        commit_message=row["commit_message"],
        error_message=row["error_message"],
        resumed_from=row["resumed_from"],
        halted_at=DeploymentStatus(halted_at) if halted_at else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=1,
            max_size=5,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresDeploymentRepository:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

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
        pool = self._pool()
        async with pool.acquire() as conn:
            for _ in range(5):
                try:
                    row = await conn.fetchrow(
                        SQL_CREATE_DEPLOYMENT,
                        new_deployment_id(),
                        project_id,
                        DeploymentStatus(initial_status).value,
                        TriggeredBy(triggered_by).value,
                        content_address,
                        commit_ref,
                        commit_message,
                        resumed_from,
                    )
                except Exception as exc:
                    if not _is_unique_violation(exc):
                        raise
                    if getattr(exc, "constraint_name", None) == "deployments_one_active_per_project_idx":
                        raise DeploymentBusyError("A deployment is already running for this project.") from exc
                    continue
                if row is None:
                    raise DomainInvariantError("failed to create deployment")
                return _row_to_deployment(row)
        raise DomainInvariantError("failed to allocate unique deployment id")

    async def get_deployment(self, *, deployment_id: str) -> Deployment | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_DEPLOYMENT, deployment_id)
        if row is None:
            return None
        return _row_to_deployment(row)

    async def list_deployments(self, *, query: DeploymentListQuery) -> list[Deployment]:
        statuses = [DeploymentStatus(status).value for status in query.statuses] if query.statuses is not None else None
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DEPLOYMENTS, statuses, query.project_id, query.limit)
        return [_row_to_deployment(row) for row in rows]

    async def update_status(
        self,
        *,
        deployment_id: str,
        status: DeploymentStatus,
        content_address: str | None = None,
        naming_tx_ref: str | None = None,
        error_message: str | None = None,
    ) -> Deployment:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current_row = await conn.fetchrow(SQL_GET_DEPLOYMENT, deployment_id)
                if current_row is None:
                    raise DeploymentNotFoundError(f"deployment is not found: {deployment_id}")
                current = _row_to_deployment(current_row)

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
                terminal = target in TERMINAL_STATUSES
                row = await conn.fetchrow(
                    SQL_UPDATE_STATUS,
                    deployment_id,
                    current.status.value,
                    target.value,
                    merged_content_address,
                    merged_tx_ref,
                    error_message if target is DeploymentStatus.FAILED else None,
                    current.status.value if terminal else None,
                    terminal,
                )
        if row is None:
            raise DomainInvariantError("deployment status changed concurrently")
        return _row_to_deployment(row)

    async def cancel(self, *, deployment_id: str) -> CancelResult:
        current = await self.get_deployment(deployment_id=deployment_id)
        if current is None:
            raise DeploymentNotFoundError(f"deployment is not found: {deployment_id}")
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
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_ACTIVE_DEPLOYMENT, project_id, _TERMINAL_VALUES)
        if row is None:
            return None
        return _row_to_deployment(row)

    async def find_latest_terminal_deployment(self, *, project_id: str) -> Deployment | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_LATEST_TERMINAL_DEPLOYMENT, project_id, _TERMINAL_VALUES)
        if row is None:
            return None
        return _row_to_deployment(row)
