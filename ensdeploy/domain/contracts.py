from __future__ import annotations

from typing import Protocol, runtime_checkable

from ensdeploy.domain.models import (
    CancelResult,
    ConfirmationResult,
    Deployment,
    DeploymentListQuery,
    DeploymentStatus,
    NamingUpdatePayload,
    Notice,
    TriggeredBy,
)


@runtime_checkable
class DeploymentRepository(Protocol):
    """Keyed record store behind the deployment state machine.

    Every status write must be validated against ALLOWED_TRANSITIONS and the
    field invariants in ensdeploy/domain/lifecycle.py.
    """

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
    ) -> Deployment: ...

    async def get_deployment(self, *, deployment_id: str) -> Deployment | None: ...

    async def list_deployments(self, *, query: DeploymentListQuery) -> list[Deployment]: ...

    async def update_status(
        self,
        *,
        deployment_id: str,
        status: DeploymentStatus,
        content_address: str | None = None,
        naming_tx_ref: str | None = None,
        error_message: str | None = None,
    ) -> Deployment: ...

    async def cancel(self, *, deployment_id: str) -> CancelResult: ...

    async def mark_failed(self, *, deployment_id: str, message: str) -> Deployment: ...

    async def find_active_deployment(self, *, project_id: str) -> Deployment | None: ...

    async def find_latest_terminal_deployment(self, *, project_id: str) -> Deployment | None: ...


@runtime_checkable
class ContentStoreUploader(Protocol):
    async def upload(self, *, build_output_ref: str) -> str: ...


@runtime_checkable
class NamingPreparer(Protocol):
    async def prepare(self, *, deployment_id: str, content_address: str) -> NamingUpdatePayload: ...


@runtime_checkable
class Signer(Protocol):
    """Wallet session able to approve and broadcast transactions."""

    def is_connected(self) -> bool: ...

    async def get_active_chain_id(self) -> int: ...

    async def send_transaction(self, *, to: str, data: str) -> str: ...


@runtime_checkable
class ConfirmationReporter(Protocol):
    async def confirm(self, *, deployment_id: str, tx_ref: str) -> ConfirmationResult: ...


@runtime_checkable
class ChainVerifier(Protocol):
    async def wait_for_receipt(self, *, tx_ref: str) -> bool: ...


@runtime_checkable
class BuildCanceller(Protocol):
    def cancel_build(self, *, deployment_id: str) -> bool: ...


@runtime_checkable
class Notifier(Protocol):
    def notify(self, notice: Notice) -> None: ...
