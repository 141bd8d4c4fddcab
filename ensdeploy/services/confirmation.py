from __future__ import annotations

from dataclasses import dataclass
import logging

from ensdeploy.domain.contracts import ChainVerifier, DeploymentRepository
from ensdeploy.domain.errors import DeploymentNotFoundError, DomainInvariantError
from ensdeploy.domain.models import ConfirmationResult, DeploymentStatus

logger = logging.getLogger("finalizer")


@dataclass
class RepositoryConfirmationReporter:
    """Records a broadcast naming transaction and settles it once mined.

    `awaiting_signature -> awaiting_confirmation` happens as soon as the tx
    reference is reported; `awaiting_confirmation -> success` only after the
    chain verifier confirms the receipt. Unverified transactions stay in
    `awaiting_confirmation` and can be reported again.
    """

    repository: DeploymentRepository
    verifier: ChainVerifier

    async def confirm(self, *, deployment_id: str, tx_ref: str) -> ConfirmationResult:
        deployment = await self.repository.get_deployment(deployment_id=deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"deployment is not found: {deployment_id}")

        if deployment.status is DeploymentStatus.AWAITING_SIGNATURE:
            deployment = await self.repository.update_status(
                deployment_id=deployment_id,
                status=DeploymentStatus.AWAITING_CONFIRMATION,
                naming_tx_ref=tx_ref,
            )
        elif deployment.status is not DeploymentStatus.AWAITING_CONFIRMATION:
            raise DomainInvariantError(f"deployment cannot be confirmed from {deployment.status.value}")
        elif deployment.naming_tx_ref != tx_ref:
            raise DomainInvariantError("transaction reference does not match the recorded one")

        verified = await self.verifier.wait_for_receipt(tx_ref=tx_ref)
        if not verified:
            logger.warning(
                "naming transaction not verified",
                extra={"deployment_id": deployment_id, "tx_ref": tx_ref},
            )
            return ConfirmationResult(status=deployment.status, tx_ref=tx_ref, verified=False)

        settled = await self.repository.update_status(
            deployment_id=deployment_id,
            status=DeploymentStatus.SUCCESS,
        )
        logger.info(
            "naming transaction confirmed",
            extra={"deployment_id": deployment_id, "tx_ref": tx_ref},
        )
        return ConfirmationResult(status=settled.status, tx_ref=tx_ref, verified=True)
