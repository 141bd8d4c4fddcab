from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging

from ensdeploy.domain.contracts import (
    ConfirmationReporter,
    ContentStoreUploader,
    DeploymentRepository,
    NamingPreparer,
    Notifier,
    Signer,
)
from ensdeploy.domain.error_taxonomy import classify_stage_error, error_message
from ensdeploy.domain.errors import ChainMismatchError, DomainInvariantError
from ensdeploy.domain.lifecycle import (
    CONFIRMATION_RETRY_STATUSES,
    FINALIZER_CANDIDATE_STATUSES,
    is_terminal,
)
from ensdeploy.domain.models import (
    Deployment,
    DeploymentListQuery,
    DeploymentStatus,
    FinalizationOutcome,
    FinalizationStage,
    Notice,
    NoticeLevel,
    PollReport,
    ProcessReport,
)
from ensdeploy.finalizer.bookkeeping import ChainMismatchHolds, InFlightRegistry, RejectionCooldowns

logger = logging.getLogger("finalizer")

REJECTION_NOTICE = "Signature rejected. Reopen the deployment to finish publishing when ready."


def _always_foreground() -> bool:
    return True


def is_processable(deployment: Deployment) -> bool:
    if deployment.status is DeploymentStatus.UPLOADING:
        return deployment.content_address is None
    if deployment.status is DeploymentStatus.AWAITING_CONFIRMATION:
        return deployment.naming_tx_ref is not None
    return deployment.status in FINALIZER_CANDIDATE_STATUSES


@dataclass
class FinalizationOrchestrator:
    """Drives deployments stalled on a wallet signature through to success.

    One instance owns all bookkeeping for a signer session: the in-flight set,
    rejection cooldowns and chain-mismatch holds. `poll()` is safe to call
    from overlapping timers; a tick that starts while another is running is
    skipped, not queued.
    """

    repository: DeploymentRepository
    uploader: ContentStoreUploader
    preparer: NamingPreparer
    confirmer: ConfirmationReporter
    notifier: Notifier
    signer: Signer | None = None
    is_foreground: Callable[[], bool] = _always_foreground
    candidate_limit: int = 10
    cooldowns: RejectionCooldowns = field(default_factory=RejectionCooldowns)
    chain_holds: ChainMismatchHolds = field(default_factory=ChainMismatchHolds)
    in_flight: InFlightRegistry = field(default_factory=InFlightRegistry)
    _tick_running: bool = field(default=False, init=False)
    _stop_requested: bool = field(default=False, init=False)

    def signer_ready(self) -> bool:
        return self.signer is not None and self.signer.is_connected()

    def request_stop(self) -> None:
        self._stop_requested = True

    def clear_stop(self) -> None:
        self._stop_requested = False

    async def poll(self) -> PollReport:
        if not self.is_foreground():
            return PollReport(ran=False, reason="background")
        if self._tick_running:
            return PollReport(ran=False, reason="tick_in_progress")

        self._tick_running = True
        try:
            if not self.signer_ready():
                return PollReport(ran=False, reason="signer_unavailable")
            return await self._tick()
        except Exception:
            logger.exception("finalizer poll error")
            return PollReport(ran=False, reason="error")
        finally:
            self._tick_running = False

    async def _tick(self) -> PollReport:
        report = PollReport(ran=True)
        active_chain_id: int | None = None
        candidates = await self._list_candidates()

        for deployment in candidates:
            if self._stop_requested:
                break
            deployment_id = deployment.deployment_id
            if deployment_id in self.in_flight or self.cooldowns.is_cooling_down(deployment_id):
                report.skipped_ids.append(deployment_id)
                continue
            if self.chain_holds.is_held(deployment_id):
                if active_chain_id is None:
                    try:
                        active_chain_id = await self._signer().get_active_chain_id()
                    except Exception:
                        logger.warning(
                            "could not read signer chain, keeping hold",
                            extra={"deployment_id": deployment_id},
                            exc_info=True,
                        )
                        report.skipped_ids.append(deployment_id)
                        continue
                if self.chain_holds.blocks(deployment_id, active_chain_id=active_chain_id):
                    report.skipped_ids.append(deployment_id)
                    continue
            report.processed.append(await self.process(deployment))

        await self._prune_bookkeeping(listed_ids={deployment.deployment_id for deployment in candidates})
        return report

    async def _prune_bookkeeping(self, *, listed_ids: set[str]) -> None:
        """Forget cooldowns and holds of deployments that left the candidate statuses."""
        for deployment_id in self.cooldowns.tracked() | self.chain_holds.tracked():
            if deployment_id in listed_ids:
                continue
            try:
                current = await self.repository.get_deployment(deployment_id=deployment_id)
            except Exception:
                logger.warning("bookkeeping refresh failed", extra={"deployment_id": deployment_id}, exc_info=True)
                continue
            if current is None or not is_processable(current):
                self.cooldowns.clear(deployment_id)
                self.chain_holds.clear(deployment_id)

    async def _list_candidates(self) -> list[Deployment]:
        candidates: list[Deployment] = []
        for status in (*FINALIZER_CANDIDATE_STATUSES, *CONFIRMATION_RETRY_STATUSES):
            candidates.extend(
                await self.repository.list_deployments(
                    query=DeploymentListQuery(statuses=(status,), limit=self.candidate_limit)
                )
            )

        seen: set[str] = set()
        unique: list[Deployment] = []
        for deployment in candidates:
            if deployment.deployment_id in seen or not is_processable(deployment):
                continue
            seen.add(deployment.deployment_id)
            unique.append(deployment)
        return unique

    async def process(self, deployment: Deployment) -> ProcessReport:
        deployment_id = deployment.deployment_id
        if not self.in_flight.acquire(deployment_id):
            return ProcessReport(deployment_id=deployment_id, outcome=FinalizationOutcome.SKIPPED, detail="in flight")
        try:
            if not self.signer_ready():
                logger.warning("signer not ready, skipping deployment", extra={"deployment_id": deployment_id})
                return ProcessReport(
                    deployment_id=deployment_id,
                    outcome=FinalizationOutcome.SKIPPED,
                    detail="signer unavailable",
                )
            return await self._run_pipeline(deployment_id)
        finally:
            self.in_flight.release(deployment_id)

    async def _run_pipeline(self, deployment_id: str) -> ProcessReport:
        stage: FinalizationStage | None = None
        try:
            current = await self._refresh(deployment_id)
            if current is None:
                return self._skipped(deployment_id, stage)

            logger.info(
                "finalizer processing started",
                extra={"deployment_id": deployment_id, "status": current.status.value},
            )
            content_address = current.content_address

            if current.status is DeploymentStatus.AWAITING_CONFIRMATION:
                # Already signed: only wait for the receipt again.
                stage = FinalizationStage.CONFIRM
                if not current.naming_tx_ref:
                    raise DomainInvariantError("Missing transaction reference for confirmation")
                return await self._confirm(current, tx_ref=current.naming_tx_ref)

            if current.status in (DeploymentStatus.PENDING_UPLOAD, DeploymentStatus.UPLOADING):
                stage = FinalizationStage.UPLOAD
                content_address = await self._upload(current)

            stage = FinalizationStage.PREPARE
            if not content_address:
                raise DomainInvariantError("Missing content address for naming update")
            payload = await self.preparer.prepare(deployment_id=deployment_id, content_address=content_address)

            stage = FinalizationStage.CHAIN_CHECK
            signer = self._signer()
            active_chain_id = await signer.get_active_chain_id()
            if active_chain_id != payload.chain_id:
                raise ChainMismatchError(required_chain_id=payload.chain_id, active_chain_id=active_chain_id)

            stage = FinalizationStage.SIGN
            refreshed = await self._refresh(deployment_id)
            if refreshed is None or refreshed.status is not DeploymentStatus.AWAITING_SIGNATURE:
                return self._skipped(deployment_id, stage)
            logger.info(
                "requesting wallet signature",
                extra={"deployment_id": deployment_id, "target_contract": payload.target_contract},
            )
            tx_ref = await signer.send_transaction(to=payload.target_contract, data=payload.call_data)

            stage = FinalizationStage.CONFIRM
            return await self._confirm(refreshed, tx_ref=tx_ref)
        except Exception as exc:
            return await self._handle_stage_error(deployment_id=deployment_id, stage=stage, error=exc)

    async def _confirm(self, deployment: Deployment, *, tx_ref: str) -> ProcessReport:
        deployment_id = deployment.deployment_id
        result = await self.confirmer.confirm(deployment_id=deployment_id, tx_ref=tx_ref)
        self.cooldowns.clear(deployment_id)
        if not result.verified:
            logger.warning(
                "naming transaction broadcast but not yet verified",
                extra={"deployment_id": deployment_id, "tx_ref": tx_ref},
            )
            return ProcessReport(
                deployment_id=deployment_id,
                outcome=FinalizationOutcome.UNCONFIRMED,
                stage=FinalizationStage.CONFIRM,
                detail=tx_ref,
            )

        self.notifier.notify(
            Notice(level=NoticeLevel.SUCCESS, deployment_id=deployment_id, message=f"Deployed {deployment.short_label}")
        )
        logger.info("deployment completed", extra={"deployment_id": deployment_id, "tx_ref": tx_ref})
        return ProcessReport(
            deployment_id=deployment_id,
            outcome=FinalizationOutcome.COMPLETED,
            stage=FinalizationStage.CONFIRM,
            detail=tx_ref,
        )

    async def _upload(self, deployment: Deployment) -> str:
        deployment_id = deployment.deployment_id
        if deployment.status is DeploymentStatus.PENDING_UPLOAD:
            await self.repository.update_status(deployment_id=deployment_id, status=DeploymentStatus.UPLOADING)
        logger.info("uploading build output to content store", extra={"deployment_id": deployment_id})
        content_address = await self.uploader.upload(build_output_ref=deployment_id)
        await self.repository.update_status(
            deployment_id=deployment_id,
            status=DeploymentStatus.AWAITING_SIGNATURE,
            content_address=content_address,
        )
        return content_address

    async def _handle_stage_error(
        self,
        *,
        deployment_id: str,
        stage: FinalizationStage | None,
        error: Exception,
    ) -> ProcessReport:
        kind = "transient" if stage is None else classify_stage_error(stage=stage, error=error)
        extra = {"deployment_id": deployment_id, "stage": stage.value if stage else None, "error_kind": kind}

        if kind == "rejection":
            self.cooldowns.record(deployment_id)
            if stage is FinalizationStage.UPLOAD:
                await self._return_to_pending_upload(deployment_id)
            logger.warning("signature rejected", extra=extra)
            self.notifier.notify(Notice(level=NoticeLevel.INFO, deployment_id=deployment_id, message=REJECTION_NOTICE))
            return ProcessReport(deployment_id=deployment_id, outcome=FinalizationOutcome.REJECTED, stage=stage)

        if kind == "configuration" and isinstance(error, ChainMismatchError):
            self.chain_holds.hold(deployment_id, required_chain_id=error.required_chain_id)
            logger.warning("signer is on the wrong chain", extra=extra)
            self.notifier.notify(Notice(level=NoticeLevel.ERROR, deployment_id=deployment_id, message=str(error)))
            return ProcessReport(
                deployment_id=deployment_id,
                outcome=FinalizationOutcome.CHAIN_MISMATCH,
                stage=stage,
                detail=error.code,
            )

        if kind == "terminal":
            message = error_message(error)
            if await self._mark_failed(deployment_id, message):
                logger.error("deployment failed", extra=extra, exc_info=error)
                self.notifier.notify(Notice(level=NoticeLevel.ERROR, deployment_id=deployment_id, message=message))
                return ProcessReport(
                    deployment_id=deployment_id,
                    outcome=FinalizationOutcome.FAILED,
                    stage=stage,
                    detail=message,
                )
            return self._skipped(deployment_id, stage)

        logger.warning("finalizer stage error, retrying next tick", extra=extra, exc_info=error)
        return ProcessReport(
            deployment_id=deployment_id,
            outcome=FinalizationOutcome.RETRY,
            stage=stage,
            detail=error_message(error, default=type(error).__name__),
        )

    async def _mark_failed(self, deployment_id: str, message: str) -> bool:
        try:
            current = await self.repository.get_deployment(deployment_id=deployment_id)
            if current is None or is_terminal(current.status):
                # Cancelled (or otherwise settled) while the stage was running.
                return False
            await self.repository.mark_failed(deployment_id=deployment_id, message=message)
        except Exception:
            logger.exception("failed to mark deployment as failed", extra={"deployment_id": deployment_id})
            return False
        return True

    async def _return_to_pending_upload(self, deployment_id: str) -> None:
        try:
            current = await self.repository.get_deployment(deployment_id=deployment_id)
            if current is None or current.status is not DeploymentStatus.UPLOADING or current.content_address:
                return
            await self.repository.update_status(deployment_id=deployment_id, status=DeploymentStatus.PENDING_UPLOAD)
        except Exception:
            logger.exception("failed to release upload after rejection", extra={"deployment_id": deployment_id})

    async def _refresh(self, deployment_id: str) -> Deployment | None:
        current = await self.repository.get_deployment(deployment_id=deployment_id)
        if current is None or not is_processable(current):
            return None
        return current

    def _skipped(self, deployment_id: str, stage: FinalizationStage | None) -> ProcessReport:
        logger.info(
            "deployment no longer processable, skipping",
            extra={"deployment_id": deployment_id, "stage": stage.value if stage else None},
        )
        return ProcessReport(
            deployment_id=deployment_id,
            outcome=FinalizationOutcome.SKIPPED,
            stage=stage,
            detail="not processable",
        )

    def _signer(self) -> Signer:
        if self.signer is None:
            raise DomainInvariantError("signer is not connected")
        return self.signer
