import asyncio

import pytest

from ensdeploy.domain.errors import DomainInvariantError
from ensdeploy.domain.lifecycle import (
    ALLOWED_TRANSITIONS,
    PIPELINE_ORDER,
    TERMINAL_STATUSES,
    can_transition,
    is_terminal,
    pipeline_index,
    validate_initial_status,
    validate_transition,
)
from ensdeploy.domain.models import DeploymentStatus, TriggeredBy
from ensdeploy.repositories.stub import InMemoryDeploymentRepository


@pytest.mark.unit
def test_happy_path_is_a_chain_of_allowed_transitions() -> None:
    for current, following in zip(PIPELINE_ORDER, PIPELINE_ORDER[1:]):
        assert can_transition(current, following)


@pytest.mark.unit
@pytest.mark.parametrize("status", [s for s in DeploymentStatus if s not in TERMINAL_STATUSES])
def test_every_running_status_can_fail_or_be_cancelled(status: DeploymentStatus) -> None:
    assert can_transition(status, DeploymentStatus.FAILED)
    assert can_transition(status, DeploymentStatus.CANCELLED)


@pytest.mark.unit
@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
def test_terminal_statuses_are_absorbing(status: DeploymentStatus) -> None:
    assert is_terminal(status)
    assert ALLOWED_TRANSITIONS[status] == set()
    with pytest.raises(DomainInvariantError, match="already"):
        validate_transition(current=status, to_status=DeploymentStatus.PENDING_BUILD, error_message="x")


@pytest.mark.unit
def test_only_backward_edge_is_upload_reentry() -> None:
    backward = [
        (source, target)
        for source, targets in ALLOWED_TRANSITIONS.items()
        for target in targets
        if pipeline_index(target) < pipeline_index(source)
    ]
    assert backward == [(DeploymentStatus.UPLOADING, DeploymentStatus.PENDING_UPLOAD)]


@pytest.mark.unit
def test_aborts_sort_after_the_pipeline() -> None:
    assert pipeline_index("failed") == len(PIPELINE_ORDER)
    assert pipeline_index("cancelled") == len(PIPELINE_ORDER)
    assert pipeline_index("pending_build") == 0


@pytest.mark.unit
def test_skipping_a_stage_is_rejected() -> None:
    with pytest.raises(DomainInvariantError, match="not allowed"):
        validate_transition(current="building", to_status="awaiting_signature", content_address="bafy")


@pytest.mark.unit
def test_awaiting_signature_requires_content_address() -> None:
    with pytest.raises(DomainInvariantError, match="content address"):
        validate_transition(current="uploading", to_status="awaiting_signature")
    validate_transition(current="uploading", to_status="awaiting_signature", content_address="bafy")


@pytest.mark.unit
def test_tx_ref_is_only_recorded_after_signing() -> None:
    with pytest.raises(DomainInvariantError, match="signed transaction"):
        validate_transition(current="awaiting_signature", to_status="awaiting_confirmation", content_address="bafy")
    with pytest.raises(DomainInvariantError, match="before signing"):
        validate_transition(
            current="pending_upload",
            to_status="uploading",
            naming_tx_ref="0xabc",
        )


@pytest.mark.unit
def test_failed_requires_message() -> None:
    with pytest.raises(DomainInvariantError, match="error message"):
        validate_transition(current="building", to_status="failed", error_message="  ")
    validate_transition(current="building", to_status="failed", error_message="npm ERR! missing script: build")


@pytest.mark.unit
def test_initial_status_rules() -> None:
    validate_initial_status(status="pending_build", content_address=None)
    validate_initial_status(status="awaiting_signature", content_address="bafy")
    with pytest.raises(DomainInvariantError):
        validate_initial_status(status="success", content_address="bafy")
    with pytest.raises(DomainInvariantError):
        validate_initial_status(status="awaiting_confirmation", content_address="bafy")
    with pytest.raises(DomainInvariantError):
        validate_initial_status(status="awaiting_signature", content_address=None)


@pytest.mark.unit
def test_repository_records_terminal_bookkeeping() -> None:
    async def _run() -> None:
        repository = InMemoryDeploymentRepository()
        created = await repository.create_deployment(project_id="proj-1", triggered_by=TriggeredBy.MANUAL)
        assert created.status == DeploymentStatus.PENDING_BUILD
        assert created.completed_at is None

        await repository.update_status(deployment_id=created.deployment_id, status=DeploymentStatus.CLONING)
        failed = await repository.mark_failed(deployment_id=created.deployment_id, message="clone failed")

        assert failed.status == DeploymentStatus.FAILED
        assert failed.error_message == "clone failed"
        assert failed.halted_at == DeploymentStatus.CLONING
        assert failed.completed_at is not None
        assert repository.transitions == [
            (created.deployment_id, "pending_build", "cloning"),
            (created.deployment_id, "cloning", "failed"),
        ]

        with pytest.raises(DomainInvariantError):
            await repository.update_status(deployment_id=created.deployment_id, status=DeploymentStatus.CLONING)

    asyncio.run(_run())


@pytest.mark.unit
def test_cancel_keeps_error_message_empty() -> None:
    async def _run() -> None:
        repository = InMemoryDeploymentRepository()
        created = await repository.create_deployment(
            project_id="proj-1",
            triggered_by=TriggeredBy.WEBHOOK,
            initial_status=DeploymentStatus.BUILDING,
        )

        result = await repository.cancel(deployment_id=created.deployment_id)
        stored = await repository.get_deployment(deployment_id=created.deployment_id)

        assert result.status == DeploymentStatus.CANCELLED
        assert result.killed is False
        assert stored is not None
        assert stored.error_message is None
        with pytest.raises(DomainInvariantError, match="no longer running"):
            await repository.cancel(deployment_id=created.deployment_id)

    asyncio.run(_run())
