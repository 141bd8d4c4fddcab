from __future__ import annotations

from ensdeploy.domain.errors import DomainInvariantError
from ensdeploy.domain.models import DeploymentStatus

PIPELINE_ORDER: tuple[DeploymentStatus, ...] = (
    DeploymentStatus.PENDING_BUILD,
    DeploymentStatus.CLONING,
    DeploymentStatus.BUILDING,
    DeploymentStatus.PENDING_UPLOAD,
    DeploymentStatus.UPLOADING,
    DeploymentStatus.AWAITING_SIGNATURE,
    DeploymentStatus.AWAITING_CONFIRMATION,
    DeploymentStatus.SUCCESS,
)

TERMINAL_STATUSES: frozenset[DeploymentStatus] = frozenset(
    {
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
    }
)

ACTIVE_STATUSES: tuple[DeploymentStatus, ...] = tuple(
    status for status in PIPELINE_ORDER if status not in TERMINAL_STATUSES
)

CANCELLABLE_STATUSES: frozenset[DeploymentStatus] = frozenset(ACTIVE_STATUSES)

# Statuses the finalizer picks up. `uploading` only qualifies while no
# content address has been recorded yet.
FINALIZER_CANDIDATE_STATUSES: tuple[DeploymentStatus, ...] = (
    DeploymentStatus.PENDING_UPLOAD,
    DeploymentStatus.UPLOADING,
    DeploymentStatus.AWAITING_SIGNATURE,
)

# Signed but not yet settled. Re-checked for a receipt only, never re-signed.
CONFIRMATION_RETRY_STATUSES: tuple[DeploymentStatus, ...] = (DeploymentStatus.AWAITING_CONFIRMATION,)

_ABORT_STATES = {DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}

ALLOWED_TRANSITIONS: dict[DeploymentStatus, set[DeploymentStatus]] = {
    DeploymentStatus.PENDING_BUILD: {DeploymentStatus.CLONING, *_ABORT_STATES},
    DeploymentStatus.CLONING: {DeploymentStatus.BUILDING, *_ABORT_STATES},
    DeploymentStatus.BUILDING: {DeploymentStatus.PENDING_UPLOAD, *_ABORT_STATES},
    DeploymentStatus.PENDING_UPLOAD: {DeploymentStatus.UPLOADING, *_ABORT_STATES},
    # Back to pending_upload when an upload attempt ends without a fatal cause.
    DeploymentStatus.UPLOADING: {
        DeploymentStatus.AWAITING_SIGNATURE,
        DeploymentStatus.PENDING_UPLOAD,
        *_ABORT_STATES,
    },
    DeploymentStatus.AWAITING_SIGNATURE: {DeploymentStatus.AWAITING_CONFIRMATION, *_ABORT_STATES},
    DeploymentStatus.AWAITING_CONFIRMATION: {DeploymentStatus.SUCCESS, *_ABORT_STATES},
    DeploymentStatus.SUCCESS: set(),
    DeploymentStatus.FAILED: set(),
    DeploymentStatus.CANCELLED: set(),
}


def is_terminal(status: str) -> bool:
    return DeploymentStatus(status) in TERMINAL_STATUSES


def pipeline_index(status: str) -> int:
    """Position of a status along the happy path; terminal aborts sort last."""
    parsed = DeploymentStatus(status)
    if parsed in _ABORT_STATES:
        return len(PIPELINE_ORDER)
    return PIPELINE_ORDER.index(parsed)


def can_transition(from_status: str, to_status: str) -> bool:
    return DeploymentStatus(to_status) in ALLOWED_TRANSITIONS[DeploymentStatus(from_status)]


def validate_transition(
    *,
    current: str,
    to_status: str,
    content_address: str | None = None,
    naming_tx_ref: str | None = None,
    error_message: str | None = None,
) -> None:
    """Raise DomainInvariantError unless `current -> to_status` is legal.

    `content_address` and `naming_tx_ref` are the values the record will hold
    after the write (existing value merged with the update).
    """
    source = DeploymentStatus(current)
    target = DeploymentStatus(to_status)

    if source in TERMINAL_STATUSES:
        raise DomainInvariantError(f"deployment is already {source.value}")
    if not can_transition(source, target):
        raise DomainInvariantError(f"transition {source.value} -> {target.value} is not allowed")

    if target is DeploymentStatus.AWAITING_SIGNATURE and not content_address:
        raise DomainInvariantError("awaiting_signature requires a content address")
    if target is DeploymentStatus.AWAITING_CONFIRMATION and not naming_tx_ref:
        raise DomainInvariantError("awaiting_confirmation requires a signed transaction reference")
    if naming_tx_ref and pipeline_index(target) < pipeline_index(DeploymentStatus.AWAITING_CONFIRMATION):
        raise DomainInvariantError("naming transaction reference cannot be recorded before signing")
    if target is DeploymentStatus.FAILED and not (error_message and error_message.strip()):
        raise DomainInvariantError("failed status requires a non-empty error message")


def validate_initial_status(*, status: str, content_address: str | None) -> None:
    """Deployments may enter the machine at any non-terminal state."""
    parsed = DeploymentStatus(status)
    if parsed in TERMINAL_STATUSES:
        raise DomainInvariantError(f"deployment cannot be created as {parsed.value}")
    if parsed is DeploymentStatus.AWAITING_CONFIRMATION:
        raise DomainInvariantError("deployment cannot be created after signing")
    if parsed is DeploymentStatus.AWAITING_SIGNATURE and not content_address:
        raise DomainInvariantError("awaiting_signature requires a content address")
