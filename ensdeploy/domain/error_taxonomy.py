from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from ensdeploy.domain.errors import ChainMismatchError
from ensdeploy.domain.models import FinalizationStage

# Canonical error vocabulary for finalizer stage failures.
ErrorKind = Literal[
    "rejection",
    "configuration",
    "transient",
    "terminal",
]

# EIP-1193 "User Rejected Request".
USER_REJECTED_CODE = 4001

# Error codes wallet libraries use for a declined prompt.
USER_REJECTED_CODES: frozenset[object] = frozenset({USER_REJECTED_CODE, "4001", "ACTION_REJECTED"})

# Matched case-insensitively against error messages.
REJECTION_PHRASES: tuple[str, ...] = (
    "user rejected",
    "user canceled",
    "user cancelled",
    "rejected the request",
    "user denied",
)

# Attributes/keys signing libraries use to wrap the provider error.
NESTED_ERROR_FIELDS: tuple[str, ...] = (
    "cause",
    "__cause__",
    "__context__",
    "error",
    "inner_error",
    "original_error",
    "data",
)

# Only failures in these stages are attributable to the deployment's own
# inputs and may be persisted as `failed`.
TERMINAL_FAILURE_STAGES: frozenset[FinalizationStage] = frozenset(
    {
        FinalizationStage.UPLOAD,
        FinalizationStage.PREPARE,
    }
)


def is_user_rejection(error: object) -> bool:
    """Return True when `error` (or anything it wraps) is a declined signature."""
    return _is_rejection(error, seen=set())


def _is_rejection(error: object, *, seen: set[int]) -> bool:
    if error is None or id(error) in seen:
        return False
    seen.add(id(error))

    code = _read(error, "code")
    if isinstance(code, (int, str)) and code in USER_REJECTED_CODES:
        return True

    message = _read(error, "message")
    if not isinstance(message, str) and isinstance(error, BaseException):
        message = str(error)
    if isinstance(message, str):
        lowered = message.lower()
        if any(phrase in lowered for phrase in REJECTION_PHRASES):
            return True

    for name in NESTED_ERROR_FIELDS:
        nested = _read(error, name)
        if isinstance(nested, (BaseException, Mapping)) and _is_rejection(nested, seen=seen):
            return True
    return False


def _read(error: object, name: str) -> object:
    if isinstance(error, Mapping):
        return error.get(name)
    return getattr(error, name, None)


def error_message(error: BaseException, *, default: str = "Upload failed") -> str:
    message = str(error).strip()
    return message or default


def classify_stage_error(*, stage: FinalizationStage, error: BaseException) -> ErrorKind:
    if is_user_rejection(error):
        return "rejection"
    if isinstance(error, ChainMismatchError):
        return "configuration"
    if stage in TERMINAL_FAILURE_STAGES:
        return "terminal"
    return "transient"
