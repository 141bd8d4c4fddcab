from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import time

DEFAULT_REJECTION_COOLDOWN_SECONDS = 60.0


@dataclass
class InFlightRegistry:
    """Per-deployment single-flight guard."""

    _ids: set[str] = field(default_factory=set)

    def acquire(self, deployment_id: str) -> bool:
        if deployment_id in self._ids:
            return False
        self._ids.add(deployment_id)
        return True

    def release(self, deployment_id: str) -> None:
        self._ids.discard(deployment_id)

    def __contains__(self, deployment_id: object) -> bool:
        return deployment_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


@dataclass
class RejectionCooldowns:
    """Remembers when a signature was declined and suppresses retries for a fixed window."""

    window_seconds: float = DEFAULT_REJECTION_COOLDOWN_SECONDS
    clock: Callable[[], float] = time.monotonic
    _rejected_at: dict[str, float] = field(default_factory=dict)

    def record(self, deployment_id: str) -> None:
        self._rejected_at[deployment_id] = self.clock()

    def clear(self, deployment_id: str) -> None:
        self._rejected_at.pop(deployment_id, None)

    def remaining(self, deployment_id: str) -> float:
        rejected_at = self._rejected_at.get(deployment_id)
        if rejected_at is None:
            return 0.0
        left = self.window_seconds - (self.clock() - rejected_at)
        if left <= 0:
            self._rejected_at.pop(deployment_id, None)
            return 0.0
        return left

    def is_cooling_down(self, deployment_id: str) -> bool:
        return self.remaining(deployment_id) > 0

    def tracked(self) -> set[str]:
        return set(self._rejected_at)


@dataclass
class ChainMismatchHolds:
    """Deployments parked until the signer switches to the chain they require."""

    _required_chain: dict[str, int] = field(default_factory=dict)

    def hold(self, deployment_id: str, *, required_chain_id: int) -> None:
        self._required_chain[deployment_id] = required_chain_id

    def is_held(self, deployment_id: str) -> bool:
        return deployment_id in self._required_chain

    def blocks(self, deployment_id: str, *, active_chain_id: int) -> bool:
        required = self._required_chain.get(deployment_id)
        if required is None:
            return False
        if required == active_chain_id:
            # Signer was switched; let the deployment through again.
            del self._required_chain[deployment_id]
            return False
        return True

    def clear(self, deployment_id: str) -> None:
        self._required_chain.pop(deployment_id, None)

    def tracked(self) -> set[str]:
        return set(self._required_chain)
