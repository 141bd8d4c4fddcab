from dataclasses import dataclass

import pytest

from ensdeploy.finalizer.bookkeeping import ChainMismatchHolds, InFlightRegistry, RejectionCooldowns


@dataclass
class _Clock:
    now: float = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
def test_in_flight_registry_is_single_flight() -> None:
    registry = InFlightRegistry()

    assert registry.acquire("dep-1") is True
    assert registry.acquire("dep-1") is False
    assert "dep-1" in registry
    assert len(registry) == 1

    registry.release("dep-1")
    registry.release("dep-1")
    assert "dep-1" not in registry
    assert registry.acquire("dep-1") is True


@pytest.mark.unit
def test_cooldown_window_boundaries() -> None:
    clock = _Clock(now=100.0)
    cooldowns = RejectionCooldowns(window_seconds=60.0, clock=clock)

    cooldowns.record("dep-1")
    clock.now = 159.9
    assert cooldowns.is_cooling_down("dep-1") is True
    assert cooldowns.remaining("dep-1") == pytest.approx(0.1)

    clock.now = 160.0
    assert cooldowns.is_cooling_down("dep-1") is False
    assert cooldowns.remaining("dep-1") == 0.0


@pytest.mark.unit
def test_cooldown_clear_and_rerecord() -> None:
    clock = _Clock()
    cooldowns = RejectionCooldowns(clock=clock)

    assert cooldowns.is_cooling_down("dep-1") is False
    cooldowns.record("dep-1")
    cooldowns.clear("dep-1")
    assert cooldowns.is_cooling_down("dep-1") is False

    cooldowns.record("dep-1")
    clock.now = 30.0
    cooldowns.record("dep-1")
    clock.now = 70.0
    assert cooldowns.is_cooling_down("dep-1") is True


@pytest.mark.unit
def test_chain_hold_released_when_signer_switches() -> None:
    holds = ChainMismatchHolds()
    holds.hold("dep-1", required_chain_id=1)

    assert holds.is_held("dep-1")
    assert holds.blocks("dep-1", active_chain_id=11155111) is True
    assert holds.blocks("dep-1", active_chain_id=1) is False
    assert holds.is_held("dep-1") is False
    assert holds.blocks("dep-2", active_chain_id=5) is False


@pytest.mark.unit
def test_chain_hold_clear() -> None:
    holds = ChainMismatchHolds()
    holds.hold("dep-1", required_chain_id=1)
    holds.clear("dep-1")

    assert holds.is_held("dep-1") is False
