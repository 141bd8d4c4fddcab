from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field

from ensdeploy.finalizer.orchestrator import FinalizationOrchestrator


@dataclass(frozen=True)
class FinalizerRuntimeSettings:
    poll_interval_ms: int = 5000
    error_backoff_ms: int = 10000
    rejection_cooldown_ms: int = 60000
    candidate_limit: int = 10


@dataclass
class FinalizerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    skipped_ticks_total: int = 0
    processed_total: int = 0
    errors_total: int = 0


def finalizer_runtime_settings_from_env() -> FinalizerRuntimeSettings:
    return FinalizerRuntimeSettings(
        poll_interval_ms=_env_int("FINALIZER_POLL_INTERVAL_MS", 5000),
        error_backoff_ms=_env_int("FINALIZER_ERROR_BACKOFF_MS", 10000),
        rejection_cooldown_ms=_env_int("FINALIZER_REJECTION_COOLDOWN_MS", 60000),
        candidate_limit=_env_int("FINALIZER_CANDIDATE_LIMIT", 10),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def apply_settings(orchestrator: FinalizationOrchestrator, settings: FinalizerRuntimeSettings) -> None:
    orchestrator.candidate_limit = settings.candidate_limit
    orchestrator.cooldowns.window_seconds = settings.rejection_cooldown_ms / 1000


async def run_finalizer_until_stopped(
    *,
    orchestrator: FinalizationOrchestrator,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: FinalizerRuntimeSettings,
    logger: logging.Logger,
    state: FinalizerRuntimeState | None = None,
) -> None:
    if isinstance(orchestrator, FinalizationOrchestrator):
        apply_settings(orchestrator, settings)

    if state is not None:
        state.started = True

    logger.info(
        "finalizer loop started",
        extra={"role": role, "service": role, "run_id": run_id},
    )

    while not stop_event.is_set():
        delay_ms = settings.poll_interval_ms
        try:
            report = await orchestrator.poll()
            if state is not None:
                state.ticks_total += 1
                state.processed_total += len(report.processed)
                if not report.ran:
                    state.skipped_ticks_total += 1
            if report.reason == "error":
                if state is not None:
                    state.errors_total += 1
                delay_ms = settings.error_backoff_ms
            logger.info(
                "finalizer tick",
                extra={
                    "role": role,
                    "service": role,
                    "run_id": run_id,
                    "ran": str(report.ran).lower(),
                    "processed": len(report.processed),
                },
            )
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "finalizer tick error",
                extra={"role": role, "service": role, "run_id": run_id},
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info(
        "finalizer loop stopped",
        extra={"role": role, "service": role, "run_id": run_id},
    )
    if state is not None:
        state.stopped = True


@dataclass
class FinalizerService:
    """Background lifecycle for one orchestrator instance."""

    orchestrator: FinalizationOrchestrator
    role: str
    run_id: str
    settings: FinalizerRuntimeSettings = field(default_factory=FinalizerRuntimeSettings)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("runtime"))
    state: FinalizerRuntimeState = field(default_factory=FinalizerRuntimeState)
    _stop_event: asyncio.Event | None = field(default=None, init=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.orchestrator.clear_stop()
        self._stop_event = asyncio.Event()
        self.state = FinalizerRuntimeState()
        self._task = asyncio.create_task(
            run_finalizer_until_stopped(
                orchestrator=self.orchestrator,
                role=self.role,
                run_id=self.run_id,
                stop_event=self._stop_event,
                settings=self.settings,
                logger=self.logger,
                state=self.state,
            )
        )

    async def stop(self) -> None:
        if self._stop_event is None or self._task is None:
            return
        self.orchestrator.request_stop()
        self._stop_event.set()
        await self._task
        self._task = None
        self._stop_event = None
