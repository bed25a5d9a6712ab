"""
Pipeline run coordinator.

One coordinator drives any number of runs, each through
Initializing -> Scheduling -> Running -> Finalizing -> terminal. Stage tasks
never touch the run: they post ``_AttemptStarted`` / ``_Retrying`` /
``_Finished`` messages to the run's queue and the coordinator loop applies them,
so every mutation happens in one place and is persisted right after.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.control_plane.gates import GateEvaluator
from conduit_ci.control_plane.scheduler import DagScheduler, StageOutcome
from conduit_ci.domain import ids as domain_ids
from conduit_ci.domain.errors import GateBlockedError, UnknownRunError
from conduit_ci.domain.models import (
    ArtifactRef,
    FailureReason,
    GateVerdict,
    PipelineDefinition,
    PipelineRun,
    RunState,
    RunStatusReport,
    RunVerdict,
    SkipReason,
    StageDefinition,
    StageFailure,
    StageResult,
    StageState,
    TriggerEvent,
    utcnow,
)
from conduit_ci.observability.logging import correlation_scope
from conduit_ci.persistence.run_store import RunStore
from conduit_ci.sandbox.executor import StageExecutor
from conduit_ci.utils.concurrency import CancellationToken

DEFAULT_MAX_PARALLELISM: Final[int] = 4
DEFAULT_CANCEL_POLL_SECONDS: Final[float] = 1.0

# Artifact name prefixes handed to dependents as inputs.
_INPUT_PREFIXES: Final[tuple[str, ...]] = ("outputs/", "report/")


@dataclass(frozen=True, slots=True)
class _AttemptStarted:
    stage_id: str
    attempt: int


@dataclass(frozen=True, slots=True)
class _Retrying:
    stage_id: str
    attempt: int
    delay_seconds: float
    error: str


@dataclass(frozen=True, slots=True)
class _Finished:
    stage_id: str
    result: StageResult | None = None
    error: BaseException | None = None


_Message = _AttemptStarted | _Retrying | _Finished


@dataclass(slots=True)
class _RunContext:
    definition: PipelineDefinition
    run: PipelineRun
    token: CancellationToken = field(default_factory=CancellationToken)
    driving: bool = False


class RunCoordinator:
    """Owns pipeline runs: trigger, drive, status and cancel."""

    def __init__(
        self,
        *,
        executor: StageExecutor,
        run_store: RunStore,
        artifact_store: ArtifactStore,
        gates: GateEvaluator | None = None,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        cancel_poll_seconds: float = DEFAULT_CANCEL_POLL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be >= 1")
        if cancel_poll_seconds <= 0:
            raise ValueError("cancel_poll_seconds must be > 0")
        self._executor = executor
        self._run_store = run_store
        self._artifacts = artifact_store
        self._gates = gates if gates is not None else GateEvaluator()
        self._max_parallelism = max_parallelism
        self._cancel_poll_seconds = cancel_poll_seconds
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._runs: dict[str, _RunContext] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def trigger(
        self,
        definition: PipelineDefinition,
        event: TriggerEvent,
        *,
        run_id: str | None = None,
    ) -> str:
        """Create and persist a new run in Initializing; returns its id."""

        new_run_id = run_id or domain_ids.generate_run_id()
        run = PipelineRun.new(new_run_id, definition, event)

        if definition.cancel_in_progress:
            for other in self._run_store.active_run_ids(definition.name):
                if other != new_run_id:
                    self.cancel(other, reason=f"superseded by {new_run_id}")

        self._runs[new_run_id] = _RunContext(definition=definition, run=run)
        self._artifacts.pin_run(new_run_id)
        self._run_store.save(run)
        self._logger.info(
            "run_triggered",
            run_id=new_run_id,
            pipeline=definition.name,
            source_ref=event.source_ref,
            trigger=event.trigger_type.value,
        )
        return new_run_id

    async def run(self, definition: PipelineDefinition, event: TriggerEvent) -> PipelineRun:
        return await self.drive(self.trigger(definition, event))

    def status(self, run_id: str) -> RunStatusReport:
        ctx = self._runs.get(run_id)
        if ctx is not None:
            return RunStatusReport.from_run(ctx.run)
        return self._run_store.status(run_id)

    def cancel(self, run_id: str, *, reason: str | None = None) -> bool:
        """
        Request cancellation. Runs driven by this coordinator are signalled
        directly; others are flagged in the run store and picked up by their
        driving process. Returns ``False`` if the run already finished.
        """

        ctx = self._runs.get(run_id)
        if ctx is not None:
            if ctx.run.is_terminal:
                return False
            ctx.token.cancel(reason or "cancel requested")
            self._logger.info("run_cancel_requested", run_id=run_id, reason=reason)
            return True
        accepted = self._run_store.request_cancel(run_id)
        if accepted:
            self._logger.info("run_cancel_requested", run_id=run_id, reason=reason, remote=True)
        return accepted

    async def drive(self, run_id: str) -> PipelineRun:
        """Run ``run_id`` to a terminal state and return the final run."""

        ctx = self._runs.get(run_id)
        if ctx is None:
            if not self._run_store.exists(run_id):
                raise UnknownRunError(f"unknown run: {run_id}")
            raise RuntimeError(f"run {run_id} is already being driven or finished")
        if ctx.driving or ctx.run.is_terminal:
            raise RuntimeError(f"run {run_id} is already being driven or finished")
        ctx.driving = True

        run = ctx.run
        definition = ctx.definition
        scheduler = DagScheduler(definition, max_parallelism=self._max_parallelism, logger=self._logger)
        deadline = self._clock() + definition.timeout_seconds
        queue: asyncio.Queue[_Message] = asyncio.Queue()
        tasks: dict[str, asyncio.Task[None]] = {}

        with correlation_scope(run_id=run_id, pipeline=definition.name):
            try:
                self._set_run_state(run, RunState.SCHEDULING)
                scheduler.apply_trigger_filter(run)
                scheduler.promote_ready(run)
                await self._persist(run)
                self._set_run_state(run, RunState.RUNNING)

                while True:
                    if ctx.token.is_cancelled and not run.cancel_requested:
                        run.cancel_requested = True
                        self._logger.info("run_cancelling", reason=ctx.token.reason, running=sorted(tasks))
                        await self._persist(run)

                    for stage_id in scheduler.dispatchable(run).selected:
                        stage_run = run.set_stage_state(stage_id, StageState.RUNNING, detail="dispatched")
                        stage_run.attempts = 1
                        tasks[stage_id] = asyncio.create_task(
                            self._stage_task(ctx, definition.stage(stage_id), queue, deadline),
                            name=f"stage:{stage_id}",
                        )
                        await self._persist(run)

                    if not tasks:
                        break

                    message = await self._next_message(queue, ctx)
                    if message is None:
                        continue
                    self._apply(ctx, scheduler, message, tasks)
                    await self._persist(run)

                self._set_run_state(run, RunState.FINALIZING)
                scheduler.finalize_pending(run)
                run.verdict = decide_verdict(run, definition)
                run.finished_at = utcnow()
                self._set_run_state(run, run.verdict.state)
                await self._persist(run)
                self._logger.info(
                    "run_finished",
                    state=run.state.value,
                    failure=run.verdict.failure.render() if run.verdict.failure else None,
                    advisories=list(run.verdict.advisories),
                )
                return run
            finally:
                for task in tasks.values():
                    task.cancel()
                for task in tasks.values():
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                await asyncio.to_thread(self._artifacts.unpin_run, run_id)
                ctx.driving = False
                if run.is_terminal:
                    self._runs.pop(run_id, None)

    # ------------------------------------------------------------------
    # Loop internals
    # ------------------------------------------------------------------

    async def _next_message(self, queue: asyncio.Queue[_Message], ctx: _RunContext) -> _Message | None:
        getter = asyncio.ensure_future(queue.get())
        waiters: set[asyncio.Future[Any]] = {getter}
        token_waiter: asyncio.Future[None] | None = None
        if not ctx.run.cancel_requested:
            token_waiter = asyncio.ensure_future(ctx.token.wait())
            waiters.add(token_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._cancel_poll_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if token_waiter is not None:
                token_waiter.cancel()
            if not getter.done():
                getter.cancel()

        if getter in done:
            return getter.result()
        if not ctx.token.is_cancelled:
            requested = await asyncio.to_thread(self._run_store.is_cancel_requested, ctx.run.run_id)
            if requested:
                ctx.token.cancel("cancel requested")
        return None

    def _apply(
        self,
        ctx: _RunContext,
        scheduler: DagScheduler,
        message: _Message,
        tasks: dict[str, asyncio.Task[None]],
    ) -> None:
        run = ctx.run
        if isinstance(message, _AttemptStarted):
            stage_run = run.stage(message.stage_id)
            stage_run.attempts = message.attempt
            if stage_run.state is StageState.RETRYING:
                run.set_stage_state(message.stage_id, StageState.RUNNING, detail=f"attempt {message.attempt}")
            return

        if isinstance(message, _Retrying):
            run.set_stage_state(
                message.stage_id,
                StageState.RETRYING,
                detail=f"attempt {message.attempt} failed: {message.error}; retry in {message.delay_seconds:g}s",
            )
            return

        tasks.pop(message.stage_id, None)
        stage = ctx.definition.stage(message.stage_id)
        if message.result is not None:
            outcome = self._outcome_for(stage, message.result)
        else:
            outcome = StageOutcome(
                state=StageState.FAILED_FATAL,
                failure_reason=FailureReason.INTERNAL,
                error=f"{type(message.error).__name__}: {message.error}",
            )
        scheduler.advance(run, message.stage_id, outcome)

    def _outcome_for(self, stage: StageDefinition, result: StageResult) -> StageOutcome:
        common: dict[str, Any] = {
            "findings": result.findings,
            "artifacts": result.artifacts,
            "exit_code": result.exit_code,
            "attempts": result.attempts,
        }
        if result.cancelled:
            return StageOutcome(state=StageState.CANCELLED, error=result.error, **common)
        if result.failure_reason is not None:
            return StageOutcome(
                state=StageState.FAILED_FATAL,
                failure_reason=result.failure_reason,
                error=result.error,
                **common,
            )

        decision = self._gates.evaluate(result, stage.gate_policy)
        if decision.verdict is GateVerdict.FATAL:
            return StageOutcome(
                state=StageState.FAILED_FATAL,
                failure_reason=FailureReason.GATE_BLOCKED,
                gate_verdict=decision.verdict,
                gate_summary=decision.summary,
                error=str(GateBlockedError(stage.id, decision.summary)),
                **common,
            )
        return StageOutcome(
            state=StageState.FAILED_ADVISORY if decision.verdict is GateVerdict.ADVISORY_FAIL else StageState.PASSED,
            gate_verdict=decision.verdict,
            gate_summary=decision.summary,
            **common,
        )

    async def _stage_task(
        self,
        ctx: _RunContext,
        stage: StageDefinition,
        queue: asyncio.Queue[_Message],
        deadline: float,
    ) -> None:
        run = ctx.run
        inputs = self._inputs_for(ctx, stage)

        def on_attempt(attempt: int) -> None:
            if attempt > 1:
                queue.put_nowait(_AttemptStarted(stage.id, attempt))

        def on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            queue.put_nowait(_Retrying(stage.id, attempt, delay, str(exc)))

        try:
            result = await self._executor.execute(
                stage,
                inputs,
                run_id=run.run_id,
                source_ref=run.event.source_ref,
                trigger=run.event.trigger_type,
                deadline=deadline,
                cancel_token=ctx.token,
                on_retry=on_retry,
                on_attempt=on_attempt,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception("stage_task_crashed", stage_id=stage.id)
            queue.put_nowait(_Finished(stage.id, error=exc))
            return
        queue.put_nowait(_Finished(stage.id, result=result))

    def _inputs_for(self, ctx: _RunContext, stage: StageDefinition) -> tuple[ArtifactRef, ...]:
        refs: list[ArtifactRef] = []
        for dependency in stage.depends_on:
            refs.extend(
                ref for ref in ctx.run.stage(dependency).artifacts if ref.name.startswith(_INPUT_PREFIXES)
            )
        return tuple(refs)

    def _set_run_state(self, run: PipelineRun, state: RunState) -> None:
        previous = run.state
        run.set_state(state)
        self._logger.info("run_state_changed", from_state=previous.value, to_state=state.value)

    async def _persist(self, run: PipelineRun) -> None:
        await asyncio.to_thread(self._run_store.save, run)


def decide_verdict(run: PipelineRun, definition: PipelineDefinition) -> RunVerdict:
    """
    Aggregate stage states into the run verdict.

    Failed when a required stage failed fatally or was blocked/halted;
    partially succeeded when only non-required stages did; cancelled when the
    run was cancelled; otherwise succeeded, with advisory gate results listed
    as notes. The primary failure is the first fatal required stage in
    completion order.
    """

    fatal_order = [
        item.subject
        for item in run.transitions
        if item.to_state == StageState.FAILED_FATAL.value and item.subject in run.stages
    ]

    advisories: list[str] = []
    for stage in definition.stages:
        stage_run = run.stage(stage.id)
        if stage_run.state is StageState.FAILED_ADVISORY:
            advisories.append(f"{stage.id}: {stage_run.gate_summary or 'advisory findings'}")
        elif not stage.required and stage_run.state is StageState.FAILED_FATAL:
            reason = stage_run.failure_reason.value if stage_run.failure_reason else "failed"
            advisories.append(f"{stage.id}: {reason} (not required)")

    def failure_of(stage_id: str) -> StageFailure:
        stage_run = run.stage(stage_id)
        reason: FailureReason | SkipReason
        if stage_run.state is StageState.FAILED_FATAL:
            reason = stage_run.failure_reason or FailureReason.INTERNAL
        elif stage_run.state is StageState.CANCELLED:
            reason = SkipReason.CANCELLED
        else:
            reason = stage_run.skip_reason or SkipReason.BLOCKED
        return StageFailure(stage_id=stage_id, reason=reason, message=stage_run.error or stage_run.gate_summary)

    skipped_blocking = [
        stage.id
        for stage in definition.stages
        if run.stage(stage.id).state is StageState.SKIPPED
        and run.stage(stage.id).skip_reason in {SkipReason.BLOCKED, SkipReason.HALTED}
    ]

    if run.cancel_requested:
        cancelled = [
            stage.id
            for stage in definition.stages
            if run.stage(stage.id).state is StageState.CANCELLED
            or run.stage(stage.id).skip_reason is SkipReason.CANCELLED
        ]
        return RunVerdict(
            state=RunState.CANCELLED,
            failure=failure_of(fatal_order[0]) if fatal_order else None,
            secondary_causes=tuple(failure_of(stage_id) for stage_id in cancelled),
            advisories=tuple(advisories),
        )

    required_fatal = [stage_id for stage_id in fatal_order if definition.stage(stage_id).required]
    required_skipped = [stage_id for stage_id in skipped_blocking if definition.stage(stage_id).required]
    if required_fatal or required_skipped:
        primary = required_fatal[0] if required_fatal else required_skipped[0]
        secondary = [stage_id for stage_id in fatal_order if stage_id != primary]
        secondary.extend(stage_id for stage_id in skipped_blocking if stage_id != primary)
        return RunVerdict(
            state=RunState.FAILED,
            failure=failure_of(primary),
            secondary_causes=tuple(failure_of(stage_id) for stage_id in secondary),
            advisories=tuple(advisories),
        )

    if fatal_order or skipped_blocking:
        return RunVerdict(
            state=RunState.PARTIALLY_SUCCEEDED_WITH_ADVISORIES,
            secondary_causes=tuple(failure_of(stage_id) for stage_id in [*fatal_order, *skipped_blocking]),
            advisories=tuple(advisories),
        )

    return RunVerdict(state=RunState.SUCCEEDED, advisories=tuple(advisories))


__all__ = [
    "DEFAULT_MAX_PARALLELISM",
    "RunCoordinator",
    "decide_verdict",
]
