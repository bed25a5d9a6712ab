"""
Deterministic DAG scheduler for stage runs.

The scheduler owns no state of its own: it reads and updates a
``PipelineRun`` on behalf of the coordinator. A stage is ready when every
dependency is Passed, FailedAdvisory, or Skipped for a non-blocking reason;
ready stages are dispatched in declaration order up to the parallelism limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from conduit_ci.domain.models import (
    NOT_STARTED_STAGE_STATES,
    TERMINAL_STAGE_STATES,
    ArtifactRef,
    FailureReason,
    Finding,
    GateVerdict,
    PipelineDefinition,
    PipelineRun,
    SkipReason,
    StageState,
    TriggerType,
)

_BLOCKING_STATES = frozenset({StageState.FAILED_FATAL, StageState.CANCELLED})


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Terminal result of one stage as decided by executor and gate."""

    state: StageState
    failure_reason: FailureReason | None = None
    skip_reason: SkipReason | None = None
    gate_verdict: GateVerdict | None = None
    gate_summary: str | None = None
    findings: tuple[Finding, ...] = ()
    artifacts: tuple[ArtifactRef, ...] = ()
    exit_code: int | None = None
    attempts: int | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.state not in TERMINAL_STAGE_STATES:
            raise ValueError(f"stage outcome must be terminal, got {self.state.value}")


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    selected: tuple[str, ...]
    ready: tuple[str, ...]
    running: int
    capacity: int
    halted: bool = False


@dataclass(frozen=True, slots=True)
class Advance:
    """What ``advance`` changed besides the finished stage itself."""

    stage_id: str
    state: StageState
    blocked: tuple[str, ...] = ()
    newly_ready: tuple[str, ...] = ()
    halted: bool = False


class DagScheduler:
    """Ready-set computation and state propagation for one pipeline."""

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        max_parallelism: int | None = None,
        logger: Any | None = None,
    ) -> None:
        limit = definition.max_parallelism or max_parallelism or len(definition.stages)
        if limit < 1:
            raise ValueError("max_parallelism must be >= 1")
        self._definition = definition
        self._graph = definition.graph
        self._limit = limit
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_parallelism(self) -> int:
        return self._limit

    def ready(self, run: PipelineRun) -> tuple[str, ...]:
        """Not-started stages whose dependencies are all satisfied, in declaration order."""

        ready: list[str] = []
        for stage_id in self._definition.stage_ids:
            if run.stage(stage_id).state not in NOT_STARTED_STAGE_STATES:
                continue
            if all(
                run.stage(dependency).satisfies_dependents
                for dependency in self._graph.get_dependencies(stage_id)
            ):
                ready.append(stage_id)
        return tuple(ready)

    def dispatchable(self, run: PipelineRun) -> ScheduleDecision:
        ready = self.ready(run)
        running = run.active_count
        halted = run.halted or run.cancel_requested
        capacity = 0 if halted else max(0, self._limit - running)
        selected = ready[:capacity]
        if selected:
            self._logger.debug(
                "stages_dispatchable",
                selected=list(selected),
                ready=list(ready),
                running=running,
                capacity=capacity,
            )
        return ScheduleDecision(
            selected=selected,
            ready=ready,
            running=running,
            capacity=capacity,
            halted=halted,
        )

    def apply_trigger_filter(self, run: PipelineRun) -> tuple[str, ...]:
        """Skip stages that do not apply to the run's trigger type."""

        trigger: TriggerType = run.event.trigger_type
        skipped: list[str] = []
        for stage in self._definition.stages:
            if stage.applies_to(trigger) or run.stage(stage.id).state not in NOT_STARTED_STAGE_STATES:
                continue
            stage_run = run.set_stage_state(
                stage.id,
                StageState.SKIPPED,
                detail=f"not triggered by {trigger.value}",
            )
            stage_run.skip_reason = SkipReason.CONDITION
            skipped.append(stage.id)
        if skipped:
            self._logger.info("stages_skipped_by_trigger", trigger=trigger.value, stages=skipped)
        return tuple(skipped)

    def promote_ready(self, run: PipelineRun) -> tuple[str, ...]:
        promoted: list[str] = []
        for stage_id in self.ready(run):
            if run.stage(stage_id).state is StageState.PENDING:
                run.set_stage_state(stage_id, StageState.READY)
                promoted.append(stage_id)
        return tuple(promoted)

    def advance(self, run: PipelineRun, stage_id: str, outcome: StageOutcome) -> Advance:
        """
        Record ``outcome`` for ``stage_id`` and propagate it.

        Fatal (or cancelled) stages block every transitive dependent that has
        not started yet. A fatal required stage also halts the run: nothing new
        is dispatched, running stages finish.
        """

        detail = outcome.failure_reason.value if outcome.failure_reason else outcome.gate_summary
        stage_run = run.set_stage_state(stage_id, outcome.state, detail=detail)
        stage_run.failure_reason = outcome.failure_reason
        stage_run.skip_reason = outcome.skip_reason
        stage_run.gate_verdict = outcome.gate_verdict
        stage_run.gate_summary = outcome.gate_summary
        stage_run.findings = outcome.findings
        stage_run.artifacts = outcome.artifacts
        stage_run.exit_code = outcome.exit_code
        stage_run.error = outcome.error
        if outcome.attempts is not None:
            stage_run.attempts = outcome.attempts

        blocked: list[str] = []
        halted = False
        if outcome.state in _BLOCKING_STATES:
            cancelled = run.cancel_requested or outcome.state is StageState.CANCELLED
            skip_reason = SkipReason.CANCELLED if cancelled else SkipReason.BLOCKED
            for dependent in self._graph.get_dependents(stage_id, transitive=True):
                dependent_run = run.stage(dependent)
                if dependent_run.state not in NOT_STARTED_STAGE_STATES:
                    continue
                run.set_stage_state(dependent, StageState.SKIPPED, detail=f"{skip_reason.value} by {stage_id}")
                dependent_run.skip_reason = skip_reason
                blocked.append(dependent)

            if (
                outcome.state is StageState.FAILED_FATAL
                and self._definition.stage(stage_id).required
                and not run.halted
            ):
                run.halted = True
                halted = True

        newly_ready = self.promote_ready(run)
        self._logger.info(
            "stage_advanced",
            stage_id=stage_id,
            state=outcome.state.value,
            blocked=blocked,
            newly_ready=list(newly_ready),
            halted=halted,
        )
        return Advance(
            stage_id=stage_id,
            state=outcome.state,
            blocked=tuple(blocked),
            newly_ready=newly_ready,
            halted=halted,
        )

    def finalize_pending(self, run: PipelineRun) -> tuple[str, ...]:
        """Skip every stage that never started: cancelled, halted, or unreachable."""

        if run.cancel_requested:
            reason = SkipReason.CANCELLED
        elif run.halted:
            reason = SkipReason.HALTED
        else:
            reason = SkipReason.BLOCKED

        skipped = run.stages_in(NOT_STARTED_STAGE_STATES)
        for stage_id in skipped:
            stage_run = run.set_stage_state(stage_id, StageState.SKIPPED, detail=f"run {reason.value}")
            stage_run.skip_reason = reason
        if skipped:
            self._logger.info("stages_skipped_at_finalize", reason=reason.value, stages=list(skipped))
        return skipped


__all__ = [
    "Advance",
    "DagScheduler",
    "ScheduleDecision",
    "StageOutcome",
]
