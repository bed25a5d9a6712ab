"""Dataclass domain models for pipeline definitions and pipeline runs.

Definitions (``PipelineDefinition``, ``StageDefinition`` and their policies) are
frozen and built once from configuration. Runtime records (``PipelineRun``,
``StageRun``) are mutable and owned by the run coordinator; every state change
goes through ``PipelineRun.set_state`` / ``PipelineRun.set_stage_state`` so the
transition history stays complete.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from conduit_ci.constants import SEVERITY_WEIGHT
from conduit_ci.domain import ids as domain_ids
from conduit_ci.domain.errors import ConfigError, ConfigIssue
from conduit_ci.domain.graph import CycleError, StageGraph

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT_TAIL = 16 * 1024


class TriggerType(StrEnum):
    PUSH = "push"
    MANUAL = "manual"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: object) -> Severity:
        """Map scanner-specific severity spellings onto the closed set."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.UNKNOWN
        normalized = value.strip().lower()
        normalized = _SEVERITY_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHT[self.value]


_SEVERITY_ALIASES: dict[str, str] = {
    "moderate": "medium",
    "negligible": "low",
    "info": "low",
    "informational": "low",
}


class StageState(StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    PASSED = "passed"
    FAILED_ADVISORY = "failed_advisory"
    FAILED_FATAL = "failed_fatal"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STAGE_STATES: frozenset[StageState] = frozenset(
    {
        StageState.PASSED,
        StageState.FAILED_ADVISORY,
        StageState.FAILED_FATAL,
        StageState.SKIPPED,
        StageState.CANCELLED,
    }
)
NOT_STARTED_STAGE_STATES: frozenset[StageState] = frozenset({StageState.PENDING, StageState.READY})
ACTIVE_STAGE_STATES: frozenset[StageState] = frozenset({StageState.RUNNING, StageState.RETRYING})


class SkipReason(StrEnum):
    BLOCKED = "blocked"
    HALTED = "halted"
    CONDITION = "condition"
    CANCELLED = "cancelled"


# Skips that still count as a satisfied dependency.
NON_BLOCKING_SKIP_REASONS: frozenset[SkipReason] = frozenset({SkipReason.CONDITION})


class FailureReason(StrEnum):
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    TRANSIENT_INFRA = "transient_infra"
    AUTH = "auth"
    GATE_BLOCKED = "gate_blocked"
    MISSING_OUTPUT = "missing_output"
    INVALID_REPORT = "invalid_report"
    INTERNAL = "internal"


class GateVerdict(StrEnum):
    PASS = "pass"
    ADVISORY_FAIL = "advisory_fail"
    FATAL = "fatal"


class RunState(StrEnum):
    INITIALIZING = "initializing"
    SCHEDULING = "scheduling"
    RUNNING = "running"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_SUCCEEDED_WITH_ADVISORIES = "partially_succeeded_with_advisories"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATES: frozenset[RunState] = frozenset(
    {
        RunState.SUCCEEDED,
        RunState.FAILED,
        RunState.PARTIALLY_SUCCEEDED_WITH_ADVISORIES,
        RunState.CANCELLED,
    }
)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    __slots__ = ()

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryPolicy(CanonicalModel):
    """Attempt budget with exponential, capped backoff between attempts."""

    max_attempts: int = 1
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000

    def __post_init__(self) -> None:
        _as_int(self.max_attempts, "retry.max_attempts", minimum=1)
        _as_int(self.base_delay_ms, "retry.base_delay_ms", minimum=0)
        _as_int(self.max_delay_ms, "retry.max_delay_ms", minimum=0)

    def delay_seconds(self, attempt: int) -> float:
        """Backoff to wait after failed ``attempt`` (1-based) before the next one."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        delay_ms = min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)
        return delay_ms / 1000.0


@dataclass(frozen=True, slots=True)
class GatePolicy(CanonicalModel):
    block_on_severities: frozenset[Severity] = frozenset()
    max_count: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "block_on_severities",
            frozenset(_as_enum(Severity, item, "gate_policy.block_on_severities[]") for item in self.block_on_severities),
        )
        _as_int(self.max_count, "gate_policy.max_count", minimum=0)

    def to_dict(self) -> dict[str, JSONValue]:
        ordered = sorted(self.block_on_severities, key=lambda item: -item.weight)
        return {
            "block_on_severities": [item.value for item in ordered],
            "max_count": self.max_count,
        }


@dataclass(frozen=True, slots=True)
class Finding(CanonicalModel):
    """One scanner finding. Recorded on the stage; never raised."""

    severity: Severity
    id: str
    title: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "severity", Severity.coerce(self.severity))
        if not isinstance(self.id, str) or not self.id.strip():
            _fail("finding.id", "must be a non-empty string")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Finding:
        title = data.get("title")
        return cls(
            severity=Severity.coerce(data.get("severity")),
            id=_as_str(data.get("id"), "finding.id"),
            title=title if isinstance(title, str) else None,
        )


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """
    One unit of pipeline work.

    Exactly one of ``command`` (argv) or ``action`` (registered action name with
    ``params``) describes the work. An empty ``triggers`` set means the stage
    applies to every trigger type.
    """

    id: str
    command: tuple[str, ...] = ()
    action: str | None = None
    params: Mapping[str, JSONValue] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    gate_policy: GatePolicy | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    outputs: tuple[str, ...] = ()
    report: str | None = None
    triggers: frozenset[TriggerType] = frozenset()
    required: bool = True

    def __post_init__(self) -> None:
        path = f"stage {self.id!r}"
        if not domain_ids.is_valid_stage_id(self.id):
            _invalid(f"{path}.id", f"must match {domain_ids.STAGE_ID_PATTERN_DESCRIPTION}")

        command = tuple(self.command)
        if any(not isinstance(part, str) for part in command):
            _invalid(f"{path}.command", "argv entries must be strings")
        object.__setattr__(self, "command", command)
        if bool(command) == (self.action is not None):
            _invalid(path, "exactly one of command or action is required")

        # Keep first occurrence order for duplicated dependencies.
        object.__setattr__(self, "depends_on", tuple(dict.fromkeys(self.depends_on)))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(
            self,
            "triggers",
            frozenset(_as_enum(TriggerType, item, f"{path}.triggers[]") for item in self.triggers),
        )
        if self.timeout_seconds is not None:
            timeout = _as_float(self.timeout_seconds, f"{path}.timeout_seconds", minimum=0.0)
            if timeout <= 0:
                _invalid(f"{path}.timeout_seconds", "must be > 0")
            object.__setattr__(self, "timeout_seconds", timeout)

    @property
    def kind(self) -> str:
        return "action" if self.action is not None else "command"

    def applies_to(self, trigger: TriggerType) -> bool:
        return not self.triggers or trigger in self.triggers


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Immutable pipeline: ordered stages plus the validated dependency DAG."""

    name: str
    stages: tuple[StageDefinition, ...]
    timeout_seconds: float = 3600.0
    max_parallelism: int | None = None
    cancel_in_progress: bool = False
    graph: StageGraph = field(init=False, repr=False, compare=False)
    _by_id: dict[str, StageDefinition] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        issues: list[ConfigIssue] = []
        if not isinstance(self.name, str) or not self.name.strip():
            issues.append(ConfigIssue("name", "must be a non-empty string"))

        stages = tuple(self.stages)
        object.__setattr__(self, "stages", stages)
        if not stages:
            issues.append(ConfigIssue("stages", "must declare at least one stage"))

        by_id: dict[str, StageDefinition] = {}
        for index, stage in enumerate(stages):
            if stage.id in by_id:
                issues.append(ConfigIssue(f"stages[{index}].id", f"duplicate stage id {stage.id!r}"))
                continue
            by_id[stage.id] = stage

        for index, stage in enumerate(stages):
            for dep_index, dependency in enumerate(stage.depends_on):
                if dependency not in by_id:
                    issues.append(
                        ConfigIssue(
                            f"stages[{index}].dependsOn[{dep_index}]",
                            f"unknown stage {dependency!r}",
                        )
                    )

        if isinstance(self.timeout_seconds, bool) or not isinstance(self.timeout_seconds, (int, float)):
            issues.append(ConfigIssue("timeoutSeconds", "must be a number"))
        elif not math.isfinite(self.timeout_seconds) or self.timeout_seconds <= 0:
            issues.append(ConfigIssue("timeoutSeconds", "must be > 0"))

        if self.max_parallelism is not None and (
            isinstance(self.max_parallelism, bool)
            or not isinstance(self.max_parallelism, int)
            or self.max_parallelism < 1
        ):
            issues.append(ConfigIssue("maxParallelism", "must be an integer >= 1"))

        if issues:
            raise ConfigError(issues, heading="invalid pipeline definition")

        graph = StageGraph(nodes=by_id)
        for stage in stages:
            for dependency in stage.depends_on:
                graph.add_edge(dependency, stage.id)
        try:
            graph.topological_sort()
        except CycleError as exc:
            raise ConfigError(
                [ConfigIssue("stages", f"dependency cycle: {' -> '.join(cycle)}") for cycle in exc.cycles],
                heading="invalid pipeline definition",
            ) from exc

        object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))
        object.__setattr__(self, "graph", graph)
        object.__setattr__(self, "_by_id", by_id)

    @property
    def stage_ids(self) -> tuple[str, ...]:
        return tuple(stage.id for stage in self.stages)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        return self.graph.edges

    def stage(self, stage_id: str) -> StageDefinition:
        try:
            return self._by_id[stage_id]
        except KeyError:
            raise KeyError(f"unknown stage: {stage_id}") from None


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ArtifactRef(CanonicalModel):
    """Immutable handle for one stored artifact."""

    run_id: str
    stage_id: str
    name: str
    digest: str
    size: int

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ArtifactRef:
        return cls(
            run_id=_as_str(data.get("run_id"), "artifact.run_id"),
            stage_id=_as_str(data.get("stage_id"), "artifact.stage_id"),
            name=_as_str(data.get("name"), "artifact.name"),
            digest=_as_str(data.get("digest"), "artifact.digest"),
            size=_as_int(data.get("size"), "artifact.size", minimum=0),
        )


@dataclass(frozen=True, slots=True)
class TriggerEvent(CanonicalModel):
    source_ref: str
    trigger_type: TriggerType = TriggerType.MANUAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_ref", _as_str(self.source_ref, "event.source_ref"))
        object.__setattr__(self, "trigger_type", _as_enum(TriggerType, self.trigger_type, "event.trigger_type"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TriggerEvent:
        return cls(
            source_ref=_as_str(data.get("source_ref"), "event.source_ref"),
            trigger_type=_as_enum(TriggerType, data.get("trigger_type"), "event.trigger_type"),
        )


@dataclass(frozen=True, slots=True)
class StageResult:
    """Outcome of executing one stage, after all of its attempts."""

    stage_id: str
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    artifacts: tuple[ArtifactRef, ...] = ()
    findings: tuple[Finding, ...] = ()
    duration_seconds: float = 0.0
    attempts: int = 1
    failure_reason: FailureReason | None = None
    error: str | None = None
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None and not self.cancelled


@dataclass(frozen=True, slots=True)
class StateTransition(CanonicalModel):
    """One recorded state change; ``subject`` is ``"run"`` or a stage id."""

    at: datetime
    subject: str
    from_state: str
    to_state: str
    detail: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StateTransition:
        detail = data.get("detail")
        return cls(
            at=_as_datetime(data.get("at"), "transition.at"),
            subject=_as_str(data.get("subject"), "transition.subject"),
            from_state=_as_str(data.get("from_state"), "transition.from_state"),
            to_state=_as_str(data.get("to_state"), "transition.to_state"),
            detail=detail if isinstance(detail, str) else None,
        )


@dataclass(frozen=True, slots=True)
class StageFailure(CanonicalModel):
    stage_id: str
    reason: FailureReason | SkipReason
    message: str | None = None

    def render(self) -> str:
        text = f"{self.stage_id}: {self.reason.value}"
        return f"{text} ({self.message})" if self.message else text

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageFailure:
        raw_reason = data.get("reason")
        reason: FailureReason | SkipReason
        try:
            reason = FailureReason(cast("str", raw_reason))
        except ValueError:
            reason = _as_enum(SkipReason, raw_reason, "failure.reason")
        message = data.get("message")
        return cls(
            stage_id=_as_str(data.get("stage_id"), "failure.stage_id"),
            reason=reason,
            message=message if isinstance(message, str) else None,
        )


@dataclass(frozen=True, slots=True)
class RunVerdict(CanonicalModel):
    """Aggregated outcome of a finished run."""

    state: RunState
    failure: StageFailure | None = None
    secondary_causes: tuple[StageFailure, ...] = ()
    advisories: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state in {RunState.SUCCEEDED, RunState.PARTIALLY_SUCCEEDED_WITH_ADVISORIES}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunVerdict:
        failure_raw = data.get("failure")
        return cls(
            state=_as_enum(RunState, data.get("state"), "verdict.state"),
            failure=StageFailure.from_dict(_as_mapping(failure_raw, "verdict.failure"))
            if failure_raw is not None
            else None,
            secondary_causes=tuple(
                StageFailure.from_dict(_as_mapping(item, "verdict.secondary_causes[]"))
                for item in _as_list(data.get("secondary_causes", []), "verdict.secondary_causes")
            ),
            advisories=tuple(
                _as_str(item, "verdict.advisories[]")
                for item in _as_list(data.get("advisories", []), "verdict.advisories")
            ),
        )


@dataclass(slots=True)
class StageRun(CanonicalModel):
    """Mutable per-run state of one stage. Owned by the run coordinator."""

    stage_id: str
    state: StageState = StageState.PENDING
    attempts: int = 0
    failure_reason: FailureReason | None = None
    skip_reason: SkipReason | None = None
    gate_verdict: GateVerdict | None = None
    gate_summary: str | None = None
    findings: tuple[Finding, ...] = ()
    artifacts: tuple[ArtifactRef, ...] = ()
    exit_code: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STAGE_STATES

    @property
    def satisfies_dependents(self) -> bool:
        if self.state in {StageState.PASSED, StageState.FAILED_ADVISORY}:
            return True
        return self.state is StageState.SKIPPED and self.skip_reason in NON_BLOCKING_SKIP_REASONS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageRun:
        path = "stage_run"
        return cls(
            stage_id=_as_str(data.get("stage_id"), f"{path}.stage_id"),
            state=_as_enum(StageState, data.get("state"), f"{path}.state"),
            attempts=_as_int(data.get("attempts", 0), f"{path}.attempts", minimum=0),
            failure_reason=_optional_enum(FailureReason, data.get("failure_reason"), f"{path}.failure_reason"),
            skip_reason=_optional_enum(SkipReason, data.get("skip_reason"), f"{path}.skip_reason"),
            gate_verdict=_optional_enum(GateVerdict, data.get("gate_verdict"), f"{path}.gate_verdict"),
            gate_summary=_optional_str(data.get("gate_summary")),
            findings=tuple(
                Finding.from_dict(_as_mapping(item, f"{path}.findings[]"))
                for item in _as_list(data.get("findings", []), f"{path}.findings")
            ),
            artifacts=tuple(
                ArtifactRef.from_dict(_as_mapping(item, f"{path}.artifacts[]"))
                for item in _as_list(data.get("artifacts", []), f"{path}.artifacts")
            ),
            exit_code=_optional_int(data.get("exit_code"), f"{path}.exit_code"),
            error=_optional_str(data.get("error")),
            started_at=_optional_datetime(data.get("started_at"), f"{path}.started_at"),
            finished_at=_optional_datetime(data.get("finished_at"), f"{path}.finished_at"),
        )


@dataclass(slots=True)
class PipelineRun(CanonicalModel):
    """One execution instance of a pipeline definition."""

    run_id: str
    pipeline: str
    event: TriggerEvent
    stages: dict[str, StageRun]
    state: RunState = RunState.INITIALIZING
    transitions: list[StateTransition] = field(default_factory=list)
    verdict: RunVerdict | None = None
    halted: bool = False
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @classmethod
    def new(
        cls,
        run_id: str,
        definition: PipelineDefinition,
        event: TriggerEvent,
        *,
        now: datetime | None = None,
    ) -> PipelineRun:
        domain_ids.validate_run_id(run_id)
        return cls(
            run_id=run_id,
            pipeline=definition.name,
            event=event,
            stages={stage.id: StageRun(stage_id=stage.id) for stage in definition.stages},
            created_at=now or utcnow(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    @property
    def active_count(self) -> int:
        return sum(1 for item in self.stages.values() if item.state in ACTIVE_STAGE_STATES)

    def stage(self, stage_id: str) -> StageRun:
        try:
            return self.stages[stage_id]
        except KeyError:
            raise KeyError(f"unknown stage: {stage_id}") from None

    def stages_in(self, states: Iterable[StageState]) -> tuple[str, ...]:
        wanted = frozenset(states)
        return tuple(stage_id for stage_id, item in self.stages.items() if item.state in wanted)

    def set_state(self, state: RunState, *, detail: str | None = None, now: datetime | None = None) -> None:
        if state is self.state:
            return
        self.transitions.append(
            StateTransition(
                at=now or utcnow(),
                subject="run",
                from_state=self.state.value,
                to_state=state.value,
                detail=detail,
            )
        )
        self.state = state

    def set_stage_state(
        self,
        stage_id: str,
        state: StageState,
        *,
        detail: str | None = None,
        now: datetime | None = None,
    ) -> StageRun:
        stage_run = self.stage(stage_id)
        if stage_run.state is state:
            return stage_run
        if stage_run.is_terminal:
            raise ValueError(
                f"stage {stage_id!r} is already terminal ({stage_run.state.value}); "
                f"refusing transition to {state.value}"
            )

        at = now or utcnow()
        self.transitions.append(
            StateTransition(
                at=at,
                subject=stage_id,
                from_state=stage_run.state.value,
                to_state=state.value,
                detail=detail,
            )
        )
        stage_run.state = state
        if state is StageState.RUNNING and stage_run.started_at is None:
            stage_run.started_at = at
        if state in TERMINAL_STAGE_STATES:
            stage_run.finished_at = at
        return stage_run

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "event": self.event.to_dict(),
            "state": self.state.value,
            "stages": [item.to_dict() for item in self.stages.values()],
            "transitions": [item.to_dict() for item in self.transitions],
            "verdict": self.verdict.to_dict() if self.verdict is not None else None,
            "halted": self.halted,
            "cancel_requested": self.cancel_requested,
            "created_at": _datetime_to_iso8601z(self.created_at),
            "finished_at": _datetime_to_iso8601z(self.finished_at) if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineRun:
        stage_runs = [
            StageRun.from_dict(_as_mapping(item, "run.stages[]"))
            for item in _as_list(data.get("stages", []), "run.stages")
        ]
        verdict_raw = data.get("verdict")
        return cls(
            run_id=_as_str(data.get("run_id"), "run.run_id"),
            pipeline=_as_str(data.get("pipeline"), "run.pipeline"),
            event=TriggerEvent.from_dict(_as_mapping(data.get("event"), "run.event")),
            stages={item.stage_id: item for item in stage_runs},
            state=_as_enum(RunState, data.get("state"), "run.state"),
            transitions=[
                StateTransition.from_dict(_as_mapping(item, "run.transitions[]"))
                for item in _as_list(data.get("transitions", []), "run.transitions")
            ],
            verdict=RunVerdict.from_dict(_as_mapping(verdict_raw, "run.verdict"))
            if verdict_raw is not None
            else None,
            halted=_as_bool(data.get("halted", False), "run.halted"),
            cancel_requested=_as_bool(data.get("cancel_requested", False), "run.cancel_requested"),
            created_at=_as_datetime(data.get("created_at"), "run.created_at"),
            finished_at=_optional_datetime(data.get("finished_at"), "run.finished_at"),
        )


@dataclass(frozen=True, slots=True)
class RunStatusReport(CanonicalModel):
    """Point-in-time view of a run returned by status queries."""

    run_id: str
    pipeline: str
    state: RunState
    event: TriggerEvent
    stages: tuple[StageRun, ...]
    verdict: RunVerdict | None
    created_at: datetime
    finished_at: datetime | None = None

    @classmethod
    def from_run(cls, run: PipelineRun) -> RunStatusReport:
        # Round-trip through the dict form so the report never aliases live state.
        return cls.from_dict(run.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunStatusReport:
        run = PipelineRun.from_dict(data)
        return cls(
            run_id=run.run_id,
            pipeline=run.pipeline,
            state=run.state,
            event=run.event,
            stages=tuple(run.stages.values()),
            verdict=run.verdict,
            created_at=run.created_at,
            finished_at=run.finished_at,
        )

    def stage(self, stage_id: str) -> StageRun:
        for item in self.stages:
            if item.stage_id == stage_id:
                return item
        raise KeyError(f"unknown stage: {stage_id}")


def tail_text(raw: bytes, *, limit: int = _MAX_TEXT_TAIL) -> str:
    """Decode the last ``limit`` bytes of process output for display."""
    return raw[-limit:].decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Validation and serialization helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _invalid(path: str, message: str) -> NoReturn:
    raise ConfigError((ConfigIssue(path, message),), heading="invalid pipeline definition")


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be a non-empty string")
    return normalized


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _optional_int(value: object, path: str) -> int | None:
    return None if value is None else _as_int(value, path)


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _optional_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum | None:
    return None if value is None else _as_enum(enum_type, value, path)


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _as_list(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _optional_datetime(value: object, path: str) -> datetime | None:
    return None if value is None else _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, CanonicalModel) and type(value).to_dict is not CanonicalModel.to_dict:
        return value.to_dict()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_serialize_value(item, f"{path}[]") for item in value)  # type: ignore[type-var]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "ACTIVE_STAGE_STATES",
    "ArtifactRef",
    "CanonicalModel",
    "FailureReason",
    "Finding",
    "GatePolicy",
    "GateVerdict",
    "JSONValue",
    "NON_BLOCKING_SKIP_REASONS",
    "NOT_STARTED_STAGE_STATES",
    "PipelineDefinition",
    "PipelineRun",
    "RetryPolicy",
    "RunState",
    "RunStatusReport",
    "RunVerdict",
    "Severity",
    "SkipReason",
    "StageDefinition",
    "StageFailure",
    "StageResult",
    "StageRun",
    "StageState",
    "StateTransition",
    "TERMINAL_RUN_STATES",
    "TERMINAL_STAGE_STATES",
    "TriggerEvent",
    "TriggerType",
    "tail_text",
    "utcnow",
]
