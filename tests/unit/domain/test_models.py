"""Unit tests for domain records: retry backoff, run state bookkeeping, snapshots."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from conduit_ci.domain import ids
from conduit_ci.domain.errors import ConfigError
from conduit_ci.domain.models import (
    Finding,
    GatePolicy,
    PipelineDefinition,
    PipelineRun,
    RetryPolicy,
    RunState,
    Severity,
    SkipReason,
    StageDefinition,
    StageRun,
    StageState,
    TriggerEvent,
    TriggerType,
)

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _definition() -> PipelineDefinition:
    return PipelineDefinition(
        name="demo",
        stages=(
            StageDefinition(id="build", command=("make",)),
            StageDefinition(id="scan", command=("scan",), depends_on=("build",)),
        ),
    )


def test_retry_delay_doubles_and_caps() -> None:
    policy = RetryPolicy(max_attempts=5, base_delay_ms=200, max_delay_ms=1000)

    assert [policy.delay_seconds(attempt) for attempt in range(1, 6)] == [0.2, 0.4, 0.8, 1.0, 1.0]
    with pytest.raises(ValueError):
        policy.delay_seconds(0)


def test_retry_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)


def test_severity_coerce_is_case_insensitive_and_defaults_unknown() -> None:
    assert Severity.coerce("HIGH") is Severity.HIGH
    assert Severity.coerce(None) is Severity.UNKNOWN
    assert Severity.CRITICAL.weight > Severity.HIGH.weight > Severity.LOW.weight


def test_gate_policy_normalizes_severity_strings() -> None:
    policy = GatePolicy(block_on_severities=frozenset({"high", "critical"}), max_count=0)

    assert policy.block_on_severities == {Severity.HIGH, Severity.CRITICAL}
    assert policy.to_dict() == {"block_on_severities": ["critical", "high"], "max_count": 0}


def test_stage_definition_requires_exactly_one_of_command_or_action() -> None:
    with pytest.raises(ConfigError):
        StageDefinition(id="empty")
    with pytest.raises(ConfigError):
        StageDefinition(id="both", command=("true",), action="build")


def test_stage_applies_to_every_trigger_when_unrestricted() -> None:
    open_stage = StageDefinition(id="open", command=("true",))
    push_only = StageDefinition(id="deploy", command=("true",), triggers=frozenset({TriggerType.PUSH}))

    assert open_stage.applies_to(TriggerType.MANUAL)
    assert push_only.applies_to(TriggerType.PUSH)
    assert not push_only.applies_to(TriggerType.MANUAL)


def test_unknown_dependency_is_reported_with_path() -> None:
    with pytest.raises(ConfigError) as exc_info:
        PipelineDefinition(
            name="broken",
            stages=(StageDefinition(id="a", command=("true",), depends_on=("ghost",)),),
        )

    assert exc_info.value.paths == ("stages[0].dependsOn[0]",)


def test_set_stage_state_records_transitions_and_timestamps() -> None:
    run = PipelineRun.new(ids.generate_run_id(), _definition(), TriggerEvent(source_ref="main"), now=_NOW)

    run.set_stage_state("build", StageState.READY, now=_NOW)
    run.set_stage_state("build", StageState.RUNNING, now=_NOW)
    stage = run.set_stage_state("build", StageState.PASSED, now=_NOW)

    assert stage.started_at == _NOW
    assert stage.finished_at == _NOW
    assert [(item.from_state, item.to_state) for item in run.transitions] == [
        ("pending", "ready"),
        ("ready", "running"),
        ("running", "passed"),
    ]
    assert run.active_count == 0


def test_terminal_stage_refuses_further_transitions() -> None:
    run = PipelineRun.new(ids.generate_run_id(), _definition(), TriggerEvent(source_ref="main"))
    run.set_stage_state("build", StageState.FAILED_FATAL)

    with pytest.raises(ValueError, match="already terminal"):
        run.set_stage_state("build", StageState.RUNNING)


def test_skipped_for_condition_still_satisfies_dependents() -> None:
    skipped = StageRun(stage_id="deploy", state=StageState.SKIPPED, skip_reason=SkipReason.CONDITION)
    blocked = StageRun(stage_id="deploy", state=StageState.SKIPPED, skip_reason=SkipReason.BLOCKED)
    advisory = StageRun(stage_id="scan", state=StageState.FAILED_ADVISORY)

    assert skipped.satisfies_dependents
    assert advisory.satisfies_dependents
    assert not blocked.satisfies_dependents


def test_pipeline_run_snapshot_roundtrip() -> None:
    run = PipelineRun.new(
        ids.generate_run_id(),
        _definition(),
        TriggerEvent(source_ref="abc123", trigger_type=TriggerType.PUSH),
        now=_NOW,
    )
    run.set_state(RunState.RUNNING, now=_NOW)
    scan = run.set_stage_state("scan", StageState.FAILED_ADVISORY, now=_NOW)
    scan.findings = (Finding(severity=Severity.LOW, id="CVE-1", title="minor"),)
    run.cancel_requested = True

    restored = PipelineRun.from_dict(run.to_dict())

    assert restored.to_dict() == run.to_dict()
    assert restored.stage("scan").findings[0].severity is Severity.LOW
    assert restored.event.trigger_type is TriggerType.PUSH
    assert restored.cancel_requested


def test_run_ids_are_prefixed_and_validated() -> None:
    run_id = ids.generate_run_id(timestamp_ms=1_700_000_000_000, randbytes=lambda n: b"\x00" * n)

    assert run_id.startswith(ids.RUN_ID_PREFIX)
    assert len(run_id) == 30
    assert run_id.endswith("0" * 16)
    assert run_id < ids.generate_run_id()
    ids.validate_run_id(run_id)
    with pytest.raises(ValueError):
        ids.validate_run_id("not-a-run")
    assert ids.is_valid_stage_id("unit-tests")
    assert not ids.is_valid_stage_id("Unit Tests")
