"""Unit tests for gate verdicts over scanner findings."""

from __future__ import annotations

from conduit_ci.control_plane.gates import GateEvaluator, evaluate, highest_severity
from conduit_ci.domain.models import Finding, GatePolicy, GateVerdict, Severity, StageResult

_POLICY = GatePolicy(block_on_severities=frozenset({Severity.CRITICAL, Severity.HIGH}), max_count=0)


def _finding(severity: Severity, index: int = 0) -> Finding:
    return Finding(severity=severity, id=f"CVE-2026-{index:04d}", title="example")


def test_no_findings_pass() -> None:
    decision = evaluate((), _POLICY)

    assert decision.verdict is GateVerdict.PASS
    assert decision.summary == "no findings"


def test_blocking_severity_over_threshold_is_fatal() -> None:
    findings = (_finding(Severity.HIGH, 1), _finding(Severity.LOW, 2))

    decision = evaluate(findings, _POLICY)

    assert decision.is_fatal
    assert decision.blocking_count == 1
    assert decision.total_count == 2
    assert decision.counts_by_severity == {"high": 1, "low": 1}
    assert decision.summary.startswith("1 blocking finding(s) [critical,high] exceed max 0")


def test_non_blocking_findings_are_advisory() -> None:
    decision = evaluate((_finding(Severity.LOW), _finding(Severity.MEDIUM, 1)), _POLICY)

    assert decision.verdict is GateVerdict.ADVISORY_FAIL
    assert decision.summary == "2 finding(s): medium=1, low=1"


def test_max_count_allows_blocking_findings_up_to_the_limit() -> None:
    policy = GatePolicy(block_on_severities=frozenset({Severity.HIGH}), max_count=2)
    findings = tuple(_finding(Severity.HIGH, index) for index in range(2))

    assert evaluate(findings, policy).verdict is GateVerdict.ADVISORY_FAIL
    assert evaluate((*findings, _finding(Severity.HIGH, 9)), policy).verdict is GateVerdict.FATAL


def test_without_policy_the_gate_passes() -> None:
    decision = evaluate((_finding(Severity.CRITICAL),), None)

    assert decision.verdict is GateVerdict.PASS
    assert decision.blocking_count == 0


def test_evaluator_reads_findings_from_stage_result() -> None:
    result = StageResult(stage_id="scan", exit_code=0, findings=(_finding(Severity.CRITICAL),))

    decision = GateEvaluator().evaluate(result, _POLICY)

    assert decision.to_dict()["verdict"] == "fatal"
    assert highest_severity(result.findings) is Severity.CRITICAL
    assert highest_severity(()) is None
