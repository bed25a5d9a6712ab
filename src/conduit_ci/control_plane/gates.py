"""Per-stage security gate evaluation."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from conduit_ci.domain.models import Finding, GatePolicy, GateVerdict, Severity, StageResult


@dataclass(frozen=True, slots=True)
class GateDecision:
    verdict: GateVerdict
    blocking_count: int
    total_count: int
    counts_by_severity: Mapping[str, int] = field(default_factory=dict)
    summary: str = ""

    @property
    def is_fatal(self) -> bool:
        return self.verdict is GateVerdict.FATAL

    def to_dict(self) -> dict[str, object]:
        return {
            "verdict": self.verdict.value,
            "blocking_count": self.blocking_count,
            "total_count": self.total_count,
            "counts_by_severity": dict(self.counts_by_severity),
            "summary": self.summary,
        }


def evaluate(findings: StageResult | Iterable[Finding], policy: GatePolicy | None) -> GateDecision:
    """
    Apply ``policy`` to a stage's findings.

    Findings whose severity is in ``block_on_severities`` are blocking; more
    than ``max_count`` of them is ``FATAL``. Any other non-empty finding set is
    ``ADVISORY_FAIL``. Without a policy the gate always passes.
    """

    items = tuple(findings.findings if isinstance(findings, StageResult) else findings)
    counts = Counter(item.severity for item in items)
    ordered_counts = {
        severity.value: counts[severity]
        for severity in sorted(counts, key=lambda item: -item.weight)
    }

    if policy is None:
        blocking = 0
        verdict = GateVerdict.PASS
    else:
        blocking = sum(counts[severity] for severity in policy.block_on_severities)
        if blocking > policy.max_count:
            verdict = GateVerdict.FATAL
        elif items:
            verdict = GateVerdict.ADVISORY_FAIL
        else:
            verdict = GateVerdict.PASS

    return GateDecision(
        verdict=verdict,
        blocking_count=blocking,
        total_count=len(items),
        counts_by_severity=ordered_counts,
        summary=_summarize(verdict, blocking, ordered_counts, policy),
    )


def _summarize(
    verdict: GateVerdict,
    blocking: int,
    counts: Mapping[str, int],
    policy: GatePolicy | None,
) -> str:
    if not counts:
        return "no findings"
    breakdown = ", ".join(f"{severity}={count}" for severity, count in counts.items())
    if policy is None or verdict is not GateVerdict.FATAL:
        return f"{sum(counts.values())} finding(s): {breakdown}"
    blocked_on = ",".join(
        item.value for item in sorted(policy.block_on_severities, key=lambda value: -value.weight)
    )
    return f"{blocking} blocking finding(s) [{blocked_on}] exceed max {policy.max_count}: {breakdown}"


class GateEvaluator:
    """Logs every gate decision; the verdict itself comes from :func:`evaluate`."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def evaluate(self, stage_result: StageResult, policy: GatePolicy | None) -> GateDecision:
        decision = evaluate(stage_result, policy)
        log = self._logger.warning if decision.is_fatal else self._logger.info
        log(
            "gate_evaluated",
            stage_id=stage_result.stage_id,
            verdict=decision.verdict.value,
            blocking_count=decision.blocking_count,
            total_count=decision.total_count,
            summary=decision.summary,
        )
        return decision


def highest_severity(findings: Iterable[Finding]) -> Severity | None:
    ranked = sorted((item.severity for item in findings), key=lambda item: -item.weight)
    return ranked[0] if ranked else None


__all__ = ["GateDecision", "GateEvaluator", "evaluate", "highest_severity"]
