"""Unit tests for stage execution: retries, timeouts, outputs, reports."""

from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.domain import ids
from conduit_ci.domain.models import FailureReason, RetryPolicy, Severity, StageDefinition
from conduit_ci.integrations.actions import ActionRegistry
from conduit_ci.sandbox.executor import StageExecutor
from conduit_ci.sandbox.process import ProcessRunner
from conduit_ci.utils.concurrency import CancellationToken

_RUN_ID = ids.generate_run_id()


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float, token: CancellationToken | None = None) -> bool:
        self.delays.append(delay)
        return True


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "ws"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


def _executor(store: ArtifactStore, workspace: Path, sleep: RecordingSleep | None = None) -> StageExecutor:
    return StageExecutor(
        store=store,
        workspace_root=workspace,
        actions=ActionRegistry(),
        runner=ProcessRunner(workspace, termination_grace_seconds=0.5),
        sleep=sleep or RecordingSleep(),
    )


def _sh(stage_id: str, script: str, **kwargs: object) -> StageDefinition:
    return StageDefinition(id=stage_id, command=("sh", "-c", script), **kwargs)  # type: ignore[arg-type]


async def test_passing_stage_stores_logs_and_outputs(store: ArtifactStore, workspace: Path) -> None:
    stage = _sh("build", 'mkdir -p target && echo "$CONDUIT_STAGE_ID@$CONDUIT_SOURCE_REF" > target/app.jar', outputs=("target",))

    result = await _executor(store, workspace).execute(stage, run_id=_RUN_ID, source_ref="abc123")

    assert result.succeeded
    assert result.attempts == 1
    names = [ref.name for ref in result.artifacts]
    assert names == ["logs/attempt-1.stdout", "logs/attempt-1.stderr", "outputs/target/app.jar"]
    jar = store.lookup(_RUN_ID, "build", "outputs/target/app.jar")
    assert store.get(jar) == b"build@abc123\n"


async def test_exhausts_exactly_max_attempts_with_backoff(store: ArtifactStore, workspace: Path) -> None:
    sleep = RecordingSleep()
    retries: list[int] = []
    stage = _sh("flaky", "echo attempt; exit 3", retry=RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=150))

    result = await _executor(store, workspace, sleep).execute(
        stage,
        run_id=_RUN_ID,
        source_ref="main",
        on_retry=lambda attempt, delay, exc: retries.append(attempt),
    )

    assert result.attempts == 3
    assert result.failure_reason is FailureReason.NON_ZERO_EXIT
    assert result.exit_code == 3
    assert sleep.delays == [0.1, 0.15]
    assert retries == [1, 2]
    assert len(store.list_for_run(_RUN_ID, stage_id="flaky")) == 6


async def test_timeout_without_retry_fails_after_one_attempt(store: ArtifactStore, workspace: Path) -> None:
    stage = _sh("hang", "sleep 30", timeout_seconds=0.3)

    result = await _executor(store, workspace).execute(stage, run_id=_RUN_ID, source_ref="main")

    assert result.attempts == 1
    assert result.failure_reason is FailureReason.TIMEOUT
    assert result.timed_out


async def test_exhausted_run_deadline_prevents_any_attempt(store: ArtifactStore, workspace: Path) -> None:
    executor = StageExecutor(store=store, workspace_root=workspace, actions=ActionRegistry(), clock=lambda: 100.0)

    result = await executor.execute(_sh("late", "true"), run_id=_RUN_ID, source_ref="main", deadline=99.0)

    assert result.attempts == 0
    assert result.failure_reason is FailureReason.TIMEOUT
    assert result.error == "pipeline time budget exhausted"


async def test_stage_without_timeout_uses_remaining_run_budget(store: ArtifactStore, workspace: Path) -> None:
    executor = StageExecutor(
        store=store,
        workspace_root=workspace,
        actions=ActionRegistry(),
        runner=ProcessRunner(workspace, termination_grace_seconds=0.5),
        default_timeout_seconds=0.3,
    )

    result = await executor.execute(
        _sh("slow", "sleep 1"),
        run_id=_RUN_ID,
        source_ref="main",
        deadline=time.monotonic() + 30.0,
    )

    assert result.succeeded
    assert not result.timed_out


async def test_engine_default_timeout_applies_without_a_deadline(store: ArtifactStore, workspace: Path) -> None:
    executor = StageExecutor(
        store=store,
        workspace_root=workspace,
        actions=ActionRegistry(),
        runner=ProcessRunner(workspace, termination_grace_seconds=0.5),
        default_timeout_seconds=0.3,
    )

    result = await executor.execute(_sh("slow", "sleep 30"), run_id=_RUN_ID, source_ref="main")

    assert result.failure_reason is FailureReason.TIMEOUT
    assert result.timed_out


async def test_missing_output_is_not_retried(store: ArtifactStore, workspace: Path) -> None:
    sleep = RecordingSleep()
    stage = _sh("pkg", "true", outputs=("dist/app.tar",), retry=RetryPolicy(max_attempts=3))

    result = await _executor(store, workspace, sleep).execute(stage, run_id=_RUN_ID, source_ref="main")

    assert result.failure_reason is FailureReason.MISSING_OUTPUT
    assert result.attempts == 1
    assert sleep.delays == []


async def test_report_findings_are_parsed_and_stored(store: ArtifactStore, workspace: Path) -> None:
    report = json.dumps([{"severity": "HIGH", "id": "CVE-2026-1", "title": "rce"}, {"severity": "low", "id": "CVE-2026-2"}])
    stage = _sh("scan", f"echo '{report}' > scan.json", report="scan.json")

    result = await _executor(store, workspace).execute(stage, run_id=_RUN_ID, source_ref="main")

    assert result.succeeded
    assert [(item.severity, item.id) for item in result.findings] == [
        (Severity.HIGH, "CVE-2026-1"),
        (Severity.LOW, "CVE-2026-2"),
    ]
    assert "report/scan.json" in [ref.name for ref in result.artifacts]


async def test_invalid_report_fails_the_stage(store: ArtifactStore, workspace: Path) -> None:
    stage = _sh("scan", "echo 'not json' > scan.json", report="scan.json")

    result = await _executor(store, workspace).execute(stage, run_id=_RUN_ID, source_ref="main")

    assert result.failure_reason is FailureReason.INVALID_REPORT


async def test_cancelled_token_skips_execution(store: ArtifactStore, workspace: Path) -> None:
    token = CancellationToken()
    token.cancel("superseded")

    result = await _executor(store, workspace).execute(
        _sh("build", "true"),
        run_id=_RUN_ID,
        source_ref="main",
        cancel_token=token,
    )

    assert result.cancelled
    assert result.attempts == 0
    assert result.error == "superseded"


async def test_unknown_action_is_an_internal_failure(store: ArtifactStore, workspace: Path) -> None:
    stage = StageDefinition(id="deploy", action="cluster.apply")

    result = await _executor(store, workspace).execute(stage, run_id=_RUN_ID, source_ref="main")

    assert result.failure_reason is FailureReason.INTERNAL
    assert "unknown action" in (result.error or "")
