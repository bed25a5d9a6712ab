"""Unit tests for run coordination: gates, retries, cancellation, verdicts."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.control_plane.coordinator import RunCoordinator, decide_verdict
from conduit_ci.domain import ids
from conduit_ci.domain.errors import TransientInfraError, UnknownRunError
from conduit_ci.domain.models import (
    FailureReason,
    Finding,
    GatePolicy,
    PipelineDefinition,
    PipelineRun,
    RetryPolicy,
    RunState,
    Severity,
    SkipReason,
    StageDefinition,
    StageState,
    TriggerEvent,
)
from conduit_ci.integrations.actions import ActionContext, ActionOutcome, ActionRegistry
from conduit_ci.persistence.run_store import RunStore
from conduit_ci.sandbox.executor import StageExecutor
from conduit_ci.utils.concurrency import CancellationToken

_GATE = GatePolicy(block_on_severities=frozenset({Severity.CRITICAL, Severity.HIGH}), max_count=0)
_EVENT = TriggerEvent(source_ref="abc123")


async def _no_sleep(delay: float, token: CancellationToken | None = None) -> bool:
    return not (token is not None and token.is_cancelled)


def _ok(ctx: ActionContext) -> ActionOutcome:
    return ActionOutcome(stdout=f"{ctx.stage_id} ok\n")


class Harness:
    def __init__(self, root: Path) -> None:
        self.actions = ActionRegistry()
        self.calls: list[str] = []
        self.run_store = RunStore(root / "state.db")
        self.artifacts = ArtifactStore(root / "artifacts", ttl_hours=1, max_runs=5)
        workspace = root / "workspace"
        workspace.mkdir()
        self.executor = StageExecutor(
            store=self.artifacts,
            workspace_root=workspace,
            actions=self.actions,
            sleep=_no_sleep,
        )
        self.coordinator = RunCoordinator(
            executor=self.executor,
            run_store=self.run_store,
            artifact_store=self.artifacts,
            max_parallelism=4,
            cancel_poll_seconds=0.05,
        )

    def action(self, name: str, behaviour: Callable[[ActionContext], ActionOutcome] = _ok) -> None:
        async def run(ctx: ActionContext) -> ActionOutcome:
            self.calls.append(ctx.stage_id)
            return behaviour(ctx)

        self.actions.register(name, run)


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


def _stage(stage_id: str, action: str, *deps: str, **kwargs: object) -> StageDefinition:
    return StageDefinition(id=stage_id, action=action, depends_on=deps, **kwargs)  # type: ignore[arg-type]


def _scan_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        name="demo-app",
        stages=(
            _stage("build", "ok"),
            _stage("scan", "scan", "build", gate_policy=_GATE),
            _stage("publish", "ok", "scan"),
        ),
    )


def _findings(*severities: Severity) -> Callable[[ActionContext], ActionOutcome]:
    def behaviour(ctx: ActionContext) -> ActionOutcome:
        return ActionOutcome(
            findings=tuple(Finding(severity=item, id=f"CVE-{index}") for index, item in enumerate(severities)),
        )

    return behaviour


async def test_blocking_finding_fails_run_and_skips_publish(harness: Harness) -> None:
    harness.action("ok")
    harness.action("scan", _findings(Severity.HIGH, Severity.LOW))

    run = await harness.coordinator.run(_scan_pipeline(), _EVENT)

    assert run.state is RunState.FAILED
    assert run.stage("scan").state is StageState.FAILED_FATAL
    assert run.stage("scan").failure_reason is FailureReason.GATE_BLOCKED
    assert run.stage("publish").state is StageState.SKIPPED
    assert run.stage("publish").skip_reason is SkipReason.BLOCKED
    assert "publish" not in harness.calls
    assert run.verdict is not None
    assert run.verdict.failure is not None
    assert run.verdict.failure.stage_id == "scan"
    assert run.verdict.failure.reason is FailureReason.GATE_BLOCKED
    assert "gate blocked stage 'scan'" in (run.verdict.failure.message or "")


async def test_advisory_finding_lets_publish_run(harness: Harness) -> None:
    harness.action("ok")
    harness.action("scan", _findings(Severity.LOW))

    run = await harness.coordinator.run(_scan_pipeline(), _EVENT)

    assert run.state is RunState.SUCCEEDED
    assert run.stage("scan").state is StageState.FAILED_ADVISORY
    assert run.stage("publish").state is StageState.PASSED
    assert run.verdict is not None
    assert run.verdict.advisories == ("scan: 1 finding(s): low=1",)


async def test_optional_stage_failure_is_partial_success(harness: Harness) -> None:
    def boom(ctx: ActionContext) -> ActionOutcome:
        raise RuntimeError("linter crashed")

    harness.action("ok")
    harness.action("lint", boom)
    definition = PipelineDefinition(
        name="p",
        stages=(_stage("build", "ok"), _stage("lint", "lint", "build", required=False), _stage("ship", "ok", "build")),
    )

    run = await harness.coordinator.run(definition, _EVENT)

    assert run.state is RunState.PARTIALLY_SUCCEEDED_WITH_ADVISORIES
    assert run.stage("lint").failure_reason is FailureReason.INTERNAL
    assert run.stage("ship").state is StageState.PASSED
    assert run.verdict is not None
    assert run.verdict.failure is None
    assert [item.stage_id for item in run.verdict.secondary_causes] == ["lint"]


async def test_transient_failure_is_retried_until_success(harness: Harness) -> None:
    attempts: list[int] = []

    def flaky(ctx: ActionContext) -> ActionOutcome:
        attempts.append(len(attempts) + 1)
        if len(attempts) < 3:
            raise TransientInfraError("registry 503")
        return ActionOutcome(stdout="pushed\n")

    harness.action("push", flaky)
    definition = PipelineDefinition(
        name="p",
        stages=(_stage("push", "push", retry=RetryPolicy(max_attempts=3, base_delay_ms=1)),),
    )

    run = await harness.coordinator.run(definition, _EVENT)

    assert run.state is RunState.SUCCEEDED
    assert run.stage("push").attempts == 3
    states = [item.to_state for item in run.transitions if item.subject == "push"]
    assert states.count("retrying") == 2
    assert states[-1] == "passed"


async def test_dependents_receive_upstream_outputs(harness: Harness) -> None:
    seen: list[bytes] = []

    async def package(ctx: ActionContext) -> ActionOutcome:
        return ActionOutcome(artifacts={"app.jar": b"jar-bytes"})

    async def deploy(ctx: ActionContext) -> ActionOutcome:
        seen.append(await ctx.read_input("app.jar"))
        return ActionOutcome()

    harness.actions.register("package", package)
    harness.actions.register("deploy", deploy)
    definition = PipelineDefinition(name="p", stages=(_stage("package", "package"), _stage("deploy", "deploy", "package")))

    run = await harness.coordinator.run(definition, _EVENT)

    assert run.state is RunState.SUCCEEDED
    assert seen == [b"jar-bytes"]


async def _blocking_pipeline(harness: Harness) -> tuple[PipelineDefinition, asyncio.Event]:
    started = asyncio.Event()

    async def wait_forever(ctx: ActionContext) -> ActionOutcome:
        started.set()
        assert ctx.cancel_token is not None
        await ctx.cancel_token.wait()
        await asyncio.sleep(3600)
        return ActionOutcome()

    harness.actions.register("wait", wait_forever)
    harness.action("ok")
    definition = PipelineDefinition(name="p", stages=(_stage("deploy", "wait"), _stage("notify", "ok", "deploy")))
    return definition, started


async def test_cancel_stops_running_stage_and_skips_the_rest(harness: Harness) -> None:
    definition, started = await _blocking_pipeline(harness)
    run_id = harness.coordinator.trigger(definition, _EVENT)
    driving = asyncio.create_task(harness.coordinator.drive(run_id))

    await asyncio.wait_for(started.wait(), timeout=5)
    assert harness.coordinator.status(run_id).state is RunState.RUNNING
    assert harness.coordinator.cancel(run_id, reason="user abort")
    run = await asyncio.wait_for(driving, timeout=5)

    assert run.state is RunState.CANCELLED
    assert run.stage("deploy").state is StageState.CANCELLED
    assert run.stage("notify").skip_reason is SkipReason.CANCELLED
    assert harness.run_store.load(run_id).state is RunState.CANCELLED
    assert not harness.coordinator.cancel(run_id)
    assert run_id not in harness.artifacts.pinned_runs()


async def test_cancel_flag_from_another_process_is_honoured(harness: Harness) -> None:
    definition, started = await _blocking_pipeline(harness)
    run_id = harness.coordinator.trigger(definition, _EVENT)
    driving = asyncio.create_task(harness.coordinator.drive(run_id))

    await asyncio.wait_for(started.wait(), timeout=5)
    assert RunStore(harness.run_store.path).request_cancel(run_id)
    run = await asyncio.wait_for(driving, timeout=5)

    assert run.state is RunState.CANCELLED
    assert run.cancel_requested


async def test_cancel_in_progress_supersedes_active_runs(harness: Harness) -> None:
    harness.action("ok")
    definition = PipelineDefinition(name="p", stages=(_stage("build", "ok"),), cancel_in_progress=True)

    first = harness.coordinator.trigger(definition, _EVENT)
    second = harness.coordinator.trigger(definition, TriggerEvent(source_ref="def456"))

    first_run = await harness.coordinator.drive(first)
    second_run = await harness.coordinator.drive(second)

    assert first_run.state is RunState.CANCELLED
    assert first_run.stage("build").skip_reason is SkipReason.CANCELLED
    assert second_run.state is RunState.SUCCEEDED
    assert harness.calls == ["build"]


async def test_unknown_run_and_double_drive(harness: Harness) -> None:
    harness.action("ok")
    definition = PipelineDefinition(name="p", stages=(_stage("build", "ok"),))

    with pytest.raises(UnknownRunError):
        harness.coordinator.status(ids.generate_run_id())
    with pytest.raises(UnknownRunError):
        await harness.coordinator.drive(ids.generate_run_id())

    run = await harness.coordinator.run(definition, _EVENT)
    with pytest.raises(RuntimeError, match="already being driven or finished"):
        await harness.coordinator.drive(run.run_id)


async def test_finished_runs_are_served_from_the_run_store(harness: Harness) -> None:
    harness.action("ok")
    definition = PipelineDefinition(name="p", stages=(_stage("build", "ok"),))

    finished = [await harness.coordinator.run(definition, TriggerEvent(source_ref=f"sha-{n}")) for n in range(3)]

    assert harness.coordinator._runs == {}
    for run in finished:
        report = harness.coordinator.status(run.run_id)
        assert report.state is RunState.SUCCEEDED
        assert not harness.coordinator.cancel(run.run_id)


async def test_stage_without_timeout_gets_the_pipeline_budget(harness: Harness) -> None:
    executor = StageExecutor(
        store=harness.artifacts,
        workspace_root=harness.executor.workspace_root,
        actions=harness.actions,
        default_timeout_seconds=0.5,
        sleep=_no_sleep,
    )
    coordinator = RunCoordinator(
        executor=executor,
        run_store=harness.run_store,
        artifact_store=harness.artifacts,
        cancel_poll_seconds=0.05,
    )
    definition = PipelineDefinition(
        name="slow-build",
        stages=(StageDefinition(id="compile", command=("sh", "-c", "sleep 1.5")),),
        timeout_seconds=30,
    )

    run = await coordinator.run(definition, _EVENT)

    assert run.state is RunState.SUCCEEDED
    assert run.stage("compile").state is StageState.PASSED
    assert run.stage("compile").failure_reason is None


def test_verdict_names_first_required_fatal_stage_as_primary() -> None:
    definition = PipelineDefinition(
        name="p",
        stages=(
            StageDefinition(id="a", command=("true",)),
            StageDefinition(id="b", command=("true",)),
            StageDefinition(id="c", command=("true",), depends_on=("b",)),
        ),
    )
    run = PipelineRun.new(ids.generate_run_id(), definition, _EVENT)
    run.set_stage_state("b", StageState.FAILED_FATAL).failure_reason = FailureReason.TIMEOUT
    run.set_stage_state("a", StageState.FAILED_FATAL).failure_reason = FailureReason.NON_ZERO_EXIT
    run.set_stage_state("c", StageState.SKIPPED).skip_reason = SkipReason.BLOCKED

    verdict = decide_verdict(run, definition)

    assert verdict.state is RunState.FAILED
    assert verdict.failure is not None
    assert verdict.failure.stage_id == "b"
    assert verdict.failure.reason is FailureReason.TIMEOUT
    assert [(item.stage_id, item.reason.value) for item in verdict.secondary_causes] == [
        ("a", "non_zero_exit"),
        ("c", "blocked"),
    ]
