"""
Stage executor: run one stage with timeout, retry and cancellation.

Each attempt runs either the stage's argv command (subprocess in the run
workspace) or its registered action. Every attempt's stdout/stderr, the
declared outputs and the scanner report are written to the artifact store
before ``execute`` returns, so a failed stage still leaves its logs behind.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import structlog

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.constants import (
    ENV_INPUTS_DIR,
    ENV_RUN_ID,
    ENV_SOURCE_REF,
    ENV_STAGE_ID,
    ENV_TRIGGER,
    INPUTS_DIR,
)
from conduit_ci.domain.errors import (
    AuthError,
    StageContractError,
    StageExecutionError,
    TransientInfraError,
    is_retryable,
)
from conduit_ci.domain.models import (
    ArtifactRef,
    FailureReason,
    Finding,
    StageDefinition,
    StageResult,
    TriggerType,
    tail_text,
)
from conduit_ci.integrations.actions import ActionContext, ActionRegistry
from conduit_ci.integrations.reports import ReportFormatError, parse_report
from conduit_ci.observability.logging import correlation_scope
from conduit_ci.sandbox.process import ProcessRunner
from conduit_ci.utils.concurrency import CancellationToken, run_with_timeout, sleep_or_cancel
from conduit_ci.utils.fs import atomic_write, iter_files, safe_delete, safe_relative_path

DEFAULT_STAGE_TIMEOUT_SECONDS = 3600.0

OnRetry = Callable[[int, float, BaseException], Awaitable[None] | None]
OnAttempt = Callable[[int], Awaitable[None] | None]
SleepFn = Callable[[float, CancellationToken | None], Awaitable[bool]]
Clock = Callable[[], float]


class _StageCancelled(Exception):
    """Internal signal: the run token fired during an attempt."""


@dataclass(slots=True)
class _AttemptOutput:
    exit_code: int | None = None
    stdout: bytes = b""
    stderr: bytes = b""
    findings: tuple[Finding, ...] = ()
    artifacts: list[ArtifactRef] = field(default_factory=list)


def failure_reason_for(exc: BaseException) -> FailureReason:
    """Map an attempt error onto the recorded failure reason."""

    if isinstance(exc, StageExecutionError):
        return FailureReason.TIMEOUT if exc.timed_out else FailureReason.NON_ZERO_EXIT
    if isinstance(exc, AuthError):
        return FailureReason.AUTH
    if isinstance(exc, TransientInfraError):
        return FailureReason.TRANSIENT_INFRA
    if isinstance(exc, StageContractError):
        try:
            return FailureReason(exc.reason)
        except ValueError:
            return FailureReason.INTERNAL
    return FailureReason.INTERNAL


class StageExecutor:
    """Run stage attempts and persist their side effects."""

    def __init__(
        self,
        *,
        store: ArtifactStore,
        workspace_root: str | Path,
        actions: ActionRegistry | None = None,
        runner: ProcessRunner | None = None,
        default_timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        sleep: SleepFn = sleep_or_cancel,
        clock: Clock = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self._store = store
        self._runner = runner if runner is not None else ProcessRunner(workspace_root)
        self._workspace_root = self._runner.workspace_root
        self._actions = actions if actions is not None else ActionRegistry.with_defaults()
        self._default_timeout = float(default_timeout_seconds)
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    @property
    def actions(self) -> ActionRegistry:
        return self._actions

    async def execute(
        self,
        stage: StageDefinition,
        inputs: Iterable[ArtifactRef] = (),
        *,
        run_id: str,
        source_ref: str,
        trigger: TriggerType = TriggerType.MANUAL,
        timeout_seconds: float | None = None,
        deadline: float | None = None,
        cancel_token: CancellationToken | None = None,
        on_retry: OnRetry | None = None,
        on_attempt: OnAttempt | None = None,
    ) -> StageResult:
        """
        Execute ``stage`` until it passes, exhausts its retry budget, or is
        cancelled.

        ``timeout_seconds`` overrides the stage's own timeout; ``deadline`` is a
        ``clock()`` instant after which no attempt may run (the run-level
        budget). A stage with no timeout of its own gets whatever is left of
        that budget; the engine default applies only when there is no deadline.
        Stage-local failures are returned in the result, never raised.
        """

        token = cancel_token or CancellationToken()
        started = self._clock()
        stage_timeout = timeout_seconds or stage.timeout_seconds
        input_refs = tuple(inputs)
        artifacts: list[ArtifactRef] = []
        attempts = 0
        last = _AttemptOutput()

        def finish(
            *,
            failure: FailureReason | None = None,
            error: str | None = None,
            timed_out: bool = False,
            cancelled: bool = False,
        ) -> StageResult:
            result = StageResult(
                stage_id=stage.id,
                exit_code=last.exit_code,
                stdout=tail_text(last.stdout),
                stderr=tail_text(last.stderr),
                artifacts=tuple(artifacts),
                findings=last.findings,
                duration_seconds=self._clock() - started,
                attempts=attempts,
                failure_reason=failure,
                error=error,
                timed_out=timed_out,
                cancelled=cancelled,
            )
            self._logger.info(
                "stage_finished",
                stage_id=stage.id,
                attempts=attempts,
                failure_reason=failure.value if failure else None,
                cancelled=cancelled,
                duration_seconds=round(result.duration_seconds, 3),
            )
            return result

        with correlation_scope(run_id=run_id, stage_id=stage.id):
            env = await self._stage_environment(stage, input_refs, run_id, source_ref, trigger)

            while True:
                if token.is_cancelled:
                    return finish(cancelled=True, error=token.reason or "cancelled")

                budget = stage_timeout
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return finish(
                            failure=FailureReason.TIMEOUT,
                            error="pipeline time budget exhausted",
                            timed_out=True,
                        )
                    budget = remaining if budget is None else min(budget, remaining)
                if budget is None:
                    budget = self._default_timeout

                attempts += 1
                current = _AttemptOutput()
                with correlation_scope(attempt=attempts):
                    self._logger.info(
                        "stage_attempt_started",
                        stage_id=stage.id,
                        attempt=attempts,
                        kind=stage.kind,
                        timeout_seconds=round(budget, 3),
                    )
                    if on_attempt is not None:
                        await _maybe_await(on_attempt(attempts))
                    try:
                        await self._run_attempt(
                            stage,
                            current,
                            env=env,
                            inputs=input_refs,
                            run_id=run_id,
                            source_ref=source_ref,
                            trigger=trigger,
                            attempt=attempts,
                            timeout=budget,
                            token=token,
                        )
                    except _StageCancelled:
                        last = current
                        artifacts.extend(current.artifacts)
                        return finish(cancelled=True, error=token.reason or "cancelled")
                    except Exception as exc:
                        last = current
                        artifacts.extend(current.artifacts)
                        if token.is_cancelled:
                            return finish(cancelled=True, error=token.reason or "cancelled")

                        reason = failure_reason_for(exc)
                        if reason is FailureReason.INTERNAL and not isinstance(exc, StageContractError):
                            self._logger.exception("stage_attempt_crashed", stage_id=stage.id, attempt=attempts)
                        else:
                            self._logger.warning(
                                "stage_attempt_failed",
                                stage_id=stage.id,
                                attempt=attempts,
                                reason=reason.value,
                                error=str(exc),
                            )

                        if is_retryable(exc) and attempts < stage.retry.max_attempts:
                            delay = stage.retry.delay_seconds(attempts)
                            self._logger.info(
                                "stage_retry_scheduled",
                                stage_id=stage.id,
                                attempt=attempts,
                                next_attempt=attempts + 1,
                                delay_seconds=delay,
                            )
                            if on_retry is not None:
                                await _maybe_await(on_retry(attempts, delay, exc))
                            if not await self._sleep(delay, token):
                                return finish(cancelled=True, error=token.reason or "cancelled")
                            continue

                        timed_out = isinstance(exc, StageExecutionError) and exc.timed_out
                        return finish(failure=reason, error=str(exc), timed_out=timed_out)

                    last = current
                    artifacts.extend(current.artifacts)
                    return finish()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def _run_attempt(
        self,
        stage: StageDefinition,
        out: _AttemptOutput,
        *,
        env: dict[str, str],
        inputs: tuple[ArtifactRef, ...],
        run_id: str,
        source_ref: str,
        trigger: TriggerType,
        attempt: int,
        timeout: float,
        token: CancellationToken,
    ) -> None:
        report_bytes: bytes | None = None
        if stage.action is not None:
            report_bytes = await self._run_action(
                stage,
                out,
                env=env,
                inputs=inputs,
                run_id=run_id,
                source_ref=source_ref,
                trigger=trigger,
                attempt=attempt,
                timeout=timeout,
                token=token,
            )
        else:
            await self._run_command(stage, out, env=env, run_id=run_id, attempt=attempt, timeout=timeout, token=token)

        await self._capture_outputs(stage, out, run_id=run_id)
        await self._capture_report(stage, out, run_id=run_id, report_bytes=report_bytes)

    async def _run_command(
        self,
        stage: StageDefinition,
        out: _AttemptOutput,
        *,
        env: dict[str, str],
        run_id: str,
        attempt: int,
        timeout: float,
        token: CancellationToken,
    ) -> None:
        result = await self._runner.run(stage.command, env=env, timeout_seconds=timeout, cancel_token=token)
        out.exit_code = result.returncode
        out.stdout = result.stdout
        out.stderr = result.stderr
        await self._store_logs(stage, out, run_id=run_id, attempt=attempt)

        if result.cancelled:
            raise _StageCancelled(stage.id)
        if result.timed_out:
            raise StageExecutionError(f"timed out after {timeout:g}s", timed_out=True)
        if result.returncode != 0:
            raise StageExecutionError(f"exited with code {result.returncode}", exit_code=result.returncode)

    async def _run_action(
        self,
        stage: StageDefinition,
        out: _AttemptOutput,
        *,
        env: dict[str, str],
        inputs: tuple[ArtifactRef, ...],
        run_id: str,
        source_ref: str,
        trigger: TriggerType,
        attempt: int,
        timeout: float,
        token: CancellationToken,
    ) -> bytes | None:
        assert stage.action is not None
        action = self._actions.get(stage.action)
        context = ActionContext(
            run_id=run_id,
            stage_id=stage.id,
            source_ref=source_ref,
            trigger=trigger,
            params=stage.params,
            inputs=inputs,
            store=self._store,
            runner=self._runner,
            env=env,
            timeout_seconds=timeout,
            cancel_token=token,
        )
        try:
            outcome = await run_with_timeout(action(context), timeout, token)
        except TimeoutError as exc:
            out.stderr = f"action {stage.action} timed out after {timeout:g}s\n".encode()
            await self._store_logs(stage, out, run_id=run_id, attempt=attempt)
            raise StageExecutionError(f"timed out after {timeout:g}s", timed_out=True) from exc
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            raise _StageCancelled(stage.id) from None
        except Exception as exc:
            out.exit_code = 1
            out.stderr = f"action {stage.action} failed: {exc}\n".encode()
            await self._store_logs(stage, out, run_id=run_id, attempt=attempt)
            raise

        out.exit_code = 0
        out.stdout = outcome.stdout.encode("utf-8")
        out.findings = tuple(outcome.findings)
        await self._store_logs(stage, out, run_id=run_id, attempt=attempt)
        for name in sorted(outcome.artifacts):
            safe_relative_path(name)
            out.artifacts.append(
                await self._store.aput(run_id, stage.id, f"outputs/{name}", outcome.artifacts[name])
            )
        return outcome.report

    async def _store_logs(self, stage: StageDefinition, out: _AttemptOutput, *, run_id: str, attempt: int) -> None:
        out.artifacts.append(await self._store.aput(run_id, stage.id, f"logs/attempt-{attempt}.stdout", out.stdout))
        out.artifacts.append(await self._store.aput(run_id, stage.id, f"logs/attempt-{attempt}.stderr", out.stderr))

    async def _capture_outputs(self, stage: StageDefinition, out: _AttemptOutput, *, run_id: str) -> None:
        for declared in stage.outputs:
            source = self._workspace_root / declared
            if source.is_dir():
                for file_path in iter_files(source):
                    relative = PurePosixPath(declared) / file_path.relative_to(source).as_posix()
                    data = await asyncio.to_thread(file_path.read_bytes)
                    out.artifacts.append(await self._store.aput(run_id, stage.id, f"outputs/{relative}", data))
            elif source.is_file():
                data = await asyncio.to_thread(source.read_bytes)
                out.artifacts.append(await self._store.aput(run_id, stage.id, f"outputs/{declared}", data))
            else:
                raise StageContractError(
                    f"declared output {declared!r} was not produced",
                    reason=FailureReason.MISSING_OUTPUT.value,
                )

    async def _capture_report(
        self,
        stage: StageDefinition,
        out: _AttemptOutput,
        *,
        run_id: str,
        report_bytes: bytes | None,
    ) -> None:
        if report_bytes is None and stage.report is None:
            return
        report_name = PurePosixPath(stage.report).name if stage.report else "report.json"
        if report_bytes is None:
            assert stage.report is not None
            report_path = self._workspace_root / stage.report
            if not report_path.is_file():
                raise StageContractError(
                    f"declared report {stage.report!r} was not produced",
                    reason=FailureReason.MISSING_OUTPUT.value,
                )
            report_bytes = await asyncio.to_thread(report_path.read_bytes)

        out.artifacts.append(await self._store.aput(run_id, stage.id, f"report/{report_name}", report_bytes))
        try:
            parsed = parse_report(report_bytes, source=report_name)
        except ReportFormatError as exc:
            raise StageContractError(str(exc), reason=FailureReason.INVALID_REPORT.value) from exc
        out.findings = out.findings + parsed

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    async def _stage_environment(
        self,
        stage: StageDefinition,
        inputs: tuple[ArtifactRef, ...],
        run_id: str,
        source_ref: str,
        trigger: TriggerType,
    ) -> dict[str, str]:
        inputs_dir = await self._materialize_inputs(stage.id, inputs)
        env = dict(stage.env)
        env.update(
            {
                ENV_RUN_ID: run_id,
                ENV_STAGE_ID: stage.id,
                ENV_SOURCE_REF: source_ref,
                ENV_TRIGGER: trigger.value,
                ENV_INPUTS_DIR: str(inputs_dir),
            }
        )
        return env

    async def _materialize_inputs(self, stage_id: str, inputs: tuple[ArtifactRef, ...]) -> Path:
        """Copy upstream artifacts to ``.conduit/inputs/<stage>/<upstream>/<name>``."""

        target = self._workspace_root / INPUTS_DIR / stage_id
        if target.exists():
            await asyncio.to_thread(safe_delete, target, self._workspace_root)
        target.mkdir(parents=True, exist_ok=True)
        for ref in inputs:
            data = await self._store.aget(ref)
            destination = target / ref.stage_id / safe_relative_path(ref.name)
            await asyncio.to_thread(atomic_write, destination, data, make_parents=True)
        return target


async def _maybe_await(value: object) -> None:
    if inspect.isawaitable(value):
        await value


__all__ = [
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "StageExecutor",
    "failure_reason_for",
]
