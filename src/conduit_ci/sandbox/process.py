"""
Async subprocess runner with tree termination.

Stage commands run in their own session. On timeout or cancellation the runner
terminates the whole process tree (the direct child plus every descendant
``psutil`` can see), waits ``termination_grace_seconds`` and then kills the
survivors, so a ``docker build`` or ``mvn`` fork never outlives its stage.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

import psutil
import structlog

from conduit_ci.utils.concurrency import CancellationToken, run_with_timeout
from conduit_ci.utils.fs import is_within

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

DEFAULT_TERMINATION_GRACE_SECONDS: Final[float] = 5.0
_READ_CHUNK: Final[int] = 64 * 1024
_EXIT_NOT_FOUND: Final[int] = 127
_EXIT_NOT_EXECUTABLE: Final[int] = 126


class SandboxError(RuntimeError):
    """Base error for process runner failures."""


class SandboxPolicyError(SandboxError):
    """Raised when a command would run outside the workspace root."""


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Raw outcome of one subprocess invocation."""

    command: tuple[str, ...]
    cwd: Path
    returncode: int | None
    stdout: bytes
    stderr: bytes
    timed_out: bool
    cancelled: bool
    duration_ms: float

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and not self.cancelled and self.returncode == 0


class ProcessRunner:
    """Run argv commands under ``workspace_root`` with bounded time."""

    def __init__(
        self,
        workspace_root: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
        inherit_host_env: bool = True,
        termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS,
        logger: object | None = None,
    ) -> None:
        root = Path(workspace_root).resolve(strict=True)
        if not root.is_dir():
            raise NotADirectoryError(f"{root!s} is not a directory")
        if termination_grace_seconds < 0:
            raise ValueError("termination_grace_seconds must be >= 0")

        self._workspace_root = root
        self._env_overrides = dict(env_overrides or {})
        self._inherit_host_env = bool(inherit_host_env)
        self._grace = float(termination_grace_seconds)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    @property
    def termination_grace_seconds(self) -> float:
        return self._grace

    def build_environment(self, env: Mapping[str, str] | None = None) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {}
            host_path = os.environ.get("PATH")
            if host_path:
                merged["PATH"] = host_path
        merged.update(self._env_overrides)
        if env is not None:
            merged.update(env)
        return merged

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float,
        cancel_token: CancellationToken | None = None,
    ) -> ProcessResult:
        """
        Run ``command`` to completion, timeout or cancellation.

        A missing executable is reported like a shell would (exit 127, or 126
        when not executable) instead of raising. When the caller's task is
        cancelled directly the process tree is stopped and the cancellation
        propagates.
        """

        argv = _normalize_command(command)
        resolved_cwd = self._resolve_cwd(cwd if cwd is not None else self._workspace_root)
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        token = cancel_token or CancellationToken()

        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(resolved_cwd),
                env=self.build_environment(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            return _spawn_failure(argv, resolved_cwd, _EXIT_NOT_FOUND, exc, started)
        except PermissionError as exc:
            return _spawn_failure(argv, resolved_cwd, _EXIT_NOT_EXECUTABLE, exc, started)

        stdout = bytearray()
        stderr = bytearray()
        assert process.stdout is not None
        assert process.stderr is not None
        readers = (
            asyncio.create_task(_drain(process.stdout, stdout)),
            asyncio.create_task(_drain(process.stderr, stderr)),
        )

        timed_out = False
        cancelled = False
        try:
            await run_with_timeout(_wait_all(process, readers), timeout_seconds, token)
        except TimeoutError:
            timed_out = True
            await self._stop(process, readers, reason="timeout")
        except asyncio.CancelledError:
            await self._stop(process, readers, reason="cancelled")
            if not token.is_cancelled:
                raise
            cancelled = True

        duration_ms = (time.perf_counter() - started) * 1000.0
        return ProcessResult(
            command=argv,
            cwd=resolved_cwd,
            returncode=None if (timed_out or cancelled) else process.returncode,
            stdout=bytes(stdout),
            stderr=bytes(stderr),
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=duration_ms,
        )

    async def _stop(
        self,
        process: asyncio.subprocess.Process,
        readers: tuple[asyncio.Task[None], ...],
        *,
        reason: str,
    ) -> None:
        if process.returncode is None:
            # Snapshot descendants before the root exits and they get reparented.
            descendants = await asyncio.to_thread(_descendants, process.pid)
            self._logger.info(
                "process_terminate",
                pid=process.pid,
                descendants=len(descendants),
                reason=reason,
            )
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            await asyncio.to_thread(_terminate_tree, descendants, self._grace)
            try:
                await asyncio.wait_for(process.wait(), timeout=self._grace if self._grace > 0 else None)
            except TimeoutError:
                self._logger.warning("process_kill", pid=process.pid, reason=reason)
                _kill_group(process.pid)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        # Readers end at EOF once every holder of the pipes is gone.
        _, pending = await asyncio.wait(readers, timeout=max(self._grace, 1.0))
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _resolve_cwd(self, cwd: Path | str) -> Path:
        path = Path(cwd)
        if not path.is_absolute():
            path = self._workspace_root / path
        path = path.resolve(strict=True)
        if not path.is_dir():
            raise NotADirectoryError(f"{path!s} is not a directory")
        if not is_within(path, self._workspace_root):
            raise SandboxPolicyError(
                f"working directory {path!s} is outside workspace {self._workspace_root!s}"
            )
        return path


async def _drain(stream: asyncio.StreamReader, sink: bytearray) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        sink.extend(chunk)


async def _wait_all(
    process: asyncio.subprocess.Process,
    readers: tuple[asyncio.Task[None], ...],
) -> int:
    # asyncio.wait (not gather) so cancelling this coroutine leaves the
    # readers running for _stop to drain.
    await asyncio.wait(readers)
    return await process.wait()


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _terminate_tree(procs: list[psutil.Process], grace: float) -> None:
    for proc in procs:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            proc.terminate()
    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            proc.kill()
    if alive:
        psutil.wait_procs(alive, timeout=1.0)


def _kill_group(pid: int) -> None:
    # The child leads its own session, so its pgid is its pid.
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, signal.SIGKILL)


def _spawn_failure(
    argv: tuple[str, ...],
    cwd: Path,
    returncode: int,
    exc: OSError,
    started: float,
) -> ProcessResult:
    return ProcessResult(
        command=argv,
        cwd=cwd,
        returncode=returncode,
        stdout=b"",
        stderr=f"{argv[0]}: {exc.strerror or exc}\n".encode(),
        timed_out=False,
        cancelled=False,
        duration_ms=(time.perf_counter() - started) * 1000.0,
    )


def _normalize_command(command: Sequence[str]) -> tuple[str, ...]:
    if isinstance(command, str) or not isinstance(command, (list, tuple)):
        raise ValueError("command must be a sequence of strings")
    normalized = tuple(item for item in command if isinstance(item, str) and item.strip())
    if not normalized or len(normalized) != len(command):
        raise ValueError("command must contain only non-empty strings")
    return normalized


__all__ = [
    "DEFAULT_TERMINATION_GRACE_SECONDS",
    "ProcessResult",
    "ProcessRunner",
    "SandboxError",
    "SandboxPolicyError",
]
