"""Command-backed adapters for Maven, Docker, kubectl and Trivy.

Each adapter shells out through ``ProcessRunner`` and maps the tool's failure
output onto the error taxonomy: credential problems become ``AuthError``,
connectivity problems ``NetworkError``, anything else ``StageExecutionError``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Final

from conduit_ci.domain.errors import AuthError, NetworkError, StageContractError, StageExecutionError
from conduit_ci.domain.models import FailureReason, Finding, tail_text
from conduit_ci.integrations.clients import ImageRef, RolloutStatus
from conduit_ci.integrations.reports import parse_report
from conduit_ci.sandbox.process import ProcessResult, ProcessRunner
from conduit_ci.utils.concurrency import CancellationToken
from conduit_ci.utils.fs import atomic_write, safe_relative_path

DEFAULT_TOOL_TIMEOUT_SECONDS: Final[float] = 1800.0

_AUTH_KEYWORDS: Final[tuple[str, ...]] = (
    "unauthorized",
    "authentication required",
    "no basic auth credentials",
    "invalid username/password",
    "denied: requested access",
    "forbidden",
    "must be logged in",
)

_NETWORK_KEYWORDS: Final[tuple[str, ...]] = (
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "no such host",
    "temporary failure in name resolution",
    "network is unreachable",
    "service unavailable",
    "toomanyrequests",
    "unable to connect to the server",
)

_PUSH_DIGEST_PATTERN: Final[re.Pattern[str]] = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")
_BUILD_MANIFEST_KEYS: Final[frozenset[str]] = frozenset(
    {"repository", "tag", "registry", "dockerfile", "artifact_path"}
)


class CommandTool:
    """Base for adapters that run one external binary."""

    binary: str = ""

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        binary: str | None = None,
        cwd: str = ".",
        env: Mapping[str, str] | None = None,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._runner = runner
        self._binary = binary or self.binary
        if not self._binary:
            raise ValueError("binary is required")
        self._cwd = cwd
        self._env = dict(env or {})
        self._timeout = float(timeout_seconds)
        self._cancel_token = cancel_token
        self.last_result: ProcessResult | None = None

    @property
    def workdir(self) -> Path:
        return self._runner.workspace_root / self._cwd

    async def invoke(self, args: Sequence[str]) -> ProcessResult:
        result = await self._runner.run(
            [self._binary, *args],
            cwd=self._cwd,
            env=self._env,
            timeout_seconds=self._timeout,
            cancel_token=self._cancel_token,
        )
        self.last_result = result
        label = f"{self._binary} {args[0] if args else ''}".strip()
        if result.cancelled:
            raise StageExecutionError(f"{label} cancelled")
        if result.timed_out:
            raise StageExecutionError(f"{label} timed out after {self._timeout:g}s", timed_out=True)
        if result.returncode != 0:
            _raise_for_failure(label, result)
        return result


def classify_failure(stderr: str) -> type[Exception]:
    lowered = stderr.lower()
    if any(keyword in lowered for keyword in _AUTH_KEYWORDS):
        return AuthError
    if any(keyword in lowered for keyword in _NETWORK_KEYWORDS):
        return NetworkError
    return StageExecutionError


def _raise_for_failure(label: str, result: ProcessResult) -> None:
    stderr = tail_text(result.stderr, limit=4096)
    detail = stderr.strip().splitlines()[-1][:200] if stderr.strip() else "(no stderr)"
    message = f"{label} exited with {result.returncode}: {detail}"
    error_type = classify_failure(stderr)
    if error_type is StageExecutionError:
        raise StageExecutionError(message, exit_code=result.returncode)
    raise error_type(message)


class MavenBuildTool(CommandTool):
    """``mvn package`` and return the built jar."""

    binary = "mvn"

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        goals: Sequence[str] = ("-B", "package", "-DskipTests"),
        artifact_glob: str = "target/*.jar",
        **kwargs: Any,
    ) -> None:
        super().__init__(runner, **kwargs)
        self._goals = tuple(goals)
        self._artifact_glob = artifact_glob

    async def build(self, source_ref: str) -> bytes:
        # The checkout stage has already placed source_ref in the workspace.
        await self.invoke(self._goals)
        candidates = sorted(
            path
            for path in self.workdir.glob(self._artifact_glob)
            if path.is_file() and not path.name.endswith(("-sources.jar", "-javadoc.jar"))
        )
        if not candidates:
            raise StageContractError(
                f"maven build produced no artifact matching {self._artifact_glob!r}",
                reason=FailureReason.MISSING_OUTPUT.value,
            )
        return candidates[0].read_bytes()


class DockerImageBuilder(CommandTool):
    """Stage the build artifact into the docker context and ``docker build``."""

    binary = "docker"

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        repository: str,
        tag: str = "latest",
        registry: str | None = None,
        dockerfile: str = "Dockerfile",
        artifact_path: str = "target/app.jar",
        **kwargs: Any,
    ) -> None:
        super().__init__(runner, **kwargs)
        self._image = ImageRef(repository=repository, tag=tag, registry=registry)
        self._dockerfile = dockerfile
        self._artifact_path = artifact_path

    async def build_image(self, artifact_bytes: bytes, manifest: Mapping[str, str]) -> ImageRef:
        image = ImageRef(
            repository=manifest.get("repository", self._image.repository),
            tag=manifest.get("tag", self._image.tag),
            registry=manifest.get("registry", self._image.registry),
        )
        artifact_path = safe_relative_path(manifest.get("artifact_path", self._artifact_path))
        atomic_write(self.workdir / artifact_path, artifact_bytes, make_parents=True)

        args = ["build", "-t", image.name, "-f", manifest.get("dockerfile", self._dockerfile)]
        for key in sorted(manifest):
            if key not in _BUILD_MANIFEST_KEYS:
                args.extend(["--build-arg", f"{key}={manifest[key]}"])
        args.append(".")
        await self.invoke(args)
        return image


class DockerRegistryClient(CommandTool):
    binary = "docker"

    async def push(self, image_ref: ImageRef) -> ImageRef:
        result = await self.invoke(["push", image_ref.name])
        match = _PUSH_DIGEST_PATTERN.search(tail_text(result.stdout))
        if match is None:
            return image_ref
        return ImageRef(
            repository=image_ref.repository,
            tag=image_ref.tag,
            registry=image_ref.registry,
            digest=match.group(1),
        )


class KubectlClusterClient(CommandTool):
    """``kubectl apply`` each manifest, then wait on rollout targets."""

    binary = "kubectl"

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        namespace: str | None = None,
        rollout_targets: Sequence[str] = (),
        rollout_timeout_seconds: int = 120,
        **kwargs: Any,
    ) -> None:
        super().__init__(runner, **kwargs)
        self._namespace = namespace
        self._rollout_targets = tuple(rollout_targets)
        self._rollout_timeout = int(rollout_timeout_seconds)

    def _scoped(self, args: list[str]) -> list[str]:
        return [*args, "-n", self._namespace] if self._namespace else args

    async def apply_manifests(self, manifests: Sequence[str]) -> RolloutStatus:
        if not manifests:
            raise ValueError("at least one manifest is required")
        applied: list[str] = []
        for manifest in manifests:
            result = await self.invoke(self._scoped(["apply", "-f", manifest]))
            applied.extend(line.strip() for line in tail_text(result.stdout).splitlines() if line.strip())

        details: dict[str, str] = {}
        for target in self._rollout_targets:
            try:
                result = await self.invoke(
                    self._scoped(["rollout", "status", target, f"--timeout={self._rollout_timeout}s"])
                )
            except StageExecutionError as exc:
                details[target] = str(exc)
                return RolloutStatus(
                    ready=False,
                    applied=tuple(applied),
                    message=f"rollout of {target} did not complete",
                    details=details,
                )
            details[target] = tail_text(result.stdout).strip()
        return RolloutStatus(ready=True, applied=tuple(applied), message="rollout complete", details=details)


class TrivyScanner(CommandTool):
    binary = "trivy"

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        scan_type: str = "image",
        severities: Sequence[str] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(runner, **kwargs)
        self._scan_type = scan_type
        self._severities = tuple(severities)

    async def scan_report(self, target: str) -> bytes:
        """Raw Trivy JSON for ``target``."""

        args = [self._scan_type, "--format", "json", "--quiet"]
        if self._severities:
            args.extend(["--severity", ",".join(item.upper() for item in self._severities)])
        args.append(target)
        result = await self.invoke(args)
        return result.stdout

    async def scan(self, target: str) -> tuple[Finding, ...]:
        return parse_report(await self.scan_report(target), source=f"trivy {target}")


__all__ = [
    "CommandTool",
    "DEFAULT_TOOL_TIMEOUT_SECONDS",
    "DockerImageBuilder",
    "DockerRegistryClient",
    "KubectlClusterClient",
    "MavenBuildTool",
    "TrivyScanner",
    "classify_failure",
]
