"""
Stage actions: named async callables backed by external collaborators.

A stage declaring ``action: scan`` (instead of ``command``) is executed by the
action registered under ``scan``. Actions receive an ``ActionContext`` and
return an ``ActionOutcome`` whose artifacts, findings and report the executor
stores exactly as it does for command stages.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from conduit_ci.domain.errors import ConfigError, ConfigIssue, StageExecutionError
from conduit_ci.domain.models import ArtifactRef, Finding, JSONValue, TriggerType
from conduit_ci.integrations.clients import (
    BuildTool,
    ClusterClient,
    ImageBuilder,
    ImageRef,
    RegistryClient,
    VulnerabilityScanner,
)
from conduit_ci.integrations.tools import (
    DockerImageBuilder,
    DockerRegistryClient,
    KubectlClusterClient,
    MavenBuildTool,
    TrivyScanner,
)

if TYPE_CHECKING:
    from conduit_ci.artifacts.store import ArtifactStore
    from conduit_ci.sandbox.process import ProcessRunner
    from conduit_ci.utils.concurrency import CancellationToken

IMAGE_ARTIFACT = "image.json"
ROLLOUT_ARTIFACT = "rollout.json"
FINDINGS_ARTIFACT = "findings.json"


@dataclass(frozen=True, slots=True)
class ActionContext:
    """Everything an action may touch while running one stage attempt."""

    run_id: str
    stage_id: str
    source_ref: str
    trigger: TriggerType
    params: Mapping[str, JSONValue]
    inputs: tuple[ArtifactRef, ...]
    store: ArtifactStore
    runner: ProcessRunner
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float = 3600.0
    cancel_token: CancellationToken | None = None

    def tool_options(self) -> dict[str, Any]:
        return {
            "cwd": self.param_str("cwd", default="."),
            "env": dict(self.env),
            "timeout_seconds": self.timeout_seconds,
            "cancel_token": self.cancel_token,
        }

    def find_input(self, name: str) -> ArtifactRef | None:
        """Latest-declared upstream artifact called ``name``."""

        for ref in reversed(self.inputs):
            if ref.name == name or ref.name.rsplit("/", 1)[-1] == name:
                return ref
        return None

    async def read_input(self, name: str) -> bytes:
        ref = self.find_input(name)
        if ref is None:
            raise StageExecutionError(f"stage {self.stage_id!r} has no upstream artifact named {name!r}")
        return await self.store.aget(ref)

    def param_str(self, key: str, *, default: str | None = None) -> str:
        value = self.params.get(key, default)
        if not isinstance(value, str) or not value.strip():
            raise self.param_error(key, "must be a non-empty string")
        return value

    def param_optional_str(self, key: str) -> str | None:
        if self.params.get(key) is None:
            return None
        return self.param_str(key)

    def param_list(self, key: str, *, default: tuple[str, ...] = ()) -> tuple[str, ...]:
        value = self.params.get(key)
        if value is None:
            return default
        if isinstance(value, str):
            return (value,)
        if not isinstance(value, list) or not all(isinstance(item, str) and item for item in value):
            raise self.param_error(key, "must be a string or a list of strings")
        return tuple(value)  # type: ignore[arg-type]

    def param_mapping(self, key: str) -> dict[str, str]:
        value = self.params.get(key)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise self.param_error(key, "must be an object")
        return {str(name): str(item) for name, item in value.items()}

    def param_int(self, key: str, *, default: int) -> int:
        value = self.params.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise self.param_error(key, "must be an integer >= 1")
        return value

    def param_error(self, key: str, message: str) -> ConfigError:
        return ConfigError(
            (ConfigIssue(f"stage {self.stage_id!r}.with.{key}", message),),
            heading="invalid action parameters",
        )


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    stdout: str = ""
    artifacts: Mapping[str, bytes] = field(default_factory=dict)
    findings: tuple[Finding, ...] = ()
    report: bytes | None = None


Action = Callable[[ActionContext], Awaitable[ActionOutcome]]


class ActionRegistry:
    """Name -> action lookup used by the stage executor."""

    def __init__(self) -> None:
        self._actions: dict[str, Action] = {}

    def register(self, name: str, action: Action, *, replace: bool = False) -> None:
        key = name.strip()
        if not key:
            raise ValueError("action name cannot be empty")
        if key in self._actions and not replace:
            raise ValueError(f"action {key!r} is already registered")
        self._actions[key] = action

    def get(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            known = ", ".join(sorted(self._actions)) or "<none>"
            raise KeyError(f"unknown action {name!r}; registered actions: {known}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._actions))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._actions))

    @classmethod
    def with_defaults(
        cls,
        *,
        build_tool: BuildTool | None = None,
        image_builder: ImageBuilder | None = None,
        registry_client: RegistryClient | None = None,
        cluster_client: ClusterClient | None = None,
        scanner: VulnerabilityScanner | None = None,
    ) -> ActionRegistry:
        """
        Registry exposing ``build``, ``image.build``, ``registry.push``,
        ``cluster.apply`` and ``scan``.

        A collaborator passed here is used for every invocation; omitted ones
        are built per stage from the command-backed adapters.
        """

        registry = cls()
        registry.register("build", _build_action(build_tool))
        registry.register("image.build", _image_build_action(image_builder))
        registry.register("registry.push", _registry_push_action(registry_client))
        registry.register("cluster.apply", _cluster_apply_action(cluster_client))
        registry.register("scan", _scan_action(scanner))
        return registry


def _build_action(fixed: BuildTool | None) -> Action:
    async def build(ctx: ActionContext) -> ActionOutcome:
        tool = fixed or MavenBuildTool(
            ctx.runner,
            goals=ctx.param_list("goals", default=("-B", "package", "-DskipTests")),
            artifact_glob=ctx.param_str("artifactGlob", default="target/*.jar"),
            **ctx.tool_options(),
        )
        data = await tool.build(ctx.source_ref)
        name = ctx.param_str("artifactName", default="app.jar")
        return ActionOutcome(stdout=f"built {name} ({len(data)} bytes)\n", artifacts={name: data})

    return build


def _image_build_action(fixed: ImageBuilder | None) -> Action:
    async def image_build(ctx: ActionContext) -> ActionOutcome:
        repository = ctx.param_str("repository")
        builder = fixed or DockerImageBuilder(
            ctx.runner,
            repository=repository,
            dockerfile=ctx.param_str("dockerfile", default="Dockerfile"),
            artifact_path=ctx.param_str("artifactPath", default="target/app.jar"),
            **ctx.tool_options(),
        )
        artifact = await ctx.read_input(ctx.param_str("input", default="app.jar"))
        manifest = ctx.param_mapping("buildArgs")
        manifest["repository"] = repository
        manifest["tag"] = ctx.param_str("tag", default="latest")
        registry_host = ctx.param_optional_str("registry")
        if registry_host is not None:
            manifest["registry"] = registry_host
        image = await builder.build_image(artifact, manifest)
        return ActionOutcome(
            stdout=f"built image {image.name}\n",
            artifacts={IMAGE_ARTIFACT: _json_bytes(image.to_dict())},
        )

    return image_build


def _registry_push_action(fixed: RegistryClient | None) -> Action:
    async def registry_push(ctx: ActionContext) -> ActionOutcome:
        client = fixed or DockerRegistryClient(ctx.runner, **ctx.tool_options())
        image = await _resolve_image(ctx)
        pushed = await client.push(image)
        return ActionOutcome(
            stdout=f"pushed {pushed.name}\n",
            artifacts={IMAGE_ARTIFACT: _json_bytes(pushed.to_dict())},
        )

    return registry_push


def _cluster_apply_action(fixed: ClusterClient | None) -> Action:
    async def cluster_apply(ctx: ActionContext) -> ActionOutcome:
        client = fixed or KubectlClusterClient(
            ctx.runner,
            namespace=ctx.param_optional_str("namespace"),
            rollout_targets=ctx.param_list("rolloutTargets"),
            rollout_timeout_seconds=ctx.param_int("rolloutTimeoutSeconds", default=120),
            **ctx.tool_options(),
        )
        manifests = ctx.param_list("manifests")
        if not manifests:
            raise ctx.param_error("manifests", "must list at least one manifest")
        status = await client.apply_manifests(manifests)
        if not status.ready:
            raise StageExecutionError(f"rollout not ready: {status.message}")
        return ActionOutcome(
            stdout=f"{status.message}\n",
            artifacts={ROLLOUT_ARTIFACT: _json_bytes(status.to_dict())},
        )

    return cluster_apply


def _scan_action(fixed: VulnerabilityScanner | None) -> Action:
    async def scan(ctx: ActionContext) -> ActionOutcome:
        scanner = fixed or TrivyScanner(
            ctx.runner,
            scan_type=ctx.param_str("scanType", default="image"),
            severities=ctx.param_list("severities"),
            **ctx.tool_options(),
        )
        target = ctx.param_optional_str("target")
        if target is None:
            target = (await _resolve_image(ctx)).name
        if isinstance(scanner, TrivyScanner):
            # Executor parses the raw report so the stored copy matches the gate input.
            return ActionOutcome(stdout=f"scanned {target}\n", report=await scanner.scan_report(target))
        findings = await scanner.scan(target)
        return ActionOutcome(
            stdout=f"scanned {target}: {len(findings)} finding(s)\n",
            artifacts={FINDINGS_ARTIFACT: _json_bytes([item.to_dict() for item in findings])},
            findings=tuple(findings),
        )

    return scan


async def _resolve_image(ctx: ActionContext) -> ImageRef:
    explicit = ctx.param_optional_str("image")
    if explicit is not None:
        return ImageRef.parse(explicit)
    raw = json.loads(await ctx.read_input(IMAGE_ARTIFACT))
    return ImageRef(
        repository=raw["repository"],
        tag=raw.get("tag") or "latest",
        registry=raw.get("registry"),
        digest=raw.get("digest"),
    )


def _json_bytes(value: object) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


__all__ = [
    "Action",
    "ActionContext",
    "ActionOutcome",
    "ActionRegistry",
    "FINDINGS_ARTIFACT",
    "IMAGE_ARTIFACT",
    "ROLLOUT_ARTIFACT",
]
