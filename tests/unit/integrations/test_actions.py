"""Unit tests for built-in stage actions wired to fake collaborators."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.domain import ids
from conduit_ci.domain.errors import ConfigError, StageExecutionError
from conduit_ci.domain.models import ArtifactRef, Finding, JSONValue, Severity, TriggerType
from conduit_ci.integrations.actions import (
    FINDINGS_ARTIFACT,
    IMAGE_ARTIFACT,
    ROLLOUT_ARTIFACT,
    ActionContext,
    ActionOutcome,
    ActionRegistry,
)
from conduit_ci.integrations.clients import ImageRef, RolloutStatus
from conduit_ci.sandbox.process import ProcessRunner

_DIGEST = "sha256:" + "cd" * 32


class FakeBuildTool:
    def __init__(self) -> None:
        self.refs: list[str] = []

    async def build(self, source_ref: str) -> bytes:
        self.refs.append(source_ref)
        return b"jar-" + source_ref.encode()


class FakeImageBuilder:
    def __init__(self) -> None:
        self.calls: list[tuple[bytes, dict[str, str]]] = []

    async def build_image(self, artifact_bytes: bytes, manifest: Mapping[str, str]) -> ImageRef:
        self.calls.append((artifact_bytes, dict(manifest)))
        return ImageRef(repository=manifest["repository"], tag=manifest["tag"], registry=manifest.get("registry"))


class FakeRegistry:
    def __init__(self) -> None:
        self.pushed: list[str] = []

    async def push(self, image_ref: ImageRef) -> ImageRef:
        self.pushed.append(image_ref.name)
        return ImageRef(
            repository=image_ref.repository,
            tag=image_ref.tag,
            registry=image_ref.registry,
            digest=_DIGEST,
        )


class FakeCluster:
    def __init__(self, *, ready: bool = True) -> None:
        self.ready = ready
        self.applied: list[str] = []

    async def apply_manifests(self, manifests: Sequence[str]) -> RolloutStatus:
        self.applied.extend(manifests)
        return RolloutStatus(ready=self.ready, applied=tuple(manifests), message="rollout complete" if self.ready else "crashloop")


class FakeScanner:
    def __init__(self, *findings: Finding) -> None:
        self.findings = findings
        self.targets: list[str] = []

    async def scan(self, target: str) -> tuple[Finding, ...]:
        self.targets.append(target)
        return self.findings


class Fixture:
    def __init__(self, root: Path) -> None:
        workspace = root / "ws"
        workspace.mkdir()
        self.run_id = ids.generate_run_id()
        self.store = ArtifactStore(root / "artifacts")
        self.runner = ProcessRunner(workspace)

    def context(
        self,
        stage_id: str,
        params: Mapping[str, JSONValue] | None = None,
        inputs: tuple[ArtifactRef, ...] = (),
    ) -> ActionContext:
        return ActionContext(
            run_id=self.run_id,
            stage_id=stage_id,
            source_ref="abc123",
            trigger=TriggerType.PUSH,
            params=params or {},
            inputs=inputs,
            store=self.store,
            runner=self.runner,
        )

    def upstream(self, stage_id: str, name: str, data: bytes) -> ArtifactRef:
        return self.store.put(self.run_id, stage_id, name, data)


@pytest.fixture
def fx(tmp_path: Path) -> Fixture:
    return Fixture(tmp_path)


def test_registry_rejects_duplicates_and_names_unknown_actions() -> None:
    registry = ActionRegistry()

    async def noop(ctx: ActionContext) -> ActionOutcome:
        return ActionOutcome()

    registry.register("notify", noop)
    with pytest.raises(ValueError, match="already registered"):
        registry.register("notify", noop)
    registry.register("notify", noop, replace=True)
    with pytest.raises(ValueError, match="cannot be empty"):
        registry.register("  ", noop)
    with pytest.raises(KeyError, match="unknown action 'deploy'; registered actions: notify"):
        registry.get("deploy")

    assert "notify" in registry
    assert list(registry) == ["notify"]


def test_default_registry_exposes_builtin_actions() -> None:
    assert ActionRegistry.with_defaults().names == ("build", "cluster.apply", "image.build", "registry.push", "scan")


async def test_build_action_stores_named_artifact(fx: Fixture) -> None:
    tool = FakeBuildTool()
    build = ActionRegistry.with_defaults(build_tool=tool).get("build")

    outcome = await build(fx.context("build", {"artifactName": "demo-app.jar"}))

    assert tool.refs == ["abc123"]
    assert outcome.artifacts == {"demo-app.jar": b"jar-abc123"}


async def test_image_build_reads_upstream_jar(fx: Fixture) -> None:
    builder = FakeImageBuilder()
    jar = fx.upstream("build", "outputs/app.jar", b"jar-bytes")
    action = ActionRegistry.with_defaults(image_builder=builder).get("image.build")

    outcome = await action(
        fx.context(
            "image",
            {"repository": "demo-app", "tag": "abc123", "registry": "registry.example.invalid", "buildArgs": {"JDK": 21}},
            inputs=(jar,),
        )
    )

    assert builder.calls == [
        (b"jar-bytes", {"JDK": "21", "repository": "demo-app", "tag": "abc123", "registry": "registry.example.invalid"})
    ]
    assert json.loads(outcome.artifacts[IMAGE_ARTIFACT]) == {
        "digest": None,
        "registry": "registry.example.invalid",
        "repository": "demo-app",
        "tag": "abc123",
    }


async def test_image_build_requires_repository(fx: Fixture) -> None:
    action = ActionRegistry.with_defaults(image_builder=FakeImageBuilder()).get("image.build")

    with pytest.raises(ConfigError, match="invalid action parameters") as excinfo:
        await action(fx.context("image"))

    assert excinfo.value.paths == ("stage 'image'.with.repository",)


async def test_push_uses_image_from_upstream_manifest(fx: Fixture) -> None:
    registry = FakeRegistry()
    image_json = fx.upstream("image", f"outputs/{IMAGE_ARTIFACT}", b'{"repository":"demo-app","tag":"abc123","registry":"r.example.invalid"}')
    action = ActionRegistry.with_defaults(registry_client=registry).get("registry.push")

    outcome = await action(fx.context("publish", inputs=(image_json,)))

    assert registry.pushed == ["r.example.invalid/demo-app:abc123"]
    assert json.loads(outcome.artifacts[IMAGE_ARTIFACT])["digest"] == _DIGEST


async def test_push_without_image_input_fails(fx: Fixture) -> None:
    action = ActionRegistry.with_defaults(registry_client=FakeRegistry()).get("registry.push")

    with pytest.raises(StageExecutionError, match="no upstream artifact named 'image.json'"):
        await action(fx.context("publish"))


async def test_cluster_apply_records_rollout(fx: Fixture) -> None:
    cluster = FakeCluster()
    action = ActionRegistry.with_defaults(cluster_client=cluster).get("cluster.apply")

    outcome = await action(fx.context("deploy", {"manifests": ["k8s/deployment.yaml", "k8s/service.yaml"]}))

    assert cluster.applied == ["k8s/deployment.yaml", "k8s/service.yaml"]
    assert json.loads(outcome.artifacts[ROLLOUT_ARTIFACT])["ready"] is True


async def test_cluster_apply_failures(fx: Fixture) -> None:
    action = ActionRegistry.with_defaults(cluster_client=FakeCluster(ready=False)).get("cluster.apply")

    with pytest.raises(ConfigError, match="must list at least one manifest"):
        await action(fx.context("deploy"))
    with pytest.raises(StageExecutionError, match="rollout not ready: crashloop"):
        await action(fx.context("deploy", {"manifests": "k8s/deployment.yaml"}))


async def test_scan_action_returns_findings(fx: Fixture) -> None:
    scanner = FakeScanner(Finding(severity=Severity.HIGH, id="CVE-2026-7"))
    action = ActionRegistry.with_defaults(scanner=scanner).get("scan")

    outcome = await action(fx.context("scan", {"image": "registry.example.invalid/demo-app:abc123"}))

    assert scanner.targets == ["registry.example.invalid/demo-app:abc123"]
    assert [item.id for item in outcome.findings] == ["CVE-2026-7"]
    assert json.loads(outcome.artifacts[FINDINGS_ARTIFACT])[0]["severity"] == "high"
    assert outcome.report is None
