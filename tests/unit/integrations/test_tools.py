"""Unit tests for the command-backed tool adapters, driven by fake binaries."""

from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from conduit_ci.domain.errors import AuthError, NetworkError, StageContractError, StageExecutionError
from conduit_ci.domain.models import Severity
from conduit_ci.integrations.clients import ImageRef
from conduit_ci.integrations.tools import (
    DockerImageBuilder,
    DockerRegistryClient,
    KubectlClusterClient,
    MavenBuildTool,
    TrivyScanner,
    classify_failure,
)
from conduit_ci.sandbox.process import ProcessRunner

_DIGEST = "sha256:" + "ab" * 32


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "ws"
    path.mkdir()
    return path


@pytest.fixture
def runner(workspace: Path) -> ProcessRunner:
    return ProcessRunner(workspace, termination_grace_seconds=0.5)


def _fake_binary(tmp_path: Path, name: str, body: str) -> str:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    path = bin_dir / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("denied: requested access to the resource is denied", AuthError),
        ("Error: UNAUTHORIZED: authentication required", AuthError),
        ("dial tcp: lookup registry: no such host", NetworkError),
        ("toomanyrequests: rate limit exceeded", NetworkError),
        ("[ERROR] COMPILATION ERROR", StageExecutionError),
        ("", StageExecutionError),
    ],
)
def test_classify_failure(stderr: str, expected: type[Exception]) -> None:
    assert classify_failure(stderr) is expected


async def test_maven_build_returns_the_primary_jar(tmp_path: Path, runner: ProcessRunner) -> None:
    mvn = _fake_binary(
        tmp_path,
        "mvn",
        'mkdir -p target && printf jar > target/app-1.0.jar && printf src > target/app-1.0-sources.jar && echo "$@"',
    )
    tool = MavenBuildTool(runner, binary=mvn, goals=("-B", "verify"))

    data = await tool.build("abc123")

    assert data == b"jar"
    assert tool.last_result is not None
    assert tool.last_result.stdout == b"-B verify\n"


async def test_maven_without_artifact_is_a_contract_error(tmp_path: Path, runner: ProcessRunner) -> None:
    tool = MavenBuildTool(runner, binary=_fake_binary(tmp_path, "mvn", "exit 0"))

    with pytest.raises(StageContractError, match="no artifact matching") as excinfo:
        await tool.build("abc123")

    assert excinfo.value.reason == "missing_output"


async def test_non_zero_exit_keeps_exit_code(tmp_path: Path, runner: ProcessRunner) -> None:
    tool = MavenBuildTool(runner, binary=_fake_binary(tmp_path, "mvn", "echo '[ERROR] BUILD FAILURE' >&2; exit 1"))

    with pytest.raises(StageExecutionError, match="BUILD FAILURE") as excinfo:
        await tool.build("abc123")

    assert excinfo.value.exit_code == 1


async def test_image_builder_stages_artifact_and_passes_build_args(
    tmp_path: Path, runner: ProcessRunner, workspace: Path
) -> None:
    docker = _fake_binary(tmp_path, "docker", 'echo "$@"')
    builder = DockerImageBuilder(runner, binary=docker, repository="demo-app")

    image = await builder.build_image(
        b"jar-bytes",
        {"repository": "demo-app", "tag": "abc123", "registry": "registry.example.invalid", "JAVA_VERSION": "21"},
    )

    assert image.name == "registry.example.invalid/demo-app:abc123"
    assert (workspace / "target" / "app.jar").read_bytes() == b"jar-bytes"
    assert builder.last_result is not None
    assert builder.last_result.stdout.decode().split() == [
        "build",
        "-t",
        "registry.example.invalid/demo-app:abc123",
        "-f",
        "Dockerfile",
        "--build-arg",
        "JAVA_VERSION=21",
        ".",
    ]


async def test_registry_push_records_digest(tmp_path: Path, runner: ProcessRunner) -> None:
    docker = _fake_binary(tmp_path, "docker", f'echo "abc123: digest: {_DIGEST} size: 1571"')
    client = DockerRegistryClient(runner, binary=docker)

    pushed = await client.push(ImageRef.parse("registry.example.invalid:5000/demo-app:abc123"))

    assert pushed.registry == "registry.example.invalid:5000"
    assert pushed.tag == "abc123"
    assert pushed.digest == _DIGEST


async def test_registry_auth_failure_is_not_retryable(tmp_path: Path, runner: ProcessRunner) -> None:
    docker = _fake_binary(tmp_path, "docker", "echo 'unauthorized: authentication required' >&2; exit 1")
    client = DockerRegistryClient(runner, binary=docker)

    with pytest.raises(AuthError):
        await client.push(ImageRef(repository="demo-app"))


async def test_registry_network_failure_is_retryable(tmp_path: Path, runner: ProcessRunner) -> None:
    docker = _fake_binary(tmp_path, "docker", "echo 'dial tcp: connection refused' >&2; exit 1")
    client = DockerRegistryClient(runner, binary=docker)

    with pytest.raises(NetworkError) as excinfo:
        await client.push(ImageRef(repository="demo-app"))

    assert excinfo.value.retryable


async def test_kubectl_apply_then_waits_for_rollout(tmp_path: Path, runner: ProcessRunner) -> None:
    kubectl = _fake_binary(
        tmp_path,
        "kubectl",
        'case "$1" in apply) echo "deployment.apps/demo-app configured";; rollout) echo "successfully rolled out";; esac',
    )
    client = KubectlClusterClient(runner, binary=kubectl, namespace="staging", rollout_targets=("deployment/demo-app",))

    status = await client.apply_manifests(["k8s/deployment.yaml"])

    assert status.ready
    assert status.applied == ("deployment.apps/demo-app configured",)
    assert status.details == {"deployment/demo-app": "successfully rolled out"}


async def test_kubectl_failed_rollout_is_not_ready(tmp_path: Path, runner: ProcessRunner) -> None:
    kubectl = _fake_binary(
        tmp_path,
        "kubectl",
        'if [ "$1" = rollout ]; then echo "progress deadline exceeded" >&2; exit 1; fi; echo applied',
    )
    client = KubectlClusterClient(runner, binary=kubectl, rollout_targets=("deployment/demo-app",))

    status = await client.apply_manifests(["k8s/deployment.yaml"])

    assert not status.ready
    assert status.message == "rollout of deployment/demo-app did not complete"
    assert "progress deadline exceeded" in status.details["deployment/demo-app"]


async def test_trivy_scan_parses_json_output(tmp_path: Path, runner: ProcessRunner) -> None:
    report = {"ArtifactName": "demo-app", "Results": [{"Vulnerabilities": [{"VulnerabilityID": "CVE-1", "Severity": "HIGH"}]}]}
    fixture = tmp_path / "trivy.json"
    fixture.write_text(json.dumps(report), encoding="utf-8")
    trivy = _fake_binary(tmp_path, "trivy", f'echo "$@" > {tmp_path}/args; cat {fixture}')
    scanner = TrivyScanner(runner, binary=trivy, severities=("high", "critical"))

    findings = await scanner.scan("demo-app:abc123")

    assert [(item.severity, item.id) for item in findings] == [(Severity.HIGH, "CVE-1")]
    assert (tmp_path / "args").read_text(encoding="utf-8").split() == [
        "image",
        "--format",
        "json",
        "--quiet",
        "--severity",
        "HIGH,CRITICAL",
        "demo-app:abc123",
    ]


async def test_tool_timeout_is_reported(tmp_path: Path, runner: ProcessRunner) -> None:
    tool = MavenBuildTool(runner, binary=_fake_binary(tmp_path, "mvn", "sleep 30"), timeout_seconds=0.3)

    with pytest.raises(StageExecutionError, match="timed out") as excinfo:
        await tool.build("abc123")

    assert excinfo.value.timed_out
