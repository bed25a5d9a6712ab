"""
conduit-ci: end-to-end smoke test

Purpose
- Drive the bundled demo-app pipeline through the CLI and check the persisted
  run state, stored artifacts, run log and garbage collection side effects.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.main import ExitCode, cli_entrypoint
from conduit_ci.persistence.run_store import RunStore

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEMO_PIPELINE = PROJECT_ROOT / "samples" / "pipelines" / "demo-app.yml"


@pytest.mark.smoke
def test_demo_pipeline_end_to_end(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    for key in list(os.environ):
        if key.startswith("CONDUIT_"):
            monkeypatch.delenv(key)
    workspace = tmp_path / "ws"
    workspace.mkdir()
    config_path = tmp_path / "conduit.toml"
    config_path.write_text("[meta]\nschema_version = 1\n", encoding="utf-8")
    common = ["--config", str(config_path), "--json"]

    exit_code = cli_entrypoint(
        ["run", str(DEMO_PIPELINE), "--ref", "main", "--trigger", "push", "--workspace", str(workspace), *common]
    )
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])

    assert exit_code == ExitCode.SUCCESS
    run = payload["run"]
    run_id = run["run_id"]
    assert run["state"] == "succeeded"
    assert {stage["stage_id"]: stage["state"] for stage in run["stages"]} == {
        "checkout": "passed",
        "build": "passed",
        "unit-tests": "passed",
        "scan": "failed_advisory",
        "lint": "passed",
        "publish": "passed",
    }
    assert run["verdict"]["advisories"] == ["scan: 1 finding(s): low=1"]

    run_store = RunStore(tmp_path / ".conduit" / "state.sqlite")
    persisted = run_store.status(run_id)
    assert persisted.state.value == "succeeded"
    assert persisted.stage("scan").findings[0].id == "CVE-2024-0001"

    artifacts = ArtifactStore(tmp_path / ".conduit" / "artifacts")
    jar = artifacts.lookup(run_id, "build", "outputs/target/app.jar")
    assert artifacts.get(jar) == b"class App {}\n"
    publish_log = artifacts.lookup(run_id, "publish", "logs/attempt-1.stdout")
    assert artifacts.get(publish_log) == f"publishing {run_id} from main\n".encode()
    assert artifacts.lookup(run_id, "scan", "report/scan-report.json").size > 0
    assert run_id not in artifacts.pinned_runs()

    log_path = tmp_path / ".conduit" / "logs" / run_id / "conduit.jsonl"
    events = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert events
    assert {event["run_id"] for event in events} == {run_id}

    assert cli_entrypoint(["gc", *common]) == ExitCode.SUCCESS
    gc_report = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert gc_report["removed_runs"] == []
    assert artifacts.exists(jar)
