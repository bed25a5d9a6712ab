"""Command-line interface router for conduit-ci."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conduit_ci.artifacts.store import ArtifactStore
from conduit_ci.config import dump_effective_config, load_config, redact_config
from conduit_ci.control_plane import RunCoordinator
from conduit_ci.domain import ids as domain_ids
from conduit_ci.domain.errors import ConfigError, UnknownRunError
from conduit_ci.domain.models import GatePolicy, PipelineDefinition, RunState, RunStatusReport, TriggerEvent, TriggerType
from conduit_ci.observability.logging import configure_structlog, setup_logging, shutdown_logging
from conduit_ci.persistence.run_store import RunStore
from conduit_ci.pipeline.definition import dump_pipeline, load_pipeline
from conduit_ci.sandbox import ProcessRunner, StageExecutor
from conduit_ci.ui.render import CLIRenderer, create_renderer, render_run_report

_SUCCESSFUL_RUN_STATES = frozenset({RunState.SUCCEEDED, RunState.PARTIALLY_SUCCEEDED_WITH_ADVISORIES})


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="conduit",
        description=(
            "conduit-ci: DAG pipeline orchestrator with security gates.\n\n"
            "Common workflows:\n"
            "  conduit validate pipeline.yml        Check a pipeline definition\n"
            "  conduit run pipeline.yml --ref main  Run a pipeline to completion\n"
            "  conduit status <run-id>              Show a run's stage states\n"
            "  conduit gc                           Reclaim expired artifacts\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to conduit TOML config (default: ./conduit.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument("--verbose", "-v", action="store_true", default=False, help="Show detailed output.")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a pipeline definition to completion",
        description=(
            "Trigger a run of a pipeline definition and drive it to a terminal state.\n"
            "Ctrl-C cancels the run: running stages are terminated, pending ones skipped.\n\n"
            "Examples:\n"
            "  conduit run samples/pipelines/demo-app.yml --ref main\n"
            "  conduit run pipeline.yml --ref a1b2c3 --trigger push --max-parallelism 2\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("pipeline_path", help="Path to the pipeline YAML definition")
    run_parser.add_argument("--ref", dest="source_ref", default="HEAD", help="Source ref to build (default: HEAD)")
    run_parser.add_argument(
        "--trigger",
        choices=[item.value for item in TriggerType],
        default=TriggerType.MANUAL.value,
        help="Trigger type (default: manual)",
    )
    run_parser.add_argument("--run-id", default=None, help="Explicit run ID (default: generated)")
    run_parser.add_argument("--workspace", default=None, help="Workspace directory (overrides paths.workspace_root)")
    run_parser.add_argument("--max-parallelism", type=int, default=None, help="Override engine.max_parallelism")
    run_parser.set_defaults(handler=_cmd_run)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Validate a pipeline definition without running it",
    )
    validate_parser.add_argument("pipeline_path", help="Path to the pipeline YAML definition")
    validate_parser.set_defaults(handler=_cmd_validate)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show a run's status, or list recent runs",
    )
    status_parser.add_argument("run_id", nargs="?", default=None, help="Run ID (default: list recent runs)")
    status_parser.add_argument("--pipeline", default=None, help="Only list runs of this pipeline")
    status_parser.add_argument("--limit", type=int, default=20, help="How many runs to list (default: 20)")
    status_parser.set_defaults(handler=_cmd_status)

    # cancel --------------------------------------------------------------
    cancel_parser = subparsers.add_parser(
        "cancel",
        parents=[common],
        help="Request cancellation of an in-progress run",
    )
    cancel_parser.add_argument("run_id", help="Run ID to cancel")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    # gc ------------------------------------------------------------------
    gc_parser = subparsers.add_parser(
        "gc",
        parents=[common],
        help="Delete artifacts of expired runs (pinned runs are kept)",
    )
    gc_parser.set_defaults(handler=_cmd_gc)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and profile.\n\n"
            "Examples:\n"
            "  conduit config\n"
            "  conduit config --profile ci --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    # Keep stdout clean for --json; run-scoped handlers attach in `run`.
    configure_structlog()
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {
        "paths.workspace_root": _absolute_or_none(args.workspace),
        "engine.max_parallelism": args.max_parallelism,
    }
    config = _load_effective_config(args, overrides)
    definition = _load_definition(args.pipeline_path, config)
    run_id = args.run_id or domain_ids.generate_run_id()
    try:
        domain_ids.validate_run_id(run_id)
    except ValueError as exc:
        raise CLIError(f"invalid run id: {run_id!r}", exit_code=2) from exc

    event = TriggerEvent(source_ref=args.source_ref, trigger_type=TriggerType(args.trigger))
    observability = dict(config["observability"])
    handle = setup_logging(observability, run_id=run_id, log_dir=config["paths"]["log_dir"])
    try:
        coordinator, _, run_store = _build_coordinator(config)
        report = asyncio.run(_drive(coordinator, definition, event, run_id))
    finally:
        shutdown_logging(handle)

    exit_code = 0 if report.state in _SUCCESSFUL_RUN_STATES else 1
    if args.json:
        _emit_json({"command": "run", "run": report.to_dict(), "state_db": run_store.path.as_posix()})
        return exit_code

    renderer = _get_renderer(args)
    render_run_report(renderer, report)
    renderer.next_steps([f"conduit status {run_id}"])
    return exit_code


async def _drive(
    coordinator: RunCoordinator,
    definition: PipelineDefinition,
    event: TriggerEvent,
    run_id: str,
) -> RunStatusReport:
    coordinator.trigger(definition, event, run_id=run_id)
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, coordinator.cancel, run_id)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        run = await coordinator.drive(run_id)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
    return RunStatusReport.from_run(run)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = _load_definition(args.pipeline_path, config)

    if args.json:
        _emit_json({"command": "validate", "valid": True, "pipeline": dump_pipeline(definition)})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", definition.name)
    renderer.kv("Stages", len(definition.stages))
    renderer.kv("Execution order", " -> ".join(definition.graph.topological_sort()))
    if renderer.verbose:
        rows = [
            [
                stage.id,
                stage.kind,
                ",".join(stage.depends_on) or "-",
                "yes" if stage.required else "no",
                _gate_text(stage.gate_policy),
            ]
            for stage in definition.stages
        ]
        renderer.table(("STAGE", "KIND", "DEPENDS ON", "REQUIRED", "GATE"), rows, title="Stages:")
    renderer.text("OK")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_store = RunStore(config["paths"]["state_db"])
    renderer = _get_renderer(args)

    if args.run_id is None:
        summaries = run_store.list_runs(pipeline=args.pipeline, limit=max(1, args.limit))
        if args.json:
            _emit_json(
                {
                    "command": "status",
                    "runs": [
                        {
                            "run_id": item.run_id,
                            "pipeline": item.pipeline,
                            "state": item.state.value,
                            "created_at": item.created_at,
                            "updated_at": item.updated_at,
                        }
                        for item in summaries
                    ],
                }
            )
            return 0
        if not summaries:
            renderer.text(f"No runs found in {run_store.path.as_posix()}")
            return 0
        renderer.table(
            ("RUN ID", "STATE", "PIPELINE", "UPDATED"),
            [[item.run_id, item.state.value, item.pipeline, item.updated_at] for item in summaries],
        )
        return 0

    try:
        report = run_store.status(args.run_id)
    except UnknownRunError as exc:
        raise CLIError(str(exc), exit_code=1) from exc

    if args.json:
        _emit_json({"command": "status", "run": report.to_dict()})
        return 0
    render_run_report(renderer, report)
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_store = RunStore(config["paths"]["state_db"])
    try:
        accepted = run_store.request_cancel(args.run_id)
    except UnknownRunError as exc:
        raise CLIError(str(exc), exit_code=1) from exc

    if args.json:
        _emit_json({"command": "cancel", "run_id": args.run_id, "accepted": accepted})
    elif accepted:
        _get_renderer(args).text(f"cancellation requested for {args.run_id}")
    else:
        _get_renderer(args).text(f"run {args.run_id} already finished")
    return 0 if accepted else 1


def _cmd_gc(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = _artifact_store(config)
    report = store.gc()

    if args.json:
        _emit_json({"command": "gc", **report.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Removed runs", len(report.removed_runs))
    renderer.kv("Removed blobs", report.removed_blobs)
    renderer.kv("Freed bytes", report.freed_bytes)
    if report.kept_pinned:
        renderer.section("Kept (pinned by active runs):")
        renderer.items(list(report.kept_pinned))
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)

    if args.json:
        _emit_json({"command": "config", "active_profile": args.profile, "config": redact_config(config)})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


def _load_effective_config(
    args: argparse.Namespace,
    overrides: Mapping[str, object] | None = None,
) -> dict[str, Any]:
    try:
        return load_config(args.config_path, profile=args.profile, cli_overrides=overrides)
    except ConfigError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_definition(pipeline_path: str, config: Mapping[str, Any]) -> PipelineDefinition:
    path = Path(pipeline_path).expanduser()
    if not path.is_file():
        raise CLIError(f"pipeline definition not found: {path}", exit_code=2)
    try:
        return load_pipeline(path, default_max_delay_ms=config["engine"]["max_backoff_ms"])
    except ConfigError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _artifact_store(config: Mapping[str, Any]) -> ArtifactStore:
    return ArtifactStore(
        config["paths"]["artifact_root"],
        ttl_hours=config["artifacts"]["ttl_hours"],
        max_runs=config["artifacts"]["max_runs"],
    )


def _build_coordinator(config: Mapping[str, Any]) -> tuple[RunCoordinator, ArtifactStore, RunStore]:
    engine = config["engine"]
    workspace = Path(config["paths"]["workspace_root"])
    if not workspace.is_dir():
        raise CLIError(f"workspace is not a directory: {workspace}", exit_code=2)

    store = _artifact_store(config)
    run_store = RunStore(config["paths"]["state_db"])
    runner = ProcessRunner(
        workspace,
        inherit_host_env=engine["inherit_host_env"],
        termination_grace_seconds=engine["termination_grace_seconds"],
    )
    executor = StageExecutor(
        store=store,
        workspace_root=workspace,
        runner=runner,
        default_timeout_seconds=engine["default_timeout_seconds"],
    )
    coordinator = RunCoordinator(
        executor=executor,
        run_store=run_store,
        artifact_store=store,
        max_parallelism=engine["max_parallelism"],
    )
    return coordinator, store, run_store


def _absolute_or_none(raw: str | None) -> str | None:
    if raw is None:
        return None
    return Path(raw).expanduser().resolve().as_posix()


def _gate_text(policy: GatePolicy | None) -> str:
    if policy is None:
        return "-"
    severities = ",".join(sorted(item.value for item in policy.block_on_severities))
    return f"block {severities or 'none'} > {policy.max_count}"


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
