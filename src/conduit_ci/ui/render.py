"""Output rendering for the conduit CLI.

Plain-text, deterministic output. Respects ``NO_COLOR`` and ``--no-color``;
color is limited to the state column of run tables.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from conduit_ci.control_plane.gates import highest_severity
from conduit_ci.domain.models import RunState, StageState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from conduit_ci.domain.models import RunStatusReport, StageRun

_STATE_COLORS = {
    StageState.PASSED.value: "32",
    RunState.SUCCEEDED.value: "32",
    StageState.FAILED_ADVISORY.value: "33",
    RunState.PARTIALLY_SUCCEEDED_WITH_ADVISORIES.value: "33",
    StageState.FAILED_FATAL.value: "31",
    RunState.FAILED.value: "31",
    StageState.CANCELLED.value: "35",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def state(self, value: str) -> str:
        code = _STATE_COLORS.get(value)
        if not self._color or code is None:
            return value
        return f"\x1b[{code}m{value}\x1b[0m"

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                padded = cell.ljust(widths[i])
                parts.append(self.state(cell) + padded[len(cell):] if i == 1 else padded)
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            print(f"  $ {step}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


def stage_row(stage: StageRun) -> list[str]:
    """Stage, state, attempts, top severity, detail."""

    top = highest_severity(stage.findings)
    if stage.failure_reason is not None:
        detail = stage.failure_reason.value
        if stage.gate_summary:
            detail = f"{detail}: {stage.gate_summary}"
    elif stage.skip_reason is not None:
        detail = stage.skip_reason.value
    else:
        detail = stage.gate_summary or ""
    return [
        stage.stage_id,
        stage.state.value,
        str(stage.attempts),
        top.value if top is not None else "-",
        detail,
    ]


def render_run_report(renderer: CLIRenderer, report: RunStatusReport) -> None:
    renderer.kv("Run ID", report.run_id)
    renderer.kv("Pipeline", report.pipeline)
    renderer.kv("Source ref", f"{report.event.source_ref} ({report.event.trigger_type.value})")
    renderer.kv("State", renderer.state(report.state.value))
    renderer.kv("Started", report.created_at.isoformat())
    renderer.kv("Finished", report.finished_at.isoformat() if report.finished_at else "(in progress)")
    renderer.table(
        ("STAGE", "STATE", "ATTEMPTS", "TOP", "DETAIL"),
        [stage_row(stage) for stage in report.stages],
        title="Stages:",
    )

    verdict = report.verdict
    if verdict is None:
        return
    if verdict.failure is not None:
        renderer.section("Failure:")
        renderer.items([verdict.failure.render()])
    if verdict.secondary_causes:
        renderer.section("Also affected:")
        renderer.items([item.render() for item in verdict.secondary_causes])
    if verdict.advisories:
        renderer.section("Advisories:")
        renderer.items(list(verdict.advisories))
    if renderer.verbose:
        for stage in report.stages:
            if stage.error:
                renderer.section(f"{stage.stage_id} error:")
                renderer.text(stage.error)


__all__ = ["CLIRenderer", "create_renderer", "render_run_report", "stage_row"]
