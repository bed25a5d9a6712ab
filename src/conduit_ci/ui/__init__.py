"""UI package exports for the CLI and its plain-text rendering."""

from conduit_ci.ui.cli import CLIError, build_parser, main, run_cli
from conduit_ci.ui.render import CLIRenderer, create_renderer, render_run_report

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "main",
    "render_run_report",
    "run_cli",
]
