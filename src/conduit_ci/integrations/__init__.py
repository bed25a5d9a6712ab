"""External collaborators: client protocols, command-backed adapters, stage actions and report parsing."""

from conduit_ci.integrations.actions import Action, ActionContext, ActionOutcome, ActionRegistry
from conduit_ci.integrations.clients import (
    BuildTool,
    ClusterClient,
    ImageBuilder,
    ImageRef,
    RegistryClient,
    RolloutStatus,
    VulnerabilityScanner,
)
from conduit_ci.integrations.reports import ReportFormat, ReportFormatError, parse_report

__all__ = [
    "Action",
    "ActionContext",
    "ActionOutcome",
    "ActionRegistry",
    "BuildTool",
    "ClusterClient",
    "ImageBuilder",
    "ImageRef",
    "RegistryClient",
    "ReportFormat",
    "ReportFormatError",
    "RolloutStatus",
    "VulnerabilityScanner",
    "parse_report",
]
