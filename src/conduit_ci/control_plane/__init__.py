"""Control-plane public API."""

from conduit_ci.control_plane.coordinator import RunCoordinator, decide_verdict
from conduit_ci.control_plane.gates import GateDecision, GateEvaluator, evaluate
from conduit_ci.control_plane.scheduler import Advance, DagScheduler, ScheduleDecision, StageOutcome

__all__ = [
    "Advance",
    "DagScheduler",
    "GateDecision",
    "GateEvaluator",
    "RunCoordinator",
    "ScheduleDecision",
    "StageOutcome",
    "decide_verdict",
    "evaluate",
]
