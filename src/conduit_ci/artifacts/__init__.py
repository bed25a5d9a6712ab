"""Content-addressed artifact storage shared by all stages of a run."""

from conduit_ci.artifacts.store import DEFAULT_MAX_RUNS, DEFAULT_TTL_HOURS, ArtifactStore, GcReport

__all__ = ["DEFAULT_MAX_RUNS", "DEFAULT_TTL_HOURS", "ArtifactStore", "GcReport"]
