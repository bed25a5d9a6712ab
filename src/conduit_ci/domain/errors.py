"""Error taxonomy shared by the loader, executor, gates and coordinator."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class ConduitError(Exception):
    """Base class for all orchestrator errors."""


@dataclass(frozen=True, slots=True)
class ConfigIssue:
    """Single structured validation failure."""

    path: str
    message: str

    def render(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class ConfigError(ConduitError, ValueError):
    """Malformed, cyclic or otherwise invalid configuration. Fatal at load time."""

    def __init__(self, issues: Sequence[ConfigIssue] | str, *, heading: str = "invalid config") -> None:
        if isinstance(issues, str):
            issues = (ConfigIssue(path="", message=issues),)
        self.issues: tuple[ConfigIssue, ...] = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        elif len(self.issues) == 1:
            rendered = self.issues[0].render()
        else:
            rendered = "\n" + "\n".join(f"- {item.render()}" for item in self.issues)
        super().__init__(f"{heading}: {rendered}")

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(item.path for item in self.issues)


class StageExecutionError(ConduitError):
    """A stage attempt failed: non-zero exit or timeout. Retried per policy."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class TransientInfraError(ConduitError):
    """Registry or cluster infrastructure failure expected to clear on retry."""

    retryable = True


class NetworkError(TransientInfraError):
    """Network failure while talking to an external collaborator."""


class AuthError(ConduitError):
    """Credentials were rejected by an external collaborator. Never retried."""

    retryable = False


class StageContractError(ConduitError):
    """A stage broke its declared contract (missing output, unreadable report)."""

    retryable = False

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class GateBlockedError(ConduitError):
    """A gate policy threshold was exceeded. Never retried."""

    retryable = False

    def __init__(self, stage_id: str, summary: str) -> None:
        super().__init__(f"gate blocked stage {stage_id!r}: {summary}")
        self.stage_id = stage_id
        self.summary = summary


class ArtifactNotFoundError(ConduitError, KeyError):
    """Requested artifact is not present in the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "artifact not found"


class ArtifactConflictError(ConduitError):
    """An artifact slot was written twice with different content."""


class UnknownRunError(ConduitError, KeyError):
    """Status or cancel was requested for a run id that does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown run"


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


__all__ = [
    "ArtifactConflictError",
    "ArtifactNotFoundError",
    "AuthError",
    "ConduitError",
    "ConfigError",
    "ConfigIssue",
    "GateBlockedError",
    "NetworkError",
    "StageContractError",
    "StageExecutionError",
    "TransientInfraError",
    "UnknownRunError",
    "is_retryable",
]
