"""Stage execution: subprocess runner and the retrying stage executor."""

from conduit_ci.sandbox.executor import DEFAULT_STAGE_TIMEOUT_SECONDS, StageExecutor, failure_reason_for
from conduit_ci.sandbox.process import (
    DEFAULT_TERMINATION_GRACE_SECONDS,
    ProcessResult,
    ProcessRunner,
    SandboxError,
    SandboxPolicyError,
)

__all__ = [
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "DEFAULT_TERMINATION_GRACE_SECONDS",
    "ProcessResult",
    "ProcessRunner",
    "SandboxError",
    "SandboxPolicyError",
    "StageExecutor",
    "failure_reason_for",
]
