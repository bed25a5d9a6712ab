"""
Pipeline definition loader.

Purpose
- Parse a YAML document (or an already-decoded mapping) into an immutable
  ``PipelineDefinition``.

Functional requirements
- Validation is eager and strict: every problem is reported with a field path
  (``stages[2].retry.maxAttempts``) and unknown fields are rejected by name.
- Dependency cycles, duplicate ids and dangling ``dependsOn`` entries are
  rejected when the definition is constructed.
- Nothing invalid reaches the scheduler; a bad file never creates a run.
"""

from __future__ import annotations

import math
import re
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml

from conduit_ci.domain import ids as domain_ids
from conduit_ci.domain.errors import ConfigError, ConfigIssue
from conduit_ci.domain.models import (
    GatePolicy,
    JSONValue,
    PipelineDefinition,
    RetryPolicy,
    Severity,
    StageDefinition,
    TriggerType,
)
from conduit_ci.utils.fs import safe_relative_path

DEFAULT_PIPELINE_TIMEOUT_SECONDS: Final[float] = 3600.0
DEFAULT_MAX_DELAY_MS: Final[int] = 30_000

_TOP_LEVEL_FIELDS: Final[frozenset[str]] = frozenset(
    {"name", "timeoutSeconds", "maxParallelism", "cancelInProgress", "stages"}
)
_STAGE_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "id",
        "command",
        "action",
        "with",
        "dependsOn",
        "timeoutSeconds",
        "retry",
        "gatePolicy",
        "env",
        "outputs",
        "report",
        "triggers",
        "required",
    }
)
_RETRY_FIELDS: Final[frozenset[str]] = frozenset({"maxAttempts", "baseDelayMs", "maxDelayMs"})
_GATE_FIELDS: Final[frozenset[str]] = frozenset({"blockOnSeverities", "maxCount"})
_ENV_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SEVERITY_SPLIT: Final[re.Pattern[str]] = re.compile(r"[|,\s]+")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigIssue(path=path, message=message))

    def items(self) -> tuple[ConfigIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def load_pipeline(path: str | Path, *, default_max_delay_ms: int = DEFAULT_MAX_DELAY_MS) -> PipelineDefinition:
    """Read and parse a YAML pipeline definition from ``path``."""

    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"unable to read pipeline file {source}: {exc}", heading="invalid pipeline definition") from exc
    return parse_pipeline_text(text, source=str(source), default_max_delay_ms=default_max_delay_ms)


def parse_pipeline_text(
    text: str,
    *,
    source: str = "<string>",
    default_max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> PipelineDefinition:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {source}: {exc}", heading="invalid pipeline definition") from exc
    if payload is None:
        raise ConfigError(f"pipeline document {source} is empty", heading="invalid pipeline definition")
    return parse_pipeline(payload, default_max_delay_ms=default_max_delay_ms)


def parse_pipeline(payload: object, *, default_max_delay_ms: int = DEFAULT_MAX_DELAY_MS) -> PipelineDefinition:
    """
    Validate a decoded pipeline document and build the definition.

    Raises ``ConfigError`` listing every issue found. Structural checks (types,
    unknown fields) run first; graph checks run on construction.
    """

    issues = _IssueCollector()
    root = _as_object(payload, "<root>", issues)
    if root is None:
        raise ConfigError(issues.items(), heading="invalid pipeline definition")

    _reject_unknown_keys(root, _TOP_LEVEL_FIELDS, "", issues)
    _require_keys(root, {"name", "stages"}, "", issues)

    name = _as_str(root["name"], "name", issues) if "name" in root else None

    timeout_seconds = DEFAULT_PIPELINE_TIMEOUT_SECONDS
    if "timeoutSeconds" in root:
        parsed_timeout = _as_positive_number(root["timeoutSeconds"], "timeoutSeconds", issues)
        if parsed_timeout is not None:
            timeout_seconds = parsed_timeout

    max_parallelism: int | None = None
    if root.get("maxParallelism") is not None:
        max_parallelism = _as_int(root["maxParallelism"], "maxParallelism", issues, minimum=1)

    cancel_in_progress = False
    if "cancelInProgress" in root:
        cancel_in_progress = bool(_as_bool(root["cancelInProgress"], "cancelInProgress", issues))

    stages: list[StageDefinition] = []
    raw_stages = root.get("stages")
    if "stages" in root:
        if not isinstance(raw_stages, list):
            issues.add("stages", f"expected array, got {type(raw_stages).__name__}")
        elif not raw_stages:
            issues.add("stages", "must declare at least one stage")
        else:
            for index, raw_stage in enumerate(raw_stages):
                stage = _parse_stage(
                    raw_stage,
                    f"stages[{index}]",
                    issues,
                    default_max_delay_ms=default_max_delay_ms,
                )
                if stage is not None:
                    stages.append(stage)

    if issues.has_issues or name is None:
        raise ConfigError(issues.items(), heading="invalid pipeline definition")

    return PipelineDefinition(
        name=name,
        stages=tuple(stages),
        timeout_seconds=timeout_seconds,
        max_parallelism=max_parallelism,
        cancel_in_progress=cancel_in_progress,
    )


def dump_pipeline(definition: PipelineDefinition) -> dict[str, Any]:
    """Render a definition back into its document form (camelCase keys)."""

    stages: list[dict[str, Any]] = []
    for stage in definition.stages:
        item: dict[str, Any] = {"id": stage.id}
        if stage.command:
            item["command"] = list(stage.command)
        if stage.action is not None:
            item["action"] = stage.action
            if stage.params:
                item["with"] = dict(stage.params)
        if stage.depends_on:
            item["dependsOn"] = list(stage.depends_on)
        if stage.timeout_seconds is not None:
            item["timeoutSeconds"] = stage.timeout_seconds
        item["retry"] = {
            "maxAttempts": stage.retry.max_attempts,
            "baseDelayMs": stage.retry.base_delay_ms,
            "maxDelayMs": stage.retry.max_delay_ms,
        }
        if stage.gate_policy is not None:
            policy = stage.gate_policy.to_dict()
            item["gatePolicy"] = {
                "blockOnSeverities": policy["block_on_severities"],
                "maxCount": policy["max_count"],
            }
        if stage.env:
            item["env"] = dict(stage.env)
        if stage.outputs:
            item["outputs"] = list(stage.outputs)
        if stage.report is not None:
            item["report"] = stage.report
        if stage.triggers:
            item["triggers"] = sorted(trigger.value for trigger in stage.triggers)
        if not stage.required:
            item["required"] = False
        stages.append(item)

    document: dict[str, Any] = {
        "name": definition.name,
        "timeoutSeconds": definition.timeout_seconds,
        "stages": stages,
    }
    if definition.max_parallelism is not None:
        document["maxParallelism"] = definition.max_parallelism
    if definition.cancel_in_progress:
        document["cancelInProgress"] = True
    return document


def _parse_stage(
    raw: object,
    path: str,
    issues: _IssueCollector,
    *,
    default_max_delay_ms: int,
) -> StageDefinition | None:
    payload = _as_object(raw, path, issues)
    if payload is None:
        return None

    before = len(issues.items())
    _reject_unknown_keys(payload, _STAGE_FIELDS, path, issues)
    _require_keys(payload, {"id"}, path, issues)

    stage_id: str | None = None
    if "id" in payload:
        stage_id = _as_str(payload["id"], _join(path, "id"), issues)
        if stage_id is not None and not domain_ids.is_valid_stage_id(stage_id):
            issues.add(_join(path, "id"), f"must match {domain_ids.STAGE_ID_PATTERN_DESCRIPTION}")
            stage_id = None

    command: tuple[str, ...] = ()
    action: str | None = None
    if "command" in payload and "action" in payload:
        issues.add(path, "command and action are mutually exclusive")
    elif "command" in payload:
        command = _parse_command(payload["command"], _join(path, "command"), issues)
    elif "action" in payload:
        action = _as_str(payload["action"], _join(path, "action"), issues)
    else:
        issues.add(path, "one of command or action is required")

    params: dict[str, JSONValue] = {}
    if "with" in payload:
        if "action" not in payload:
            issues.add(_join(path, "with"), "only valid together with action")
        params_obj = _as_object(payload["with"], _join(path, "with"), issues)
        if params_obj is not None:
            params = {key: _as_json_value(value) for key, value in params_obj.items()}

    depends_on = _as_str_list(payload.get("dependsOn", []), _join(path, "dependsOn"), issues)

    timeout_seconds: float | None = None
    if payload.get("timeoutSeconds") is not None:
        timeout_seconds = _as_positive_number(payload["timeoutSeconds"], _join(path, "timeoutSeconds"), issues)

    retry = RetryPolicy(max_delay_ms=default_max_delay_ms)
    if "retry" in payload:
        parsed_retry = _parse_retry(payload["retry"], _join(path, "retry"), issues, default_max_delay_ms)
        if parsed_retry is not None:
            retry = parsed_retry

    gate_policy: GatePolicy | None = None
    if payload.get("gatePolicy") is not None:
        gate_policy = _parse_gate_policy(payload["gatePolicy"], _join(path, "gatePolicy"), issues)

    env = _parse_env(payload.get("env", {}), _join(path, "env"), issues)

    outputs: list[str] = []
    for index, item in enumerate(_as_str_list(payload.get("outputs", []), _join(path, "outputs"), issues)):
        checked = _as_relative_path(item, f"{_join(path, 'outputs')}[{index}]", issues)
        if checked is not None:
            outputs.append(checked)

    report: str | None = None
    if payload.get("report") is not None:
        report_text = _as_str(payload["report"], _join(path, "report"), issues)
        if report_text is not None:
            report = _as_relative_path(report_text, _join(path, "report"), issues)

    triggers: set[TriggerType] = set()
    for index, item in enumerate(_as_str_list(payload.get("triggers", []), _join(path, "triggers"), issues)):
        try:
            triggers.add(TriggerType(item))
        except ValueError:
            allowed = ", ".join(sorted(trigger.value for trigger in TriggerType))
            issues.add(f"{_join(path, 'triggers')}[{index}]", f"invalid value {item!r}; expected one of: {allowed}")

    required = True
    if "required" in payload:
        parsed_required = _as_bool(payload["required"], _join(path, "required"), issues)
        if parsed_required is not None:
            required = parsed_required

    if len(issues.items()) != before or stage_id is None:
        return None

    return StageDefinition(
        id=stage_id,
        command=command,
        action=action,
        params=params,
        depends_on=tuple(depends_on),
        timeout_seconds=timeout_seconds,
        retry=retry,
        gate_policy=gate_policy,
        env=env,
        outputs=tuple(outputs),
        report=report,
        triggers=frozenset(triggers),
        required=required,
    )


def _parse_command(value: object, path: str, issues: _IssueCollector) -> tuple[str, ...]:
    if isinstance(value, str):
        try:
            argv = shlex.split(value)
        except ValueError as exc:
            issues.add(path, f"cannot split command: {exc}")
            return ()
        if not argv:
            issues.add(path, "must not be empty")
        return tuple(argv)

    if isinstance(value, list):
        argv_list: list[str] = []
        for index, item in enumerate(value):
            if isinstance(item, bool) or not isinstance(item, (str, int, float)):
                issues.add(f"{path}[{index}]", f"expected string, got {type(item).__name__}")
                continue
            argv_list.append(str(item))
        if not value:
            issues.add(path, "must not be empty")
        return tuple(argv_list)

    issues.add(path, f"expected string or array, got {type(value).__name__}")
    return ()


def _parse_retry(
    value: object,
    path: str,
    issues: _IssueCollector,
    default_max_delay_ms: int,
) -> RetryPolicy | None:
    payload = _as_object(value, path, issues)
    if payload is None:
        return None
    _reject_unknown_keys(payload, _RETRY_FIELDS, path, issues)

    max_attempts = 1
    if "maxAttempts" in payload:
        max_attempts = _as_int(payload["maxAttempts"], _join(path, "maxAttempts"), issues, minimum=1) or 1
    base_delay_ms = 1000
    if "baseDelayMs" in payload:
        parsed_base = _as_int(payload["baseDelayMs"], _join(path, "baseDelayMs"), issues, minimum=0)
        base_delay_ms = parsed_base if parsed_base is not None else base_delay_ms
    max_delay_ms = default_max_delay_ms
    if "maxDelayMs" in payload:
        parsed_max = _as_int(payload["maxDelayMs"], _join(path, "maxDelayMs"), issues, minimum=0)
        max_delay_ms = parsed_max if parsed_max is not None else max_delay_ms

    return RetryPolicy(max_attempts=max_attempts, base_delay_ms=base_delay_ms, max_delay_ms=max_delay_ms)


def _parse_gate_policy(value: object, path: str, issues: _IssueCollector) -> GatePolicy | None:
    payload = _as_object(value, path, issues)
    if payload is None:
        return None
    before = len(issues.items())
    _reject_unknown_keys(payload, _GATE_FIELDS, path, issues)
    _require_keys(payload, {"blockOnSeverities"}, path, issues)

    severities: set[Severity] = set()
    raw = payload.get("blockOnSeverities")
    field_path = _join(path, "blockOnSeverities")
    # Accept both a list and the compact "critical|high" form.
    items = [part for part in _SEVERITY_SPLIT.split(raw) if part] if isinstance(raw, str) else raw
    if raw is not None:
        for index, item in enumerate(_as_str_list(items, field_path, issues)):
            normalized = item.strip().lower()
            try:
                severities.add(Severity(normalized))
            except ValueError:
                allowed = ", ".join(severity.value for severity in Severity)
                issues.add(f"{field_path}[{index}]", f"invalid severity {item!r}; expected one of: {allowed}")

    max_count = 0
    if "maxCount" in payload:
        parsed_count = _as_int(payload["maxCount"], _join(path, "maxCount"), issues, minimum=0)
        max_count = parsed_count if parsed_count is not None else 0

    if len(issues.items()) != before:
        return None
    return GatePolicy(block_on_severities=frozenset(severities), max_count=max_count)


def _parse_env(value: object, path: str, issues: _IssueCollector) -> dict[str, str]:
    payload = _as_object(value, path, issues)
    if payload is None:
        return {}
    env: dict[str, str] = {}
    for key in sorted(payload):
        item = payload[key]
        key_path = _join(path, key)
        if not _ENV_NAME_PATTERN.fullmatch(key):
            issues.add(key_path, "must be an env var name (example: MAVEN_OPTS)")
            continue
        if isinstance(item, bool):
            env[key] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            env[key] = str(item)
        else:
            issues.add(key_path, f"expected scalar value, got {type(item).__name__}")
    return env


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return []
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_relative_path(value: str, path: str, issues: _IssueCollector) -> str | None:
    try:
        return safe_relative_path(value).as_posix()
    except ValueError as exc:
        issues.add(path, str(exc))
        return None


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_positive_number(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0:
        issues.add(path, "must be a finite number > 0")
        return None
    return parsed


def _as_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _as_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item) for item in value]
    return str(value)


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: frozenset[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


__all__ = [
    "DEFAULT_MAX_DELAY_MS",
    "DEFAULT_PIPELINE_TIMEOUT_SECONDS",
    "dump_pipeline",
    "load_pipeline",
    "parse_pipeline",
    "parse_pipeline_text",
]
