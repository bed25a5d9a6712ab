"""
conduit-ci: runtime configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

What this module covers
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Validation returns structured issues (field path + message); unknown keys are
rejected, and keys that look like embedded secrets get a dedicated message.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from conduit_ci.constants import ARTIFACTS_DIR, CONFIG_SCHEMA_VERSION, LOGS_DIR, STATE_DB_PATH
from conduit_ci.domain.errors import ConfigError, ConfigIssue

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("ci", "local")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
_SECTIONS: Final[tuple[str, ...]] = ("meta", "engine", "paths", "artifacts", "observability")
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_SECTIONS) - {"meta"}

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "artifact_root"),
    ("paths", "state_db"),
    ("paths", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class EngineConfig(TypedDict):
    max_parallelism: int
    default_timeout_seconds: float
    termination_grace_seconds: float
    max_backoff_ms: int
    inherit_host_env: bool


class PathsConfig(TypedDict):
    workspace_root: str
    artifact_root: str
    state_db: str
    log_dir: str


class ArtifactsConfig(TypedDict):
    ttl_hours: int
    max_runs: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    engine: dict[str, object]
    paths: dict[str, object]
    artifacts: dict[str, object]
    observability: dict[str, object]


class ConduitConfig(TypedDict):
    meta: MetaConfig
    engine: EngineConfig
    paths: PathsConfig
    artifacts: ArtifactsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[ConduitConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "engine": {
        "max_parallelism": 4,
        "default_timeout_seconds": 3600.0,
        "termination_grace_seconds": 5.0,
        "max_backoff_ms": 30_000,
        "inherit_host_env": True,
    },
    "paths": {
        "workspace_root": ".",
        "artifact_root": ARTIFACTS_DIR.as_posix(),
        "state_db": STATE_DB_PATH.as_posix(),
        "log_dir": LOGS_DIR.as_posix(),
    },
    "artifacts": {
        "ttl_hours": 168,
        "max_runs": 50,
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "ci": {
            "engine": {"inherit_host_env": False},
            "observability": {"log_to_stdout": True},
        },
        "local": {
            "engine": {"max_parallelism": 2},
            "observability": {"log_level": "DEBUG"},
        },
    },
}

ConfigValidationIssue = ConfigIssue


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ConfigError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        super().__init__(issues, heading="invalid runtime config")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ConduitConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade conduit.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the conduit-ci runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None or not profile.strip():
        return materialized
    selected = profile.strip()

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError((ConfigValidationIssue("profiles", "profiles section is required"),))

    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        known = ", ".join(sorted(profiles_raw)) or "<none>"
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined (known: {known})"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {*_SECTIONS, "profiles"}, "", issues)
    _require_keys(payload, set(_SECTIONS), "", issues)

    validators: dict[str, Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]] = {
        "meta": _validate_meta,
        "engine": _validate_engine,
        "paths": _validate_paths,
        "artifacts": _validate_artifacts,
        "observability": _validate_observability,
    }

    out: dict[str, Any] = {}
    for key in _SECTIONS:
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is not None:
            out[key] = validators[key](section, key, issues, False)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles = _as_object(profiles_raw, "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, "profiles", issues, validators)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_engine(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "max_parallelism",
        "default_timeout_seconds",
        "termination_grace_seconds",
        "max_backoff_ms",
        "inherit_host_env",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_parallelism" in payload:
        parsed_parallelism = _as_int(payload["max_parallelism"], _join(path, "max_parallelism"), issues, minimum=1)
        if parsed_parallelism is not None:
            out["max_parallelism"] = parsed_parallelism

    for key in ("default_timeout_seconds", "termination_grace_seconds"):
        if key in payload:
            parsed_seconds = _as_float(payload[key], _join(path, key), issues, minimum=0.0, exclusive=True)
            if parsed_seconds is not None:
                out[key] = parsed_seconds

    if "max_backoff_ms" in payload:
        parsed_backoff = _as_int(payload["max_backoff_ms"], _join(path, "max_backoff_ms"), issues, minimum=0)
        if parsed_backoff is not None:
            out["max_backoff_ms"] = parsed_backoff

    if "inherit_host_env" in payload:
        parsed_inherit = _as_bool(payload["inherit_host_env"], _join(path, "inherit_host_env"), issues)
        if parsed_inherit is not None:
            out["inherit_host_env"] = parsed_inherit
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"workspace_root", "artifact_root", "state_db", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_artifacts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"ttl_hours", "max_runs"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=0)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(payload["log_level"], _join(path, "log_level"), issues, allowed_values=_LOG_LEVELS)
        if parsed_level is not None:
            out["log_level"] = parsed_level

    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    validators: Mapping[str, Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue

        _reject_unknown_keys(profile_obj, set(_OVERLAY_SECTIONS), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS):
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                overlay[section] = validators[section](section_obj, section_path, issues, True)
        out[profile_name] = overlay
    return out


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


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


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


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    exclusive: bool = False,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None:
        if exclusive and parsed <= minimum:
            issues.add(path, f"must be > {minimum:g}")
            return None
        if parsed < minimum:
            issues.add(path, f"must be >= {minimum:g}")
            return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden; pass them to stages through the environment")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConduitConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
