"""
conduit-ci: unit tests for config loader

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Profile selection from argument, CLI override, and environment.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from conduit_ci.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
)
from conduit_ci.config.schema import ConfigValidationError

REPO_ROOT = Path(__file__).resolve().parents[3]


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[engine]
max_parallelism = 6
""".strip(),
    )

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"CONDUIT_ENGINE_MAX_PARALLELISM": "8"})
    cli_loaded = load_config(
        config_path,
        environ={"CONDUIT_ENGINE_MAX_PARALLELISM": "8"},
        cli_overrides={"engine.max_parallelism": 12},
    )

    assert default_loaded["engine"]["max_parallelism"] == 4
    assert file_loaded["engine"]["max_parallelism"] == 6
    assert env_loaded["engine"]["max_parallelism"] == 8
    assert cli_loaded["engine"]["max_parallelism"] == 12


def test_env_values_are_coerced_to_the_default_types(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "CONDUIT_ENGINE_DEFAULT_TIMEOUT_SECONDS": "90",
            "CONDUIT_ENGINE_INHERIT_HOST_ENV": "off",
            "CONDUIT_OBSERVABILITY_LOG_LEVEL": " WARNING ",
            "CONDUIT_ARTIFACTS_MAX_RUNS": "7",
        },
    )

    assert loaded["engine"]["default_timeout_seconds"] == 90.0
    assert loaded["engine"]["inherit_host_env"] is False
    assert loaded["observability"]["log_level"] == "WARNING"
    assert loaded["artifacts"]["max_runs"] == 7


def test_invalid_env_coercion_raises_actionable_error(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="CONDUIT_ENGINE_MAX_PARALLELISM"):
        load_config(config_path, environ={"CONDUIT_ENGINE_MAX_PARALLELISM": "lots"})
    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(config_path, environ={"CONDUIT_OBSERVABILITY_REDACT_SECRETS": "maybe"})


def test_env_override_still_passes_validation(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={"CONDUIT_ENGINE_MAX_PARALLELISM": "0"})

    assert "engine.max_parallelism" in excinfo.value.paths


def test_profiles_overlay_file_values_but_not_env(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")

    by_argument = load_config(config_path, profile="local", environ={})
    by_env = load_config(config_path, environ={"CONDUIT_PROFILE": "ci"})
    by_cli = load_config(config_path, cli_overrides={"profile": "ci"}, environ={})
    env_wins = load_config(
        config_path,
        profile="local",
        environ={"CONDUIT_ENGINE_MAX_PARALLELISM": "3"},
    )

    assert by_argument["engine"]["max_parallelism"] == 2
    assert by_argument["observability"]["log_level"] == "DEBUG"
    assert by_env["engine"]["inherit_host_env"] is False
    assert by_env["observability"]["log_to_stdout"] is True
    assert by_cli["engine"]["inherit_host_env"] is False
    assert env_wins["engine"]["max_parallelism"] == 3


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError, match="not defined"):
        load_config(config_path, profile="staging", environ={})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")

    env = {
        "CONDUIT_ENGINE_MAX_PARALLELISM": "6",
        "CONDUIT_OBSERVABILITY_REDACT_SECRETS": "false",
    }
    cli = {"artifacts.ttl_hours": 24}

    first = load_config(config_path, environ=env, cli_overrides=cli)
    second = load_config(config_path, environ=env, cli_overrides=cli)

    assert _sha256_json(first) == _sha256_json(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "conduit.toml"
    _write_config(
        config_path,
        """
[paths]
workspace_root = "../repo"
artifact_root = "store/artifacts"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["workspace_root"] == (tmp_path.resolve() / "repo").as_posix()
    assert loaded["paths"]["artifact_root"] == (tmp_path.resolve() / "nested" / "store" / "artifacts").as_posix()
    assert loaded["paths"]["state_db"].startswith((tmp_path.resolve() / "nested").as_posix())


def test_missing_explicit_config_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found") as excinfo:
        load_config(tmp_path / "absent.toml", environ={})
    assert "cannot load config" in str(excinfo.value)

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[engine\nmax_parallelism = 1")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_implicit_config_file_is_optional(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["engine"]["max_parallelism"] == 4
    assert loaded["paths"]["workspace_root"] == tmp_path.resolve().as_posix()


def test_sample_config_loads_cleanly() -> None:
    loaded = load_config(REPO_ROOT / "samples" / "conduit.toml", environ={})

    assert loaded["meta"]["schema_version"] == 1
    assert sorted(loaded["profiles"]) == ["ci", "local"]


def test_dump_effective_config_is_sorted_and_redacted(tmp_path: Path) -> None:
    config_path = tmp_path / "conduit.toml"
    _write_config(config_path, "")
    loaded = load_config(config_path, environ={})
    loaded["observability"]["auth_header"] = "Bearer abc"

    dumped = dump_effective_config(loaded)
    parsed = json.loads(dumped)

    assert parsed["observability"]["auth_header"] == "<redacted>"
    assert "Bearer abc" not in dumped
    assert list(parsed) == sorted(parsed)
