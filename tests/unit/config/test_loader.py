"""
fleet-orchestrator — unit tests for runtime config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate precedence, env mapping, path normalization, profiles and redacted
  dumps for the TOML + ``FLEET_`` environment loader.

Functional requirements
- Offline only; every test passes an explicit environment mapping.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

import fleet_orchestrator.config as config_pkg
from fleet_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n", encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(
        config_path,
        """
[run]
parallelism = 3
mode = "plan"

[session]
driver = "local"
""",
    )

    loaded = load_config(
        config_path,
        environ={"FLEET_RUN_PARALLELISM": "5", "FLEET_SESSION_DRIVER": "mock"},
        cli_overrides={"run.parallelism": 7},
    )

    assert loaded["run"]["parallelism"] == 7
    assert loaded["session"]["driver"] == "mock"
    assert loaded["run"]["mode"] == "plan"
    assert loaded["run"]["task"] == "commit"


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, "[run]\nparallelism = 2")

    loaded = load_config(
        config_path,
        environ={
            "FLEET_GUARDRAILS_DENYLIST_EXTRA": " *.bak  secrets_dir ",
            "FLEET_GUARDRAILS_ALLOW_BINARY": "yes",
            "FLEET_SESSION_IDLE_SECONDS": "1.5",
            "FLEET_PREFLIGHT_MAX_UNTRACKED": "12",
            "FLEET_META_SCHEMA_VERSION": "99",
        },
    )

    assert loaded["guardrails"]["denylist_extra"] == ["*.bak", "secrets_dir"]
    assert loaded["guardrails"]["allow_binary"] is True
    assert loaded["session"]["idle_seconds"] == 1.5
    assert loaded["preflight"]["max_untracked"] == 12
    assert loaded["meta"]["schema_version"] == 1
    assert env_name_for_path(("guardrails", "denylist_extra")) == "FLEET_GUARDRAILS_DENYLIST_EXTRA"


def test_quality_gates_from_env_split_on_semicolons(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, "[quality]\ngates = [\"make lint\"]")

    loaded = load_config(
        config_path,
        environ={
            "FLEET_QUALITY_GATES": " make test ;ruff check . ;; ",
            "FLEET_QUALITY_GATE_TIMEOUT_SECONDS": "90",
        },
    )

    assert loaded["quality"]["gates"] == ["make test", "ruff check ."]
    assert loaded["quality"]["gate_timeout_seconds"] == 90.0
    assert load_config(config_path, environ={})["quality"]["gates"] == ["make lint"]


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("FLEET_RUN_PARALLELISM", "many", "must be an integer"),
        ("FLEET_SESSION_IDLE_SECONDS", "soon", "must be a number"),
        ("FLEET_GUARDRAILS_ALLOW_BINARY", "perhaps", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, env_name: str, raw: str, message: str
) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, "[run]\nparallelism = 2")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={env_name: raw})


def test_env_value_failing_validation_is_a_validation_error(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, "[run]\nparallelism = 2")

    with pytest.raises(ConfigValidationError, match="run.parallelism"):
        load_config(config_path, environ={"FLEET_RUN_PARALLELISM": "0"})


def test_explicit_missing_or_malformed_file_is_an_error(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    _write_config(broken, "[run\nparallelism = 2")

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, '[session]\ndriver = "mock"')
    env = {"FLEET_RUN_PARALLELISM": "3"}

    first = load_config(config_path, environ=env)
    second = load_config(config_path, environ=dict(env))

    assert _sha256_json(first) == _sha256_json(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "fleet.toml"
    _write_config(
        config_path,
        """
[paths]
state_dir = "../state"
lock_dir = "/var/lock/fleet"

[observability]
log_dir = "logs"
""",
    )

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["state_dir"] == (tmp_path.resolve() / "state").as_posix()
    assert loaded["paths"]["lock_dir"] == "/var/lock/fleet"
    assert loaded["observability"]["log_dir"] == (tmp_path.resolve() / "conf" / "logs").as_posix()


def test_profile_selection_from_argument_cli_and_env(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, "[profiles.ci]\nrun = { parallelism = 6 }")

    assert load_config(config_path, profile="ci", environ={})["run"]["parallelism"] == 6
    assert load_config(config_path, cli_overrides={"profile": "fast"}, environ={})["run"]["parallelism"] == 8
    from_env = load_config(config_path, environ={"FLEET_PROFILE": "ci", "FLEET_RUN_PARALLELISM": "4"})
    assert from_env["run"]["parallelism"] == 4
    with pytest.raises(ConfigValidationError, match="profile 'missing' is not defined"):
        load_config(config_path, profile="missing", environ={})


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "fleet.toml"
    _write_config(config_path, "[run]\nparallelism = 2")
    loaded = load_config(config_path, environ={})
    loaded["session"]["client_secret"] = "hunter2"

    dumped = dump_effective_config(loaded)

    assert "hunter2" not in dumped
    assert dumped == dump_effective_config(json.loads(json.dumps(loaded)))
    assert json.loads(dumped)["session"]["client_secret"] == "<redacted>"


def test_example_config_loads_with_profile_and_env_override() -> None:
    loaded = load_config(
        REPO_ROOT / "fleet.example.toml",
        profile="nightly",
        environ={"FLEET_SESSION_AGENT_COMMAND": "claude --print"},
    )

    assert loaded["run"]["parallelism"] == 8
    assert loaded["guardrails"]["denylist_mode"] == "filter"
    assert loaded["guardrails"]["denylist_extra"] == ["*.sqlite", "local_settings.py"]
    assert loaded["session"]["agent_command"] == "claude --print"
    assert loaded["paths"]["state_dir"] == (REPO_ROOT / ".fleet" / "state").as_posix()


def test_config_package_exports_loader_and_errors() -> None:
    for name in ("load_config", "ConfigLoadError", "collect_targets", "validate_config"):
        assert name in config_pkg.__all__
        assert hasattr(config_pkg, name)
