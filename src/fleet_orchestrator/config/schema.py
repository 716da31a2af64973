"""
fleet-orchestrator — configuration schema and validation.

File: src/fleet_orchestrator/config/schema.py

Purpose
- Own the built-in defaults for every ``fleet.toml`` section and the rules a
  merged config must satisfy before a run may start.

Functional requirements
- Validation reports every problem at once as ``section.key: message`` pairs
  instead of stopping at the first one.
- Unknown keys are rejected; a key that looks like a credential gets a
  dedicated message because the agent reads its own credentials.
- Profiles (``[profiles.<name>]``) are partial overlays of the run sections and
  are validated on their own before they can be applied.
- Built-in profiles: ``strict``, ``permissive`` and ``fast``.

Non-functional requirements
- Deterministic: merges and redacted dumps iterate keys in sorted order.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from fleet_orchestrator.constants import CONFIG_SCHEMA_VERSION, LOCK_DIR, LOG_DIR, STATE_DIR
from fleet_orchestrator.security.redaction import is_sensitive_key

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive", "fast")

DRIVER_CHOICES: Final[tuple[str, ...]] = ("tmux", "local", "mock")
MODE_CHOICES: Final[tuple[str, ...]] = ("plan", "apply", "full")
TASK_CHOICES: Final[tuple[str, ...]] = ("commit", "release")
PUSH_POLICY_CHOICES: Final[tuple[str, ...]] = ("none", "push")
DENYLIST_MODE_CHOICES: Final[tuple[str, ...]] = ("strict", "filter")
SCANNER_CHOICES: Final[tuple[str, ...]] = ("auto", "gitleaks", "detect-secrets", "heuristic")
LOG_LEVEL_CHOICES: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

CONFIG_REDACTED: Final[str] = "<redacted>"

# Directory settings resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_dir"),
    ("paths", "lock_dir"),
    ("observability", "log_dir"),
)

_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")


class MetaConfig(TypedDict):
    schema_version: int


class RunConfig(TypedDict):
    parallelism: int
    mode: Literal["plan", "apply", "full"]
    task: Literal["commit", "release"]
    push_policy: Literal["none", "push"]


class SessionConfig(TypedDict):
    driver: Literal["tmux", "local", "mock"]
    agent_command: str
    spawn_timeout_seconds: float
    idle_seconds: float
    poll_interval_seconds: float
    chunk_size: int
    history_lines: int


class TimeoutsConfig(TypedDict):
    planning_seconds: float
    validating_seconds: float
    executing_seconds: float


class PreflightConfig(TypedDict):
    max_untracked: int
    require_identity: bool
    check_whitespace: bool


class GuardrailsConfig(TypedDict):
    denylist_mode: Literal["strict", "filter"]
    denylist_extra: list[str]
    max_file_bytes: int
    allow_binary: bool
    secret_scanner: Literal["auto", "gitleaks", "detect-secrets", "heuristic"]


class GovernorSettings(TypedDict):
    base_delay_seconds: float
    max_delay_seconds: float
    jitter_ratio: float
    breaker_threshold: int
    breaker_window_seconds: float
    breaker_cooldown_seconds: float


class QualityConfig(TypedDict):
    gates: list[str]
    gate_timeout_seconds: float


class LocksConfig(TypedDict):
    stale_after_seconds: float
    lock_timeout_seconds: float


class PathsConfig(TypedDict):
    state_dir: str
    lock_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    log_to_stderr: bool


class ProfileOverlay(TypedDict, total=False):
    run: dict[str, object]
    session: dict[str, object]
    timeouts: dict[str, object]
    preflight: dict[str, object]
    guardrails: dict[str, object]
    governor: dict[str, object]
    quality: dict[str, object]
    locks: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class FleetConfig(TypedDict):
    meta: MetaConfig
    run: RunConfig
    session: SessionConfig
    timeouts: TimeoutsConfig
    preflight: PreflightConfig
    guardrails: GuardrailsConfig
    governor: GovernorSettings
    quality: QualityConfig
    locks: LocksConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[FleetConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "run": {
        "parallelism": 2,
        "mode": "full",
        "task": "commit",
        "push_policy": "none",
    },
    "session": {
        "driver": "tmux",
        "agent_command": "claude",
        "spawn_timeout_seconds": 30.0,
        "idle_seconds": 5.0,
        "poll_interval_seconds": 0.5,
        "chunk_size": 4000,
        "history_lines": 5000,
    },
    "timeouts": {
        "planning_seconds": 900.0,
        "validating_seconds": 120.0,
        "executing_seconds": 300.0,
    },
    "preflight": {
        "max_untracked": 1000,
        "require_identity": True,
        "check_whitespace": True,
    },
    "guardrails": {
        "denylist_mode": "strict",
        "denylist_extra": [],
        "max_file_bytes": 10 * 1024 * 1024,
        "allow_binary": False,
        "secret_scanner": "auto",
    },
    "governor": {
        "base_delay_seconds": 30.0,
        "max_delay_seconds": 900.0,
        "jitter_ratio": 0.25,
        "breaker_threshold": 5,
        "breaker_window_seconds": 300.0,
        "breaker_cooldown_seconds": 60.0,
    },
    "quality": {
        "gates": [],
        "gate_timeout_seconds": 600.0,
    },
    "locks": {
        "stale_after_seconds": 3600.0,
        "lock_timeout_seconds": 30.0,
    },
    "paths": {
        "state_dir": str(STATE_DIR),
        "lock_dir": str(LOCK_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "redact_secrets": True,
        "log_to_stderr": False,
    },
    "profiles": {
        "strict": {
            "guardrails": {"denylist_mode": "strict", "allow_binary": False},
            "preflight": {"require_identity": True, "check_whitespace": True},
            "run": {"push_policy": "none"},
        },
        "permissive": {
            "guardrails": {"denylist_mode": "filter", "allow_binary": True},
            "preflight": {"check_whitespace": False},
        },
        "fast": {
            "run": {"parallelism": 8},
            "session": {"idle_seconds": 2.0},
            "governor": {"base_delay_seconds": 10.0},
        },
    },
}

_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "run",
    "session",
    "timeouts",
    "preflight",
    "guardrails",
    "governor",
    "quality",
    "locks",
    "paths",
    "observability",
)
# Profiles may overlay everything except ``meta``.
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = _SECTIONS[1:]


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized mapping, or ``None`` when any issue was found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """A config failed validation; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


# ---------------------------------------------------------------------------
# Field checks
# ---------------------------------------------------------------------------

# Returned by a check when the value was rejected (and an issue recorded).
_REJECTED: Final = object()

_Check = Callable[[object, str, _Issues], object]


def _text(value: object, path: str, issues: _Issues) -> object:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return _REJECTED
    stripped = value.strip()
    if not stripped:
        issues.add(path, "must not be empty")
        return _REJECTED
    return stripped


def _directory(value: object, path: str, issues: _Issues) -> object:
    text = _text(value, path, issues)
    if isinstance(text, str) and "\x00" in text:
        issues.add(path, "must not contain NUL bytes")
        return _REJECTED
    return text


def _flag(value: object, path: str, issues: _Issues) -> object:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return _REJECTED


def _patterns(value: object, path: str, issues: _Issues) -> object:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return _REJECTED
    patterns: list[str] = []
    for index, item in enumerate(value):
        text = _text(item, f"{path}[{index}]", issues)
        if text is _REJECTED:
            return _REJECTED
        patterns.append(str(text))
    return patterns


def _integer(*, minimum: int) -> _Check:
    def check(value: object, path: str, issues: _Issues) -> object:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return _REJECTED
        if value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return _REJECTED
        return value

    return check


def _seconds(*, minimum: float, below: float | None = None) -> _Check:
    def check(value: object, path: str, issues: _Issues) -> object:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {type(value).__name__}")
            return _REJECTED
        number = float(value)
        if not math.isfinite(number):
            issues.add(path, "must be finite")
            return _REJECTED
        if number < minimum:
            issues.add(path, f"must be >= {minimum}")
            return _REJECTED
        if below is not None and number >= below:
            issues.add(path, f"must be < {below}")
            return _REJECTED
        return number

    return check


def _choice(choices: tuple[str, ...]) -> _Check:
    expected = ", ".join(sorted(choices))

    def check(value: object, path: str, issues: _Issues) -> object:
        text = _text(value, path, issues)
        if text is _REJECTED:
            return _REJECTED
        if text not in choices:
            issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
            return _REJECTED
        return text

    return check


_FIELDS: Final[dict[str, dict[str, _Check]]] = {
    "meta": {"schema_version": _integer(minimum=1)},
    "run": {
        "parallelism": _integer(minimum=1),
        "mode": _choice(MODE_CHOICES),
        "task": _choice(TASK_CHOICES),
        "push_policy": _choice(PUSH_POLICY_CHOICES),
    },
    "session": {
        "driver": _choice(DRIVER_CHOICES),
        "agent_command": _text,
        "spawn_timeout_seconds": _seconds(minimum=0.1),
        "idle_seconds": _seconds(minimum=0.0),
        "poll_interval_seconds": _seconds(minimum=0.01),
        "chunk_size": _integer(minimum=1),
        "history_lines": _integer(minimum=100),
    },
    "timeouts": {
        "planning_seconds": _seconds(minimum=0.1),
        "validating_seconds": _seconds(minimum=0.1),
        "executing_seconds": _seconds(minimum=0.1),
    },
    "preflight": {
        "max_untracked": _integer(minimum=0),
        "require_identity": _flag,
        "check_whitespace": _flag,
    },
    "guardrails": {
        "denylist_mode": _choice(DENYLIST_MODE_CHOICES),
        "denylist_extra": _patterns,
        "max_file_bytes": _integer(minimum=0),
        "allow_binary": _flag,
        "secret_scanner": _choice(SCANNER_CHOICES),
    },
    "governor": {
        "base_delay_seconds": _seconds(minimum=0.1),
        "max_delay_seconds": _seconds(minimum=0.1),
        "jitter_ratio": _seconds(minimum=0.0, below=1.0),
        "breaker_threshold": _integer(minimum=1),
        "breaker_window_seconds": _seconds(minimum=1.0),
        "breaker_cooldown_seconds": _seconds(minimum=0.1),
    },
    "quality": {
        "gates": _patterns,
        "gate_timeout_seconds": _seconds(minimum=0.1),
    },
    "locks": {
        "stale_after_seconds": _seconds(minimum=1.0),
        "lock_timeout_seconds": _seconds(minimum=0.0),
    },
    "paths": {"state_dir": _directory, "lock_dir": _directory},
    "observability": {
        "log_level": _choice(LOG_LEVEL_CHOICES),
        "log_dir": _directory,
        "redact_secrets": _flag,
        "log_to_stderr": _flag,
    },
}


def _schema_version_is_current(section: dict[str, Any], path: str, issues: _Issues) -> None:
    version = section.get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.add(f"{path}.schema_version", migration_guidance(version))


def _delay_ceiling_covers_base(section: dict[str, Any], path: str, issues: _Issues) -> None:
    base = section.get("base_delay_seconds")
    ceiling = section.get("max_delay_seconds")
    if isinstance(base, float) and isinstance(ceiling, float) and ceiling < base:
        issues.add(f"{path}.max_delay_seconds", "must be >= base_delay_seconds")


_SECTION_RULES: Final[dict[str, Callable[[dict[str, Any], str, _Issues], None]]] = {
    "meta": _schema_version_is_current,
    "governor": _delay_ceiling_covers_base,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def default_config() -> FleetConfig:
    """Fresh deep copy of :data:`DEFAULT_CONFIG`."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade fleet.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the fleet-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""

    merged: dict[str, Any] = _copy_tree(base)
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _copy_tree(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Overlay ``[profiles.<profile>]`` onto ``config`` and validate the result."""

    name = (profile or "").strip()
    if not name:
        return _copy_tree(config)

    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError([ConfigValidationIssue("profiles", "profiles section is required")])
    overlay = profiles.get(name)
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    issues = _Issues()
    root = _mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized = _validate_full(root, issues)

    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in normalized.get("profiles", {}):
        issues.add("profiles", f"profile {selected!r} is not defined")

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Return the normalized config or raise :class:`ConfigValidationError`."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with credential-looking values replaced, for display."""

    if not isinstance(config, Mapping):
        return {}
    return _mask(config)


# ---------------------------------------------------------------------------
# Validation walk
# ---------------------------------------------------------------------------


def _validate_full(root: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(root, "", issues, allowed={*_SECTIONS, "profiles"}, required=_SECTIONS)
    out = _validate_sections(root, "", _SECTIONS, issues, partial=False)

    if "profiles" in root:
        profiles = _mapping(root["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, issues)

    session = out.get("session", {})
    timeouts = out.get("timeouts", {})
    spawn = session.get("spawn_timeout_seconds")
    planning = timeouts.get("planning_seconds")
    if isinstance(spawn, float) and isinstance(planning, float) and spawn > planning:
        issues.add("session.spawn_timeout_seconds", "must not exceed timeouts.planning_seconds")
    return out


def _validate_profiles(profiles: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        path = f"profiles.{name}"
        if not _PROFILE_NAME.fullmatch(name):
            issues.add(path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _mapping(profiles[name], path, issues)
        if overlay is None:
            continue
        _check_keys(overlay, path, issues, allowed=set(_OVERLAY_SECTIONS))
        out[name] = _validate_sections(overlay, path, _OVERLAY_SECTIONS, issues, partial=True)
    return out


def _validate_sections(
    payload: Mapping[str, object],
    path: str,
    names: Sequence[str],
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in names:
        if payload.get(name) is None:
            continue
        section_path = _join(path, name)
        section = _mapping(payload[name], section_path, issues)
        if section is None:
            continue
        fields = _FIELDS[name]
        _check_keys(
            section, section_path, issues, allowed=set(fields), required=() if partial else fields
        )
        checked: dict[str, Any] = {}
        for key in sorted(section):
            if key in fields:
                value = fields[key](section[key], f"{section_path}.{key}", issues)
                if value is not _REJECTED:
                    checked[key] = value
        rule = _SECTION_RULES.get(name)
        if rule is not None:
            rule(checked, section_path, issues)
        out[name] = checked
    return out


def _check_keys(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    *,
    allowed: set[str],
    required: Sequence[str] | Mapping[str, object] = (),
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        if is_sensitive_key(key):
            issues.add(
                _join(path, key),
                "embedded secret values are forbidden; the agent must read its own credentials",
            )
        else:
            issues.add(_join(path, key), "unknown field")
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _mapping(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            out[key] = item
        else:
            issues.add(path, f"object key must be string, got {type(key).__name__}")
    return out


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _copy_tree(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: _copy_tree(value[key])
            for key in sorted(key for key in value if isinstance(key, str))
        }
    if isinstance(value, list):
        return [_copy_tree(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_copy_tree(item) for item in value)
    return copy.deepcopy(value)


def _mask(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: CONFIG_REDACTED if is_sensitive_key(key) else _mask(value[key])
            for key in sorted(key for key in value if isinstance(key, str))
        }
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CONFIG_REDACTED",
    "DEFAULT_CONFIG",
    "DENYLIST_MODE_CHOICES",
    "DRIVER_CHOICES",
    "LOG_LEVEL_CHOICES",
    "MODE_CHOICES",
    "PATH_FIELDS",
    "PUSH_POLICY_CHOICES",
    "SCANNER_CHOICES",
    "TASK_CHOICES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "FleetConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
