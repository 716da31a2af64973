"""
fleet-orchestrator — layered config loader.

File: src/fleet_orchestrator/config/loader.py

Purpose
- Build the effective run configuration from five layers, lowest first:
  built-in defaults, ``fleet.toml``, the selected profile, ``FLEET_*``
  environment variables and CLI flags.

Functional requirements
- Every layer is validated before the next one is applied so an error names
  the layer that introduced it.
- Environment variables are derived from the default schema:
  ``FLEET_<SECTION>_<KEY>``. Values are coerced to the type of the default;
  list fields split on whitespace the same way ``FLEET_DENYLIST_EXTRA`` does,
  except ``FLEET_QUALITY_GATES`` which holds whole commands separated by ``;``.
- Relative state, lock and log directories resolve against the directory of
  the config file (or the working directory when no file exists).
- ``FLEET_PROFILE`` selects a profile when neither ``--profile`` nor a CLI
  override names one.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from fleet_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "fleet.toml"
ENV_PREFIX: Final[str] = "FLEET_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

# Sections whose fields are never bound to environment variables.
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})

# List fields whose items may contain whitespace.
_LIST_SEPARATORS: Final[dict[tuple[str, ...], str]] = {("quality", "gates"): ";"}

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when a config source cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``config_path=None`` reads ``./fleet.toml`` when it exists; an explicit path
    must exist. ``cli_overrides`` uses dotted keys (``"run.parallelism"``) and
    ignores ``None`` values so unset argparse flags fall through.
    """

    env = dict(os.environ) if environ is None else dict(environ)
    flags = dict(cli_overrides or {})
    source = _config_file(config_path)

    config = assert_valid_config(merge_config(default_config(), _read_toml(source, config_path)))

    selected = _selected_profile(profile, flags, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)

    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _flag_layer(flags))
    config = normalize_paths(config, base_dir=source.parent)
    return assert_valid_config(config, active_profile=selected)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative directory settings, including those inside profiles, against ``base_dir``."""

    result = merge_config({}, config)
    targets: list[tuple[str, ...]] = list(PATH_FIELDS)
    profiles = result.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            targets.extend(("profiles", name, *field) for field in PATH_FIELDS)

    for field in targets:
        parent = _walk(result, field[:-1])
        if parent is None:
            continue
        raw = parent.get(field[-1])
        if isinstance(raw, str):
            parent[field[-1]] = _absolute(raw, base_dir)
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` for display and logs."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    """Environment variable that overrides the config field at ``path``."""

    return ENV_PREFIX + "_".join(part.upper() for part in path)


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, requested: str | Path | None) -> dict[str, Any]:
    if not path.is_file():
        if requested is not None:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(
    explicit: str | None, flags: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = flags.get("profile")
    if candidate is None:
        candidate = env.get(PROFILE_ENV)
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    return candidate.strip() or None


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, default in _bindable_fields(default_config()):
        name = env_name_for_path(path)
        raw = env.get(name)
        if raw is None:
            continue
        coerce = _COERCERS.get(type(default))
        if coerce is None:
            continue
        separator = _LIST_SEPARATORS.get(path)
        try:
            if separator is not None:
                value: object = [part.strip() for part in raw.split(separator) if part.strip()]
            else:
                value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _flag_layer(flags: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(flags):
        value = flags[key]
        if key == "profile" or value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _bindable_fields(
    node: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> list[tuple[tuple[str, ...], object]]:
    fields: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(node):
        if not prefix and key in _UNBOUND_SECTIONS:
            continue
        value = node[key]
        if isinstance(value, Mapping):
            fields.extend(_bindable_fields(value, (*prefix, key)))
        else:
            fields.append(((*prefix, key), value))
    return fields


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


# Keyed by the type of the default value; bool must not fall through to int.
_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    str: lambda raw: raw,
    list: lambda raw: raw.split(),
    tuple: lambda raw: raw.split(),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    node = target
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[path[-1]] = value


def _walk(config: dict[str, Any], path: tuple[str, ...]) -> dict[str, Any] | None:
    node: object = config
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node if isinstance(node, dict) else None


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
