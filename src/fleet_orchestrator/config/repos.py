"""Repository list loading from CLI arguments and YAML repos files."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import yaml

from fleet_orchestrator.config.loader import ConfigLoadError
from fleet_orchestrator.domain.models import REPO_OVERRIDE_KEYS, PushPolicy, RepositoryTarget

_ENTRY_KEYS = frozenset({"path", "branch", "upstream", "overrides"})


def load_repos_file(path: str | Path) -> list[RepositoryTarget]:
    """Parse a YAML repos file.

    The document is either a list of entries or a mapping with a ``repos`` list.
    Each entry is a path string or a mapping with ``path`` and optional
    ``branch``, ``upstream`` and ``overrides``. Relative paths resolve against
    the file's directory.
    """

    repos_path = Path(path).expanduser().resolve()
    if not repos_path.is_file():
        raise ConfigLoadError(f"repos file not found: {repos_path}")
    try:
        with repos_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"invalid YAML in {repos_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read repos file {repos_path}: {exc}") from exc

    if isinstance(data, Mapping):
        data = data.get("repos")
    if not isinstance(data, list):
        raise ConfigLoadError(f"repos file must contain a list of repositories: {repos_path}")

    base_dir = repos_path.parent
    return [
        _parse_entry(entry, base_dir, f"{repos_path.name}[{index}]")
        for index, entry in enumerate(data)
    ]


def targets_from_paths(paths: Iterable[str | Path]) -> list[RepositoryTarget]:
    return [RepositoryTarget(path=Path(raw)) for raw in paths]


def collect_targets(
    paths: Sequence[str | Path] = (),
    *,
    repos_file: str | Path | None = None,
) -> list[RepositoryTarget]:
    """Merge CLI paths and repos-file entries; the first mention of a repository wins."""

    targets = targets_from_paths(paths)
    if repos_file is not None:
        targets.extend(load_repos_file(repos_file))

    seen: set[str] = set()
    unique: list[RepositoryTarget] = []
    for target in targets:
        if target.repo_id in seen:
            continue
        seen.add(target.repo_id)
        unique.append(target)
    return unique


def _parse_entry(entry: object, base_dir: Path, where: str) -> RepositoryTarget:
    if isinstance(entry, str):
        return RepositoryTarget(path=_resolve(entry, base_dir))
    if not isinstance(entry, Mapping):
        raise ConfigLoadError(f"{where}: expected a path or an object, got {type(entry).__name__}")

    unknown = sorted(str(key) for key in entry if key not in _ENTRY_KEYS)
    if unknown:
        raise ConfigLoadError(f"{where}: unknown field(s): {', '.join(unknown)}")

    raw_path = entry.get("path")
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise ConfigLoadError(f"{where}: 'path' must be a non-empty string")

    branch = _optional_str(entry.get("branch"), f"{where}.branch")
    upstream = _optional_str(entry.get("upstream"), f"{where}.upstream")
    overrides = _parse_overrides(entry.get("overrides"), f"{where}.overrides")
    return RepositoryTarget(
        path=_resolve(raw_path, base_dir),
        branch=branch,
        upstream=upstream,
        overrides=overrides,
    )


def _parse_overrides(raw: object, where: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigLoadError(f"{where}: expected an object")
    unknown = sorted(str(key) for key in raw if key not in REPO_OVERRIDE_KEYS)
    if unknown:
        raise ConfigLoadError(f"{where}: unsupported override(s): {', '.join(unknown)}")

    out: dict[str, Any] = {}
    for key in sorted(raw):
        value = raw[key]
        if key == "push_policy":
            try:
                out[key] = PushPolicy(str(value))
            except ValueError as exc:
                raise ConfigLoadError(f"{where}.push_policy: must be 'none' or 'push'") from exc
        elif key in {"max_untracked", "max_file_bytes"}:
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigLoadError(f"{where}.{key}: must be a non-negative integer")
            out[key] = value
        elif key == "allow_binary":
            if not isinstance(value, bool):
                raise ConfigLoadError(f"{where}.allow_binary: must be a boolean")
            out[key] = value
        elif key == "denylist_extra":
            if isinstance(value, str):
                value = value.split()
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ConfigLoadError(f"{where}.denylist_extra: must be a list of patterns")
            out[key] = tuple(value)
        elif key == "quality_gates":
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ConfigLoadError(f"{where}.quality_gates: must be a list of commands")
            out[key] = tuple(value)
    return out


def _optional_str(value: object, where: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigLoadError(f"{where}: must be a non-empty string")
    return value.strip()


def _resolve(raw: str, base_dir: Path) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate


__all__ = ["collect_targets", "load_repos_file", "targets_from_paths"]
