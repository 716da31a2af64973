"""Path denylist for agent-proposed plans.

A path is denied when the full path, its basename, any leading directory prefix
(``config/secrets`` for ``config/secrets/prod.yaml``) or any single directory
component matches a glob pattern. Patterns cover secrets, build artifacts,
logs and IDE metadata; callers may extend the set from configuration or the
``FLEET_DENYLIST_EXTRA`` environment variable.
"""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Final

from fleet_orchestrator.constants import DENYLIST_EXTRA_ENV

DEFAULT_DENYLIST_PATTERNS: Final[tuple[str, ...]] = (
    # secrets and credentials
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "id_rsa*",
    "id_ed25519*",
    "credentials.json",
    "secrets.json",
    "*.secret",
    "*.secrets",
    ".netrc",
    ".npmrc",
    ".pypirc",
    # build artifacts and dependencies
    "node_modules",
    "__pycache__",
    "*.pyc",
    "*.pyo",
    "dist",
    "build",
    ".next",
    "target",
    "vendor",
    # logs and temp files
    "*.log",
    "*.tmp",
    "*.temp",
    "*.swp",
    "*.swo",
    "*~",
    ".DS_Store",
    "Thumbs.db",
    # IDE metadata
    ".idea",
    ".vscode",
    "*.iml",
)


@dataclass(frozen=True, slots=True)
class DenylistMatch:
    path: str
    pattern: str
    matched_on: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "pattern": self.pattern, "matched_on": self.matched_on}


def normalize_plan_path(path: str) -> str:
    """Strip leading ``./`` and trailing ``/`` the way plans are compared."""

    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.rstrip("/")


def parse_extra_patterns(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    if raw is None:
        return ()
    items = raw.split() if isinstance(raw, str) else [str(item) for item in raw]
    return tuple(item.strip() for item in items if item.strip())


class Denylist:
    """Immutable pattern set with full-path, basename, prefix and directory matching."""

    def __init__(self, patterns: Iterable[str] = DEFAULT_DENYLIST_PATTERNS) -> None:
        cleaned: list[str] = []
        for pattern in patterns:
            normalized = normalize_plan_path(pattern)
            if normalized and normalized not in cleaned:
                cleaned.append(normalized)
        self._patterns = tuple(cleaned)

    @classmethod
    def from_settings(
        cls,
        extra: str | Iterable[str] | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> Denylist:
        """Defaults plus configured extras plus ``FLEET_DENYLIST_EXTRA``."""

        environ = os.environ if env is None else env
        return cls(
            (
                *DEFAULT_DENYLIST_PATTERNS,
                *parse_extra_patterns(extra),
                *parse_extra_patterns(environ.get(DENYLIST_EXTRA_ENV)),
            )
        )

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def extended(self, extra: str | Iterable[str] | None) -> Denylist:
        return Denylist((*self._patterns, *parse_extra_patterns(extra)))

    def match(self, path: str) -> DenylistMatch | None:
        normalized = normalize_plan_path(path)
        if not normalized:
            return None
        parts = PurePosixPath(normalized).parts
        basename = parts[-1] if parts else normalized
        directories = parts[:-1]
        prefixes = ["/".join(parts[:end]) for end in range(2, len(parts))]
        for pattern in self._patterns:
            if fnmatch.fnmatchcase(normalized, pattern):
                return DenylistMatch(path=path, pattern=pattern, matched_on="path")
            if fnmatch.fnmatchcase(basename, pattern):
                return DenylistMatch(path=path, pattern=pattern, matched_on="basename")
            for directory in directories:
                if fnmatch.fnmatchcase(directory, pattern):
                    return DenylistMatch(path=path, pattern=pattern, matched_on="directory")
            for prefix in prefixes:
                if fnmatch.fnmatchcase(prefix, pattern):
                    return DenylistMatch(path=path, pattern=pattern, matched_on="prefix")
        return None

    def is_denied(self, path: str) -> bool:
        return self.match(path) is not None

    def partition(self, paths: Iterable[str]) -> tuple[list[str], list[DenylistMatch]]:
        """Split ``paths`` into allowed paths and denylist matches, order preserved."""

        allowed: list[str] = []
        denied: list[DenylistMatch] = []
        for path in paths:
            hit = self.match(path)
            if hit is None:
                allowed.append(path)
            else:
                denied.append(hit)
        return allowed, denied


__all__ = [
    "DEFAULT_DENYLIST_PATTERNS",
    "Denylist",
    "DenylistMatch",
    "normalize_plan_path",
    "parse_extra_patterns",
]
