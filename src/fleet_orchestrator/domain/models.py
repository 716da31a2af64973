"""Dataclass domain models shared by every orchestration plane."""

from __future__ import annotations

import re
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Final

from fleet_orchestrator.utils.hashing import sha256_text

REPO_OVERRIDE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "push_policy",
        "max_untracked",
        "max_file_bytes",
        "allow_binary",
        "denylist_extra",
        "quality_gates",
    }
)

_LEASE_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


class ExecutionMode(StrEnum):
    PLAN = "plan"
    APPLY = "apply"
    FULL = "full"


class TaskKind(StrEnum):
    COMMIT = "commit"
    RELEASE = "release"


class PushPolicy(StrEnum):
    NONE = "none"
    PUSH = "push"


class RepoStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    INTERRUPTED = "interrupted"


class RunLifecycle(StrEnum):
    INITIALIZED = "initialized"
    PLANNED = "planned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


_RUN_TRANSITIONS: Final[dict[RunLifecycle, frozenset[RunLifecycle]]] = {
    RunLifecycle.INITIALIZED: frozenset({RunLifecycle.PLANNED, RunLifecycle.INTERRUPTED}),
    RunLifecycle.PLANNED: frozenset({RunLifecycle.EXECUTING, RunLifecycle.INTERRUPTED}),
    RunLifecycle.EXECUTING: frozenset(
        {RunLifecycle.COMPLETED, RunLifecycle.FAILED, RunLifecycle.INTERRUPTED}
    ),
    RunLifecycle.COMPLETED: frozenset(),
    # Resume re-enters execution from a retained checkpoint.
    RunLifecycle.FAILED: frozenset({RunLifecycle.EXECUTING}),
    RunLifecycle.INTERRUPTED: frozenset({RunLifecycle.EXECUTING}),
}


def can_transition_run(current: RunLifecycle, target: RunLifecycle) -> bool:
    """Return ``True`` when ``current -> target`` is a legal run lifecycle move."""

    return target in _RUN_TRANSITIONS[current]


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with a ``Z`` suffix."""

    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_run_id() -> str:
    """Sortable, collision-resistant run identifier."""

    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"run-{stamp}-{secrets.token_hex(4)}"


@dataclass(frozen=True, slots=True)
class RepositoryTarget:
    """One repository the run will work on."""

    path: Path
    branch: str | None = None
    upstream: str | None = None
    overrides: Mapping[str, object] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        raw = self.path
        if isinstance(raw, str):
            if not raw.strip():
                raise ValueError("repository path must not be empty")
            raw = Path(raw)
        if not isinstance(raw, Path):
            raise TypeError(f"repository path must be a path, got {type(raw).__name__}")
        object.__setattr__(self, "path", raw.expanduser().resolve(strict=False))

        unknown = sorted(set(self.overrides) - REPO_OVERRIDE_KEYS)
        if unknown:
            raise ValueError(f"unsupported repository override(s): {', '.join(unknown)}")
        object.__setattr__(self, "overrides", dict(self.overrides))

    @property
    def repo_id(self) -> str:
        """Canonical identifier: the resolved POSIX path."""

        return self.path.as_posix()

    @property
    def name(self) -> str:
        return self.path.name or self.repo_id

    @property
    def lease_key(self) -> str:
        """Filesystem-safe key used for per-repository leases and archives."""

        slug = _LEASE_SLUG_RE.sub("-", self.name).strip("-") or "repo"
        return f"{slug[:40]}-{sha256_text(self.repo_id)[:12]}"

    def override(self, key: str, default: object) -> object:
        if key not in REPO_OVERRIDE_KEYS:
            raise KeyError(key)
        return self.overrides.get(key, default)

    def to_dict(self) -> dict[str, object]:
        return {
            "path": self.repo_id,
            "branch": self.branch,
            "upstream": self.upstream,
            "overrides": dict(sorted(self.overrides.items())),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> RepositoryTarget:
        path = payload.get("path")
        if not isinstance(path, str):
            raise ValueError("repository target requires a string 'path'")
        branch = payload.get("branch")
        upstream = payload.get("upstream")
        overrides = payload.get("overrides") or {}
        if not isinstance(overrides, Mapping):
            raise ValueError("repository target 'overrides' must be an object")
        return cls(
            path=Path(path),
            branch=branch if isinstance(branch, str) else None,
            upstream=upstream if isinstance(upstream, str) else None,
            overrides=dict(overrides),
        )


@dataclass(frozen=True, slots=True)
class WorkItem:
    """A repository target plus the task to run on it. Immutable once enqueued."""

    target: RepositoryTarget
    mode: ExecutionMode = ExecutionMode.FULL
    task: TaskKind = TaskKind.COMMIT

    @property
    def item_id(self) -> str:
        return self.target.repo_id

    def to_dict(self) -> dict[str, object]:
        return {
            "target": self.target.to_dict(),
            "mode": self.mode.value,
            "task": self.task.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> WorkItem:
        target = payload.get("target")
        if not isinstance(target, Mapping):
            raise ValueError("work item requires a 'target' object")
        return cls(
            target=RepositoryTarget.from_dict(target),
            mode=ExecutionMode(str(payload.get("mode", ExecutionMode.FULL.value))),
            task=TaskKind(str(payload.get("task", TaskKind.COMMIT.value))),
        )


@dataclass(frozen=True, slots=True)
class RepoOutcome:
    """Terminal result for one repository, as recorded in the result ledger."""

    repo_id: str
    action: str
    status: RepoStatus
    duration_seconds: float
    reason: str | None = None
    run_id: str | None = None
    mode: ExecutionMode | None = None
    validation_rejected: bool = False
    timestamp: str = field(default_factory=utc_now_iso)
    detail: Mapping[str, object] = field(default_factory=dict, hash=False)

    @property
    def is_terminal(self) -> bool:
        """Whether this outcome closes the repository for the run."""

        return self.status is not RepoStatus.INTERRUPTED

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "repo": self.repo_id,
            "action": self.action,
            "mode": self.mode.value if self.mode is not None else None,
            "status": self.status.value,
            "duration_seconds": round(self.duration_seconds, 3),
            "reason": self.reason,
            "validation_rejected": self.validation_rejected,
            "timestamp": self.timestamp,
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> RepoOutcome:
        repo = payload.get("repo")
        action = payload.get("action")
        if not isinstance(repo, str) or not isinstance(action, str):
            raise ValueError("ledger entry requires string 'repo' and 'action'")
        duration = payload.get("duration_seconds", 0.0)
        mode = payload.get("mode")
        reason = payload.get("reason")
        run_id = payload.get("run_id")
        timestamp = payload.get("timestamp")
        detail = payload.get("detail")
        return cls(
            repo_id=repo,
            action=action,
            status=RepoStatus(str(payload.get("status"))),
            duration_seconds=float(duration) if isinstance(duration, (int, float)) else 0.0,
            reason=reason if isinstance(reason, str) else None,
            run_id=run_id if isinstance(run_id, str) else None,
            mode=ExecutionMode(mode) if isinstance(mode, str) else None,
            validation_rejected=bool(payload.get("validation_rejected", False)),
            timestamp=timestamp if isinstance(timestamp, str) else utc_now_iso(),
            detail=dict(detail) if isinstance(detail, Mapping) else {},
        )


__all__ = [
    "REPO_OVERRIDE_KEYS",
    "ExecutionMode",
    "PushPolicy",
    "RepoOutcome",
    "RepoStatus",
    "RepositoryTarget",
    "RunLifecycle",
    "TaskKind",
    "WorkItem",
    "can_transition_run",
    "new_run_id",
    "utc_now_iso",
]
