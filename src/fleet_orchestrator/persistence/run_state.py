"""
fleet-orchestrator — run checkpoint, result ledger and plan archive

File: src/fleet_orchestrator/persistence/run_state.py

Purpose
- Persist enough state to resume an interrupted run without re-executing
  completed repositories.

Functional requirements
- ``RunStateStore.save`` is atomic (temp file + fsync + rename) and is called
  after every repository completes, never batched.
- Read-modify-write updates happen under the ``run-state`` lease so workers in
  separate processes never lose each other's completions.
- The result ledger is append-only JSON lines, one outcome per line, written
  under the ``ledger`` lease.
- Every plan, accepted or rejected, is archived with its prose, fingerprint and
  verdict; ``apply`` mode reads the archive back.
- Per-repository artifacts (git state before and after, pane tail, activity
  snapshots, quality gate results) land under
  ``runs/<run_id>/artifacts/<repo-key>/``. Their content is redacted, and a
  failed artifact write is logged without failing the repository.

Non-functional requirements
- A torn trailing ledger line (crash mid-append) must not make the ledger
  unreadable.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from fleet_orchestrator.constants import (
    ARTIFACTS_DIRNAME,
    LEDGER_FILENAME,
    LEDGER_LOCK_NAME,
    LEDGER_SCHEMA_VERSION,
    PLANS_DIRNAME,
    RUN_STATE_FILENAME,
    RUN_STATE_SCHEMA_VERSION,
    RUNS_DIRNAME,
    STATE_LOCK_NAME,
)
from fleet_orchestrator.domain.errors import IllegalTransitionError, StateStoreError
from fleet_orchestrator.domain.models import (
    RepoOutcome,
    RepositoryTarget,
    RunLifecycle,
    WorkItem,
    can_transition_run,
    utc_now_iso,
)
from fleet_orchestrator.security.redaction import redact_structure, redact_text
from fleet_orchestrator.utils.fs import append_json_line, atomic_write_json, read_json
from fleet_orchestrator.verification_plane.plans import ProposedPlan

if TYPE_CHECKING:
    from fleet_orchestrator.control_plane.locking import PortableMutex


@dataclass(frozen=True, slots=True)
class RunState:
    """Checkpoint for one invocation."""

    run_id: str
    lifecycle: RunLifecycle = RunLifecycle.INITIALIZED
    items: tuple[WorkItem, ...] = ()
    completed: tuple[str, ...] = ()
    in_flight: Mapping[str, str] = field(default_factory=dict)
    last_success: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def transition(self, target: RunLifecycle) -> RunState:
        if target is self.lifecycle:
            return self
        if not can_transition_run(self.lifecycle, target):
            raise IllegalTransitionError("run", self.lifecycle.value, target.value)
        return replace(self, lifecycle=target, updated_at=utc_now_iso())

    def remaining(self) -> tuple[WorkItem, ...]:
        """Items not yet recorded as completed, in their original order."""

        done = set(self.completed)
        return tuple(item for item in self.items if item.item_id not in done)

    def start_item(self, worker_id: str, repo_id: str) -> RunState:
        in_flight = dict(self.in_flight)
        in_flight[worker_id] = repo_id
        return replace(self, in_flight=in_flight, updated_at=utc_now_iso())

    def finish_item(self, worker_id: str, repo_id: str, *, success: bool) -> RunState:
        in_flight = {key: value for key, value in self.in_flight.items() if key != worker_id}
        completed = self.completed if repo_id in self.completed else (*self.completed, repo_id)
        return replace(
            self,
            completed=completed,
            in_flight=in_flight,
            last_success=repo_id if success else self.last_success,
            updated_at=utc_now_iso(),
        )

    def abandon_item(self, worker_id: str) -> RunState:
        """Drop the worker's in-flight marker without completing its item."""

        in_flight = {key: value for key, value in self.in_flight.items() if key != worker_id}
        return replace(self, in_flight=in_flight, updated_at=utc_now_iso())

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": RUN_STATE_SCHEMA_VERSION,
            "run_id": self.run_id,
            "lifecycle": self.lifecycle.value,
            "items": [item.to_dict() for item in self.items],
            "completed": list(self.completed),
            "in_flight": dict(self.in_flight),
            "last_success": self.last_success,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> RunState:
        version = payload.get("schema_version")
        if version != RUN_STATE_SCHEMA_VERSION:
            raise ValueError(f"unsupported run state schema version: {version!r}")
        run_id = payload.get("run_id")
        if not isinstance(run_id, str) or not run_id:
            raise ValueError("run state requires a 'run_id'")
        items = payload.get("items", [])
        completed = payload.get("completed", [])
        in_flight = payload.get("in_flight", {})
        if not isinstance(items, list) or not isinstance(completed, list):
            raise ValueError("run state 'items' and 'completed' must be lists")
        if not isinstance(in_flight, Mapping):
            raise ValueError("run state 'in_flight' must be an object")
        last_success = payload.get("last_success")
        created_at = payload.get("created_at")
        updated_at = payload.get("updated_at")
        return cls(
            run_id=run_id,
            lifecycle=RunLifecycle(str(payload.get("lifecycle"))),
            items=tuple(WorkItem.from_dict(entry) for entry in items),
            completed=tuple(str(entry) for entry in completed),
            in_flight={str(key): str(value) for key, value in in_flight.items()},
            last_success=last_success if isinstance(last_success, str) else None,
            created_at=created_at if isinstance(created_at, str) else utc_now_iso(),
            updated_at=updated_at if isinstance(updated_at, str) else utc_now_iso(),
        )


class RunStateStore:
    """Single checkpoint file under the state directory."""

    def __init__(
        self,
        state_dir: Path | str,
        mutex: PortableMutex,
        *,
        lock_timeout_seconds: float = 30.0,
        logger: Any | None = None,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._path = self._state_dir / RUN_STATE_FILENAME
        self._mutex = mutex
        self._lock_timeout = lock_timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> RunState | None:
        with self._mutex.held(STATE_LOCK_NAME, self._lock_timeout):
            return self._read()

    def save(self, state: RunState) -> None:
        with self._mutex.held(STATE_LOCK_NAME, self._lock_timeout):
            self._write(state)

    def update(self, mutate: Callable[[RunState], RunState]) -> RunState:
        """Apply ``mutate`` to the stored checkpoint under the lease and persist it."""

        with self._mutex.held(STATE_LOCK_NAME, self._lock_timeout):
            current = self._read()
            if current is None:
                raise StateStoreError(f"no run state to update at {self._path}")
            updated = mutate(current)
            self._write(updated)
            return updated

    def delete(self) -> None:
        with self._mutex.held(STATE_LOCK_NAME, self._lock_timeout):
            self._path.unlink(missing_ok=True)
        self._logger.info("run_state_deleted", path=self._path.as_posix())

    def _read(self) -> RunState | None:
        try:
            payload = read_json(self._path)
        except ValueError as exc:
            raise StateStoreError(str(exc)) from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise StateStoreError(f"run state file is malformed: {self._path}")
        try:
            return RunState.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise StateStoreError(f"run state file is malformed: {exc}") from exc

    def _write(self, state: RunState) -> None:
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self._path, state.to_dict())
        except OSError as exc:
            raise StateStoreError(f"unable to persist run state {self._path}: {exc}") from exc


def ledger_path(state_dir: Path | str, run_id: str) -> Path:
    return Path(state_dir) / RUNS_DIRNAME / run_id / LEDGER_FILENAME


class ResultLedger:
    """Append-only per-run outcome log."""

    def __init__(
        self,
        path: Path | str,
        mutex: PortableMutex,
        *,
        lock_timeout_seconds: float = 30.0,
        logger: Any | None = None,
    ) -> None:
        self._path = Path(path)
        self._mutex = mutex
        self._lock_timeout = lock_timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, outcome: RepoOutcome) -> None:
        record = {"schema_version": LEDGER_SCHEMA_VERSION, **outcome.to_dict()}
        with self._mutex.held(LEDGER_LOCK_NAME, self._lock_timeout):
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                append_json_line(self._path, record)
            except OSError as exc:
                raise StateStoreError(f"unable to append to ledger {self._path}: {exc}") from exc

    def read(self) -> list[RepoOutcome]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StateStoreError(f"unable to read ledger {self._path}: {exc}") from exc

        outcomes: list[RepoOutcome] = []
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                if not isinstance(payload, dict):
                    raise ValueError("ledger line is not an object")
                outcomes.append(RepoOutcome.from_dict(payload))
            except ValueError as exc:
                self._logger.warning(
                    "ledger_line_unreadable",
                    path=self._path.as_posix(),
                    line=number,
                    error=str(exc),
                )
        return outcomes

    def latest_by_repo(self) -> dict[str, RepoOutcome]:
        latest: dict[str, RepoOutcome] = {}
        for outcome in self.read():
            latest[outcome.repo_id] = outcome
        return latest


@dataclass(frozen=True, slots=True)
class ArchivedPlan:
    """One archived plan with the verdict it received."""

    repo_id: str
    run_id: str | None
    proposed: ProposedPlan
    verdict: Mapping[str, object]
    prompt_hash: str | None = None
    archived_at: str = field(default_factory=utc_now_iso)

    @property
    def accepted(self) -> bool:
        return self.verdict.get("ok") is True

    def to_dict(self) -> dict[str, object]:
        return {
            "repo_id": self.repo_id,
            "run_id": self.run_id,
            "proposed": self.proposed.to_dict(),
            "verdict": dict(self.verdict),
            "prompt_hash": self.prompt_hash,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> ArchivedPlan:
        repo_id = payload.get("repo_id")
        proposed = payload.get("proposed")
        verdict = payload.get("verdict")
        if not isinstance(repo_id, str) or not isinstance(proposed, Mapping):
            raise ValueError("archived plan requires 'repo_id' and 'proposed'")
        run_id = payload.get("run_id")
        prompt_hash = payload.get("prompt_hash")
        archived_at = payload.get("archived_at")
        return cls(
            repo_id=repo_id,
            run_id=run_id if isinstance(run_id, str) else None,
            proposed=ProposedPlan.from_dict(proposed),
            verdict=dict(verdict) if isinstance(verdict, Mapping) else {},
            prompt_hash=prompt_hash if isinstance(prompt_hash, str) else None,
            archived_at=archived_at if isinstance(archived_at, str) else utc_now_iso(),
        )


class PlanArchive:
    """``<state_dir>/plans/<repo-key>.json``, one file per repository."""

    def __init__(self, state_dir: Path | str) -> None:
        self._root = Path(state_dir) / PLANS_DIRNAME

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, target: RepositoryTarget) -> Path:
        return self._root / f"{target.lease_key}.json"

    def save(self, target: RepositoryTarget, archived: ArchivedPlan) -> Path:
        path = self.path_for(target)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, archived.to_dict())
        except OSError as exc:
            raise StateStoreError(f"unable to archive plan {path}: {exc}") from exc
        return path

    def load(self, target: RepositoryTarget) -> ArchivedPlan | None:
        path = self.path_for(target)
        try:
            payload = read_json(path)
        except ValueError as exc:
            raise StateStoreError(str(exc)) from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise StateStoreError(f"archived plan is malformed: {path}")
        try:
            return ArchivedPlan.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise StateStoreError(f"archived plan is malformed: {exc}") from exc

    def entries(self) -> Iterable[Path]:
        if not self._root.is_dir():
            return ()
        return sorted(self._root.glob("*.json"))


ACTIVITY_FILENAME = "activity.ndjson"


class RepoArtifacts:
    """Audit files for one repository within one run."""

    def __init__(self, root: Path, *, logger: Any | None = None) -> None:
        self._root = root
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def write_text(self, name: str, text: str) -> Path | None:
        path = self._root / name
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            path.write_text(redact_text(text), encoding="utf-8")
        except OSError as exc:
            self._write_failed(path, exc)
            return None
        return path

    def write_json(self, name: str, payload: Mapping[str, object]) -> Path | None:
        path = self._root / name
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, redact_structure(dict(payload)))
        except OSError as exc:
            self._write_failed(path, exc)
            return None
        return path

    def append_activity(self, record: Mapping[str, object]) -> None:
        path = self._root / ACTIVITY_FILENAME
        entry = {"ts": utc_now_iso(), **record}
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            append_json_line(path, redact_structure(entry))
        except OSError as exc:
            self._write_failed(path, exc)

    def _write_failed(self, path: Path, exc: OSError) -> None:
        self._logger.warning("artifact_write_failed", path=path.as_posix(), error=str(exc))


class ArtifactStore:
    """``<state_dir>/runs/<run_id>/artifacts/<repo-key>/`` per repository."""

    def __init__(self, state_dir: Path | str, run_id: str, *, logger: Any | None = None) -> None:
        self._root = Path(state_dir) / RUNS_DIRNAME / run_id / ARTIFACTS_DIRNAME
        self._logger = logger

    @property
    def root(self) -> Path:
        return self._root

    def for_target(self, target: RepositoryTarget) -> RepoArtifacts:
        return RepoArtifacts(self._root / target.lease_key, logger=self._logger)


__all__ = [
    "ArchivedPlan",
    "ArtifactStore",
    "PlanArchive",
    "RepoArtifacts",
    "ResultLedger",
    "RunState",
    "RunStateStore",
    "ledger_path",
]
