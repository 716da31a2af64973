"""Unit tests for core domain models."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from fleet_orchestrator.domain import errors, models
from fleet_orchestrator.domain.models import (
    ExecutionMode,
    PushPolicy,
    RepoOutcome,
    RepoStatus,
    RepositoryTarget,
    RunLifecycle,
    TaskKind,
    WorkItem,
)


def test_repository_target_resolves_path_and_derives_ids(tmp_path: Path) -> None:
    target = RepositoryTarget(path=tmp_path / "nested" / ".." / "alpha")

    assert target.path == (tmp_path / "alpha").resolve()
    assert target.repo_id == (tmp_path / "alpha").resolve().as_posix()
    assert target.name == "alpha"
    assert re.fullmatch(r"alpha-[0-9a-f]{12}", target.lease_key)


def test_lease_key_is_filesystem_safe_and_distinct_per_path(tmp_path: Path) -> None:
    first = RepositoryTarget(path=tmp_path / "a" / "my repo!")
    second = RepositoryTarget(path=tmp_path / "b" / "my repo!")

    assert first.lease_key.startswith("my-repo-")
    assert first.lease_key != second.lease_key


def test_repository_target_rejects_unknown_overrides(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="unsupported repository override"):
        RepositoryTarget(path=tmp_path, overrides={"rm_rf": True})

    target = RepositoryTarget(path=tmp_path, overrides={"max_untracked": 3})
    assert target.override("max_untracked", 100) == 3
    assert target.override("allow_binary", False) is False
    with pytest.raises(KeyError):
        target.override("not-a-key", None)


def test_work_item_round_trips_through_dict(tmp_path: Path) -> None:
    item = WorkItem(
        target=RepositoryTarget(
            path=tmp_path / "repo",
            branch="main",
            overrides={"push_policy": PushPolicy.PUSH},
        ),
        mode=ExecutionMode.PLAN,
        task=TaskKind.RELEASE,
    )

    restored = WorkItem.from_dict(item.to_dict())

    assert restored.item_id == item.item_id
    assert restored.mode is ExecutionMode.PLAN
    assert restored.task is TaskKind.RELEASE
    assert restored.target.branch == "main"
    assert restored.target.overrides == {"push_policy": "push"}


def test_repo_outcome_terminality_and_serialization() -> None:
    done = RepoOutcome(
        repo_id="/r/a",
        action="commit",
        status=RepoStatus.COMPLETED,
        duration_seconds=1.23456,
        run_id="run-1",
        mode=ExecutionMode.FULL,
    )
    interrupted = RepoOutcome(
        repo_id="/r/b", action="commit", status=RepoStatus.INTERRUPTED, duration_seconds=0.0
    )

    assert done.is_terminal is True
    assert interrupted.is_terminal is False

    payload = done.to_dict()
    assert payload["repo"] == "/r/a"
    assert payload["status"] == "completed"
    assert payload["duration_seconds"] == 1.235
    assert RepoOutcome.from_dict(payload).status is RepoStatus.COMPLETED


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (RunLifecycle.INITIALIZED, RunLifecycle.PLANNED, True),
        (RunLifecycle.PLANNED, RunLifecycle.EXECUTING, True),
        (RunLifecycle.EXECUTING, RunLifecycle.COMPLETED, True),
        (RunLifecycle.EXECUTING, RunLifecycle.INTERRUPTED, True),
        (RunLifecycle.INTERRUPTED, RunLifecycle.EXECUTING, True),
        (RunLifecycle.FAILED, RunLifecycle.EXECUTING, True),
        (RunLifecycle.COMPLETED, RunLifecycle.EXECUTING, False),
        (RunLifecycle.INITIALIZED, RunLifecycle.EXECUTING, False),
        (RunLifecycle.PLANNED, RunLifecycle.COMPLETED, False),
    ],
)
def test_run_lifecycle_transitions(
    current: RunLifecycle, target: RunLifecycle, allowed: bool
) -> None:
    assert models.can_transition_run(current, target) is allowed


def test_new_run_id_is_sortable_and_unique() -> None:
    first = models.new_run_id()
    second = models.new_run_id()

    assert re.fullmatch(r"run-\d{8}T\d{6}Z-[0-9a-f]{8}", first)
    assert first != second


def test_errors_carry_stable_reason_codes() -> None:
    assert errors.DependencyMissing(("git", "tmux")).reason == "dependency_missing"
    assert "git, tmux" in str(errors.DependencyMissing(("git", "tmux"), hint="install them"))
    assert errors.LockTimeout("run", 0, owner_pid=42).owner_pid == 42
    assert "pid 42" in str(errors.LockTimeout("run", 0, owner_pid=42))
    assert errors.PhaseTimeout("planning", 1.5).reason == "phase_timeout"
    assert errors.StateStoreError("disk full").reason == "state_unwritable"
    assert errors.FleetError("x", reason="custom").reason == "custom"
