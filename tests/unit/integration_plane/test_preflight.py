"""Unit tests for repository safety preflight."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from fleet_orchestrator.domain.models import PushPolicy, RepositoryTarget
from fleet_orchestrator.integration_plane.git_engine import GitEngineError, GitRepository
from fleet_orchestrator.integration_plane.preflight import (
    REMEDIATIONS,
    PreflightPolicy,
    PreflightReason,
    PreflightResult,
    PreflightValidator,
)


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = f"git command failed: git {' '.join(args)}\nstdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        raise AssertionError(msg)
    return completed


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))


def make_repo(root: Path, name: str = "alpha", *, identity: bool = True) -> Path:
    repo = root / name
    repo.mkdir(parents=True)
    run_git(repo, "init", "-q", "-b", "main")
    run_git(repo, "config", "user.name", "Fleet Tester")
    run_git(repo, "config", "user.email", "fleet@example.com")
    (repo / "README.md").write_text("# alpha\n", encoding="utf-8")
    run_git(repo, "add", "--all")
    run_git(repo, "commit", "-q", "-m", "initial")
    if not identity:
        run_git(repo, "config", "--unset", "user.email")
        run_git(repo, "config", "--unset", "user.name")
    return repo


def check(repo: Path, policy: PreflightPolicy | None = None, **overrides: object) -> PreflightResult:
    target = RepositoryTarget(path=repo, overrides=overrides)
    return PreflightValidator(policy).check(target)


def test_clean_repository_is_safe(tmp_path: Path) -> None:
    result = check(make_repo(tmp_path))

    assert result.safe is True
    assert result.reason is None
    assert result.to_dict()["safe"] is True


def test_every_reason_has_a_remediation() -> None:
    assert set(REMEDIATIONS) == set(PreflightReason)


def test_plain_directory_is_skipped_with_git_init_hint(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    result = check(plain)

    assert result.safe is False
    assert result.reason is PreflightReason.NOT_A_GIT_REPO
    assert result.remediation == "git init"
    assert result.to_dict()["reason"] == "not_a_git_repo"


def test_missing_identity_is_reported_email_first(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, identity=False)

    assert check(repo).reason is PreflightReason.GIT_EMAIL_NOT_CONFIGURED

    run_git(repo, "config", "user.email", "fleet@example.com")
    assert check(repo).reason is PreflightReason.GIT_NAME_NOT_CONFIGURED

    relaxed = PreflightPolicy(require_identity=False)
    run_git(repo, "config", "--unset", "user.email")
    assert check(repo, relaxed).safe is True


@pytest.mark.parametrize(
    ("marker", "reason"),
    [
        ("MERGE_HEAD", PreflightReason.MERGE_IN_PROGRESS),
        ("CHERRY_PICK_HEAD", PreflightReason.CHERRY_PICK_IN_PROGRESS),
        ("rebase-merge", PreflightReason.REBASE_IN_PROGRESS),
        ("rebase-apply", PreflightReason.REBASE_IN_PROGRESS),
    ],
)
def test_operation_in_progress_is_skipped(
    tmp_path: Path, marker: str, reason: PreflightReason
) -> None:
    repo = make_repo(tmp_path)
    sha = run_git(repo, "rev-parse", "HEAD").stdout
    path = repo / ".git" / marker
    if marker.startswith("rebase"):
        path.mkdir()
    else:
        path.write_text(sha, encoding="utf-8")

    result = check(repo)

    assert result.reason is reason
    assert result.remediation == REMEDIATIONS[reason][1]


def test_detached_head_is_skipped(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    run_git(repo, "checkout", "-q", "--detach")

    assert check(repo).reason is PreflightReason.DETACHED_HEAD


def test_missing_upstream_only_matters_when_pushing(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)

    assert check(repo).safe is True
    pushing = PreflightPolicy(push_policy=PushPolicy.PUSH)
    assert check(repo, pushing).reason is PreflightReason.NO_UPSTREAM_BRANCH
    assert check(repo, push_policy="none").safe is True
    assert check(repo, push_policy="push").reason is PreflightReason.NO_UPSTREAM_BRANCH


def test_diverged_upstream_is_skipped(tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    run_git(tmp_path, "init", "-q", "--bare", "-b", "main", str(remote))
    repo = make_repo(tmp_path)
    run_git(repo, "remote", "add", "origin", str(remote))
    run_git(repo, "push", "-q", "-u", "origin", "main")

    other = tmp_path / "other"
    run_git(tmp_path, "clone", "-q", str(remote), str(other))
    run_git(other, "config", "user.name", "Other")
    run_git(other, "config", "user.email", "other@example.com")
    (other / "theirs.txt").write_text("theirs\n", encoding="utf-8")
    run_git(other, "add", "theirs.txt")
    run_git(other, "commit", "-q", "-m", "theirs")
    run_git(other, "push", "-q", "origin", "HEAD:main")

    (repo / "ours.txt").write_text("ours\n", encoding="utf-8")
    run_git(repo, "add", "ours.txt")
    run_git(repo, "commit", "-q", "-m", "ours")
    run_git(repo, "fetch", "-q", "origin")

    result = check(repo)

    assert result.reason is PreflightReason.DIVERGED_FROM_UPSTREAM
    assert result.detail == "ahead 1, behind 1"


def test_whitespace_errors_fail_diff_check(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    (repo / "README.md").write_text("# alpha   \n", encoding="utf-8")

    assert check(repo).reason is PreflightReason.DIFF_CHECK_FAILED
    assert check(repo, PreflightPolicy(check_whitespace=False)).safe is True


def test_untracked_limit_and_per_repo_override(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    for index in range(3):
        (repo / f"new-{index}.txt").write_text("x\n", encoding="utf-8")

    limited = PreflightPolicy(max_untracked=2)
    result = check(repo, limited)
    assert result.reason is PreflightReason.TOO_MANY_UNTRACKED_FILES
    assert result.detail == "3 untracked files (limit 2)"

    assert check(repo, limited, max_untracked=5).safe is True


def test_git_failures_become_git_error(tmp_path: Path) -> None:
    class _Broken(GitRepository):
        def is_repository(self) -> bool:
            raise GitEngineError("git exploded")

    validator = PreflightValidator(repository_factory=lambda target: _Broken(target.path))

    result = validator.check(RepositoryTarget(path=tmp_path))

    assert result.reason is PreflightReason.GIT_ERROR
    assert result.detail == "git exploded"
