"""
fleet-orchestrator — test suite for the git engine.

File: tests/unit/integration_plane/test_git_engine.py

Purpose
- Validate repository queries, drift fingerprints and plan execution over local
  temporary repositories: isolated commits, empty-commit refusal, annotated
  release tags, pushes and rollback.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from fleet_orchestrator.integration_plane.git_engine import GitCommandError, GitRepository
from fleet_orchestrator.utils.concurrency import Deadline
from fleet_orchestrator.verification_plane.plans import CommitGroup, CommitPlan, ReleasePlan


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


def make_repo(root: Path, name: str = "alpha") -> Path:
    repo = root / name
    repo.mkdir(parents=True)
    run_git(repo, "init", "-q", "-b", "main")
    run_git(repo, "config", "user.name", "Fleet Tester")
    run_git(repo, "config", "user.email", "fleet@example.com")
    (repo / "README.md").write_text("# alpha\n", encoding="utf-8")
    (repo / "notes.txt").write_text("first draft\n", encoding="utf-8")
    (repo / "old.txt").write_text("obsolete\n", encoding="utf-8")
    run_git(repo, "add", "--all")
    run_git(repo, "commit", "-q", "-m", "initial")
    return repo


def head(repo: Path) -> str:
    return run_git(repo, "rev-parse", "HEAD").stdout.strip()


def commit_plan(*groups: tuple[str, tuple[str, ...]]) -> CommitPlan:
    return CommitPlan(commits=tuple(CommitGroup(message=m, files=f) for m, f in groups))


def test_queries_describe_a_clean_repository(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    repo = GitRepository(repo_path)

    assert repo.is_repository() is True
    assert repo.current_branch() == "main"
    assert repo.head_sha() == head(repo_path)
    assert repo.config_value("user.email") == "fleet@example.com"
    assert repo.config_value("fleet.missing") is None
    assert repo.is_shallow() is False
    assert repo.upstream() is None
    assert repo.ahead_behind() is None
    assert repo.unmerged_paths() == ()
    assert repo.diff_check_clean() is True
    assert repo.status_lines() == ()
    assert repo.is_tracked("notes.txt") is True
    assert repo.git_dir() == (repo_path / ".git").resolve()

    (repo_path / "scratch.txt").write_text("x\n", encoding="utf-8")
    assert repo.untracked_files() == ("scratch.txt",)
    assert repo.is_tracked("scratch.txt") is False


def test_plain_directory_is_not_a_repository(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    assert GitRepository(plain).is_repository() is False
    assert GitRepository(tmp_path / "missing").is_repository() is False


def test_operation_markers_are_found_in_git_dir(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    repo = GitRepository(repo_path)

    assert repo.has_git_path("MERGE_HEAD") is False
    (repo_path / ".git" / "MERGE_HEAD").write_text(head(repo_path) + "\n", encoding="utf-8")
    assert repo.has_git_path("MERGE_HEAD") is True


def test_detached_head_has_no_branch(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    run_git(repo_path, "checkout", "-q", "--detach")

    assert GitRepository(repo_path).current_branch() is None


def test_fingerprint_tracks_content_not_just_status(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    repo = GitRepository(repo_path)
    (repo_path / "notes.txt").write_text("draft two\n", encoding="utf-8")

    first = repo.fingerprint()
    assert repo.fingerprint() == first

    # Same porcelain status, different bytes.
    (repo_path / "notes.txt").write_text("draft three\n", encoding="utf-8")
    second = repo.fingerprint()
    assert second.status_digest == first.status_digest
    assert second.content_digest != first.content_digest
    assert second.value != first.value

    run_git(repo_path, "add", "notes.txt")
    third = repo.fingerprint()
    assert third.index_digest != second.index_digest
    assert third.to_dict()["head"] == head(repo_path)


def test_commit_plan_creates_one_commit_per_group(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    before = head(repo_path)
    (repo_path / "notes.txt").write_text("first draft\nmore\n", encoding="utf-8")
    (repo_path / "CHANGES.md").write_text("- entry\n", encoding="utf-8")
    (repo_path / "old.txt").unlink()
    plan = commit_plan(
        ("docs: expand notes", ("notes.txt",)),
        ("chore: changelog and cleanup", ("CHANGES.md", "old.txt")),
    )

    result = GitRepository(repo_path).apply_commit_plan(plan)

    assert result.ok, result.error
    assert result.branch == "main"
    assert result.old_head == before
    assert result.new_head == head(repo_path)
    assert [record.message for record in result.commits] == [
        "docs: expand notes",
        "chore: changelog and cleanup",
    ]
    subjects = run_git(repo_path, "log", "--format=%s", "-3").stdout.splitlines()
    assert subjects == ["chore: changelog and cleanup", "docs: expand notes", "initial"]
    first_files = run_git(
        repo_path, "show", "--name-only", "--format=", result.commits[0].sha
    ).stdout.split()
    assert first_files == ["notes.txt"]
    assert run_git(repo_path, "status", "--porcelain").stdout == ""
    assert result.to_dict()["commits"][1]["files"] == ["CHANGES.md", "old.txt"]


def test_commit_plan_leaves_unrelated_staged_changes_alone(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    (repo_path / "notes.txt").write_text("planned change\n", encoding="utf-8")
    (repo_path / "README.md").write_text("# staged by the operator\n", encoding="utf-8")
    run_git(repo_path, "add", "README.md")

    result = GitRepository(repo_path).apply_commit_plan(commit_plan(("docs: notes", ("notes.txt",))))

    assert result.ok, result.error
    committed = run_git(repo_path, "show", "--name-only", "--format=", "HEAD").stdout.split()
    assert committed == ["notes.txt"]
    assert run_git(repo_path, "diff", "--cached", "--name-only").stdout.split() == ["README.md"]
    assert run_git(repo_path, "diff", "--name-only").stdout.strip() == ""


def test_commit_plan_refuses_detached_head(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    run_git(repo_path, "checkout", "-q", "--detach")
    (repo_path / "notes.txt").write_text("change\n", encoding="utf-8")

    result = GitRepository(repo_path).apply_commit_plan(commit_plan(("docs", ("notes.txt",))))

    assert result.ok is False
    assert result.reason == "detached_HEAD"


def test_commit_group_without_changes_is_refused(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    before = head(repo_path)

    result = GitRepository(repo_path).apply_commit_plan(commit_plan(("noop", ("notes.txt",))))

    assert result.ok is False
    assert result.reason == "empty_commit"
    assert head(repo_path) == before
    assert not list((repo_path / ".git").glob("fleet-index-*"))


def test_plan_without_groups_is_refused_not_asserted(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    before = head(repo_path)

    result = GitRepository(repo_path).apply_commit_plan(commit_plan())

    assert result.ok is False
    assert result.reason == "empty_commit"
    assert head(repo_path) == before


def test_spent_deadline_fails_git_commands_as_timeouts(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    repo = GitRepository(repo_path)
    spent = Deadline("planning", 1.0, expires_at=1.0, clock=lambda: 2.0)

    with repo.bounded_by(spent), pytest.raises(GitCommandError) as excinfo:
        repo.current_branch()

    assert excinfo.value.reason == "git_timeout"
    assert excinfo.value.returncode == -1
    assert repo.current_branch() == "main"


def test_state_report_lists_head_status_and_log(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    (repo_path / "notes.txt").write_text("edited\n", encoding="utf-8")

    report = GitRepository(repo_path).state_report(captured_at="2026-01-01T00:00:00Z", log_limit=5)

    lines = report.splitlines()
    assert lines[0] == "Captured at: 2026-01-01T00:00:00Z"
    assert "Branch: main" in lines
    assert f"HEAD: {head(repo_path)}" in lines
    assert " M notes.txt" in lines
    assert lines[-2] == "git log --oneline -5:"
    assert lines[-1].endswith(" initial")
    assert head(repo_path).startswith(lines[-1].split()[0])


def test_push_failure_rolls_back_branch_and_index(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    before = head(repo_path)
    (repo_path / "notes.txt").write_text("to be pushed\n", encoding="utf-8")
    run_git(repo_path, "config", "branch.main.remote", str(tmp_path / "nowhere.git"))

    result = GitRepository(repo_path).apply_commit_plan(
        commit_plan(("docs: notes", ("notes.txt",))), push=True
    )

    assert result.ok is False
    assert result.reason == "push_failed"
    assert result.rolled_back is True
    assert head(repo_path) == before
    assert run_git(repo_path, "status", "--porcelain").stdout == " M notes.txt\n"


def test_push_updates_upstream(tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    run_git(tmp_path, "init", "-q", "--bare", "-b", "main", str(remote))
    repo_path = make_repo(tmp_path)
    run_git(repo_path, "remote", "add", "origin", str(remote))
    run_git(repo_path, "push", "-q", "-u", "origin", "main")
    (repo_path / "notes.txt").write_text("shared\n", encoding="utf-8")
    repo = GitRepository(repo_path)

    result = repo.apply_commit_plan(commit_plan(("docs: share", ("notes.txt",))), push=True)

    assert result.ok, result.error
    assert result.pushed is True
    assert run_git(remote, "rev-parse", "refs/heads/main").stdout.strip() == result.new_head
    assert repo.ahead_behind() == (0, 0)


def test_release_plan_creates_annotated_tag_once(tmp_path: Path) -> None:
    repo_path = make_repo(tmp_path)
    repo = GitRepository(repo_path)
    plan = ReleasePlan(version="2.0.0", tag_name="v2.0.0", title="Release 2.0.0", body="Big one.")

    created = repo.apply_release_plan(plan)

    assert created.ok, created.error
    assert created.tag == "v2.0.0"
    assert repo.tag_exists("v2.0.0")
    assert repo.latest_tag() == "v2.0.0"
    assert run_git(repo_path, "cat-file", "-t", "v2.0.0").stdout.strip() == "tag"
    message = run_git(repo_path, "tag", "-l", "--format=%(contents)", "v2.0.0").stdout
    assert message.startswith("Release 2.0.0\n\nBig one.")

    again = repo.apply_release_plan(plan)
    assert again.ok is False
    assert again.reason == "tag_exists"
