"""
fleet-orchestrator — unit tests for plan guardrails

File: tests/unit/verification_plane/test_guardrails.py

Purpose
- Validate the ordered check pipeline (schema, denylist, size/type, secret scan,
  drift) against real temporary repositories, including denylist filter mode,
  per-repository overrides and the never-accept-a-denied-path property.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from fleet_orchestrator.domain.errors import PhaseTimeout
from fleet_orchestrator.domain.models import RepositoryTarget, TaskKind
from fleet_orchestrator.integration_plane.git_engine import GitRepository, RepoFingerprint
from fleet_orchestrator.security.denylist import Denylist
from fleet_orchestrator.security.secret_scan import ScannerMode, SecretScanner
from fleet_orchestrator.utils.concurrency import Deadline
from fleet_orchestrator.verification_plane.guardrails import (
    CHECK_ORDER,
    DenylistMode,
    GuardrailPolicy,
    Guardrails,
    ValidationReason,
    is_binary_file,
)
from fleet_orchestrator.verification_plane.plans import CommitPlan, ProposedPlan

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    HYPOTHESIS_AVAILABLE = False
else:
    HYPOTHESIS_AVAILABLE = True

AWS_KEY = "AKIA" + "QWERTYUIOPASDFGH"


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


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    path = tmp_path / "alpha"
    path.mkdir()
    run_git(path, "init", "-q", "-b", "main")
    run_git(path, "config", "user.name", "Fleet Tester")
    run_git(path, "config", "user.email", "fleet@example.com")
    (path / "README.md").write_text("# alpha\n", encoding="utf-8")
    run_git(path, "add", "--all")
    run_git(path, "commit", "-q", "-m", "initial")
    (path / "README.md").write_text("# alpha\n\nMore words.\n", encoding="utf-8")
    (path / "notes.txt").write_text("notes\n", encoding="utf-8")
    return path


def guardrails(**policy: object) -> Guardrails:
    policy.setdefault("denylist", Denylist())
    return Guardrails(
        GuardrailPolicy(**policy),  # type: ignore[arg-type]
        scanner=SecretScanner(ScannerMode.HEURISTIC),
    )


def propose(repo: Path, payload: dict[str, object], kind: TaskKind = TaskKind.COMMIT) -> ProposedPlan:
    return ProposedPlan(kind=kind, payload=payload, fingerprint=GitRepository(repo).fingerprint().value)


def commits(*groups: tuple[str, list[str]]) -> dict[str, object]:
    return {"commits": [{"message": message, "files": files} for message, files in groups]}


def test_clean_plan_passes_every_check_in_order(repo: Path) -> None:
    proposed = propose(repo, commits(("docs: readme", ["README.md", "notes.txt"])))

    result = guardrails().validate(proposed, RepositoryTarget(path=repo))

    assert result.ok, result.errors
    assert [check.name for check in result.checks] == list(CHECK_ORDER)
    assert all(check.passed and check.evaluated for check in result.checks)
    assert isinstance(result.plan, CommitPlan)
    assert result.plan.files == ("README.md", "notes.txt")
    assert result.scanner == "heuristic"
    assert result.fingerprint == proposed.fingerprint
    assert result.to_dict()["checks"] == {name: True for name in CHECK_ORDER}


def test_schema_failure_leaves_later_checks_unevaluated(repo: Path) -> None:
    proposed = propose(repo, {"commits": "nope"})

    result = guardrails().validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.SCHEMA
    assert result.plan is None
    assert result.check("schema").evaluated is True
    assert result.check("schema").passed is False
    for name in CHECK_ORDER[1:]:
        assert result.check(name).evaluated is False
        assert result.check(name).passed is False


def test_missing_untracked_file_is_a_schema_error(repo: Path) -> None:
    proposed = propose(repo, commits(("docs", ["ghost.md"])))

    result = guardrails().validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.SCHEMA
    assert "ghost.md: does not exist and is not tracked" in result.errors


def test_deleted_tracked_file_is_allowed(repo: Path) -> None:
    (repo / "README.md").unlink()
    proposed = propose(repo, commits(("chore: drop readme", ["README.md"])))

    assert guardrails().validate(proposed, RepositoryTarget(path=repo)).ok


def test_strict_denylist_rejects_whole_plan(repo: Path) -> None:
    (repo / ".env").write_text("DEBUG=1\n", encoding="utf-8")
    proposed = propose(repo, commits(("chore", ["notes.txt", ".env"])))

    result = guardrails().validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.DENYLIST
    assert [match.path for match in result.denied] == [".env"]
    assert result.check("schema").passed is True
    assert result.check("secret_scan").evaluated is False


def test_denylisted_directory_prefix_rejects_files_below_it(repo: Path) -> None:
    (repo / "config" / "secrets").mkdir(parents=True)
    (repo / "config" / "secrets" / "prod.yaml").write_text("db: local\n", encoding="utf-8")
    proposed = propose(repo, commits(("chore", ["notes.txt", "config/secrets/prod.yaml"])))
    checks = guardrails(denylist=Denylist(["config/secrets"]))

    result = checks.validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.DENYLIST
    assert [(match.path, match.matched_on) for match in result.denied] == [
        ("config/secrets/prod.yaml", "prefix")
    ]


def test_spent_deadline_raises_phase_timeout(repo: Path) -> None:
    proposed = propose(repo, commits(("docs", ["notes.txt"])))
    deadline = Deadline("validating", 1.0, expires_at=1.0, clock=lambda: 5.0)

    with pytest.raises(PhaseTimeout):
        guardrails().validate(proposed, RepositoryTarget(path=repo), deadline=deadline)


def test_filter_mode_drops_denied_files(repo: Path) -> None:
    (repo / "debug.log").write_text("trace\n", encoding="utf-8")
    proposed = propose(repo, commits(("docs", ["notes.txt", "debug.log"])))

    result = guardrails(denylist_mode=DenylistMode.FILTER).validate(
        proposed, RepositoryTarget(path=repo)
    )

    assert result.ok
    assert isinstance(result.plan, CommitPlan)
    assert result.plan.files == ("notes.txt",)
    assert any("filtered denylisted paths" in warning for warning in result.warnings)


def test_filter_mode_rejects_group_left_empty(repo: Path) -> None:
    (repo / "debug.log").write_text("trace\n", encoding="utf-8")
    proposed = propose(repo, commits(("docs", ["notes.txt"]), ("logs", ["debug.log"])))

    result = guardrails(denylist_mode=DenylistMode.FILTER).validate(
        proposed, RepositoryTarget(path=repo)
    )

    assert result.reason is ValidationReason.DENYLIST
    assert "'logs'" in result.check("denylist").detail


def test_repository_overrides_extend_the_denylist_and_limits(repo: Path) -> None:
    (repo / "dump.sql").write_text("select 1;\n" * 100, encoding="utf-8")
    proposed = propose(repo, commits(("data", ["dump.sql"])))
    gate = guardrails()

    assert gate.validate(proposed, RepositoryTarget(path=repo)).ok
    denied = gate.validate(proposed, RepositoryTarget(path=repo, overrides={"denylist_extra": "*.sql"}))
    assert denied.reason is ValidationReason.DENYLIST
    too_big = gate.validate(proposed, RepositoryTarget(path=repo, overrides={"max_file_bytes": 64}))
    assert too_big.reason is ValidationReason.SIZE_LIMIT
    assert "limit 64" in (too_big.check("size_limit").detail or "")


def test_binary_files_need_explicit_permission(repo: Path) -> None:
    (repo / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")
    proposed = propose(repo, commits(("assets", ["logo.png"])))
    gate = guardrails()

    assert is_binary_file(repo / "logo.png")
    rejected = gate.validate(proposed, RepositoryTarget(path=repo))
    assert rejected.reason is ValidationReason.BINARY_FILE
    assert rejected.check("size_limit").passed is False
    allowed = gate.validate(proposed, RepositoryTarget(path=repo, overrides={"allow_binary": True}))
    assert allowed.ok


def test_secret_in_staged_file_is_rejected_without_leaking_value(repo: Path) -> None:
    (repo / "notes.txt").write_text(f"aws = {AWS_KEY}\n", encoding="utf-8")
    proposed = propose(repo, commits(("docs", ["notes.txt"])))

    result = guardrails().validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.SECRET_SCAN
    assert result.findings[0].rule == "aws_access_key"
    assert AWS_KEY not in str(result.to_dict())


def test_google_api_key_in_staged_file_is_rejected(repo: Path) -> None:
    key = "AIza" + "SyC" + "k" * 32
    (repo / "notes.txt").write_text(f"maps_key: {key}\n", encoding="utf-8")
    proposed = propose(repo, commits(("docs", ["notes.txt"])))

    result = guardrails().validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.SECRET_SCAN
    assert [finding.rule for finding in result.findings] == ["google_api_key"]
    assert key not in str(result.to_dict())


def test_repository_change_after_planning_is_drift(repo: Path) -> None:
    proposed = propose(repo, commits(("docs", ["notes.txt"])))
    gate = guardrails()
    assert gate.validate(proposed, RepositoryTarget(path=repo)).ok

    (repo / "notes.txt").write_text("changed underneath\n", encoding="utf-8")
    result = gate.validate(proposed, RepositoryTarget(path=repo))

    assert result.reason is ValidationReason.DRIFT_DETECTED
    assert result.check("secret_scan").passed is True
    assert result.fingerprint != proposed.fingerprint


def test_release_plan_checks_tag_assets_and_changelog(repo: Path) -> None:
    (repo / "CHANGELOG.md").write_text("## 0.9.0\n", encoding="utf-8")
    payload: dict[str, object] = {"version": "1.0.0", "tag_name": "v1.0.0", "changelog": "CHANGELOG.md"}
    gate = guardrails()

    accepted = gate.validate(propose(repo, payload, TaskKind.RELEASE), RepositoryTarget(path=repo))
    assert accepted.ok
    assert any("does not mention version 1.0.0" in warning for warning in accepted.warnings)

    run_git(repo, "tag", "v1.0.0")
    taken = gate.validate(propose(repo, payload, TaskKind.RELEASE), RepositoryTarget(path=repo))
    assert taken.reason is ValidationReason.SCHEMA
    assert "tag_name: tag 'v1.0.0' already exists" in taken.errors

    missing = gate.validate(
        propose(repo, {"version": "1.0.1", "files": ["dist/app.tar.gz"]}, TaskKind.RELEASE),
        RepositoryTarget(path=repo),
    )
    assert missing.reason is ValidationReason.SCHEMA


class _StaticRepository(GitRepository):
    """Skips git: fixed fingerprint, nothing tracked."""

    def fingerprint(self) -> RepoFingerprint:
        return RepoFingerprint(
            head=None, index_digest="i", status_digest="s", content_digest="c", value="static"
        )

    def is_tracked(self, path: str) -> bool:
        return False


_POOL = {
    "src/app.py": "print('hi')\n",
    "docs/guide.md": "# guide\n",
    "notes.txt": "notes\n",
    ".env": "DEBUG=1\n",
    "keys/server.pem": "not really a key\n",
    "build/out.txt": "artifact\n",
    "conf/settings.ini": f"[aws]\nkey = {AWS_KEY}\n",
}
_DENIED = {".env", "keys/server.pem", "build/out.txt"}
_SECRET = {"conf/settings.ini"}


if HYPOTHESIS_AVAILABLE:

    @given(
        groups=st.lists(
            st.lists(st.sampled_from(sorted(_POOL)), min_size=1, max_size=4, unique=True),
            min_size=1,
            max_size=3,
        )
    )
    @settings(max_examples=60, deadline=None)
    def test_accepted_plans_never_touch_denied_or_secret_files(groups: list[list[str]]) -> None:
        with tempfile.TemporaryDirectory() as raw:
            root = Path(raw)
            for rel, content in _POOL.items():
                (root / rel).parent.mkdir(parents=True, exist_ok=True)
                (root / rel).write_text(content, encoding="utf-8")
            payload = commits(*((f"change {index}", files) for index, files in enumerate(groups)))
            proposed = ProposedPlan(kind=TaskKind.COMMIT, payload=payload, fingerprint="static")

            result = guardrails().validate(
                proposed, RepositoryTarget(path=root), repo=_StaticRepository(root)
            )

        touched = {path for files in groups for path in files}
        if touched & _DENIED:
            assert result.reason is ValidationReason.DENYLIST
        elif touched & _SECRET:
            assert result.reason is ValidationReason.SECRET_SCAN
        else:
            assert result.ok
        if result.ok:
            assert result.plan is not None
            assert not set(result.plan.files) & (_DENIED | _SECRET)

else:

    def test_accepted_plans_never_touch_denied_or_secret_files() -> None:
        pytest.skip("hypothesis is not installed")
