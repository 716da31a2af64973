"""Deterministic git helpers: state queries, repository fingerprints and plan execution.

Plan execution never touches the caller's working tree and only touches the
caller's index for the paths a plan names. Commits are built in a temporary
index (``GIT_INDEX_FILE``) with ``write-tree``/``commit-tree`` and published
with a compare-and-swap ``update-ref``, so a failure before publication leaves
the repository exactly as it was.
"""

from __future__ import annotations

import os
import secrets
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from fleet_orchestrator.domain.errors import PhaseTimeout
from fleet_orchestrator.utils.hashing import sha256_bytes, sha256_parts

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from fleet_orchestrator.utils.concurrency import Deadline
    from fleet_orchestrator.verification_plane.plans import CommitPlan, ReleasePlan

DEFAULT_GIT_TIMEOUT_SECONDS = 120.0


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""

    def __init__(self, message: str, *, reason: str = "git_error") -> None:
        super().__init__(message)
        self.reason = reason


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, reason="git_timeout" if returncode == -1 else "git_command_failed")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class RepoFingerprint:
    """HEAD + index + working-tree digest used to detect concurrent drift."""

    head: str | None
    index_digest: str
    status_digest: str
    content_digest: str
    value: str

    def to_dict(self) -> dict[str, object]:
        return {
            "head": self.head,
            "index_digest": self.index_digest,
            "status_digest": self.status_digest,
            "content_digest": self.content_digest,
            "value": self.value,
        }


@dataclass(frozen=True, slots=True)
class IndexEntry:
    mode: str
    object_id: str
    stage: str
    path: str

    def as_index_info(self) -> str:
        return f"{self.mode} {self.object_id} {self.stage}\t{self.path}"


@dataclass(frozen=True, slots=True)
class CommitRecord:
    sha: str
    message: str
    files: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of applying a validated plan."""

    ok: bool
    branch: str | None = None
    old_head: str | None = None
    new_head: str | None = None
    commits: tuple[CommitRecord, ...] = ()
    tag: str | None = None
    pushed: bool = False
    rolled_back: bool = False
    reason: str | None = None
    error: str | None = None
    touched_files: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "branch": self.branch,
            "old_head": self.old_head,
            "new_head": self.new_head,
            "commits": [
                {"sha": record.sha, "message": record.message, "files": list(record.files)}
                for record in self.commits
            ],
            "tag": self.tag,
            "pushed": self.pushed,
            "rolled_back": self.rolled_back,
            "reason": self.reason,
            "error": self.error,
        }


class GitRepository:
    """Deterministic wrapper around the git CLI for one working tree."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
        timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self._env_overrides = dict(env_overrides or {})
        self._timeout = timeout_seconds
        self._deadline: Deadline | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @contextmanager
    def bounded_by(self, deadline: Deadline | None) -> Iterator[GitRepository]:
        """Cap every git command issued inside the block by ``deadline``."""

        previous = self._deadline
        self._deadline = deadline
        try:
            yield self
        finally:
            self._deadline = previous

    # ----------------------------------------------------------------- queries

    def is_repository(self) -> bool:
        if not self.repo_path.is_dir():
            return False
        result = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def git_dir(self) -> Path:
        return Path(self._run_git(["rev-parse", "--absolute-git-dir"]).stdout.strip())

    def config_value(self, key: str) -> str | None:
        result = self._run_git(["config", "--get", key], check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def is_shallow(self) -> bool:
        result = self._run_git(["rev-parse", "--is-shallow-repository"], check=False)
        return result.stdout.strip() == "true"

    def dirty_submodules(self) -> tuple[str, ...]:
        """Submodules whose checkout differs from the recorded commit or are conflicted."""

        result = self._run_git(["submodule", "status", "--recursive"], check=False)
        if result.returncode != 0:
            return ()
        dirty: list[str] = []
        for line in result.stdout.splitlines():
            if line[:1] in {"+", "U"}:
                fields = line[1:].split()
                dirty.append(fields[1] if len(fields) > 1 else line[1:].strip())
        return tuple(dirty)

    def has_git_path(self, name: str) -> bool:
        """Whether ``<git-dir>/<name>`` exists (operation-in-progress markers)."""

        result = self._run_git(["rev-parse", "--git-path", name], check=False)
        if result.returncode != 0:
            return False
        candidate = Path(result.stdout.strip())
        if not candidate.is_absolute():
            candidate = self.repo_path / candidate
        return candidate.exists()

    def current_branch(self) -> str | None:
        """Short branch name, or ``None`` when HEAD is detached."""

        result = self._run_git(["symbolic-ref", "-q", "--short", "HEAD"], check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def head_sha(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def upstream(self) -> str | None:
        result = self._run_git(
            ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"], check=False
        )
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def ahead_behind(self) -> tuple[int, int] | None:
        """Commits ``(ahead, behind)`` relative to upstream, or ``None`` without one."""

        result = self._run_git(["rev-list", "--left-right", "--count", "HEAD...@{u}"], check=False)
        if result.returncode != 0:
            return None
        fields = result.stdout.split()
        if len(fields) != 2:
            return None
        try:
            return int(fields[0]), int(fields[1])
        except ValueError:
            return None

    def unmerged_paths(self) -> tuple[str, ...]:
        result = self._run_git(["diff", "--name-only", "--diff-filter=U", "-z"], check=False)
        return _split_nul(result.stdout)

    def diff_check_clean(self) -> bool:
        """``git diff --check`` for both unstaged and staged changes."""

        unstaged = self._run_git(["diff", "--check"], check=False)
        staged = self._run_git(["diff", "--cached", "--check"], check=False)
        return unstaged.returncode == 0 and staged.returncode == 0

    def untracked_files(self) -> tuple[str, ...]:
        result = self._run_git(["ls-files", "--others", "--exclude-standard", "-z"], check=False)
        return _split_nul(result.stdout)

    def is_tracked(self, path: str) -> bool:
        result = self._run_git(["ls-files", "--error-unmatch", "--", path], check=False)
        return result.returncode == 0

    def tag_exists(self, tag: str) -> bool:
        result = self._run_git(["rev-parse", "-q", "--verify", f"refs/tags/{tag}"], check=False)
        return result.returncode == 0

    def status_lines(self) -> tuple[str, ...]:
        """``git status --short`` lines, for prompt context."""

        result = self._run_git(["status", "--short", "--untracked-files=all"], check=False)
        return tuple(line for line in result.stdout.splitlines() if line.strip())

    def recent_subjects(self, limit: int = 10) -> tuple[str, ...]:
        if self.head_sha() is None:
            return ()
        result = self._run_git(["log", f"-{max(limit, 1)}", "--format=%s"], check=False)
        return tuple(line for line in result.stdout.splitlines() if line.strip())

    def latest_tag(self) -> str | None:
        result = self._run_git(["describe", "--tags", "--abbrev=0"], check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def state_report(self, *, captured_at: str, log_limit: int = 10) -> str:
        """Plain-text HEAD, branch, status and recent log, for run artifacts."""

        head = self.head_sha()
        lines = [
            f"Captured at: {captured_at}",
            f"Repository: {self.repo_path}",
            f"Branch: {self.current_branch() or '(detached)'}",
            f"HEAD: {head or '(no commits)'}",
            "",
            "git status --short:",
        ]
        lines.extend(self.status_lines() or ("(clean)",))
        lines.extend(("", f"git log --oneline -{log_limit}:"))
        if head is not None:
            log = self._run_git(["log", "--oneline", f"-{max(log_limit, 1)}"], check=False)
            lines.extend(line for line in log.stdout.splitlines() if line.strip())
        else:
            lines.append("(no commits)")
        return "\n".join(lines) + "\n"

    def index_entries(self, paths: Sequence[str]) -> tuple[IndexEntry, ...]:
        if not paths:
            return ()
        result = self._run_git(["ls-files", "-s", "-z", "--", *paths], check=False)
        entries: list[IndexEntry] = []
        for record in _split_nul(result.stdout):
            meta, _, path = record.partition("\t")
            fields = meta.split()
            if len(fields) == 3 and path:
                entries.append(IndexEntry(fields[0], fields[1], fields[2], path))
        return tuple(entries)

    def fingerprint(self) -> RepoFingerprint:
        """Digest of HEAD, the index and every dirty or untracked file's content."""

        head = self.head_sha()
        index_listing = self._run_git(["ls-files", "-s", "-z"], check=False).stdout
        status = self._run_git(
            ["status", "--porcelain=v1", "-z", "--untracked-files=all", "--ignore-submodules=none"],
            check=False,
        ).stdout

        content_parts: list[str] = []
        for path in sorted(_status_paths(status)):
            target = self.repo_path / path
            try:
                digest = sha256_bytes(target.read_bytes()) if target.is_file() else "absent"
            except OSError:
                digest = "unreadable"
            content_parts.extend((path, digest))

        index_digest = sha256_bytes(index_listing.encode("utf-8"))
        status_digest = sha256_bytes(status.encode("utf-8"))
        content_digest = sha256_parts(content_parts)
        value = sha256_parts((head or "unborn", index_digest, status_digest, content_digest))
        return RepoFingerprint(
            head=head,
            index_digest=index_digest,
            status_digest=status_digest,
            content_digest=content_digest,
            value=value,
        )

    # --------------------------------------------------------------- execution

    def apply_commit_plan(
        self,
        plan: CommitPlan,
        *,
        push: bool = False,
    ) -> ExecutionResult:
        """Create one commit per plan group without touching unrelated state."""

        branch = self.current_branch()
        if branch is None:
            return ExecutionResult(ok=False, reason="detached_HEAD", error="HEAD is detached")
        old_head = self.head_sha()
        touched = plan.files
        snapshot = self.index_entries(touched)

        try:
            records, new_head = self._build_commits(plan, parent=old_head)
        except GitEngineError as exc:
            self._logger.warning("plan_commit_build_failed", branch=branch, error=str(exc))
            return ExecutionResult(
                ok=False,
                branch=branch,
                old_head=old_head,
                reason=exc.reason,
                error=str(exc),
                touched_files=touched,
            )

        try:
            self._run_git(
                [
                    "update-ref",
                    "-m",
                    "fleet: apply validated plan",
                    f"refs/heads/{branch}",
                    new_head,
                    old_head or "",
                ]
            )
        except GitCommandError as exc:
            return ExecutionResult(
                ok=False,
                branch=branch,
                old_head=old_head,
                reason="ref_update_failed",
                error=str(exc),
                touched_files=touched,
            )

        try:
            self._run_git(["reset", "-q", "--", *touched])
        except GitCommandError as exc:
            self._rollback(branch, old_head, new_head, touched, snapshot)
            return ExecutionResult(
                ok=False,
                branch=branch,
                old_head=old_head,
                reason="index_sync_failed",
                error=str(exc),
                rolled_back=True,
                touched_files=touched,
            )

        pushed = False
        if push:
            try:
                self.push_branch(branch)
                pushed = True
            except GitEngineError as exc:
                self._rollback(branch, old_head, new_head, touched, snapshot)
                return ExecutionResult(
                    ok=False,
                    branch=branch,
                    old_head=old_head,
                    reason="push_failed",
                    error=str(exc),
                    rolled_back=True,
                    touched_files=touched,
                )

        self._logger.info(
            "plan_commits_applied",
            branch=branch,
            old_head=old_head,
            new_head=new_head,
            commits=len(records),
            pushed=pushed,
        )
        return ExecutionResult(
            ok=True,
            branch=branch,
            old_head=old_head,
            new_head=new_head,
            commits=records,
            pushed=pushed,
            touched_files=touched,
        )

    def apply_release_plan(self, plan: ReleasePlan, *, push: bool = False) -> ExecutionResult:
        """Create an annotated tag at HEAD and optionally push it."""

        head = self.head_sha()
        if head is None:
            return ExecutionResult(ok=False, reason="no_commits", error="repository has no HEAD")
        if self.tag_exists(plan.tag_name):
            return ExecutionResult(
                ok=False,
                old_head=head,
                reason="tag_exists",
                error=f"tag {plan.tag_name!r} already exists",
            )

        message = plan.title or f"Release {plan.version}"
        if plan.body:
            message = f"{message}\n\n{plan.body}"
        try:
            self._run_git(["tag", "-a", plan.tag_name, "-F", "-", head], input_text=message)
        except GitCommandError as exc:
            return ExecutionResult(ok=False, old_head=head, reason="tag_failed", error=str(exc))

        pushed = False
        if push:
            try:
                remote = self._push_remote(self.current_branch())
                self._run_git(
                    ["push", "--porcelain", remote, f"refs/tags/{plan.tag_name}"],
                    timeout=self._timeout,
                )
                pushed = True
            except GitEngineError as exc:
                with self.bounded_by(None):
                    self._run_git(["tag", "-d", plan.tag_name], check=False)
                return ExecutionResult(
                    ok=False,
                    old_head=head,
                    tag=plan.tag_name,
                    reason="push_failed",
                    error=str(exc),
                    rolled_back=True,
                )

        self._logger.info("release_tag_created", tag=plan.tag_name, head=head, pushed=pushed)
        return ExecutionResult(
            ok=True,
            old_head=head,
            new_head=head,
            tag=plan.tag_name,
            pushed=pushed,
            touched_files=plan.files,
        )

    def push_branch(self, branch: str) -> None:
        remote = self._push_remote(branch)
        merge_ref = self.config_value(f"branch.{branch}.merge") or f"refs/heads/{branch}"
        self._run_git(
            ["push", "--porcelain", remote, f"refs/heads/{branch}:{merge_ref}"],
            timeout=self._timeout,
        )

    # ---------------------------------------------------------------- internals

    def _push_remote(self, branch: str | None) -> str:
        remote = self.config_value(f"branch.{branch}.remote") if branch else None
        if remote is None:
            raise GitEngineError("no upstream remote configured for push", reason="no_upstream_branch")
        return remote

    def _build_commits(
        self, plan: CommitPlan, *, parent: str | None
    ) -> tuple[tuple[CommitRecord, ...], str]:
        records: list[CommitRecord] = []
        with self._isolated_index(parent) as index_env:
            current_parent = parent
            parent_tree = (
                self._run_git(["rev-parse", f"{parent}^{{tree}}"]).stdout.strip()
                if parent is not None
                else None
            )
            for group in plan.commits:
                self._run_git(["add", "-A", "--", *group.files], env=index_env)
                tree = self._run_git(["write-tree"], env=index_env).stdout.strip()
                if tree == parent_tree:
                    raise GitEngineError(
                        f"commit {group.message!r} has no changes", reason="empty_commit"
                    )
                args = ["commit-tree", tree]
                if current_parent is not None:
                    args.extend(["-p", current_parent])
                args.extend(["-F", "-"])
                sha = self._run_git(args, input_text=group.message + "\n").stdout.strip()
                records.append(CommitRecord(sha=sha, message=group.message, files=group.files))
                current_parent = sha
                parent_tree = tree
        if current_parent is None:
            raise GitEngineError("plan has no commit groups", reason="empty_commit")
        return tuple(records), current_parent

    @contextmanager
    def _isolated_index(self, parent: str | None) -> Iterator[dict[str, str]]:
        index_path = self.git_dir() / f"fleet-index-{secrets.token_hex(8)}"
        env = {"GIT_INDEX_FILE": str(index_path)}
        try:
            if parent is None:
                self._run_git(["read-tree", "--empty"], env=env)
            else:
                self._run_git(["read-tree", parent], env=env)
            yield env
        finally:
            index_path.unlink(missing_ok=True)

    def _rollback(
        self,
        branch: str,
        old_head: str | None,
        new_head: str,
        touched: Sequence[str],
        snapshot: Sequence[IndexEntry],
    ) -> None:
        # Rollback must finish even when the phase budget is spent.
        with self.bounded_by(None):
            self._restore(branch, old_head, new_head, touched, snapshot)
        self._logger.warning(
            "plan_rolled_back",
            branch=branch,
            restored_head=old_head,
            files=len(touched),
        )

    def _restore(
        self,
        branch: str,
        old_head: str | None,
        new_head: str,
        touched: Sequence[str],
        snapshot: Sequence[IndexEntry],
    ) -> None:
        if old_head is None:
            self._run_git(["update-ref", "-d", f"refs/heads/{branch}", new_head], check=False)
        else:
            self._run_git(
                ["update-ref", "-m", "fleet: roll back plan", f"refs/heads/{branch}", old_head, new_head],
                check=False,
            )
        self._run_git(["update-index", "--force-remove", "--", *touched], check=False)
        if snapshot:
            info = "".join(f"{entry.as_index_info()}\n" for entry in snapshot)
            self._run_git(["update-index", "--index-info"], check=False, input_text=info)

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        run_env = os.environ.copy()
        run_env["GIT_TERMINAL_PROMPT"] = "0"
        run_env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        run_env.update(self._env_overrides)
        if env:
            run_env.update(env)

        limit = timeout if timeout is not None else self._timeout
        if self._deadline is not None:
            try:
                limit = self._deadline.bound(limit)
            except PhaseTimeout as exc:
                raise GitCommandError(
                    command=command, returncode=-1, stdout="", stderr=str(exc)
                ) from exc

        try:
            completed = subprocess.run(
                command,
                cwd=run_cwd,
                env=run_env,
                text=True,
                capture_output=True,
                input=input_text,
                check=False,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(
                command=command,
                returncode=-1,
                stdout=_as_text(exc.stdout),
                stderr=f"timed out after {exc.timeout}s",
            ) from exc
        except FileNotFoundError as exc:
            raise GitEngineError(f"unable to run git in {run_cwd}: {exc}", reason="git_unavailable") from exc

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


def _split_nul(output: str) -> tuple[str, ...]:
    return tuple(item for item in output.split("\0") if item)


def _status_paths(porcelain_z: str) -> set[str]:
    """Paths named by ``status --porcelain=v1 -z`` output, rename sources included."""

    paths: set[str] = set()
    records = porcelain_z.split("\0")
    index = 0
    while index < len(records):
        record = records[index]
        index += 1
        if len(record) < 4:
            continue
        code, path = record[:2], record[3:]
        paths.add(path)
        if "R" in code or "C" in code:
            if index < len(records) and records[index]:
                paths.add(records[index])
            index += 1
    return paths


def _as_text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


__all__ = [
    "CommandResult",
    "CommitRecord",
    "ExecutionResult",
    "GitCommandError",
    "GitEngineError",
    "GitRepository",
    "IndexEntry",
    "RepoFingerprint",
]
