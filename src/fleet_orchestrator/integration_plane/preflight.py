"""Repository safety preflight.

``check`` runs an ordered list of read-only checks and stops at the first
failure. A failing repository is *skipped* by the controller, never failed:
an unsafe precondition is the operator's to fix, and every reason code comes
with a remediation command.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from fleet_orchestrator.domain.models import PushPolicy, RepositoryTarget
from fleet_orchestrator.integration_plane.git_engine import GitEngineError, GitRepository

DEFAULT_MAX_UNTRACKED = 1000


class PreflightReason(StrEnum):
    NOT_A_GIT_REPO = "not_a_git_repo"
    GIT_EMAIL_NOT_CONFIGURED = "git_email_not_configured"
    GIT_NAME_NOT_CONFIGURED = "git_name_not_configured"
    SHALLOW_CLONE = "shallow_clone"
    DIRTY_SUBMODULES = "dirty_submodules"
    REBASE_IN_PROGRESS = "rebase_in_progress"
    MERGE_IN_PROGRESS = "merge_in_progress"
    CHERRY_PICK_IN_PROGRESS = "cherry_pick_in_progress"
    DETACHED_HEAD = "detached_HEAD"
    NO_UPSTREAM_BRANCH = "no_upstream_branch"
    DIVERGED_FROM_UPSTREAM = "diverged_from_upstream"
    UNMERGED_PATHS = "unmerged_paths"
    DIFF_CHECK_FAILED = "diff_check_failed"
    TOO_MANY_UNTRACKED_FILES = "too_many_untracked_files"
    GIT_ERROR = "git_error"


REMEDIATIONS: dict[PreflightReason, tuple[str, str]] = {
    PreflightReason.NOT_A_GIT_REPO: ("not a git repository", "git init"),
    PreflightReason.GIT_EMAIL_NOT_CONFIGURED: (
        "git user.email is not configured",
        'git config user.email "you@example.com"',
    ),
    PreflightReason.GIT_NAME_NOT_CONFIGURED: (
        "git user.name is not configured",
        'git config user.name "Your Name"',
    ),
    PreflightReason.SHALLOW_CLONE: (
        "repository is a shallow clone",
        "git fetch --unshallow",
    ),
    PreflightReason.DIRTY_SUBMODULES: (
        "submodules are out of sync or conflicted",
        "git submodule update --init --recursive",
    ),
    PreflightReason.REBASE_IN_PROGRESS: (
        "a rebase is in progress",
        "git rebase --continue  # or: git rebase --abort",
    ),
    PreflightReason.MERGE_IN_PROGRESS: (
        "a merge is in progress",
        "git merge --continue  # or: git merge --abort",
    ),
    PreflightReason.CHERRY_PICK_IN_PROGRESS: (
        "a cherry-pick is in progress",
        "git cherry-pick --continue  # or: git cherry-pick --abort",
    ),
    PreflightReason.DETACHED_HEAD: (
        "HEAD is detached",
        "git checkout <branch>",
    ),
    PreflightReason.NO_UPSTREAM_BRANCH: (
        "the current branch has no upstream tracking branch",
        "git branch --set-upstream-to=origin/<branch>",
    ),
    PreflightReason.DIVERGED_FROM_UPSTREAM: (
        "local and upstream branches have diverged",
        "git pull --rebase",
    ),
    PreflightReason.UNMERGED_PATHS: (
        "unresolved merge conflicts exist",
        "git status  # resolve conflicts, then git add <paths>",
    ),
    PreflightReason.DIFF_CHECK_FAILED: (
        "whitespace errors or conflict markers in pending changes",
        "git diff --check",
    ),
    PreflightReason.TOO_MANY_UNTRACKED_FILES: (
        "too many untracked files (check .gitignore)",
        "git status --porcelain | head  # then extend .gitignore",
    ),
    PreflightReason.GIT_ERROR: (
        "git failed while inspecting the repository",
        "git status",
    ),
}


@dataclass(frozen=True, slots=True)
class PreflightPolicy:
    push_policy: PushPolicy = PushPolicy.NONE
    max_untracked: int = DEFAULT_MAX_UNTRACKED
    require_identity: bool = True
    check_whitespace: bool = True

    def for_target(self, target: RepositoryTarget) -> PreflightPolicy:
        """Policy with the repository's overrides applied."""

        push = target.override("push_policy", self.push_policy)
        limit = target.override("max_untracked", self.max_untracked)
        return PreflightPolicy(
            push_policy=PushPolicy(str(push)),
            max_untracked=int(limit),  # type: ignore[call-overload]
            require_identity=self.require_identity,
            check_whitespace=self.check_whitespace,
        )


@dataclass(frozen=True, slots=True)
class PreflightResult:
    repo_id: str
    safe: bool
    reason: PreflightReason | None = None
    message: str | None = None
    remediation: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "repo": self.repo_id,
            "safe": self.safe,
            "reason": self.reason.value if self.reason is not None else None,
            "message": self.message,
            "remediation": self.remediation,
            "detail": self.detail,
        }


RepositoryFactory = Callable[[RepositoryTarget], GitRepository]


def _default_factory(target: RepositoryTarget) -> GitRepository:
    return GitRepository(target.path)


class PreflightValidator:
    """Ordered, read-only safety checks for one repository."""

    def __init__(
        self,
        policy: PreflightPolicy | None = None,
        *,
        repository_factory: RepositoryFactory = _default_factory,
    ) -> None:
        self._policy = policy or PreflightPolicy()
        self._factory = repository_factory

    @property
    def policy(self) -> PreflightPolicy:
        return self._policy

    def check(self, target: RepositoryTarget) -> PreflightResult:
        policy = self._policy.for_target(target)
        repo = self._factory(target)
        try:
            return self._check(target, repo, policy)
        except GitEngineError as exc:
            return _reject(target, PreflightReason.GIT_ERROR, detail=str(exc))

    def _check(
        self, target: RepositoryTarget, repo: GitRepository, policy: PreflightPolicy
    ) -> PreflightResult:
        if not repo.is_repository():
            return _reject(target, PreflightReason.NOT_A_GIT_REPO)

        if policy.require_identity:
            if repo.config_value("user.email") is None:
                return _reject(target, PreflightReason.GIT_EMAIL_NOT_CONFIGURED)
            if repo.config_value("user.name") is None:
                return _reject(target, PreflightReason.GIT_NAME_NOT_CONFIGURED)

        if repo.is_shallow():
            return _reject(target, PreflightReason.SHALLOW_CLONE)

        dirty = repo.dirty_submodules()
        if dirty:
            return _reject(target, PreflightReason.DIRTY_SUBMODULES, detail=", ".join(dirty))

        if repo.has_git_path("rebase-merge") or repo.has_git_path("rebase-apply"):
            return _reject(target, PreflightReason.REBASE_IN_PROGRESS)
        if repo.has_git_path("MERGE_HEAD"):
            return _reject(target, PreflightReason.MERGE_IN_PROGRESS)
        if repo.has_git_path("CHERRY_PICK_HEAD"):
            return _reject(target, PreflightReason.CHERRY_PICK_IN_PROGRESS)

        if repo.current_branch() is None:
            return _reject(target, PreflightReason.DETACHED_HEAD)

        if repo.upstream() is None:
            if policy.push_policy is not PushPolicy.NONE:
                return _reject(target, PreflightReason.NO_UPSTREAM_BRANCH)
        else:
            counts = repo.ahead_behind()
            if counts is not None and counts[0] > 0 and counts[1] > 0:
                return _reject(
                    target,
                    PreflightReason.DIVERGED_FROM_UPSTREAM,
                    detail=f"ahead {counts[0]}, behind {counts[1]}",
                )

        unmerged = repo.unmerged_paths()
        if unmerged:
            return _reject(target, PreflightReason.UNMERGED_PATHS, detail=", ".join(unmerged[:10]))

        if policy.check_whitespace and not repo.diff_check_clean():
            return _reject(target, PreflightReason.DIFF_CHECK_FAILED)

        untracked = len(repo.untracked_files())
        if untracked > policy.max_untracked:
            return _reject(
                target,
                PreflightReason.TOO_MANY_UNTRACKED_FILES,
                detail=f"{untracked} untracked files (limit {policy.max_untracked})",
            )

        return PreflightResult(repo_id=target.repo_id, safe=True)


def _reject(
    target: RepositoryTarget, reason: PreflightReason, *, detail: str | None = None
) -> PreflightResult:
    message, remediation = REMEDIATIONS[reason]
    return PreflightResult(
        repo_id=target.repo_id,
        safe=False,
        reason=reason,
        message=message,
        remediation=remediation,
        detail=detail,
    )


__all__ = [
    "DEFAULT_MAX_UNTRACKED",
    "REMEDIATIONS",
    "PreflightPolicy",
    "PreflightReason",
    "PreflightResult",
    "PreflightValidator",
]
