"""
fleet-orchestrator — security guardrails for agent plans

File: src/fleet_orchestrator/verification_plane/guardrails.py

Purpose
- Decide whether an untrusted plan may be executed against a repository.

Functional requirements
- Checks run in a fixed order: schema, denylist, size/type, secret scan, drift.
  The first failure sets the reason code; later checks are reported as not
  evaluated (and not passed).
- Denylist ``strict`` mode fails on any denied path; ``filter`` mode drops
  denied files and fails only when a commit group is left empty.
- The result carries the sanitized, typed plan; execution only ever consumes
  that plan, never the raw agent payload.
- A result is computed fresh per call and never cached.
- An optional phase deadline bounds the whole run of checks.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from fleet_orchestrator.domain.errors import InternalError
from fleet_orchestrator.domain.models import RepositoryTarget
from fleet_orchestrator.integration_plane.git_engine import GitEngineError, GitRepository
from fleet_orchestrator.security.denylist import Denylist, DenylistMatch
from fleet_orchestrator.security.redaction import SecretFinding
from fleet_orchestrator.security.secret_scan import SecretScanner
from fleet_orchestrator.verification_plane.plans import (
    CommitGroup,
    CommitPlan,
    Plan,
    ProposedPlan,
    ReleasePlan,
    parse_plan,
    plan_paths,
)

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import Deadline

DEFAULT_MAX_FILE_BYTES: Final[int] = 10 * 1024 * 1024
BINARY_SNIFF_BYTES: Final[int] = 8192

CHECK_ORDER: Final[tuple[str, ...]] = ("schema", "denylist", "size_limit", "secret_scan", "drift")


class ValidationReason(StrEnum):
    SCHEMA = "schema"
    DENYLIST = "denylist"
    SIZE_LIMIT = "size_limit"
    BINARY_FILE = "binary_file"
    SECRET_SCAN = "secret_scan"
    DRIFT_DETECTED = "drift_detected"


class DenylistMode(StrEnum):
    STRICT = "strict"
    FILTER = "filter"


@dataclass(frozen=True, slots=True)
class GuardrailPolicy:
    denylist: Denylist = field(default_factory=Denylist.from_settings)
    denylist_mode: DenylistMode = DenylistMode.STRICT
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    allow_binary: bool = False

    def for_target(self, target: RepositoryTarget) -> GuardrailPolicy:
        extra = target.overrides.get("denylist_extra")
        max_bytes = target.override("max_file_bytes", self.max_file_bytes)
        allow_binary = target.override("allow_binary", self.allow_binary)
        return GuardrailPolicy(
            denylist=self.denylist.extended(extra) if extra else self.denylist,  # type: ignore[arg-type]
            denylist_mode=self.denylist_mode,
            max_file_bytes=int(max_bytes),  # type: ignore[call-overload]
            allow_binary=bool(allow_binary),
        )


@dataclass(frozen=True, slots=True)
class CheckOutcome:
    name: str
    passed: bool
    evaluated: bool = True
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "passed": self.passed,
            "evaluated": self.evaluated,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    ok: bool
    checks: tuple[CheckOutcome, ...]
    reason: ValidationReason | None = None
    plan: Plan | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    denied: tuple[DenylistMatch, ...] = ()
    findings: tuple[SecretFinding, ...] = ()
    scanner: str | None = None
    fingerprint: str | None = None

    def check(self, name: str) -> CheckOutcome:
        for outcome in self.checks:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason is not None else None,
            "checks": {outcome.name: outcome.passed for outcome in self.checks},
            "check_details": [outcome.to_dict() for outcome in self.checks],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "denied": [match.to_dict() for match in self.denied],
            "findings": [finding.to_dict() for finding in self.findings],
            "scanner": self.scanner,
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "fingerprint": self.fingerprint,
        }


class _Rejected(Exception):
    def __init__(self, reason: ValidationReason, check: str, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.check = check
        self.detail = detail


class Guardrails:
    """Runs every check against one proposed plan and one repository."""

    def __init__(
        self,
        policy: GuardrailPolicy | None = None,
        *,
        scanner: SecretScanner | None = None,
        logger: Any | None = None,
    ) -> None:
        self._policy = policy or GuardrailPolicy()
        self._scanner = scanner or SecretScanner()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def policy(self) -> GuardrailPolicy:
        return self._policy

    def validate(
        self,
        proposed: ProposedPlan,
        target: RepositoryTarget,
        *,
        repo: GitRepository | None = None,
        deadline: Deadline | None = None,
    ) -> ValidationResult:
        """Run every check in order.

        ``deadline`` bounds the whole validation: git queries and scanner runs
        are capped by the time left, and ``PhaseTimeout`` is raised once it is
        spent, including when a check failed only because its command ran out
        of time.
        """

        policy = self._policy.for_target(target)
        repository = repo or GitRepository(target.path)
        state = _ValidationState()

        try:
            with repository.bounded_by(deadline):
                plan = self._check_schema(proposed, repository, state)
                plan = self._check_denylist(plan, policy, state)
                _check_deadline(deadline)
                self._check_size_and_type(plan, repository.repo_path, policy, state)
                _check_deadline(deadline)
                self._check_secrets(plan, repository.repo_path, state, deadline)
                _check_deadline(deadline)
                self._check_drift(proposed, repository, state)
        except _Rejected as rejected:
            _check_deadline(deadline)
            result = state.reject(rejected)
        else:
            result = state.accept(plan)

        log = self._logger.info if result.ok else self._logger.warning
        log(
            "guardrail_verdict",
            repo_id=target.repo_id,
            ok=result.ok,
            reason=result.reason.value if result.reason is not None else None,
            checks={outcome.name: outcome.passed for outcome in result.checks},
            denied=[match.path for match in result.denied],
            findings=[finding.to_dict() for finding in result.findings],
        )
        return result

    def _check_schema(
        self, proposed: ProposedPlan, repo: GitRepository, state: _ValidationState
    ) -> Plan:
        parsed = parse_plan(proposed.kind, proposed.payload)
        state.warnings.extend(parsed.warnings)
        if not parsed.ok or parsed.plan is None:
            state.errors.extend(parsed.errors)
            raise _Rejected(ValidationReason.SCHEMA, "schema", "; ".join(parsed.errors))

        plan = parsed.plan
        try:
            problems = _repository_schema_problems(plan, repo, state.warnings)
        except GitEngineError as exc:
            problems = [f"unable to inspect repository: {exc}"]
        if problems:
            state.errors.extend(problems)
            raise _Rejected(ValidationReason.SCHEMA, "schema", "; ".join(problems))
        state.passed("schema")
        return plan

    def _check_denylist(
        self, plan: Plan, policy: GuardrailPolicy, state: _ValidationState
    ) -> Plan:
        if isinstance(plan, CommitPlan):
            kept: list[CommitGroup] = []
            for group in plan.commits:
                allowed, denied = policy.denylist.partition(group.files)
                state.denied.extend(denied)
                if denied and policy.denylist_mode is DenylistMode.FILTER and allowed:
                    kept.append(CommitGroup(message=group.message, files=tuple(allowed)))
                elif not denied:
                    kept.append(group)
                elif policy.denylist_mode is DenylistMode.FILTER:
                    raise _Rejected(
                        ValidationReason.DENYLIST,
                        "denylist",
                        f"every file in commit {group.message!r} is denylisted",
                    )
            if state.denied and policy.denylist_mode is DenylistMode.STRICT:
                raise _Rejected(ValidationReason.DENYLIST, "denylist", _denied_detail(state.denied))
            if state.denied:
                state.warnings.append(f"filtered denylisted paths: {_denied_detail(state.denied)}")
            state.passed("denylist", _denied_detail(state.denied) if state.denied else None)
            return plan.with_commits(kept)

        allowed, denied = policy.denylist.partition(plan.referenced_paths)
        state.denied.extend(denied)
        if denied:
            raise _Rejected(ValidationReason.DENYLIST, "denylist", _denied_detail(denied))
        state.passed("denylist")
        return plan

    def _check_size_and_type(
        self, plan: Plan, root: Path, policy: GuardrailPolicy, state: _ValidationState
    ) -> None:
        for rel in plan_paths(plan):
            target = root / rel
            if not target.is_file():
                continue
            size = target.stat().st_size
            if policy.max_file_bytes > 0 and size > policy.max_file_bytes:
                raise _Rejected(
                    ValidationReason.SIZE_LIMIT,
                    "size_limit",
                    f"{rel} is {size} bytes (limit {policy.max_file_bytes})",
                )
            if not policy.allow_binary and is_binary_file(target):
                raise _Rejected(ValidationReason.BINARY_FILE, "size_limit", f"{rel} is binary")
        state.passed("size_limit")

    def _check_secrets(
        self, plan: Plan, root: Path, state: _ValidationState, deadline: Deadline | None
    ) -> None:
        result = self._scanner.scan(root, plan_paths(plan), deadline=deadline)
        state.scanner = result.tool
        state.warnings.extend(result.warnings)
        if not result.ok:
            state.findings.extend(result.findings)
            rules = sorted({f"{item.rule}@{item.path}:{item.line}" for item in result.findings})
            raise _Rejected(ValidationReason.SECRET_SCAN, "secret_scan", ", ".join(rules))
        state.passed("secret_scan", result.tool)

    def _check_drift(
        self, proposed: ProposedPlan, repo: GitRepository, state: _ValidationState
    ) -> None:
        try:
            current = repo.fingerprint().value
        except GitEngineError as exc:
            raise _Rejected(
                ValidationReason.DRIFT_DETECTED, "drift", f"unable to fingerprint: {exc}"
            ) from exc
        state.fingerprint = current
        if current != proposed.fingerprint:
            raise _Rejected(
                ValidationReason.DRIFT_DETECTED,
                "drift",
                "repository changed since the plan was created",
            )
        state.passed("drift")


@dataclass(slots=True)
class _ValidationState:
    outcomes: dict[str, CheckOutcome] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    denied: list[DenylistMatch] = field(default_factory=list)
    findings: list[SecretFinding] = field(default_factory=list)
    scanner: str | None = None
    fingerprint: str | None = None

    def passed(self, name: str, detail: str | None = None) -> None:
        self.outcomes[name] = CheckOutcome(name=name, passed=True, detail=detail)

    def _checks(self) -> tuple[CheckOutcome, ...]:
        return tuple(
            self.outcomes.get(name, CheckOutcome(name=name, passed=False, evaluated=False))
            for name in CHECK_ORDER
        )

    def reject(self, rejected: _Rejected) -> ValidationResult:
        self.outcomes[rejected.check] = CheckOutcome(
            name=rejected.check, passed=False, detail=rejected.detail
        )
        if rejected.detail not in self.errors:
            self.errors.append(rejected.detail)
        return ValidationResult(
            ok=False,
            checks=self._checks(),
            reason=rejected.reason,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            denied=tuple(self.denied),
            findings=tuple(self.findings),
            scanner=self.scanner,
            fingerprint=self.fingerprint,
        )

    def accept(self, plan: Plan) -> ValidationResult:
        return ValidationResult(
            ok=True,
            checks=self._checks(),
            plan=plan,
            warnings=tuple(self.warnings),
            denied=tuple(self.denied),
            scanner=self.scanner,
            fingerprint=self.fingerprint,
        )


def is_binary_file(path: Path) -> bool:
    """NUL byte in the first 8 KiB. Empty files are text."""

    with path.open("rb") as handle:
        return b"\x00" in handle.read(BINARY_SNIFF_BYTES)


def _repository_schema_problems(plan: Plan, repo: GitRepository, warnings: list[str]) -> list[str]:
    problems: list[str] = []
    root = repo.repo_path
    if isinstance(plan, CommitPlan):
        for rel in plan.files:
            if not (root / rel).exists() and not repo.is_tracked(rel):
                problems.append(f"{rel}: does not exist and is not tracked")
        return problems

    if not isinstance(plan, ReleasePlan):
        raise InternalError(f"unsupported plan type {type(plan).__name__}")
    if repo.tag_exists(plan.tag_name):
        problems.append(f"tag_name: tag {plan.tag_name!r} already exists")
    for rel in plan.files:
        if not (root / rel).is_file():
            problems.append(f"files: asset {rel!r} does not exist")
    if plan.changelog is not None:
        changelog = root / plan.changelog
        if not changelog.is_file():
            warnings.append(f"changelog {plan.changelog!r} does not exist")
        else:
            text = changelog.read_text(encoding="utf-8", errors="replace")
            bare = plan.version.removeprefix("v")
            if bare not in text:
                warnings.append(f"changelog {plan.changelog!r} does not mention version {plan.version}")
    return problems


def _check_deadline(deadline: Deadline | None) -> None:
    if deadline is not None:
        deadline.check()


def _denied_detail(denied: Sequence[DenylistMatch]) -> str:
    return ", ".join(f"{match.path} ({match.pattern})" for match in denied)


__all__ = [
    "CHECK_ORDER",
    "DEFAULT_MAX_FILE_BYTES",
    "CheckOutcome",
    "DenylistMode",
    "GuardrailPolicy",
    "Guardrails",
    "ValidationReason",
    "ValidationResult",
    "is_binary_file",
]
