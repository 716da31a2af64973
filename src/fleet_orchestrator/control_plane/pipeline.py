"""
fleet-orchestrator — plan pipeline

File: src/fleet_orchestrator/control_plane/pipeline.py

Purpose
- Drive one repository through Planning -> Validating -> Executing using an
  agent session, the guardrails and the git engine.

Functional requirements
- Legal states: initialized, planning, planned, validating, validated,
  executing, completed, failed; interrupted is reachable from any non-terminal
  state. Any other move raises ``IllegalTransitionError``.
- The agent only ever proposes. Every mutation is performed here, after the
  guardrails accepted the plan, from the sanitized plan they returned.
- Each phase has its own deadline, shared by every subprocess the phase
  starts; a timed-out phase kills its session and fails with ``phase_timeout``
  as soon as the budget runs out.
- Configured quality gates run after validation and before any commit; a
  failing gate fails the repository with ``quality_gate_failed``.
- The controller runs the pipeline under the repository lease, so a spawn
  reclaims a backend session orphaned by a crashed invocation.
- When an artifact store is given, git state before and after, the pane tail,
  activity snapshots and gate results are written per repository.
- The session is killed before the pipeline leaves the planning phase, on
  every path.
- Expected failures are returned as ``PipelineResult`` values, never raised.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from fleet_orchestrator.constants import PLAN_END_MARKER
from fleet_orchestrator.control_plane.governor import detect_rate_limit
from fleet_orchestrator.domain.errors import IllegalTransitionError, InternalError, PhaseTimeout
from fleet_orchestrator.domain.models import (
    ExecutionMode,
    PushPolicy,
    RepositoryTarget,
    TaskKind,
    WorkItem,
    utc_now_iso,
)
from fleet_orchestrator.integration_plane.git_engine import (
    ExecutionResult,
    GitEngineError,
    GitRepository,
)
from fleet_orchestrator.observability.logging import correlation_scope
from fleet_orchestrator.persistence.run_state import (
    ArchivedPlan,
    ArtifactStore,
    PlanArchive,
    RepoArtifacts,
)
from fleet_orchestrator.synthesis_plane.prompt_templates import (
    PromptTemplateEngine,
    PromptTemplateError,
)
from fleet_orchestrator.synthesis_plane.session.base import (
    Session,
    SessionDriver,
    SessionErrorCode,
    WaitCondition,
)
from fleet_orchestrator.utils.concurrency import Deadline
from fleet_orchestrator.verification_plane.guardrails import Guardrails, ValidationResult
from fleet_orchestrator.verification_plane.plan_markers import extract_plan_block
from fleet_orchestrator.verification_plane.plans import CommitPlan, ProposedPlan
from fleet_orchestrator.verification_plane.quality_gates import QualityGateRunner

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

PLAN_END_PATTERN: Final[re.Pattern[str]] = re.compile(
    rf"^\s*{re.escape(PLAN_END_MARKER)}\s*$", re.MULTILINE
)
PANE_TAIL_FILENAME: Final[str] = "pane_tail.txt"
PANE_TAIL_LINES: Final[int] = 200


class PipelineState(StrEnum):
    INITIALIZED = "initialized"
    PLANNING = "planning"
    PLANNED = "planned"
    VALIDATING = "validating"
    VALIDATED = "validated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_PIPELINE_STATES: Final[frozenset[PipelineState]] = frozenset(
    {PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.INTERRUPTED}
)

_PIPELINE_TRANSITIONS: Final[dict[PipelineState, frozenset[PipelineState]]] = {
    PipelineState.INITIALIZED: frozenset({PipelineState.PLANNING}),
    PipelineState.PLANNING: frozenset({PipelineState.PLANNED}),
    PipelineState.PLANNED: frozenset({PipelineState.VALIDATING}),
    PipelineState.VALIDATING: frozenset({PipelineState.VALIDATED}),
    # Plan mode stops after validation.
    PipelineState.VALIDATED: frozenset({PipelineState.EXECUTING, PipelineState.COMPLETED}),
    PipelineState.EXECUTING: frozenset({PipelineState.COMPLETED}),
    PipelineState.COMPLETED: frozenset(),
    PipelineState.FAILED: frozenset(),
    PipelineState.INTERRUPTED: frozenset(),
}


class FailureReason(StrEnum):
    NO_PLAN_PRODUCED = "no_plan_produced"
    NO_ARCHIVED_PLAN = "no_archived_plan"
    PHASE_TIMEOUT = "phase_timeout"
    SESSION_ERROR = "session_error"
    SESSION_BUSY = "session_busy"
    RATE_LIMITED = "rate_limited"
    GIT_ERROR = "git_error"
    QUALITY_GATE_FAILED = "quality_gate_failed"
    PROMPT_ERROR = "prompt_error"
    ILLEGAL_TRANSITION = "illegal_transition"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True, slots=True)
class PhaseTimeouts:
    planning_seconds: float = 900.0
    validating_seconds: float = 120.0
    executing_seconds: float = 300.0

    def __post_init__(self) -> None:
        for name in ("planning_seconds", "validating_seconds", "executing_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


class PipelineStateMachine:
    """Tracks one repository's pipeline state and rejects illegal moves."""

    def __init__(self, repo_id: str, *, logger: Any | None = None) -> None:
        self.repo_id = repo_id
        self._state = PipelineState.INITIALIZED
        self._history: list[PipelineState] = [self._state]
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> tuple[PipelineState, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_PIPELINE_STATES

    def can_transition(self, target: PipelineState) -> bool:
        if self.is_terminal:
            return False
        if target in (PipelineState.FAILED, PipelineState.INTERRUPTED):
            return True
        return target in _PIPELINE_TRANSITIONS[self._state]

    def transition(self, target: PipelineState) -> PipelineState:
        if not self.can_transition(target):
            raise IllegalTransitionError("pipeline", self._state.value, target.value)
        previous = self._state
        self._state = target
        self._history.append(target)
        self._logger.debug(
            "pipeline_transition",
            repo_id=self.repo_id,
            source=previous.value,
            target=target.value,
        )
        return target


@dataclass(frozen=True, slots=True)
class PipelineResult:
    repo_id: str
    mode: ExecutionMode
    task: TaskKind
    state: PipelineState
    reason: str | None = None
    proposed: ProposedPlan | None = None
    validation: ValidationResult | None = None
    execution: ExecutionResult | None = None
    rate_limited: bool = False
    session_code: SessionErrorCode | None = None
    duration_seconds: float = 0.0
    history: tuple[PipelineState, ...] = ()
    detail: dict[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.COMPLETED

    @property
    def validation_rejected(self) -> bool:
        return self.validation is not None and not self.validation.ok

    @property
    def interrupted(self) -> bool:
        return self.state is PipelineState.INTERRUPTED

    def to_detail(self) -> dict[str, object]:
        """Ledger ``detail`` payload: enough to audit without the raw agent output."""

        payload: dict[str, object] = dict(self.detail)
        payload["history"] = [state.value for state in self.history]
        if self.validation is not None:
            payload["validation"] = {
                "ok": self.validation.ok,
                "reason": self.validation.reason.value if self.validation.reason else None,
                "checks": {outcome.name: outcome.passed for outcome in self.validation.checks},
                "denied": [match.path for match in self.validation.denied],
                "findings": [finding.to_dict() for finding in self.validation.findings],
            }
        if self.execution is not None:
            payload["execution"] = self.execution.to_dict()
        if self.session_code is not None:
            payload["session_code"] = self.session_code.value
        return payload


class _PipelineFailure(Exception):
    def __init__(
        self,
        reason: str,
        message: str,
        *,
        rate_limited: bool = False,
        session_code: SessionErrorCode | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.rate_limited = rate_limited
        self.session_code = session_code


class _PipelineInterrupted(Exception):
    pass


@dataclass(slots=True)
class _RunContext:
    item: WorkItem
    repo: GitRepository
    machine: PipelineStateMachine
    started: float
    proposed: ProposedPlan | None = None
    prompt_hash: str | None = None
    validation: ValidationResult | None = None
    execution: ExecutionResult | None = None
    artifacts: RepoArtifacts | None = None
    detail: dict[str, object] = field(default_factory=dict)


def _default_repository_factory(target: RepositoryTarget, timeout_seconds: float) -> GitRepository:
    return GitRepository(target.path, timeout_seconds=timeout_seconds)


class PlanPipeline:
    """Runs one work item through the plan/validate/execute lifecycle."""

    def __init__(
        self,
        driver: SessionDriver,
        guardrails: Guardrails,
        archive: PlanArchive,
        *,
        timeouts: PhaseTimeouts | None = None,
        push_policy: PushPolicy = PushPolicy.NONE,
        idle_seconds: float = 5.0,
        spawn_timeout_seconds: float = 30.0,
        prompts: PromptTemplateEngine | None = None,
        repository_factory: Callable[[RepositoryTarget, float], GitRepository] = (
            _default_repository_factory
        ),
        quality_gates: QualityGateRunner | None = None,
        artifacts: ArtifactStore | None = None,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._driver = driver
        self._guardrails = guardrails
        self._archive = archive
        self._timeouts = timeouts or PhaseTimeouts()
        self._push_policy = push_policy
        self._idle_seconds = idle_seconds
        self._spawn_timeout = spawn_timeout_seconds
        self._prompts = prompts or PromptTemplateEngine()
        self._repository_factory = repository_factory
        self._quality = quality_gates or QualityGateRunner(logger=logger)
        self._artifacts = artifacts
        self._cancel = cancel_token
        self._run_id = run_id
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def timeouts(self) -> PhaseTimeouts:
        return self._timeouts

    def run(self, item: WorkItem) -> PipelineResult:
        target = item.target
        repo = self._repository_factory(target, self._timeouts.executing_seconds)
        ctx = _RunContext(
            item=item,
            repo=repo,
            machine=PipelineStateMachine(target.repo_id, logger=self._logger),
            started=self._clock(),
        )
        if self._artifacts is not None:
            ctx.artifacts = self._artifacts.for_target(target)
            self._capture_git_state(ctx, "git_before.txt")
        try:
            self._plan_phase(ctx)
            self._validate_phase(ctx)
            if item.mode is ExecutionMode.PLAN:
                ctx.machine.transition(PipelineState.COMPLETED)
            else:
                self._execute_phase(ctx)
                ctx.machine.transition(PipelineState.COMPLETED)
            return self._result(ctx)
        except _PipelineInterrupted:
            ctx.machine.transition(PipelineState.INTERRUPTED)
            return self._result(ctx, reason=FailureReason.INTERRUPTED.value)
        except _PipelineFailure as failure:
            ctx.machine.transition(PipelineState.FAILED)
            ctx.detail.setdefault("error", failure.message)
            return self._result(
                ctx,
                reason=failure.reason,
                rate_limited=failure.rate_limited,
                session_code=failure.session_code,
            )
        except IllegalTransitionError as exc:
            self._logger.error(
                "pipeline_illegal_transition",
                repo_id=target.repo_id,
                error=str(exc),
            )
            if not ctx.machine.is_terminal:
                ctx.machine.transition(PipelineState.FAILED)
            ctx.detail["error"] = str(exc)
            return self._result(ctx, reason=FailureReason.ILLEGAL_TRANSITION.value)

    # ----------------------------------------------------------------- phases

    def _plan_phase(self, ctx: _RunContext) -> None:
        self._check_cancelled()
        ctx.machine.transition(PipelineState.PLANNING)
        with correlation_scope(phase=PipelineState.PLANNING.value):
            if ctx.item.mode is ExecutionMode.APPLY:
                ctx.proposed = self._load_archived(ctx)
            else:
                ctx.proposed = self._request_plan(ctx)
        ctx.machine.transition(PipelineState.PLANNED)

    def _validate_phase(self, ctx: _RunContext) -> None:
        self._check_cancelled()
        ctx.machine.transition(PipelineState.VALIDATING)
        if ctx.proposed is None:
            raise InternalError("validating without a proposed plan")
        deadline = Deadline.start("validating", self._timeouts.validating_seconds, clock=self._clock)
        with correlation_scope(phase=PipelineState.VALIDATING.value):
            try:
                result = self._guardrails.validate(
                    ctx.proposed, ctx.item.target, repo=ctx.repo, deadline=deadline
                )
            except PhaseTimeout as exc:
                raise _PipelineFailure(FailureReason.PHASE_TIMEOUT.value, str(exc)) from exc
            ctx.validation = result
            self._archive.save(
                ctx.item.target,
                ArchivedPlan(
                    repo_id=ctx.item.target.repo_id,
                    run_id=self._run_id,
                    proposed=ctx.proposed,
                    verdict=result.to_dict(),
                    prompt_hash=ctx.prompt_hash,
                ),
            )
        self._record_activity(ctx, PipelineState.VALIDATING, ok=result.ok)
        if not result.ok:
            if result.reason is None:
                raise InternalError("rejected validation result carries no reason")
            raise _PipelineFailure(result.reason.value, "; ".join(result.errors) or result.reason.value)
        ctx.machine.transition(PipelineState.VALIDATED)

    def _execute_phase(self, ctx: _RunContext) -> None:
        # Irreversible work is never started after cancellation; once started it runs to the end.
        self._check_cancelled()
        ctx.machine.transition(PipelineState.EXECUTING)
        if ctx.validation is None or ctx.validation.plan is None:
            raise InternalError("executing without an accepted plan")
        plan = ctx.validation.plan
        allow_push = self._push_policy_for(ctx.item.target) is PushPolicy.PUSH
        deadline = Deadline.start("executing", self._timeouts.executing_seconds, clock=self._clock)
        with correlation_scope(phase=PipelineState.EXECUTING.value):
            try:
                with ctx.repo.bounded_by(deadline):
                    self._run_quality_gates(ctx, deadline)
                    if isinstance(plan, CommitPlan):
                        result = ctx.repo.apply_commit_plan(plan, push=allow_push and plan.push)
                    else:
                        result = ctx.repo.apply_release_plan(plan, push=allow_push)
            except PhaseTimeout as exc:
                raise _PipelineFailure(FailureReason.PHASE_TIMEOUT.value, str(exc)) from exc
            except GitEngineError as exc:
                reason = FailureReason.PHASE_TIMEOUT if exc.reason == "git_timeout" else FailureReason.GIT_ERROR
                raise _PipelineFailure(reason.value, str(exc)) from exc
        ctx.execution = result
        self._record_activity(ctx, PipelineState.EXECUTING, ok=result.ok)
        if not result.ok:
            reason = result.reason or FailureReason.GIT_ERROR.value
            if reason == "git_timeout":
                reason = FailureReason.PHASE_TIMEOUT.value
            raise _PipelineFailure(reason, result.error or reason)

    def _run_quality_gates(self, ctx: _RunContext, deadline: Deadline) -> None:
        configured = ctx.item.target.override("quality_gates", self._quality.commands)
        commands = tuple(configured) if isinstance(configured, (list, tuple)) else ()
        if not commands:
            return
        report = self._quality.run(ctx.item.target.path, commands, deadline=deadline)
        ctx.detail["quality_gates"] = report.to_dict()
        if ctx.artifacts is not None:
            ctx.artifacts.write_json("quality_gates.json", report.to_dict())
        failed = report.failed
        if failed is not None:
            status = "timed out" if failed.timed_out else f"exit {failed.exit_code}"
            raise _PipelineFailure(
                FailureReason.QUALITY_GATE_FAILED.value,
                f"quality gate failed ({status}): {failed.command}",
            )

    # ---------------------------------------------------------------- helpers

    def _load_archived(self, ctx: _RunContext) -> ProposedPlan:
        archived = self._archive.load(ctx.item.target)
        if archived is None:
            raise _PipelineFailure(
                FailureReason.NO_ARCHIVED_PLAN.value,
                "no archived plan for this repository; run with --mode plan first",
            )
        if archived.proposed.kind is not ctx.item.task:
            raise _PipelineFailure(
                FailureReason.NO_ARCHIVED_PLAN.value,
                f"archived plan is a {archived.proposed.kind.value} plan, "
                f"not {ctx.item.task.value}",
            )
        ctx.prompt_hash = archived.prompt_hash
        ctx.detail["archived_at"] = archived.archived_at
        return archived.proposed

    def _request_plan(self, ctx: _RunContext) -> ProposedPlan:
        target = ctx.item.target
        deadline = Deadline.start("planning", self._timeouts.planning_seconds, clock=self._clock)
        try:
            with ctx.repo.bounded_by(deadline):
                fingerprint = ctx.repo.fingerprint()
                prompt = self._prompts.render_task(
                    ctx.item.task,
                    repo_name=target.name,
                    branch=ctx.repo.current_branch() or "HEAD",
                    status_lines=ctx.repo.status_lines(),
                    recent_commits=ctx.repo.recent_subjects(),
                    latest_tag=ctx.repo.latest_tag() if ctx.item.task is TaskKind.RELEASE else None,
                    push_requested=self._push_policy_for(target) is PushPolicy.PUSH,
                )
        except PhaseTimeout as exc:
            raise _PipelineFailure(FailureReason.PHASE_TIMEOUT.value, str(exc)) from exc
        except GitEngineError as exc:
            reason = FailureReason.PHASE_TIMEOUT if exc.reason == "git_timeout" else FailureReason.GIT_ERROR
            raise _PipelineFailure(reason.value, str(exc)) from exc
        except PromptTemplateError as exc:
            raise _PipelineFailure(FailureReason.PROMPT_ERROR.value, str(exc)) from exc
        ctx.prompt_hash = prompt.prompt_hash

        # The repository lease is held, so a leftover session can only be an orphan.
        spawned = self._driver.spawn(
            target.path, min(self._spawn_timeout, self._remaining(deadline)), reclaim=True
        )
        if ctx.artifacts is not None:
            ctx.artifacts.write_json(
                "spawn.json",
                {
                    "ok": spawned.ok,
                    "code": spawned.code.value if spawned.code else None,
                    "message": spawned.message,
                    "session": spawned.session.to_dict() if spawned.session else None,
                },
            )
        if not spawned.ok or spawned.session is None:
            reason = (
                FailureReason.SESSION_BUSY
                if spawned.code is SessionErrorCode.BUSY
                else FailureReason.SESSION_ERROR
            )
            raise _PipelineFailure(
                reason.value,
                spawned.message or "session spawn failed",
                session_code=spawned.code,
            )

        session = spawned.session
        ctx.detail["session_id"] = session.session_id
        try:
            with correlation_scope(session_id=session.session_id):
                output = self._converse(ctx, session, prompt.prompt, deadline)
        finally:
            self._driver.kill(session)

        extraction = extract_plan_block(output)
        agent_text = _agent_text(output, prompt.prompt)
        if not extraction.ok or extraction.payload is None:
            if detect_rate_limit(agent_text):
                raise _PipelineFailure(
                    FailureReason.RATE_LIMITED.value,
                    "agent reported a rate limit",
                    rate_limited=True,
                )
            error = extraction.error.value if extraction.error else "no_block"
            ctx.detail["extraction_error"] = error
            raise _PipelineFailure(
                FailureReason.NO_PLAN_PRODUCED.value,
                f"no usable plan block in agent output ({error})",
            )
        return ProposedPlan(
            kind=ctx.item.task,
            payload=extraction.payload,
            fingerprint=fingerprint.value,
            prose=extraction.prose,
        )

    def _converse(self, ctx: _RunContext, session: Session, prompt: str, deadline: Deadline) -> str:
        sent = self._driver.send(session, prompt)
        if not sent.ok:
            raise _PipelineFailure(
                FailureReason.SESSION_ERROR.value,
                sent.message or "send failed",
                session_code=sent.code,
            )

        condition = WaitCondition(idle_seconds=self._idle_seconds, pattern=PLAN_END_PATTERN)
        waited = self._driver.wait(session, condition, self._remaining(deadline))
        if waited.interrupted:
            raise _PipelineInterrupted
        captured = self._driver.capture(session)
        output = captured.output if captured.ok else ""
        if ctx.artifacts is not None:
            report = self._driver.activity(session)
            self._record_activity(
                ctx,
                PipelineState.PLANNING,
                session_state=report.state.value,
                velocity=round(report.velocity, 3),
                met=waited.met,
                timed_out=waited.timed_out,
            )
            ctx.artifacts.write_text(PANE_TAIL_FILENAME, _tail(output, PANE_TAIL_LINES))

        if waited.timed_out:
            rate_limited = detect_rate_limit(_agent_text(output, prompt))
            if rate_limited:
                raise _PipelineFailure(
                    FailureReason.RATE_LIMITED.value,
                    "agent reported a rate limit",
                    rate_limited=True,
                )
            timeout = PhaseTimeout("planning", self._timeouts.planning_seconds)
            raise _PipelineFailure(
                FailureReason.PHASE_TIMEOUT.value,
                str(timeout),
                session_code=SessionErrorCode.TIMEOUT,
            )
        if waited.code is SessionErrorCode.NOT_FOUND or not captured.ok:
            raise _PipelineFailure(
                FailureReason.SESSION_ERROR.value,
                waited.detail or captured.message or "session output unavailable",
                session_code=waited.code or captured.code,
            )
        if waited.agent_error and not waited.met:
            if detect_rate_limit(_agent_text(output, prompt)):
                raise _PipelineFailure(
                    FailureReason.RATE_LIMITED.value,
                    "agent reported a rate limit",
                    rate_limited=True,
                )
            raise _PipelineFailure(
                FailureReason.SESSION_ERROR.value,
                waited.detail or "agent exited with an error",
                session_code=SessionErrorCode.INTERNAL,
            )
        return output

    def _push_policy_for(self, target: RepositoryTarget) -> PushPolicy:
        return PushPolicy(str(target.override("push_policy", self._push_policy.value)))

    def _remaining(self, deadline: Deadline) -> float:
        try:
            deadline.check()
        except PhaseTimeout as exc:
            raise _PipelineFailure(FailureReason.PHASE_TIMEOUT.value, str(exc)) from exc
        return deadline.remaining()

    def _check_cancelled(self) -> None:
        if self._cancel is not None and self._cancel.is_cancelled:
            raise _PipelineInterrupted

    def _record_activity(self, ctx: _RunContext, phase: PipelineState, **fields: object) -> None:
        if ctx.artifacts is not None:
            ctx.artifacts.append_activity({"phase": phase.value, **fields})

    def _capture_git_state(self, ctx: _RunContext, name: str) -> None:
        if ctx.artifacts is None:
            return
        try:
            report = ctx.repo.state_report(captured_at=utc_now_iso())
        except GitEngineError as exc:
            report = f"Captured at: {utc_now_iso()}\ngit state unavailable: {exc}\n"
        ctx.artifacts.write_text(name, report)

    def _result(
        self,
        ctx: _RunContext,
        *,
        reason: str | None = None,
        rate_limited: bool = False,
        session_code: SessionErrorCode | None = None,
    ) -> PipelineResult:
        if ctx.artifacts is not None:
            self._capture_git_state(ctx, "git_after.txt")
            self._record_activity(ctx, ctx.machine.state, reason=reason)
        result = PipelineResult(
            repo_id=ctx.item.target.repo_id,
            mode=ctx.item.mode,
            task=ctx.item.task,
            state=ctx.machine.state,
            reason=reason,
            proposed=ctx.proposed,
            validation=ctx.validation,
            execution=ctx.execution,
            rate_limited=rate_limited,
            session_code=session_code,
            duration_seconds=max(0.0, self._clock() - ctx.started),
            history=ctx.machine.history,
            detail=ctx.detail,
        )
        log = self._logger.info if result.ok else self._logger.warning
        log(
            "pipeline_finished",
            repo_id=result.repo_id,
            state=result.state.value,
            reason=result.reason,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result


def _tail(text: str, lines: int) -> str:
    return "\n".join(text.splitlines()[-lines:]) + "\n"


def _agent_text(output: str, prompt: str) -> str:
    """Output lines that are not an echo of the prompt."""

    prompt_lines = {line.strip() for line in prompt.splitlines() if line.strip()}
    return "\n".join(line for line in output.splitlines() if line.strip() not in prompt_lines)


__all__ = [
    "PLAN_END_PATTERN",
    "TERMINAL_PIPELINE_STATES",
    "FailureReason",
    "PhaseTimeouts",
    "PipelineResult",
    "PipelineState",
    "PipelineStateMachine",
    "PlanPipeline",
]
