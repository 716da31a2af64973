"""Control-plane run controller: queue seeding, worker pool, checkpoints and exit codes."""

from __future__ import annotations

import shlex
import shutil
import signal
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Final, cast

import structlog

from fleet_orchestrator.config.schema import assert_valid_config, default_config, merge_config
from fleet_orchestrator.constants import (
    BACKOFF_STATE_FILENAME,
    RUN_LOCK_NAME,
    RUNS_DIRNAME,
    WORK_QUEUE_FILENAME,
)
from fleet_orchestrator.control_plane.governor import (
    BackoffStore,
    GovernorConfig,
    RateGovernor,
)
from fleet_orchestrator.control_plane.locking import PortableMutex
from fleet_orchestrator.control_plane.pipeline import (
    PhaseTimeouts,
    PipelineResult,
    PlanPipeline,
)
from fleet_orchestrator.control_plane.work_queue import WorkQueue, sort_work_items
from fleet_orchestrator.domain.errors import (
    DependencyMissing,
    InternalError,
    Interrupted,
    InvalidInvocation,
    LockTimeout,
    StateStoreError,
)
from fleet_orchestrator.domain.models import (
    ExecutionMode,
    PushPolicy,
    RepoOutcome,
    RepoStatus,
    RepositoryTarget,
    RunLifecycle,
    TaskKind,
    WorkItem,
    new_run_id,
)
from fleet_orchestrator.integration_plane.preflight import (
    PreflightPolicy,
    PreflightResult,
    PreflightValidator,
)
from fleet_orchestrator.main import ExitCode
from fleet_orchestrator.observability.logging import correlation_scope
from fleet_orchestrator.persistence.run_state import (
    ArtifactStore,
    PlanArchive,
    ResultLedger,
    RunState,
    RunStateStore,
    ledger_path,
)
from fleet_orchestrator.security.denylist import Denylist
from fleet_orchestrator.security.secret_scan import ScannerMode, SecretScanner
from fleet_orchestrator.synthesis_plane.session import (
    MockBehavior,
    SessionDriver,
    SessionSettings,
    create_session_driver,
)
from fleet_orchestrator.utils.concurrency import CancellationToken, WorkerPool
from fleet_orchestrator.verification_plane.guardrails import (
    DenylistMode,
    GuardrailPolicy,
    Guardrails,
)
from fleet_orchestrator.verification_plane.quality_gates import QualityGateRunner

Which = Callable[[str], str | None]

# Reasons that count against the circuit breaker. Skips and guardrail
# rejections are deliberate outcomes, not service trouble.
BREAKER_ERROR_REASONS: Final[frozenset[str]] = frozenset(
    {"session_error", "session_busy", "phase_timeout", "internal"}
)
_THROTTLE_POLL_SECONDS: Final[float] = 0.5


@dataclass(frozen=True, slots=True)
class RunOptions:
    """One invocation of ``fleet run``; ``None`` fields fall back to config."""

    targets: tuple[RepositoryTarget, ...] = ()
    mode: ExecutionMode | None = None
    task: TaskKind | None = None
    parallelism: int | None = None
    push_policy: PushPolicy | None = None
    driver: str | None = None
    resume: bool = False
    restart: bool = False
    dry_run: bool = False
    run_id: str | None = None

    def __post_init__(self) -> None:
        if self.resume and self.restart:
            raise InvalidInvocation("--resume and --restart are mutually exclusive")
        if self.parallelism is not None and self.parallelism < 1:
            raise InvalidInvocation("parallelism must be >= 1")


@dataclass(frozen=True, slots=True)
class RunReport:
    """Normalized result returned by ``RunController.run``."""

    run_id: str
    lifecycle: RunLifecycle
    outcomes: tuple[RepoOutcome, ...] = ()
    interrupted: bool = False
    resumed: bool = False
    dry_run: bool = False
    queue_order: tuple[str, ...] = ()
    preflight: tuple[PreflightResult, ...] = ()
    ledger: Path | None = None

    @property
    def exit_code(self) -> int:
        return int(exit_code_for(self.outcomes, interrupted=self.interrupted))

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in RepoStatus}
        for outcome in self.outcomes:
            totals[outcome.status.value] += 1
        return totals

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "lifecycle": self.lifecycle.value,
            "exit_code": self.exit_code,
            "interrupted": self.interrupted,
            "resumed": self.resumed,
            "dry_run": self.dry_run,
            "counts": self.counts(),
            "queue_order": list(self.queue_order),
            "preflight": [result.to_dict() for result in self.preflight],
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "ledger": self.ledger.as_posix() if self.ledger is not None else None,
        }


def exit_code_for(outcomes: Sequence[RepoOutcome], *, interrupted: bool) -> ExitCode:
    """Map per-repository outcomes to the process exit code.

    5 when interrupted; 0 when nothing failed; 2 when every failure is a
    guardrail/validation rejection and no repository completed; 1 otherwise.
    """

    if interrupted or any(outcome.status is RepoStatus.INTERRUPTED for outcome in outcomes):
        return ExitCode.INTERRUPTED
    failures = [outcome for outcome in outcomes if outcome.status is RepoStatus.FAILED]
    if not failures:
        return ExitCode.SUCCESS
    completed = any(outcome.status is RepoStatus.COMPLETED for outcome in outcomes)
    if not completed and all(outcome.validation_rejected for outcome in failures):
        return ExitCode.VALIDATION_REJECTED
    return ExitCode.PARTIAL_FAILURE


@dataclass(slots=True)
class _Runtime:
    run_id: str
    token: CancellationToken
    mutex: PortableMutex
    store: RunStateStore
    queue: WorkQueue
    ledger: ResultLedger
    governor: RateGovernor
    preflight: PreflightValidator
    pipeline: PlanPipeline
    parallelism: int
    fatal: list[BaseException] = field(default_factory=list)


class RunController:
    """Coordinates one run: seed queue -> workers -> checkpoint -> exit code."""

    def __init__(
        self,
        config: Mapping[str, object] | None = None,
        *,
        driver: SessionDriver | None = None,
        mock_default: MockBehavior | None = None,
        mock_behaviors: Mapping[str, MockBehavior] | None = None,
        cancel_token: CancellationToken | None = None,
        which: Which = shutil.which,
        governor_sleep: Callable[[float], None] | None = None,
        install_signal_handlers: bool = True,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._config = _effective_config(config)
        self._driver = driver
        self._mock_default = mock_default
        self._mock_behaviors = mock_behaviors
        self._token = cancel_token or CancellationToken()
        self._which = which
        self._governor_sleep = governor_sleep
        self._install_signals = install_signal_handlers
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    @property
    def cancel_token(self) -> CancellationToken:
        return self._token

    @property
    def state_dir(self) -> Path:
        return Path(_section(self._config, "paths")["state_dir"])

    @property
    def lock_dir(self) -> Path:
        return Path(_section(self._config, "paths")["lock_dir"])

    # ------------------------------------------------------------ public API

    def check_dependencies(self, driver_name: str | None = None) -> None:
        """Raise ``DependencyMissing`` before any work is queued."""

        missing = [name for name in self.missing_dependencies(driver_name) if name]
        if missing:
            raise DependencyMissing(
                tuple(missing),
                hint="install the missing tools or pick another session driver with --driver",
            )

    def missing_dependencies(self, driver_name: str | None = None) -> list[str]:
        session = _section(self._config, "session")
        name = driver_name or str(session["driver"])
        required = ["git"]
        if self._driver is None and name == "tmux":
            required.append("tmux")
        if self._driver is None and name in {"tmux", "local"}:
            command = shlex.split(str(session["agent_command"]))
            if command:
                required.append(command[0])
        return [tool for tool in required if self._which(tool) is None]

    def preflight_validator(self, push_policy: PushPolicy | None = None) -> PreflightValidator:
        section = _section(self._config, "preflight")
        run = _section(self._config, "run")
        return PreflightValidator(
            PreflightPolicy(
                push_policy=push_policy or PushPolicy(str(run["push_policy"])),
                max_untracked=int(section["max_untracked"]),
                require_identity=bool(section["require_identity"]),
                check_whitespace=bool(section["check_whitespace"]),
            )
        )

    def guardrails(self) -> Guardrails:
        section = _section(self._config, "guardrails")
        policy = GuardrailPolicy(
            denylist=Denylist.from_settings(list(section["denylist_extra"])),
            denylist_mode=DenylistMode(str(section["denylist_mode"])),
            max_file_bytes=int(section["max_file_bytes"]),
            allow_binary=bool(section["allow_binary"]),
        )
        scanner = SecretScanner(ScannerMode(str(section["secret_scanner"])))
        return Guardrails(policy, scanner=scanner)

    def quality_gates(self) -> QualityGateRunner:
        section = _section(self._config, "quality")
        return QualityGateRunner(
            [str(command) for command in section["gates"]],
            timeout_seconds=float(section["gate_timeout_seconds"]),
        )

    def dry_run(self, options: RunOptions) -> RunReport:
        """Deterministic queue order plus preflight verdicts; spawns nothing."""

        self.check_dependencies("mock")
        items = sort_work_items(self._work_items(options))
        validator = self.preflight_validator(options.push_policy)
        verdicts = tuple(validator.check(item.target) for item in items)
        self._logger.info("dry_run_finished", items=len(items))
        return RunReport(
            run_id="dry-run",
            lifecycle=RunLifecycle.INITIALIZED,
            dry_run=True,
            queue_order=tuple(item.item_id for item in items),
            preflight=verdicts,
        )

    def run(self, options: RunOptions) -> RunReport:
        if options.dry_run:
            return self.dry_run(options)

        run_settings = _section(self._config, "run")
        driver_name = options.driver or str(_section(self._config, "session")["driver"])
        self.check_dependencies(driver_name)

        state_dir = self.state_dir
        lock_dir = self.lock_dir
        state_dir.mkdir(parents=True, exist_ok=True)
        lock_dir.mkdir(parents=True, exist_ok=True)

        locks = _section(self._config, "locks")
        lock_timeout = float(locks["lock_timeout_seconds"])
        mutex = PortableMutex(
            lock_dir,
            stale_after_seconds=float(locks["stale_after_seconds"]),
            cancel_token=self._token,
        )
        lease = mutex.acquire(RUN_LOCK_NAME, 0)
        if not lease.ok:
            raise LockTimeout(RUN_LOCK_NAME, 0, owner_pid=lease.owner_pid)

        restore_signals = self._install_handlers()
        try:
            store = RunStateStore(state_dir, mutex, lock_timeout_seconds=lock_timeout)
            queue = WorkQueue(
                state_dir / WORK_QUEUE_FILENAME, mutex, lock_timeout_seconds=lock_timeout
            )
            state, resumed = self._prepare_state(options, store, queue)

            with correlation_scope(run_id=state.run_id):
                runtime = self._build_runtime(
                    state,
                    options,
                    mutex=mutex,
                    store=store,
                    queue=queue,
                    driver_name=driver_name,
                    parallelism=options.parallelism or int(run_settings["parallelism"]),
                )
                self._logger.info(
                    "run_started",
                    run_id=state.run_id,
                    resumed=resumed,
                    items=len(state.items),
                    remaining=len(state.remaining()),
                    parallelism=runtime.parallelism,
                )
                self._drain(runtime)
                return self._finish(runtime, resumed=resumed)
        finally:
            restore_signals()
            mutex.release(RUN_LOCK_NAME)

    # --------------------------------------------------------------- set-up

    def _work_items(self, options: RunOptions) -> list[WorkItem]:
        run = _section(self._config, "run")
        mode = options.mode or ExecutionMode(str(run["mode"]))
        task = options.task or TaskKind(str(run["task"]))
        return [WorkItem(target=target, mode=mode, task=task) for target in options.targets]

    def _prepare_state(
        self, options: RunOptions, store: RunStateStore, queue: WorkQueue
    ) -> tuple[RunState, bool]:
        existing = store.load()
        if existing is not None and not (options.resume or options.restart):
            raise InvalidInvocation(
                f"run {existing.run_id} left a checkpoint at {store.path}; "
                "pass --resume to continue it or --restart to discard it"
            )
        if options.restart and existing is not None:
            self._logger.warning("run_state_discarded", run_id=existing.run_id)
            store.delete()
            existing = None
        if options.resume and existing is None:
            self._logger.warning("resume_without_checkpoint")

        if existing is not None:
            if existing.lifecycle is RunLifecycle.COMPLETED:
                raise InvalidInvocation(
                    f"run {existing.run_id} already completed; pass --restart to start over"
                )
            if options.targets:
                self._logger.info("resume_ignores_targets", run_id=existing.run_id)
            state = existing
            if state.lifecycle is RunLifecycle.INITIALIZED:
                state = state.transition(RunLifecycle.PLANNED)
            elif state.lifecycle is RunLifecycle.EXECUTING:
                # The previous invocation died without checkpointing its exit.
                state = state.transition(RunLifecycle.INTERRUPTED)
            state = state.transition(RunLifecycle.EXECUTING)
            # In-flight markers belong to the dead invocation.
            state = replace(state, in_flight={})
            store.save(state)
            queue.enqueue_all(state.remaining(), presorted=True)
            return state, True

        items = sort_work_items(self._work_items(options))
        if not items:
            raise InvalidInvocation("no repositories given; pass paths or --repos-file")
        state = RunState(run_id=options.run_id or new_run_id(), items=tuple(items))
        store.save(state)
        queue.enqueue_all(items, presorted=True)
        state = state.transition(RunLifecycle.PLANNED).transition(RunLifecycle.EXECUTING)
        store.save(state)
        return state, False

    def _build_runtime(
        self,
        state: RunState,
        options: RunOptions,
        *,
        mutex: PortableMutex,
        store: RunStateStore,
        queue: WorkQueue,
        driver_name: str,
        parallelism: int,
    ) -> _Runtime:
        session = _section(self._config, "session")
        timeouts = _section(self._config, "timeouts")
        locks = _section(self._config, "locks")
        run = _section(self._config, "run")
        settings = SessionSettings(
            agent_command=str(session["agent_command"]),
            spawn_timeout_seconds=float(session["spawn_timeout_seconds"]),
            idle_seconds=float(session["idle_seconds"]),
            poll_interval_seconds=float(session["poll_interval_seconds"]),
            chunk_size=int(session["chunk_size"]),
            history_lines=int(session["history_lines"]),
        )
        driver = self._driver or create_session_driver(
            driver_name,
            settings,
            cancel_token=self._token,
            mock_behaviors=self._mock_behaviors,
            mock_default=self._mock_default,
        )
        push_policy = options.push_policy or PushPolicy(str(run["push_policy"]))
        governor = RateGovernor(
            BackoffStore(
                self.state_dir / BACKOFF_STATE_FILENAME,
                mutex,
                lock_timeout_seconds=float(locks["lock_timeout_seconds"]),
            ),
            config=GovernorConfig(**cast("dict[str, Any]", _section(self._config, "governor"))),
            cancel_token=self._token,
            sleep=self._governor_sleep,
        )
        pipeline = PlanPipeline(
            driver,
            self.guardrails(),
            PlanArchive(self.state_dir),
            timeouts=PhaseTimeouts(
                planning_seconds=float(timeouts["planning_seconds"]),
                validating_seconds=float(timeouts["validating_seconds"]),
                executing_seconds=float(timeouts["executing_seconds"]),
            ),
            push_policy=push_policy,
            idle_seconds=settings.idle_seconds,
            spawn_timeout_seconds=settings.spawn_timeout_seconds,
            quality_gates=self.quality_gates(),
            artifacts=ArtifactStore(self.state_dir, state.run_id),
            cancel_token=self._token,
            run_id=state.run_id,
            clock=self._clock,
        )
        return _Runtime(
            run_id=state.run_id,
            token=self._token,
            mutex=mutex,
            store=store,
            queue=queue,
            ledger=ResultLedger(
                ledger_path(self.state_dir, state.run_id),
                mutex,
                lock_timeout_seconds=float(locks["lock_timeout_seconds"]),
            ),
            governor=governor,
            preflight=self.preflight_validator(push_policy),
            pipeline=pipeline,
            parallelism=parallelism,
        )

    def _install_handlers(self) -> Callable[[], None]:
        if not self._install_signals or threading.current_thread() is not threading.main_thread():
            return lambda: None

        token = self._token
        logger = self._logger

        def _handler(signum: int, _frame: object) -> None:
            name = signal.Signals(signum).name
            logger.warning("signal_received", signal=name)
            token.cancel(f"signal:{name}")

        previous = {
            signum: signal.signal(signum, _handler) for signum in (signal.SIGINT, signal.SIGTERM)
        }

        def _restore() -> None:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        return _restore

    # -------------------------------------------------------------- workers

    def _drain(self, runtime: _Runtime) -> None:
        pool: WorkerPool[int] = WorkerPool(size=runtime.parallelism)
        results = pool.run(lambda index: self._worker(runtime, index))
        for result in results:
            if result.error is None or isinstance(result.error, Interrupted):
                continue
            runtime.fatal.append(result.error)

    def _worker(self, runtime: _Runtime, index: int) -> int:
        worker_id = f"worker-{index}"
        processed = 0
        governor = runtime.governor
        with correlation_scope(run_id=runtime.run_id, worker_id=worker_id):
            while not runtime.token.is_cancelled:
                try:
                    trial = governor.wait_for_clearance()
                except Interrupted:
                    break
                if index >= governor.effective_parallelism(runtime.parallelism):
                    if trial:
                        governor.breaker.release_trial()
                    if runtime.token.wait(_THROTTLE_POLL_SECONDS):
                        break
                    continue

                try:
                    item = runtime.queue.dequeue()
                except BaseException:
                    runtime.token.cancel("worker_failed")
                    raise
                if item is None:
                    if trial:
                        governor.breaker.release_trial()
                    break

                try:
                    runtime.store.update(
                        lambda state, repo_id=item.item_id: state.start_item(worker_id, repo_id)
                    )
                    with correlation_scope(repo_id=item.item_id):
                        outcome, result = self._process(runtime, item)
                        self._record(runtime, worker_id, outcome)
                except BaseException:
                    runtime.token.cancel("worker_failed")
                    raise
                self._feed_governor(runtime, outcome, result, trial=trial)
                processed += 1
        return processed

    def _process(
        self, runtime: _Runtime, item: WorkItem
    ) -> tuple[RepoOutcome, PipelineResult | None]:
        target = item.target
        started = self._clock()

        def _outcome(status: RepoStatus, reason: str | None, **extra: Any) -> RepoOutcome:
            return RepoOutcome(
                repo_id=target.repo_id,
                action=item.task.value,
                status=status,
                duration_seconds=max(0.0, self._clock() - started),
                reason=reason,
                run_id=runtime.run_id,
                mode=item.mode,
                validation_rejected=bool(extra.pop("validation_rejected", False)),
                detail=extra,
            )

        lease_name = f"repo-{target.lease_key}"
        lease = runtime.mutex.acquire(lease_name, 0)
        if not lease.ok:
            self._logger.warning("repo_locked", repo_id=target.repo_id, owner_pid=lease.owner_pid)
            return _outcome(RepoStatus.FAILED, "repo_locked", owner_pid=lease.owner_pid), None

        try:
            try:
                verdict = runtime.preflight.check(target)
                if not verdict.safe:
                    if verdict.reason is None:
                        raise InternalError("preflight rejected a repository without a reason")
                    self._logger.info(
                        "preflight_rejected", repo_id=target.repo_id, reason=verdict.reason.value
                    )
                    return (
                        _outcome(
                            RepoStatus.SKIPPED,
                            verdict.reason.value,
                            message=verdict.message,
                            remediation=verdict.remediation,
                            preflight_detail=verdict.detail,
                        ),
                        None,
                    )
                if runtime.token.is_cancelled:
                    return _outcome(RepoStatus.INTERRUPTED, "interrupted"), None
                result = runtime.pipeline.run(item)
            except Exception as exc:  # noqa: BLE001 - one repository must not sink the run.
                self._logger.exception("pipeline_crashed", repo_id=target.repo_id)
                return _outcome(RepoStatus.FAILED, "internal", error=str(exc)), None
        finally:
            runtime.mutex.release(lease_name)

        if result.ok:
            status = RepoStatus.COMPLETED
        elif result.interrupted:
            status = RepoStatus.INTERRUPTED
        else:
            status = RepoStatus.FAILED
        return (
            _outcome(
                status,
                result.reason,
                validation_rejected=result.validation_rejected,
                **result.to_detail(),
            ),
            result,
        )

    def _record(self, runtime: _Runtime, worker_id: str, outcome: RepoOutcome) -> None:
        runtime.ledger.append(outcome)
        if outcome.is_terminal:
            success = outcome.status is RepoStatus.COMPLETED
            runtime.store.update(
                lambda state: state.finish_item(worker_id, outcome.repo_id, success=success)
            )
        else:
            runtime.store.update(lambda state: state.abandon_item(worker_id))
        self._logger.info(
            "repo_finished",
            repo_id=outcome.repo_id,
            status=outcome.status.value,
            reason=outcome.reason,
            duration_seconds=round(outcome.duration_seconds, 3),
        )

    def _feed_governor(
        self,
        runtime: _Runtime,
        outcome: RepoOutcome,
        result: PipelineResult | None,
        *,
        trial: bool,
    ) -> None:
        governor = runtime.governor
        if result is not None and result.rate_limited:
            governor.record_rate_limit(outcome.reason or "rate_limited")
        elif outcome.status is RepoStatus.FAILED and outcome.reason in BREAKER_ERROR_REASONS:
            governor.record_error(outcome.reason)
        elif outcome.status is RepoStatus.COMPLETED:
            governor.record_success()
        elif trial:
            governor.breaker.release_trial()

    # --------------------------------------------------------------- finish

    def _finish(self, runtime: _Runtime, *, resumed: bool) -> RunReport:
        store = runtime.store
        interrupted = runtime.token.is_cancelled and not runtime.fatal

        if runtime.fatal:
            self._mark(store, RunLifecycle.FAILED)
            self._logger.error("run_failed", error=str(runtime.fatal[0]))
            raise runtime.fatal[0]

        state = store.load()
        if state is None:
            raise StateStoreError(f"run state disappeared before the run finished: {store.path}")
        if interrupted or state.remaining():
            lifecycle = RunLifecycle.INTERRUPTED
            self._mark(store, lifecycle)
            interrupted = True
        else:
            lifecycle = RunLifecycle.COMPLETED
            store.save(state.transition(lifecycle))
            store.delete()
            runtime.queue.clear()

        latest = runtime.ledger.latest_by_repo()
        outcomes = tuple(latest[item.item_id] for item in state.items if item.item_id in latest)
        report = RunReport(
            run_id=runtime.run_id,
            lifecycle=lifecycle,
            outcomes=outcomes,
            interrupted=interrupted,
            resumed=resumed,
            queue_order=tuple(item.item_id for item in state.items),
            ledger=runtime.ledger.path,
        )
        self._logger.info(
            "run_finished",
            run_id=runtime.run_id,
            lifecycle=lifecycle.value,
            exit_code=report.exit_code,
            **report.counts(),
        )
        return report

    def _mark(self, store: RunStateStore, lifecycle: RunLifecycle) -> None:
        store.update(lambda state: state.transition(lifecycle))

    # --------------------------------------------------------------- status

    def resolve_run_id(self, options: RunOptions) -> str:
        """Run id this invocation will run and log under.

        A resumable checkpoint keeps its own id; otherwise ``options.run_id`` or
        a fresh one is used.
        """

        if options.resume and not options.restart:
            store = self._state_store()
            state = store.load() if store.exists() else None
            if state is not None:
                return state.run_id
        return options.run_id or new_run_id()

    def _state_store(self) -> RunStateStore:
        locks = _section(self._config, "locks")
        mutex = PortableMutex(
            self.lock_dir, stale_after_seconds=float(locks["stale_after_seconds"])
        )
        return RunStateStore(
            self.state_dir, mutex, lock_timeout_seconds=float(locks["lock_timeout_seconds"])
        )

    def status(self) -> dict[str, object]:
        """Read-only snapshot of the checkpoint, backoff pause and latest ledger."""

        state_dir = self.state_dir
        locks = _section(self._config, "locks")
        mutex = PortableMutex(
            self.lock_dir, stale_after_seconds=float(locks["stale_after_seconds"])
        )
        lock_timeout = float(locks["lock_timeout_seconds"])
        store = RunStateStore(state_dir, mutex, lock_timeout_seconds=lock_timeout)
        state = store.load() if store.exists() else None
        backoff_store = BackoffStore(
            state_dir / BACKOFF_STATE_FILENAME, mutex, lock_timeout_seconds=lock_timeout
        )
        backoff = backoff_store.load() if backoff_store.path.exists() else None
        owner = mutex.read_info(RUN_LOCK_NAME)
        if owner is not None and mutex.is_stale(RUN_LOCK_NAME):
            owner = None

        run_id = state.run_id if state is not None else _latest_run_id(state_dir)
        outcomes: list[dict[str, object]] = []
        if run_id is not None:
            ledger = ResultLedger(ledger_path(state_dir, run_id), mutex)
            outcomes = [outcome.to_dict() for outcome in ledger.latest_by_repo().values()]

        return {
            "state_dir": state_dir.as_posix(),
            "run_id": run_id,
            "checkpoint": (
                {
                    "lifecycle": state.lifecycle.value,
                    "items": len(state.items),
                    "completed": len(state.completed),
                    "remaining": [item.item_id for item in state.remaining()],
                    "in_flight": dict(state.in_flight),
                    "last_success": state.last_success,
                    "updated_at": state.updated_at,
                }
                if state is not None
                else None
            ),
            "backoff": backoff.to_dict() if backoff is not None else None,
            "run_lock": owner.to_dict() if owner is not None else None,
            "outcomes": outcomes,
        }


def _latest_run_id(state_dir: Path) -> str | None:
    runs = state_dir / RUNS_DIRNAME
    if not runs.is_dir():
        return None
    names = sorted(entry.name for entry in runs.iterdir() if entry.is_dir())
    return names[-1] if names else None


def _effective_config(config: Mapping[str, object] | None) -> dict[str, Any]:
    base = default_config()
    merged = merge_config(base, config or {})
    return assert_valid_config(merged)


def _section(config: Mapping[str, object], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    if not isinstance(section, Mapping):
        raise InvalidInvocation(f"config section [{name}] is missing")
    return cast("Mapping[str, Any]", section)


__all__ = [
    "BREAKER_ERROR_REASONS",
    "RunController",
    "RunOptions",
    "RunReport",
    "exit_code_for",
]
