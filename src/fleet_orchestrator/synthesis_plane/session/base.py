"""
fleet-orchestrator — session driver contract

File: src/fleet_orchestrator/synthesis_plane/session/base.py

Purpose
- Backend-neutral interface for driving one external agent process per
  repository: spawn, send, wait, activity, capture, kill.

Functional requirements
- Every operation returns a structured result with an explicit success flag and
  an error code from a closed set; callers never parse backend text.
- ``send`` chunks messages above the transport limit transparently.
- ``wait`` honours its timeout and the run's cancellation token.
- Idle detection is a phase-timing signal only. It never stands in for plan
  extraction or guardrail validation.
- ``kill`` is idempotent.
- A leaseholder may reclaim a session orphaned by a crashed invocation.
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

DEFAULT_CHUNK_SIZE = 4000


class SessionErrorCode(StrEnum):
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    BUSY = "busy"
    DEPENDENCY_MISSING = "dependency_missing"
    INTERNAL = "internal"


class SessionState(StrEnum):
    SPAWNING = "spawning"
    ACTIVE = "active"
    IDLE = "idle"
    DONE = "done"
    ERROR = "error"
    KILLED = "killed"


TERMINAL_SESSION_STATES = frozenset({SessionState.DONE, SessionState.ERROR, SessionState.KILLED})


@dataclass(frozen=True, slots=True)
class SessionSettings:
    agent_command: str = "claude"
    spawn_timeout_seconds: float = 30.0
    idle_seconds: float = 5.0
    poll_interval_seconds: float = 0.5
    chunk_size: int = DEFAULT_CHUNK_SIZE
    history_lines: int = 5000

    def __post_init__(self) -> None:
        if not self.agent_command.strip():
            raise ValueError("agent_command must not be empty")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")


@dataclass(slots=True)
class Session:
    """Handle for one agent process. Owned by exactly one worker."""

    session_id: str
    workdir: Path
    backend: str
    state: SessionState = SessionState.SPAWNING
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    @property
    def is_live(self) -> bool:
        return self.state not in TERMINAL_SESSION_STATES

    def finish(self, state: SessionState) -> None:
        if self.is_live:
            self.state = state
            self.ended_at = time.monotonic()

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "workdir": self.workdir.as_posix(),
            "backend": self.backend,
            "state": self.state.value,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True, slots=True)
class DriverResult:
    ok: bool
    code: SessionErrorCode | None = None
    message: str | None = None

    @classmethod
    def success(cls) -> DriverResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, code: SessionErrorCode, message: str) -> DriverResult:
        return cls(ok=False, code=code, message=message)


@dataclass(frozen=True, slots=True)
class SpawnResult:
    ok: bool
    session: Session | None = None
    code: SessionErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class WaitCondition:
    """Met when output has been quiet for ``idle_seconds`` and ``pattern`` (if any) matched."""

    idle_seconds: float = 5.0
    pattern: re.Pattern[str] | None = None


@dataclass(frozen=True, slots=True)
class WaitResult:
    met: bool
    timed_out: bool = False
    agent_error: bool = False
    interrupted: bool = False
    code: SessionErrorCode | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class ActivityReport:
    state: SessionState
    velocity: float = 0.0


@dataclass(frozen=True, slots=True)
class CaptureResult:
    ok: bool
    output: str = ""
    code: SessionErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class PaneSnapshot:
    """One poll of a session: current output and whether the process exited."""

    output: str
    exited: bool = False
    exit_code: int | None = None


@runtime_checkable
class SessionDriver(Protocol):
    name: str

    def spawn(self, workdir: Path, timeout: float, *, reclaim: bool = False) -> SpawnResult:
        """Start the agent in ``workdir``.

        ``reclaim=True`` means the caller holds the repository lease, so a
        backend session that outlived its invocation may be killed and replaced.
        """
        ...

    def send(self, session: Session, message: str) -> DriverResult: ...

    def wait(self, session: Session, condition: WaitCondition, timeout: float) -> WaitResult: ...

    def activity(self, session: Session) -> ActivityReport: ...

    def capture(self, session: Session) -> CaptureResult: ...

    def kill(self, session: Session) -> DriverResult: ...


def chunk_message(message: str, size: int) -> list[str]:
    """Split ``message`` into transport-sized pieces, preferring line boundaries."""

    if size <= 0:
        raise ValueError("size must be > 0")
    if len(message) <= size:
        return [message]
    chunks: list[str] = []
    remaining = message
    while len(remaining) > size:
        cut = remaining.rfind("\n", 0, size)
        cut = size if cut <= 0 else cut + 1
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        chunks.append(remaining)
    return chunks


class PollingSessionDriver:
    """Shared wait/activity logic for backends that can be polled for output."""

    name = "polling"

    def __init__(
        self,
        settings: SessionSettings | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self.settings = settings or SessionSettings()
        self._cancel = cancel_token
        self._clock = clock
        self._activity: dict[str, tuple[float, int, float]] = {}
        self._activity_lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def _snapshot(self, session: Session) -> PaneSnapshot | None:
        """Current output, or ``None`` when the session no longer exists."""

        raise NotImplementedError

    def wait(self, session: Session, condition: WaitCondition, timeout: float) -> WaitResult:
        deadline = self._clock() + max(timeout, 0.0)
        last_output: str | None = None
        last_change = self._clock()

        while True:
            if self._cancel is not None and self._cancel.is_cancelled:
                return WaitResult(met=False, interrupted=True, detail="cancelled")

            snapshot = self._snapshot(session)
            now = self._clock()
            if snapshot is None:
                session.finish(SessionState.ERROR)
                return WaitResult(
                    met=False,
                    agent_error=True,
                    code=SessionErrorCode.NOT_FOUND,
                    detail="session disappeared",
                )
            self._record_activity(session, snapshot.output, now)
            if snapshot.output != last_output:
                last_output = snapshot.output
                last_change = now
                if session.state is SessionState.IDLE:
                    session.state = SessionState.ACTIVE

            matched = condition.pattern is None or bool(condition.pattern.search(snapshot.output))
            if snapshot.exited:
                failed = snapshot.exit_code not in (None, 0)
                session.finish(SessionState.ERROR if failed else SessionState.DONE)
                return WaitResult(
                    met=matched,
                    agent_error=failed,
                    detail=f"agent exited with status {snapshot.exit_code}",
                )
            if matched and now - last_change >= condition.idle_seconds:
                session.state = SessionState.IDLE
                return WaitResult(met=True)
            if now >= deadline:
                return WaitResult(
                    met=False,
                    timed_out=True,
                    code=SessionErrorCode.TIMEOUT,
                    detail=f"condition not met within {timeout:g}s",
                )

            pause = min(self.settings.poll_interval_seconds, max(deadline - now, 0.01))
            if self._cancel is not None:
                self._cancel.wait(pause)
            else:
                time.sleep(pause)

    def activity(self, session: Session) -> ActivityReport:
        if not session.is_live:
            return ActivityReport(state=session.state)
        snapshot = self._snapshot(session)
        if snapshot is None:
            return ActivityReport(state=SessionState.ERROR)
        velocity = self._record_activity(session, snapshot.output, self._clock())
        return ActivityReport(state=session.state, velocity=velocity)

    def capture(self, session: Session) -> CaptureResult:
        snapshot = self._snapshot(session)
        if snapshot is None:
            return CaptureResult(ok=False, code=SessionErrorCode.NOT_FOUND, message="no such session")
        return CaptureResult(ok=True, output=snapshot.output)

    def _record_activity(self, session: Session, output: str, now: float) -> float:
        with self._activity_lock:
            previous = self._activity.get(session.session_id)
            velocity = 0.0
            if previous is not None:
                last_time, last_length, last_velocity = previous
                elapsed = now - last_time
                velocity = (
                    max(0, len(output) - last_length) / elapsed if elapsed > 0 else last_velocity
                )
            self._activity[session.session_id] = (now, len(output), velocity)
            return velocity

    def _forget(self, session: Session) -> None:
        with self._activity_lock:
            self._activity.pop(session.session_id, None)


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "TERMINAL_SESSION_STATES",
    "ActivityReport",
    "CaptureResult",
    "DriverResult",
    "PaneSnapshot",
    "PollingSessionDriver",
    "Session",
    "SessionDriver",
    "SessionErrorCode",
    "SessionSettings",
    "SessionState",
    "SpawnResult",
    "WaitCondition",
    "WaitResult",
    "chunk_message",
]
