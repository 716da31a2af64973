"""In-memory session driver with scripted agent behaviour.

Used by the test-suite and by ``fleet run --driver mock``. Each repository can
be given its own behaviour (a plan to emit, raw output, a hang, a spawn error,
a rate-limit message or a side effect run on send). The driver also records the
peak number of concurrently live sessions per working directory.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fleet_orchestrator.synthesis_plane.session.base import (
    DriverResult,
    PaneSnapshot,
    PollingSessionDriver,
    Session,
    SessionErrorCode,
    SessionSettings,
    SessionState,
    SpawnResult,
    chunk_message,
)
from fleet_orchestrator.verification_plane.plan_markers import wrap_plan_block

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

RATE_LIMIT_OUTPUT = "API Error: 429 Too Many Requests (rate limit exceeded)"


@dataclass(frozen=True, slots=True)
class MockBehavior:
    plan: Mapping[str, object] | None = None
    output: str | None = None
    hang: bool = False
    rate_limited: bool = False
    spawn_error: SessionErrorCode | None = None
    send_error: SessionErrorCode | None = None
    exit_code: int | None = None
    delay_seconds: float = 0.0
    on_send: Callable[[Path, str], None] | None = None

    def response(self) -> str:
        parts: list[str] = []
        if self.rate_limited:
            parts.append(RATE_LIMIT_OUTPUT)
        if self.output is not None:
            parts.append(self.output)
        if self.plan is not None:
            parts.append("Here is the proposed plan.")
            parts.append(wrap_plan_block(dict(self.plan)))
        return "\n".join(parts)


@dataclass(slots=True)
class _MockSession:
    behavior: MockBehavior
    transcript: list[str] = field(default_factory=list)
    responded_at: float | None = None


class MockSessionDriver(PollingSessionDriver):
    name = "mock"

    def __init__(
        self,
        behaviors: Mapping[str, MockBehavior] | None = None,
        *,
        default: MockBehavior | None = None,
        settings: SessionSettings | None = None,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        super().__init__(
            settings or SessionSettings(agent_command="mock-agent", idle_seconds=0.0, poll_interval_seconds=0.01),
            cancel_token=cancel_token,
            clock=clock,
            logger=logger,
        )
        self._behaviors = dict(behaviors or {})
        self._default = default or MockBehavior(output="no plan configured")
        self._sessions: dict[str, _MockSession] = {}
        self._live: dict[str, int] = {}
        self._lock = threading.Lock()
        self._counter = 0
        self.peak_concurrency: dict[str, int] = {}
        self.spawn_count: dict[str, int] = {}
        self.sent: dict[str, list[str]] = {}
        self.reclaim_requests: list[bool] = []

    def behavior_for(self, workdir: Path) -> MockBehavior:
        resolved = workdir.resolve(strict=False)
        for key in (resolved.as_posix(), resolved.name):
            if key in self._behaviors:
                return self._behaviors[key]
        return self._default

    def spawn(self, workdir: Path, timeout: float, *, reclaim: bool = False) -> SpawnResult:
        key = workdir.resolve(strict=False).as_posix()
        behavior = self.behavior_for(workdir)
        with self._lock:
            self.spawn_count[key] = self.spawn_count.get(key, 0) + 1
            self.reclaim_requests.append(reclaim)
            if behavior.spawn_error is not None:
                return SpawnResult(ok=False, code=behavior.spawn_error, message="scripted spawn failure")
            if self._live.get(key, 0) > 0:
                return SpawnResult(ok=False, code=SessionErrorCode.BUSY, message=f"{key} already has a live session")
            self._counter += 1
            session_id = f"mock-{self._counter}"
            self._live[key] = self._live.get(key, 0) + 1
            self.peak_concurrency[key] = max(self.peak_concurrency.get(key, 0), self._live[key])
            self._sessions[session_id] = _MockSession(behavior=behavior)
        session = Session(session_id=session_id, workdir=workdir, backend=self.name)
        session.state = SessionState.ACTIVE
        return SpawnResult(ok=True, session=session)

    def send(self, session: Session, message: str) -> DriverResult:
        with self._lock:
            state = self._sessions.get(session.session_id)
        if state is None or not session.is_live:
            return DriverResult.failure(SessionErrorCode.NOT_FOUND, "session is not live")
        if state.behavior.send_error is not None:
            return DriverResult.failure(state.behavior.send_error, "scripted send failure")
        chunks = chunk_message(message, self.settings.chunk_size)
        with self._lock:
            state.transcript.extend(chunks)
            state.responded_at = self._clock() + state.behavior.delay_seconds
            self.sent.setdefault(session.workdir.resolve(strict=False).as_posix(), []).append(message)
        if state.behavior.on_send is not None:
            state.behavior.on_send(session.workdir, message)
        return DriverResult.success()

    def kill(self, session: Session) -> DriverResult:
        key = session.workdir.resolve(strict=False).as_posix()
        with self._lock:
            if self._sessions.pop(session.session_id, None) is not None:
                self._live[key] = max(0, self._live.get(key, 0) - 1)
        session.finish(SessionState.KILLED)
        self._forget(session)
        return DriverResult.success()

    def live_sessions(self, workdir: Path) -> int:
        with self._lock:
            return self._live.get(workdir.resolve(strict=False).as_posix(), 0)

    def _snapshot(self, session: Session) -> PaneSnapshot | None:
        with self._lock:
            state = self._sessions.get(session.session_id)
            if state is None:
                return None
            prompt = "".join(state.transcript)
            responded_at = state.responded_at
        behavior = state.behavior
        if responded_at is None or behavior.hang or self._clock() < responded_at:
            return PaneSnapshot(output=prompt)
        output = f"{prompt}\n{behavior.response()}" if prompt else behavior.response()
        return PaneSnapshot(
            output=output,
            exited=behavior.exit_code is not None,
            exit_code=behavior.exit_code,
        )


__all__ = ["RATE_LIMIT_OUTPUT", "MockBehavior", "MockSessionDriver"]
