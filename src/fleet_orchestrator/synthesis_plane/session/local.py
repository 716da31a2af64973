"""Subprocess-backed session driver for one-shot agent commands.

The agent runs as a child process with piped stdin and combined stdout/stderr.
A reader thread accumulates output so polling never blocks. After ``send``
stdin is closed, which is what prompt-on-stdin agents expect.
"""

from __future__ import annotations

import contextlib
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
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

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

_KILL_GRACE_SECONDS = 3.0


class _LocalProcess:
    def __init__(self, process: subprocess.Popen[str]) -> None:
        self.process = process
        self._chunks: list[str] = []
        self._lock = threading.Lock()
        self._reader = threading.Thread(target=self._pump, name="fleet-session-reader", daemon=True)
        self._reader.start()

    def _pump(self) -> None:
        stream = self.process.stdout
        if stream is None:
            return
        for line in iter(stream.readline, ""):
            with self._lock:
                self._chunks.append(line)
        stream.close()

    def output(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def join_reader(self, timeout: float) -> None:
        self._reader.join(timeout)


class LocalSessionDriver(PollingSessionDriver):
    name = "local"

    def __init__(
        self,
        settings: SessionSettings | None = None,
        *,
        close_stdin_after_send: bool = True,
        env: dict[str, str] | None = None,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        super().__init__(settings, cancel_token=cancel_token, clock=clock, logger=logger)
        self._close_stdin = close_stdin_after_send
        self._env = env
        self._processes: dict[str, _LocalProcess] = {}
        self._live_by_workdir: dict[str, str] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def spawn(self, workdir: Path, timeout: float, *, reclaim: bool = False) -> SpawnResult:
        key = workdir.resolve(strict=False).as_posix()
        with self._lock:
            if key in self._live_by_workdir:
                return SpawnResult(
                    ok=False,
                    code=SessionErrorCode.BUSY,
                    message=f"a session is already live for {key}",
                )
            self._counter += 1
            session_id = f"local-{os.getpid()}-{self._counter}"
            self._live_by_workdir[key] = session_id

        environ = dict(os.environ)
        if self._env:
            environ.update(self._env)
        try:
            process = subprocess.Popen(
                shlex.split(self.settings.agent_command),
                cwd=str(workdir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                env=environ,
            )
        except FileNotFoundError as exc:
            self._release(key)
            return SpawnResult(ok=False, code=SessionErrorCode.DEPENDENCY_MISSING, message=str(exc))
        except OSError as exc:
            self._release(key)
            return SpawnResult(ok=False, code=SessionErrorCode.INTERNAL, message=str(exc))

        with self._lock:
            self._processes[session_id] = _LocalProcess(process)
        session = Session(session_id=session_id, workdir=workdir, backend=self.name)
        session.state = SessionState.ACTIVE
        self._logger.info("session_spawned", session_id=session_id, backend=self.name, pid=process.pid)
        return SpawnResult(ok=True, session=session)

    def send(self, session: Session, message: str) -> DriverResult:
        handle = self._handle(session)
        if handle is None or not session.is_live:
            return DriverResult.failure(SessionErrorCode.NOT_FOUND, "session is not live")
        stdin = handle.process.stdin
        if stdin is None or stdin.closed:
            return DriverResult.failure(SessionErrorCode.INTERNAL, "agent stdin is closed")
        try:
            for chunk in chunk_message(message, self.settings.chunk_size):
                stdin.write(chunk)
                stdin.flush()
            stdin.write("\n")
            stdin.flush()
            if self._close_stdin:
                stdin.close()
        except (BrokenPipeError, ValueError, OSError) as exc:
            return DriverResult.failure(SessionErrorCode.INTERNAL, f"write to agent failed: {exc}")
        return DriverResult.success()

    def kill(self, session: Session) -> DriverResult:
        handle = self._handle(session)
        if handle is not None:
            process = handle.process
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=_KILL_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait(timeout=_KILL_GRACE_SECONDS)
            if process.stdin is not None:
                with contextlib.suppress(OSError, ValueError):
                    process.stdin.close()
            handle.join_reader(_KILL_GRACE_SECONDS)
            with self._lock:
                self._processes.pop(session.session_id, None)
        self._release(session.workdir.resolve(strict=False).as_posix(), session.session_id)
        session.finish(SessionState.KILLED)
        self._forget(session)
        return DriverResult.success()

    def _snapshot(self, session: Session) -> PaneSnapshot | None:
        handle = self._handle(session)
        if handle is None:
            return None
        exit_code = handle.process.poll()
        if exit_code is not None:
            # Let the reader drain whatever the process wrote before exiting.
            handle.join_reader(1.0)
        return PaneSnapshot(output=handle.output(), exited=exit_code is not None, exit_code=exit_code)

    def _handle(self, session: Session) -> _LocalProcess | None:
        with self._lock:
            return self._processes.get(session.session_id)

    def _release(self, key: str, session_id: str | None = None) -> None:
        with self._lock:
            if session_id is None or self._live_by_workdir.get(key) == session_id:
                self._live_by_workdir.pop(key, None)


__all__ = ["LocalSessionDriver"]
