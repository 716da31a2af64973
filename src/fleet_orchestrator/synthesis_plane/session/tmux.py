"""tmux-backed session driver.

One detached tmux session per repository, named from a hash of the working
directory so a second spawn for the same repository sees the existing session
and reports ``busy``. A caller holding the repository lease may reclaim a
session this driver did not start, since only a crashed invocation leaves one
behind. Messages are delivered through a named paste buffer in chunks and
submitted with a final ``Enter``.
"""

from __future__ import annotations

import re
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
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
from fleet_orchestrator.utils.hashing import sha256_text

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

CommandRunner = Callable[[Sequence[str], str | None], subprocess.CompletedProcess[str]]

_SLUG_RE = re.compile(r"[^A-Za-z0-9_-]+")
_TMUX_TIMEOUT_SECONDS = 15.0


def run_tmux(argv: Sequence[str], input_text: str | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        list(argv),
        input=input_text,
        capture_output=True,
        text=True,
        check=False,
        timeout=_TMUX_TIMEOUT_SECONDS,
    )


def session_name_for(workdir: Path) -> str:
    resolved = workdir.resolve(strict=False)
    slug = _SLUG_RE.sub("-", resolved.name).strip("-")[:32] or "repo"
    return f"fleet-{slug}-{sha256_text(resolved.as_posix())[:10]}"


class TmuxSessionDriver(PollingSessionDriver):
    name = "tmux"

    def __init__(
        self,
        settings: SessionSettings | None = None,
        *,
        tmux_binary: str = "tmux",
        runner: CommandRunner = run_tmux,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        super().__init__(settings, cancel_token=cancel_token, clock=clock, logger=logger)
        self._tmux = tmux_binary
        self._runner = runner
        self._owned: set[str] = set()
        self._owned_lock = threading.Lock()

    def spawn(self, workdir: Path, timeout: float, *, reclaim: bool = False) -> SpawnResult:
        name = session_name_for(workdir)
        try:
            if self._tmux_ok("has-session", "-t", f"={name}"):
                with self._owned_lock:
                    ours = name in self._owned
                if ours or not reclaim:
                    return SpawnResult(
                        ok=False,
                        code=SessionErrorCode.BUSY,
                        message=f"tmux session {name} already exists",
                    )
                # Leaseholder sees a session no live invocation owns.
                self._logger.warning("orphan_session_reclaimed", session_id=name, workdir=str(workdir))
                self._run("kill-session", "-t", f"={name}")
            created = self._run(
                "new-session",
                "-d",
                "-s",
                name,
                "-x",
                "250",
                "-y",
                "50",
                "-c",
                str(workdir),
                *shlex.split(self.settings.agent_command),
            )
        except FileNotFoundError:
            return SpawnResult(
                ok=False,
                code=SessionErrorCode.DEPENDENCY_MISSING,
                message=f"{self._tmux} is not installed",
            )
        except subprocess.TimeoutExpired:
            return SpawnResult(ok=False, code=SessionErrorCode.TIMEOUT, message="tmux did not respond")
        if created.returncode != 0:
            code = (
                SessionErrorCode.BUSY
                if "duplicate session" in created.stderr
                else SessionErrorCode.INTERNAL
            )
            return SpawnResult(ok=False, code=code, message=created.stderr.strip() or "new-session failed")

        self._run("set-option", "-t", name, "remain-on-exit", "on")
        session = Session(session_id=name, workdir=workdir, backend=self.name)

        # The agent is ready once it has drawn something.
        deadline = self._clock() + max(timeout, 0.0)
        while True:
            snapshot = self._snapshot(session)
            if snapshot is None or snapshot.exited:
                self.kill(session)
                return SpawnResult(
                    ok=False,
                    code=SessionErrorCode.INTERNAL,
                    message="agent exited during startup",
                )
            if snapshot.output.strip():
                break
            if self._clock() >= deadline:
                self.kill(session)
                return SpawnResult(
                    ok=False,
                    code=SessionErrorCode.TIMEOUT,
                    message=f"agent produced no output within {timeout:g}s",
                )
            if self._cancel is not None:
                if self._cancel.wait(self.settings.poll_interval_seconds):
                    self.kill(session)
                    return SpawnResult(ok=False, code=SessionErrorCode.INTERNAL, message="cancelled")
            else:
                time.sleep(self.settings.poll_interval_seconds)

        session.state = SessionState.ACTIVE
        with self._owned_lock:
            self._owned.add(name)
        self._logger.info("session_spawned", session_id=name, backend=self.name)
        return SpawnResult(ok=True, session=session)

    def send(self, session: Session, message: str) -> DriverResult:
        if not session.is_live:
            return DriverResult.failure(SessionErrorCode.NOT_FOUND, "session is not live")
        buffer_name = f"{session.session_id}-input"
        try:
            for chunk in chunk_message(message, self.settings.chunk_size):
                loaded = self._run("load-buffer", "-b", buffer_name, "-", input_text=chunk)
                if loaded.returncode != 0:
                    return self._failure(loaded, "load-buffer failed")
                pasted = self._run("paste-buffer", "-d", "-b", buffer_name, "-t", session.session_id)
                if pasted.returncode != 0:
                    return self._failure(pasted, "paste-buffer failed")
            submitted = self._run("send-keys", "-t", session.session_id, "Enter")
            if submitted.returncode != 0:
                return self._failure(submitted, "send-keys failed")
        except subprocess.TimeoutExpired:
            return DriverResult.failure(SessionErrorCode.TIMEOUT, "tmux did not respond")
        except FileNotFoundError:
            return DriverResult.failure(SessionErrorCode.DEPENDENCY_MISSING, "tmux is not installed")
        session.state = SessionState.ACTIVE
        return DriverResult.success()

    def kill(self, session: Session) -> DriverResult:
        try:
            self._run("kill-session", "-t", f"={session.session_id}")
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            self._logger.warning("session_kill_failed", session_id=session.session_id, error=str(exc))
        session.finish(SessionState.KILLED)
        with self._owned_lock:
            self._owned.discard(session.session_id)
        self._forget(session)
        return DriverResult.success()

    def _snapshot(self, session: Session) -> PaneSnapshot | None:
        try:
            captured = self._run(
                "capture-pane",
                "-p",
                "-J",
                "-t",
                session.session_id,
                "-S",
                f"-{self.settings.history_lines}",
            )
            if captured.returncode != 0:
                return None
            status = self._run(
                "display-message",
                "-p",
                "-t",
                session.session_id,
                "#{pane_dead} #{pane_dead_status}",
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        exited = False
        exit_code: int | None = None
        if status.returncode == 0:
            fields = status.stdout.split()
            exited = bool(fields) and fields[0] == "1"
            if exited and len(fields) > 1 and fields[1].lstrip("-").isdigit():
                exit_code = int(fields[1])
        return PaneSnapshot(output=captured.stdout.rstrip("\n"), exited=exited, exit_code=exit_code)

    def _tmux_ok(self, *args: str) -> bool:
        return self._run(*args).returncode == 0

    def _run(self, *args: str, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
        return self._runner([self._tmux, *args], input_text)

    def _failure(self, completed: subprocess.CompletedProcess[str], fallback: str) -> DriverResult:
        stderr = completed.stderr.strip()
        code = (
            SessionErrorCode.NOT_FOUND
            if "can't find" in stderr or "no server" in stderr
            else SessionErrorCode.INTERNAL
        )
        return DriverResult.failure(code, stderr or fallback)


__all__ = ["CommandRunner", "TmuxSessionDriver", "run_tmux", "session_name_for"]
