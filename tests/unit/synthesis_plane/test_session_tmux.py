"""Unit tests for the tmux session driver against a scripted tmux runner."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from fleet_orchestrator.synthesis_plane.session import (
    SessionErrorCode,
    SessionSettings,
    SessionState,
    TmuxSessionDriver,
    WaitCondition,
    session_name_for,
)

FAST = SessionSettings(agent_command="agent --model x", poll_interval_seconds=0.01, chunk_size=8)


class FakeTmux:
    """Answers tmux subcommands from a table and records every call."""

    def __init__(
        self,
        *,
        has_session: int = 1,
        new_session: tuple[int, str] = (0, ""),
        pane: str = "agent> ready",
        pane_status: str = "0 ",
        failing: dict[str, str] | None = None,
    ) -> None:
        self.has_session = has_session
        self.new_session = new_session
        self.pane = pane
        self.pane_status = pane_status
        self.failing = dict(failing or {})
        self.calls: list[tuple[list[str], str | None]] = []

    def __call__(self, argv: Sequence[str], input_text: str | None) -> subprocess.CompletedProcess[str]:
        args = list(argv)
        self.calls.append((args, input_text))
        command = args[1]
        if command in self.failing:
            return subprocess.CompletedProcess(args, 1, "", self.failing[command])
        if command == "has-session":
            return subprocess.CompletedProcess(args, self.has_session, "", "")
        if command == "new-session":
            code, stderr = self.new_session
            return subprocess.CompletedProcess(args, code, "", stderr)
        if command == "capture-pane":
            return subprocess.CompletedProcess(args, 0, self.pane + "\n", "")
        if command == "display-message":
            return subprocess.CompletedProcess(args, 0, self.pane_status + "\n", "")
        return subprocess.CompletedProcess(args, 0, "", "")

    def commands(self) -> list[str]:
        return [args[1] for args, _ in self.calls]


def test_session_name_is_stable_and_shell_safe(tmp_path: Path) -> None:
    workdir = tmp_path / "my repo.v2"

    name = session_name_for(workdir)

    assert name == session_name_for(workdir)
    assert name.startswith("fleet-my-repo-v2-")
    assert name != session_name_for(tmp_path / "other")
    assert all(char.isalnum() or char in "-_" for char in name)


def test_spawn_creates_detached_session_and_waits_for_output(tmp_path: Path) -> None:
    fake = FakeTmux()
    driver = TmuxSessionDriver(FAST, runner=fake)

    result = driver.spawn(tmp_path, timeout=1.0)

    assert result.ok
    assert result.session is not None
    assert result.session.state is SessionState.ACTIVE
    assert fake.commands()[:3] == ["has-session", "new-session", "set-option"]
    new_session = fake.calls[1][0]
    assert new_session[-2:] == ["--model", "x"]
    assert new_session[new_session.index("-c") + 1] == str(tmp_path)


def test_existing_session_is_busy(tmp_path: Path) -> None:
    fake = FakeTmux(has_session=0)

    result = TmuxSessionDriver(FAST, runner=fake).spawn(tmp_path, timeout=1.0)

    assert result.code is SessionErrorCode.BUSY
    assert fake.commands() == ["has-session"]


def test_leaseholder_reclaims_session_left_by_crashed_invocation(tmp_path: Path) -> None:
    fake = FakeTmux(has_session=0)
    driver = TmuxSessionDriver(FAST, runner=fake)

    result = driver.spawn(tmp_path, timeout=1.0, reclaim=True)

    assert result.ok
    assert result.session is not None
    assert fake.commands()[:3] == ["has-session", "kill-session", "new-session"]
    killed = fake.calls[1][0]
    assert killed[-1] == f"={session_name_for(tmp_path)}"


def test_reclaim_never_kills_a_session_this_driver_started(tmp_path: Path) -> None:
    fake = FakeTmux()
    driver = TmuxSessionDriver(FAST, runner=fake)
    assert driver.spawn(tmp_path, timeout=1.0).ok
    fake.has_session = 0
    fake.calls.clear()

    result = driver.spawn(tmp_path, timeout=1.0, reclaim=True)

    assert result.code is SessionErrorCode.BUSY
    assert fake.commands() == ["has-session"]


def test_duplicate_session_race_is_busy(tmp_path: Path) -> None:
    fake = FakeTmux(new_session=(1, "duplicate session: fleet-x"))

    result = TmuxSessionDriver(FAST, runner=fake).spawn(tmp_path, timeout=1.0)

    assert result.code is SessionErrorCode.BUSY


def test_missing_tmux_binary_is_dependency_missing(tmp_path: Path) -> None:
    def runner(argv: Sequence[str], input_text: str | None) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(argv[0])

    result = TmuxSessionDriver(FAST, runner=runner).spawn(tmp_path, timeout=1.0)

    assert result.code is SessionErrorCode.DEPENDENCY_MISSING


def test_silent_agent_times_out_and_is_killed(tmp_path: Path) -> None:
    fake = FakeTmux(pane="   ")

    result = TmuxSessionDriver(FAST, runner=fake).spawn(tmp_path, timeout=0.05)

    assert result.ok is False
    assert result.code is SessionErrorCode.TIMEOUT
    assert fake.commands()[-1] == "kill-session"


def test_agent_exiting_during_startup_is_reported(tmp_path: Path) -> None:
    fake = FakeTmux(pane_status="1 127")

    result = TmuxSessionDriver(FAST, runner=fake).spawn(tmp_path, timeout=1.0)

    assert result.code is SessionErrorCode.INTERNAL
    assert result.message == "agent exited during startup"


def test_send_pastes_chunks_then_submits(tmp_path: Path) -> None:
    fake = FakeTmux()
    driver = TmuxSessionDriver(FAST, runner=fake)
    session = driver.spawn(tmp_path, timeout=1.0).session
    assert session is not None
    fake.calls.clear()

    result = driver.send(session, "first\nsecond line")

    assert result.ok
    loaded = [text for args, text in fake.calls if args[1] == "load-buffer"]
    assert "".join(text or "" for text in loaded) == "first\nsecond line"
    assert len(loaded) == 3
    assert fake.commands()[-1] == "send-keys"
    assert fake.calls[-1][0][-1] == "Enter"


def test_send_failure_maps_missing_session_to_not_found(tmp_path: Path) -> None:
    fake = FakeTmux()
    driver = TmuxSessionDriver(FAST, runner=fake)
    session = driver.spawn(tmp_path, timeout=1.0).session
    assert session is not None
    fake.failing["paste-buffer"] = "can't find pane: fleet-x"

    result = driver.send(session, "hello")

    assert result.code is SessionErrorCode.NOT_FOUND
    assert result.message == "can't find pane: fleet-x"


def test_dead_pane_with_failure_status_is_agent_error(tmp_path: Path) -> None:
    fake = FakeTmux()
    driver = TmuxSessionDriver(FAST, runner=fake)
    session = driver.spawn(tmp_path, timeout=1.0).session
    assert session is not None
    fake.pane_status = "1 2"

    result = driver.wait(session, WaitCondition(idle_seconds=0.0), timeout=1.0)

    assert result.agent_error is True
    assert session.state is SessionState.ERROR


def test_capture_and_kill(tmp_path: Path) -> None:
    fake = FakeTmux(pane="line one\nline two")
    driver = TmuxSessionDriver(FAST, runner=fake)
    session = driver.spawn(tmp_path, timeout=1.0).session
    assert session is not None

    assert driver.capture(session).output == "line one\nline two"
    assert driver.kill(session).ok
    assert session.state is SessionState.KILLED
    kill_args = fake.calls[-1][0]
    assert kill_args[1:] == ["kill-session", "-t", f"={session.session_id}"]
    assert driver.send(session, "late").code is SessionErrorCode.NOT_FOUND
