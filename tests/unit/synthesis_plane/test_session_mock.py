"""
fleet-orchestrator — unit tests for session primitives and the scripted driver

File: tests/unit/synthesis_plane/test_session_mock.py

Purpose
- Cover message chunking, settings validation and the shared polling wait
  semantics (idle, pattern, exit status, timeout, cancellation) through the
  in-memory mock driver.

Functional requirements
- Offline only; no tmux and no agent binary required.
"""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from fleet_orchestrator.synthesis_plane.session import (
    DRIVER_NAMES,
    LocalSessionDriver,
    MockBehavior,
    MockSessionDriver,
    Session,
    SessionErrorCode,
    SessionSettings,
    SessionState,
    TmuxSessionDriver,
    WaitCondition,
    chunk_message,
    create_session_driver,
)
from fleet_orchestrator.synthesis_plane.session.mock import RATE_LIMIT_OUTPUT
from fleet_orchestrator.utils.concurrency import CancellationToken

PLAN = {"commits": [{"message": "docs: readme", "files": ["README.md"]}]}
IMMEDIATE = WaitCondition(idle_seconds=0.0)


def _spawned(driver: MockSessionDriver, workdir: Path) -> Session:
    result = driver.spawn(workdir, timeout=1.0)
    assert result.ok, result.message
    assert result.session is not None
    return result.session


def test_chunk_message_prefers_line_boundaries() -> None:
    message = "alpha\nbravo\ncharlie\n"

    chunks = chunk_message(message, 10)

    assert "".join(chunks) == message
    assert chunks == ["alpha\n", "bravo\n", "charlie\n"]
    assert chunk_message("short", 100) == ["short"]
    assert chunk_message("abcdefgh", 3) == ["abc", "def", "gh"]
    with pytest.raises(ValueError, match="size"):
        chunk_message("x", 0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"agent_command": "  "},
        {"chunk_size": 0},
        {"poll_interval_seconds": 0.0},
    ],
)
def test_session_settings_reject_invalid_values(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        SessionSettings(**kwargs)  # type: ignore[arg-type]


def test_session_finish_is_terminal_once(tmp_path: Path) -> None:
    session = Session(session_id="s1", workdir=tmp_path, backend="mock")

    session.finish(SessionState.DONE)
    session.finish(SessionState.KILLED)

    assert session.state is SessionState.DONE
    assert session.is_live is False
    assert session.to_dict()["state"] == "done"


def test_plan_is_emitted_after_send_and_condition_met(tmp_path: Path) -> None:
    driver = MockSessionDriver({tmp_path.name: MockBehavior(plan=PLAN)})
    session = _spawned(driver, tmp_path)

    assert driver.send(session, "propose commits").ok
    result = driver.wait(session, IMMEDIATE, timeout=1.0)
    captured = driver.capture(session)

    assert result.met is True
    assert session.state is SessionState.IDLE
    assert captured.ok
    assert "propose commits" in captured.output
    assert '"docs: readme"' in captured.output
    assert driver.sent[tmp_path.resolve().as_posix()] == ["propose commits"]


def test_pattern_that_never_appears_times_out(tmp_path: Path) -> None:
    driver = MockSessionDriver(default=MockBehavior(hang=True))
    session = _spawned(driver, tmp_path)
    driver.send(session, "hello")

    result = driver.wait(
        session, WaitCondition(idle_seconds=0.0, pattern=re.compile("NEVER")), timeout=0.05
    )

    assert result.met is False
    assert result.timed_out is True
    assert result.code is SessionErrorCode.TIMEOUT
    assert session.is_live


@pytest.mark.parametrize(
    ("exit_code", "state", "agent_error"),
    [(0, SessionState.DONE, False), (2, SessionState.ERROR, True)],
)
def test_exited_agent_finishes_session(
    tmp_path: Path, exit_code: int, state: SessionState, agent_error: bool
) -> None:
    driver = MockSessionDriver(default=MockBehavior(output="bye", exit_code=exit_code))
    session = _spawned(driver, tmp_path)
    driver.send(session, "go")

    result = driver.wait(session, IMMEDIATE, timeout=1.0)

    assert result.agent_error is agent_error
    assert session.state is state
    assert result.detail == f"agent exited with status {exit_code}"


def test_cancelled_token_interrupts_wait(tmp_path: Path) -> None:
    token = CancellationToken()
    driver = MockSessionDriver(default=MockBehavior(hang=True), cancel_token=token)
    session = _spawned(driver, tmp_path)
    token.cancel("signal")

    result = driver.wait(session, IMMEDIATE, timeout=5.0)

    assert result.interrupted is True
    assert result.met is False


def test_vanished_session_is_an_agent_error(tmp_path: Path) -> None:
    driver = MockSessionDriver(default=MockBehavior(plan=PLAN))
    session = _spawned(driver, tmp_path)
    stale = Session(session_id="mock-999", workdir=tmp_path, backend="mock", state=SessionState.ACTIVE)

    result = driver.wait(stale, IMMEDIATE, timeout=1.0)

    assert result.agent_error is True
    assert result.code is SessionErrorCode.NOT_FOUND
    assert stale.state is SessionState.ERROR
    assert driver.capture(stale).code is SessionErrorCode.NOT_FOUND
    assert session.is_live


def test_second_spawn_for_same_workdir_is_busy(tmp_path: Path) -> None:
    driver = MockSessionDriver()
    session = _spawned(driver, tmp_path)

    second = driver.spawn(tmp_path, timeout=1.0)

    assert second.ok is False
    assert second.code is SessionErrorCode.BUSY
    assert driver.live_sessions(tmp_path) == 1

    assert driver.kill(session).ok
    assert driver.kill(session).ok
    assert driver.live_sessions(tmp_path) == 0
    assert session.state is SessionState.KILLED
    assert _spawned(driver, tmp_path).is_live
    assert driver.peak_concurrency[tmp_path.resolve().as_posix()] == 1
    assert driver.spawn_count[tmp_path.resolve().as_posix()] == 3


def test_scripted_failures(tmp_path: Path) -> None:
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    driver = MockSessionDriver(
        {
            "a": MockBehavior(spawn_error=SessionErrorCode.DEPENDENCY_MISSING),
            "b": MockBehavior(send_error=SessionErrorCode.INTERNAL),
        }
    )

    spawn = driver.spawn(tmp_path / "a", timeout=1.0)
    session = _spawned(driver, tmp_path / "b")
    send = driver.send(session, "hi")

    assert spawn.code is SessionErrorCode.DEPENDENCY_MISSING
    assert send.ok is False
    assert send.code is SessionErrorCode.INTERNAL
    driver.kill(session)
    assert driver.send(session, "again").code is SessionErrorCode.NOT_FOUND


def test_rate_limited_output_and_on_send_hook(tmp_path: Path) -> None:
    seen: list[tuple[Path, str]] = []
    driver = MockSessionDriver(
        default=MockBehavior(
            plan=PLAN,
            rate_limited=True,
            on_send=lambda workdir, message: seen.append((workdir, message)),
        )
    )
    session = _spawned(driver, tmp_path)
    driver.send(session, "prompt")
    driver.wait(session, IMMEDIATE, timeout=1.0)

    assert RATE_LIMIT_OUTPUT in driver.capture(session).output
    assert "429" in RATE_LIMIT_OUTPUT
    assert seen == [(tmp_path, "prompt")]


def test_activity_reports_state_and_velocity(tmp_path: Path) -> None:
    ticks = iter([0.0, 0.0, 2.0, 2.0, 2.0, 2.0])
    driver = MockSessionDriver(default=MockBehavior(output="x" * 40), clock=lambda: next(ticks, 2.0))
    session = _spawned(driver, tmp_path)

    first = driver.activity(session)
    driver.send(session, "")
    second = driver.activity(session)
    driver.kill(session)

    assert first.state is SessionState.ACTIVE
    assert first.velocity == 0.0
    assert second.velocity > 0.0
    assert driver.activity(session).state is SessionState.KILLED


def test_create_session_driver_by_name() -> None:
    settings = SessionSettings(agent_command="agent --flag", poll_interval_seconds=0.1)

    assert isinstance(create_session_driver("tmux", settings), TmuxSessionDriver)
    assert isinstance(create_session_driver(" Local ", settings), LocalSessionDriver)
    mock = create_session_driver("mock", mock_default=MockBehavior(plan=PLAN))
    assert isinstance(mock, MockSessionDriver)
    assert mock.settings.agent_command == "mock-agent"
    assert DRIVER_NAMES == ("tmux", "local", "mock")
    with pytest.raises(ValueError, match="unknown session driver"):
        create_session_driver("screen")
