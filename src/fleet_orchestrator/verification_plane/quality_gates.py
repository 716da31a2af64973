"""
fleet-orchestrator — quality gates

File: src/fleet_orchestrator/verification_plane/quality_gates.py

Purpose
- Run operator-configured commands (tests, linters) in a repository after its
  plan was accepted and before anything is committed.

Functional requirements
- Gates run in configured order in the repository root; the first failing
  gate stops the run and fails the repository with ``quality_gate_failed``.
- A gate that cannot be started (missing executable) fails with exit 127.
- Each gate gets ``min(gate timeout, phase time left)``. When the phase
  deadline is what ran out, ``PhaseTimeout`` propagates instead of a gate
  failure.
- Captured output keeps only its tail, redacted.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from fleet_orchestrator.security.redaction import redact_text

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import Deadline

DEFAULT_GATE_TIMEOUT_SECONDS: Final[float] = 600.0
OUTPUT_TAIL_LINES: Final[int] = 40
MISSING_EXECUTABLE_EXIT: Final[int] = 127

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


@dataclass(frozen=True, slots=True)
class GateResult:
    command: str
    ok: bool
    exit_code: int | None
    duration_seconds: float
    output_tail: str = ""
    timed_out: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
            "output_tail": self.output_tail,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True, slots=True)
class QualityReport:
    gates: tuple[GateResult, ...] = ()

    @property
    def ok(self) -> bool:
        return all(gate.ok for gate in self.gates)

    @property
    def failed(self) -> GateResult | None:
        return next((gate for gate in self.gates if not gate.ok), None)

    def to_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "gates": [gate.to_dict() for gate in self.gates]}


class QualityGateRunner:
    """Runs gate commands one after another, stopping at the first failure."""

    def __init__(
        self,
        commands: Sequence[str] = (),
        *,
        timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS,
        runner: Runner = subprocess.run,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._commands = tuple(command for command in commands if command.strip())
        self._timeout = timeout_seconds
        self._runner = runner
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def commands(self) -> tuple[str, ...]:
        return self._commands

    def run(
        self,
        root: Path | str,
        commands: Sequence[str] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> QualityReport:
        """Run ``commands`` (default: the configured ones) inside ``root``."""

        selected = self._commands if commands is None else tuple(c for c in commands if c.strip())
        results: list[GateResult] = []
        for command in selected:
            result = self._run_one(Path(root), command, deadline)
            results.append(result)
            log = self._logger.info if result.ok else self._logger.warning
            log(
                "quality_gate_finished",
                command=command,
                ok=result.ok,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )
            if not result.ok:
                break
        return QualityReport(tuple(results))

    def _run_one(self, root: Path, command: str, deadline: Deadline | None) -> GateResult:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            return GateResult(command, False, None, 0.0, output_tail=f"unparseable command: {exc}")
        timeout = self._timeout if deadline is None else deadline.bound(self._timeout)
        started = self._clock()
        try:
            completed = self._runner(
                argv,
                cwd=str(root),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            if deadline is not None:
                deadline.check()
            return GateResult(
                command,
                False,
                None,
                self._clock() - started,
                output_tail=_tail(_as_text(exc.stdout) + _as_text(exc.stderr)),
                timed_out=True,
            )
        except FileNotFoundError as exc:
            return GateResult(
                command,
                False,
                MISSING_EXECUTABLE_EXIT,
                self._clock() - started,
                output_tail=str(exc),
            )
        output = (completed.stdout or "") + (completed.stderr or "")
        return GateResult(
            command,
            completed.returncode == 0,
            completed.returncode,
            self._clock() - started,
            output_tail=_tail(output),
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return redact_text("\n".join(text.splitlines()[-lines:]))


__all__ = [
    "DEFAULT_GATE_TIMEOUT_SECONDS",
    "GateResult",
    "QualityGateRunner",
    "QualityReport",
]
