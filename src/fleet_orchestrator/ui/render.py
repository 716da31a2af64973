"""Output rendering for the fleet CLI.

File: src/fleet_orchestrator/ui/render.py

Purpose
- Plain-text rendering of run reports, preflight verdicts and diagnostics.
- Respect the NO_COLOR environment variable and the --no-color flag.

Functional requirements
- Output must stay deterministic: same report, same text.
- Color is only ever applied to status words, and only on a TTY.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from fleet_orchestrator.domain.models import RepoOutcome
    from fleet_orchestrator.integration_plane.preflight import PreflightResult

_ANSI_RESET = "\033[0m"
_STATUS_COLORS: dict[str, str] = {
    "completed": "\033[32m",
    "ok": "\033[32m",
    "skipped": "\033[33m",
    "interrupted": "\033[33m",
    "failed": "\033[31m",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer writing to ``stream`` (stdout by default)."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _print(self, line: str = "") -> None:
        print(line, file=self._stream)

    def heading(self, text: str) -> None:
        self._print(text)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def blank(self) -> None:
        self._print()

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def warning(self, text: str) -> None:
        self._print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def status_word(self, status: str) -> str:
        """``status`` wrapped in its ANSI color when color output is on."""

        return self._tag(status, status)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print an aligned ASCII table; nothing is printed for zero rows."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def outcomes(self, outcomes: Sequence[RepoOutcome], *, title: str = "Results") -> None:
        rows = [
            [
                outcome.repo_id,
                outcome.status.value,
                outcome.reason or "-",
                f"{outcome.duration_seconds:.1f}s",
            ]
            for outcome in outcomes
        ]
        self.table(["repository", "status", "reason", "duration"], rows, title=title)

    def preflight(self, results: Sequence[PreflightResult]) -> None:
        for result in results:
            if result.safe:
                self._print(f"  {self.status_word('ok'):<6}  {result.repo_id}")
                continue
            reason = result.reason.value if result.reason is not None else "unknown"
            self._print(f"  {self.status_word('skipped')}  {result.repo_id}  ({reason})")
            if result.message:
                self._print(f"      {result.message}")
            if result.remediation:
                self._print(f"      fix: {result.remediation}")
            if self.verbose and result.detail:
                self._print(f"      detail: {result.detail}")

    def counts(self, counts: Mapping[str, int]) -> None:
        summary = ", ".join(f"{self.status_word(name)}={value}" for name, value in counts.items())
        self.kv("Summary", summary)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._print(f"  $ {step}")

    def ok(self, label: str) -> None:
        self._print(f"  {self._tag('OK', 'ok')}    {label}")

    def fail(self, label: str) -> None:
        self._print(f"  {self._tag('FAIL', 'failed')}  {label}")

    def _tag(self, text: str, status: str) -> str:
        color = _STATUS_COLORS.get(status)
        if not self._color or color is None:
            return text
        return f"{color}{text}{_ANSI_RESET}"


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
