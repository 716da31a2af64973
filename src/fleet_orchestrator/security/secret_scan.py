"""
fleet-orchestrator — layered secret scanner

File: src/fleet_orchestrator/security/secret_scan.py

Purpose
- Scan the files a plan wants to stage, preferring a dedicated tool and
  falling back to built-in heuristics.

Functional requirements
- Chain in ``auto`` mode: gitleaks, then detect-secrets, then heuristics.
- Result shape ``{ok, tool, findings}``; findings carry rule, path and line.
- A tool that is missing, crashes, or emits unparsable output falls through to
  the next layer. Without a deadline the heuristic layer always runs to
  completion; with one, a spent budget raises ``PhaseTimeout``.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from fleet_orchestrator.security.redaction import SecretFinding, scan_for_secrets

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import Deadline

DEFAULT_TOOL_TIMEOUT_SECONDS: Final[float] = 60.0
_BINARY_SNIFF_BYTES: Final[int] = 8192

Which = Callable[[str], str | None]
Runner = Callable[..., subprocess.CompletedProcess[str]]


class ScannerMode(StrEnum):
    AUTO = "auto"
    GITLEAKS = "gitleaks"
    DETECT_SECRETS = "detect-secrets"
    HEURISTIC = "heuristic"


@dataclass(frozen=True, slots=True)
class SecretScanResult:
    ok: bool
    tool: str
    findings: tuple[SecretFinding, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "tool": self.tool,
            "findings": [finding.to_dict() for finding in self.findings],
            "warnings": list(self.warnings),
        }


class _ToolUnusable(RuntimeError):
    """External scanner could not produce a trustworthy verdict."""


class SecretScanner:
    """Runs the configured scanner chain over files relative to a repository root."""

    def __init__(
        self,
        mode: ScannerMode | str = ScannerMode.AUTO,
        *,
        which: Which = shutil.which,
        runner: Runner = subprocess.run,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        self._mode = ScannerMode(mode)
        self._which = which
        self._runner = runner
        self._timeout = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def mode(self) -> ScannerMode:
        return self._mode

    def available_tool(self) -> str:
        """Name of the layer ``scan`` would try first."""

        for tool in self._chain():
            if tool is ScannerMode.HEURISTIC or self._which(tool.value) is not None:
                return tool.value
        return ScannerMode.HEURISTIC.value

    def scan(
        self, root: Path | str, files: Sequence[str], *, deadline: Deadline | None = None
    ) -> SecretScanResult:
        """Scan ``files`` under ``root``.

        With a ``deadline`` every tool run is capped by the time left and
        ``PhaseTimeout`` is raised once it is spent, instead of falling through
        to the next layer.
        """

        repo_root = Path(root)
        existing = [rel for rel in files if (repo_root / rel).is_file()]
        warnings: list[str] = []
        for tool in self._chain():
            if tool is ScannerMode.HEURISTIC:
                break
            executable = self._which(tool.value)
            if executable is None:
                continue
            try:
                if tool is ScannerMode.GITLEAKS:
                    findings = self._run_gitleaks(executable, repo_root, existing, deadline)
                else:
                    findings = self._run_detect_secrets(executable, repo_root, existing, deadline)
            except _ToolUnusable as exc:
                warnings.append(f"{tool.value}: {exc}")
                self._logger.warning("secret_scanner_fallback", tool=tool.value, error=str(exc))
                continue
            return SecretScanResult(
                ok=not findings, tool=tool.value, findings=findings, warnings=tuple(warnings)
            )

        findings = heuristic_scan(repo_root, existing, deadline=deadline)
        return SecretScanResult(
            ok=not findings,
            tool=ScannerMode.HEURISTIC.value,
            findings=findings,
            warnings=tuple(warnings),
        )

    def _chain(self) -> tuple[ScannerMode, ...]:
        if self._mode is ScannerMode.AUTO:
            return (ScannerMode.GITLEAKS, ScannerMode.DETECT_SECRETS, ScannerMode.HEURISTIC)
        if self._mode is ScannerMode.HEURISTIC:
            return (ScannerMode.HEURISTIC,)
        return (self._mode, ScannerMode.HEURISTIC)

    def _run_gitleaks(
        self, executable: str, root: Path, files: Sequence[str], deadline: Deadline | None
    ) -> tuple[SecretFinding, ...]:
        findings: list[SecretFinding] = []
        with tempfile.TemporaryDirectory(prefix="fleet-gitleaks-") as tmp:
            for index, rel in enumerate(files):
                report = Path(tmp) / f"report-{index}.json"
                completed = self._invoke(
                    [
                        executable,
                        "detect",
                        "--no-git",
                        "--no-banner",
                        "--redact",
                        "--source",
                        str(root / rel),
                        "--report-format",
                        "json",
                        "--report-path",
                        str(report),
                        "--exit-code",
                        "1",
                    ],
                    cwd=root,
                    deadline=deadline,
                )
                if completed.returncode not in (0, 1):
                    raise _ToolUnusable(f"exit code {completed.returncode}")
                if completed.returncode == 0:
                    continue
                try:
                    payload = json.loads(report.read_text(encoding="utf-8") or "[]")
                except (OSError, json.JSONDecodeError) as exc:
                    raise _ToolUnusable(f"unreadable report: {exc}") from exc
                if not isinstance(payload, list):
                    raise _ToolUnusable("report is not a list")
                for entry in payload:
                    if not isinstance(entry, dict):
                        continue
                    line = entry.get("StartLine")
                    findings.append(
                        SecretFinding(
                            rule=str(entry.get("RuleID") or "gitleaks"),
                            line=line if isinstance(line, int) else 0,
                            start=0,
                            end=0,
                            path=rel,
                        )
                    )
                if not payload:
                    findings.append(SecretFinding(rule="gitleaks", line=0, start=0, end=0, path=rel))
        return tuple(findings)

    def _run_detect_secrets(
        self, executable: str, root: Path, files: Sequence[str], deadline: Deadline | None
    ) -> tuple[SecretFinding, ...]:
        if not files:
            return ()
        completed = self._invoke([executable, "scan", *files], cwd=root, deadline=deadline)
        if completed.returncode != 0:
            raise _ToolUnusable(f"exit code {completed.returncode}")
        try:
            payload = json.loads(completed.stdout)
        except json.JSONDecodeError as exc:
            raise _ToolUnusable(f"unparsable output: {exc}") from exc
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, dict):
            raise _ToolUnusable("output has no 'results' object")
        findings: list[SecretFinding] = []
        for path in sorted(results):
            entries = results[path]
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                line = entry.get("line_number")
                findings.append(
                    SecretFinding(
                        rule=str(entry.get("type") or "detect-secrets"),
                        line=line if isinstance(line, int) else 0,
                        start=0,
                        end=0,
                        path=path,
                    )
                )
        return tuple(findings)

    def _invoke(
        self, argv: list[str], *, cwd: Path, deadline: Deadline | None
    ) -> subprocess.CompletedProcess[str]:
        timeout = self._timeout if deadline is None else deadline.bound(self._timeout)
        try:
            return self._runner(
                argv,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            if deadline is not None:
                deadline.check()
            raise _ToolUnusable(str(exc)) from exc
        except OSError as exc:
            raise _ToolUnusable(str(exc)) from exc


def heuristic_scan(
    root: Path | str, files: Sequence[str], *, deadline: Deadline | None = None
) -> tuple[SecretFinding, ...]:
    """Pattern scan of text files; binary files are skipped."""

    repo_root = Path(root)
    findings: list[SecretFinding] = []
    for rel in files:
        if deadline is not None:
            deadline.check()
        target = repo_root / rel
        try:
            data = target.read_bytes()
        except OSError:
            continue
        if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
            continue
        findings.extend(scan_for_secrets(data.decode("utf-8", errors="replace"), path=rel))
    return tuple(findings)


__all__ = [
    "DEFAULT_TOOL_TIMEOUT_SECONDS",
    "ScannerMode",
    "SecretScanResult",
    "SecretScanner",
    "heuristic_scan",
]
