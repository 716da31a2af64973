"""Executable CLI entrypoint for ``fleet_orchestrator``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    VALIDATION_REJECTED = 2
    DEPENDENCY_MISSING = 3
    INVALID_INVOCATION = 4
    INTERRUPTED = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m fleet_orchestrator`` and the ``fleet`` script."""

    try:
        from fleet_orchestrator.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.PARTIAL_FAILURE)


def _route_exception(exc: BaseException) -> ExitCode:
    from fleet_orchestrator.config.loader import ConfigLoadError
    from fleet_orchestrator.config.schema import ConfigValidationError
    from fleet_orchestrator.domain.errors import (
        DependencyMissing,
        Interrupted,
        InvalidInvocation,
    )

    for item in _iter_exception_chain(exc):
        if isinstance(item, (Interrupted, KeyboardInterrupt)):
            return ExitCode.INTERRUPTED
        if isinstance(item, DependencyMissing):
            return ExitCode.DEPENDENCY_MISSING
        if isinstance(item, (ConfigLoadError, ConfigValidationError, InvalidInvocation)):
            return ExitCode.INVALID_INVOCATION
    return ExitCode.PARTIAL_FAILURE


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _is_operational(exc: BaseException) -> bool:
    """Fatal but expected: a held run lease or an unwritable state directory."""

    from fleet_orchestrator.domain.errors import LockTimeout, StateStoreError

    return any(
        isinstance(item, (LockTimeout, StateStoreError)) for item in _iter_exception_chain(exc)
    )


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.PARTIAL_FAILURE and not _is_operational(exc):
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    if isinstance(exc, KeyboardInterrupt):
        _write_stderr("interrupted")
        return
    _write_stderr(str(exc).strip() or exc.__class__.__name__)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
