"""Agent session drivers (tmux, local subprocess, scripted mock)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from fleet_orchestrator.synthesis_plane.session.base import (
    ActivityReport,
    CaptureResult,
    DriverResult,
    PaneSnapshot,
    PollingSessionDriver,
    Session,
    SessionDriver,
    SessionErrorCode,
    SessionSettings,
    SessionState,
    SpawnResult,
    WaitCondition,
    WaitResult,
    chunk_message,
)
from fleet_orchestrator.synthesis_plane.session.local import LocalSessionDriver
from fleet_orchestrator.synthesis_plane.session.mock import MockBehavior, MockSessionDriver
from fleet_orchestrator.synthesis_plane.session.tmux import TmuxSessionDriver, session_name_for

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

DRIVER_NAMES = ("tmux", "local", "mock")


def create_session_driver(
    name: str,
    settings: SessionSettings | None = None,
    *,
    cancel_token: CancellationToken | None = None,
    mock_behaviors: Mapping[str, MockBehavior] | None = None,
    mock_default: MockBehavior | None = None,
    logger: Any | None = None,
) -> PollingSessionDriver:
    normalized = name.strip().lower()
    if normalized == "tmux":
        return TmuxSessionDriver(settings, cancel_token=cancel_token, logger=logger)
    if normalized == "local":
        return LocalSessionDriver(settings, cancel_token=cancel_token, logger=logger)
    if normalized == "mock":
        return MockSessionDriver(
            mock_behaviors,
            default=mock_default,
            settings=settings,
            cancel_token=cancel_token,
            logger=logger,
        )
    raise ValueError(f"unknown session driver {name!r}; expected one of {', '.join(DRIVER_NAMES)}")


__all__ = [
    "DRIVER_NAMES",
    "ActivityReport",
    "CaptureResult",
    "DriverResult",
    "LocalSessionDriver",
    "MockBehavior",
    "MockSessionDriver",
    "PaneSnapshot",
    "PollingSessionDriver",
    "Session",
    "SessionDriver",
    "SessionErrorCode",
    "SessionSettings",
    "SessionState",
    "SpawnResult",
    "TmuxSessionDriver",
    "WaitCondition",
    "WaitResult",
    "chunk_message",
    "create_session_driver",
    "session_name_for",
]
