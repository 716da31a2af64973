"""Domain types shared across planes: targets, work items, outcomes and errors."""

from __future__ import annotations

from fleet_orchestrator.domain.errors import (
    DependencyMissing,
    FleetError,
    IllegalTransitionError,
    Interrupted,
    InvalidInvocation,
    LockTimeout,
    PhaseTimeout,
    PreflightSkipped,
    SessionError,
    StateStoreError,
    ValidationFailed,
)
from fleet_orchestrator.domain.models import (
    ExecutionMode,
    PushPolicy,
    RepoOutcome,
    RepoStatus,
    RepositoryTarget,
    RunLifecycle,
    TaskKind,
    WorkItem,
)

__all__ = [
    "DependencyMissing",
    "ExecutionMode",
    "FleetError",
    "IllegalTransitionError",
    "Interrupted",
    "InvalidInvocation",
    "LockTimeout",
    "PhaseTimeout",
    "PreflightSkipped",
    "PushPolicy",
    "RepoOutcome",
    "RepoStatus",
    "RepositoryTarget",
    "RunLifecycle",
    "SessionError",
    "StateStoreError",
    "TaskKind",
    "ValidationFailed",
    "WorkItem",
]
