"""Control-plane public API."""

from fleet_orchestrator.control_plane.controller import (
    RunController,
    RunOptions,
    RunReport,
    exit_code_for,
)
from fleet_orchestrator.control_plane.governor import (
    BackoffStore,
    BreakerState,
    CircuitBreaker,
    GovernorConfig,
    RateGovernor,
)
from fleet_orchestrator.control_plane.locking import LockAcquisition, PortableMutex
from fleet_orchestrator.control_plane.pipeline import (
    PhaseTimeouts,
    PipelineResult,
    PipelineState,
    PlanPipeline,
)
from fleet_orchestrator.control_plane.work_queue import WorkQueue, sort_work_items

__all__ = [
    "BackoffStore",
    "BreakerState",
    "CircuitBreaker",
    "GovernorConfig",
    "LockAcquisition",
    "PhaseTimeouts",
    "PipelineResult",
    "PipelineState",
    "PlanPipeline",
    "PortableMutex",
    "RateGovernor",
    "RunController",
    "RunOptions",
    "RunReport",
    "WorkQueue",
    "exit_code_for",
    "sort_work_items",
]
