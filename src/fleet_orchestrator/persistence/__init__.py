"""
fleet-orchestrator — persistence

File: src/fleet_orchestrator/persistence/__init__.py

Purpose
- Run checkpoint, append-only result ledger, plan archive and per-run
  repository artifacts, all plain files under the state directory.

Functional requirements
- Must support safe resume after a crash or interrupt, with concurrent
  readers and writers coordinated through the portable mutex.
"""

from fleet_orchestrator.persistence.run_state import (
    ArchivedPlan,
    ArtifactStore,
    PlanArchive,
    RepoArtifacts,
    ResultLedger,
    RunState,
    RunStateStore,
    ledger_path,
)

__all__ = [
    "ArchivedPlan",
    "ArtifactStore",
    "PlanArchive",
    "RepoArtifacts",
    "ResultLedger",
    "RunState",
    "RunStateStore",
    "ledger_path",
]
