"""
fleet-orchestrator — integration plane

File: src/fleet_orchestrator/integration_plane/__init__.py

Purpose
- Integration plane: git inspection, fingerprinting, plan execution and
  the read-only preflight safety checks.

Functional requirements
- Must never mutate a repository that failed preflight.
"""

from fleet_orchestrator.integration_plane.git_engine import (
    CommandResult,
    CommitRecord,
    ExecutionResult,
    GitCommandError,
    GitEngineError,
    GitRepository,
    IndexEntry,
    RepoFingerprint,
)
from fleet_orchestrator.integration_plane.preflight import (
    REMEDIATIONS,
    PreflightPolicy,
    PreflightReason,
    PreflightResult,
    PreflightValidator,
)

__all__ = [
    "REMEDIATIONS",
    "CommandResult",
    "CommitRecord",
    "ExecutionResult",
    "GitCommandError",
    "GitEngineError",
    "GitRepository",
    "IndexEntry",
    "PreflightPolicy",
    "PreflightReason",
    "PreflightResult",
    "PreflightValidator",
    "RepoFingerprint",
]
