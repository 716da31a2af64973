"""
fleet-orchestrator — package root

File: src/fleet_orchestrator/__init__.py

Purpose
- Drive one interactive coding agent per git repository across a fleet,
  turning its free-form output into validated commit or release plans.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Keep the root import light; planes are imported on demand.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
