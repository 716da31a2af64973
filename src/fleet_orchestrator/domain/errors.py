"""Error taxonomy for the orchestration engine.

Per-repository failures travel as result values; these exceptions are raised
inside a component and converted to outcomes at the pipeline or controller
boundary. Only ``DependencyMissing``, run-level ``LockTimeout`` and
``Interrupted`` are expected to reach the CLI.
"""

from __future__ import annotations


class FleetError(RuntimeError):
    """Base error carrying a stable, machine-readable reason code."""

    default_reason = "internal"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.default_reason


class PreflightSkipped(FleetError):
    """Repository is in an unsafe precondition; it is skipped, not failed."""

    default_reason = "preflight_skipped"

    def __init__(self, message: str, *, reason: str, remediation: str | None = None) -> None:
        super().__init__(message, reason=reason)
        self.remediation = remediation


class SessionError(FleetError):
    """Spawn/send/wait failure against an agent session."""

    default_reason = "session_error"

    def __init__(self, message: str, *, reason: str | None = None, code: str = "internal") -> None:
        super().__init__(message, reason=reason)
        self.code = code


class PhaseTimeout(FleetError):
    """A pipeline phase exceeded its configured deadline."""

    default_reason = "phase_timeout"

    def __init__(self, phase: str, timeout_seconds: float) -> None:
        super().__init__(f"phase {phase!r} exceeded {timeout_seconds:g}s")
        self.phase = phase
        self.timeout_seconds = timeout_seconds


class ValidationFailed(FleetError):
    """Security or schema validation rejected an agent plan."""

    default_reason = "validation_failed"


class LockTimeout(FleetError):
    """A lease could not be acquired within its timeout."""

    default_reason = "lock_timeout"

    def __init__(self, name: str, timeout_seconds: float, *, owner_pid: int | None = None) -> None:
        owner = f" (held by pid {owner_pid})" if owner_pid is not None else ""
        super().__init__(f"timed out after {timeout_seconds:g}s acquiring lock {name!r}{owner}")
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.owner_pid = owner_pid


class DependencyMissing(FleetError):
    """A required external executable is unavailable. Fatal at startup."""

    default_reason = "dependency_missing"

    def __init__(self, dependencies: tuple[str, ...], *, hint: str | None = None) -> None:
        listed = ", ".join(dependencies)
        message = f"missing required dependencies: {listed}"
        if hint:
            message = f"{message}; {hint}"
        super().__init__(message)
        self.dependencies = dependencies


class Interrupted(FleetError):
    """The run was cancelled by a signal; state is resumable."""

    default_reason = "interrupted"


class StateStoreError(FleetError):
    """Shared run state could not be read or written. Fatal to the run."""

    default_reason = "state_unwritable"


class InvalidInvocation(FleetError):
    """The caller asked for something the current state does not permit."""

    default_reason = "invalid_invocation"


class InternalError(FleetError):
    """An internal invariant did not hold. Fails the item it was raised for."""

    default_reason = "internal"


class IllegalTransitionError(FleetError):
    """A state machine was asked to make a transition it does not permit."""

    default_reason = "illegal_transition"

    def __init__(self, machine: str, current: str, target: str) -> None:
        super().__init__(f"illegal {machine} transition: {current} -> {target}")
        self.current = current
        self.target = target


__all__ = [
    "DependencyMissing",
    "FleetError",
    "IllegalTransitionError",
    "InternalError",
    "Interrupted",
    "InvalidInvocation",
    "LockTimeout",
    "PhaseTimeout",
    "PreflightSkipped",
    "SessionError",
    "StateStoreError",
    "ValidationFailed",
]
