"""Verification plane: plan extraction, schema parsing and guardrail validation."""

from fleet_orchestrator.verification_plane.guardrails import (
    CHECK_ORDER,
    DenylistMode,
    GuardrailPolicy,
    Guardrails,
    ValidationReason,
    ValidationResult,
)
from fleet_orchestrator.verification_plane.plan_markers import (
    ExtractionError,
    PlanExtraction,
    extract_plan_block,
)
from fleet_orchestrator.verification_plane.plans import (
    CommitGroup,
    CommitPlan,
    Plan,
    ProposedPlan,
    ReleasePlan,
    parse_plan,
)

__all__ = [
    "CHECK_ORDER",
    "CommitGroup",
    "CommitPlan",
    "DenylistMode",
    "ExtractionError",
    "GuardrailPolicy",
    "Guardrails",
    "Plan",
    "PlanExtraction",
    "ProposedPlan",
    "ReleasePlan",
    "ValidationReason",
    "ValidationResult",
    "extract_plan_block",
    "parse_plan",
]
