"""
fleet-orchestrator — public security utilities

File: src/fleet_orchestrator/security/__init__.py

Purpose
- Path denylist, secret heuristics, layered secret scanning and log redaction.

Non-functional requirements
- Must fail closed: a plan touching a denied path or a secret never executes.
"""

from fleet_orchestrator.security.denylist import (
    DEFAULT_DENYLIST_PATTERNS,
    Denylist,
    DenylistMatch,
    normalize_plan_path,
)
from fleet_orchestrator.security.redaction import (
    REDACTED_VALUE,
    SecretFinding,
    is_sensitive_key,
    redact_structure,
    redact_text,
    scan_for_secrets,
)
from fleet_orchestrator.security.secret_scan import (
    ScannerMode,
    SecretScanner,
    SecretScanResult,
)

__all__ = [
    "DEFAULT_DENYLIST_PATTERNS",
    "REDACTED_VALUE",
    "Denylist",
    "DenylistMatch",
    "ScannerMode",
    "SecretFinding",
    "SecretScanResult",
    "SecretScanner",
    "is_sensitive_key",
    "normalize_plan_path",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
