"""
fleet-orchestrator — secret heuristics and redaction

File: src/fleet_orchestrator/security/redaction.py

Purpose
- Pattern rules for credential-shaped text, shared by the heuristic secret
  scanner (plan validation) and the log redactor.

Functional requirements
- Findings record rule name and position only, never the matched value.
- Redaction is deterministic and idempotent; structured payloads are redacted
  by sensitive key name as well as by content.
- Stripe test keys (``sk_test_``) are not treated as secrets.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "client_secret",
        "credentials",
        "password",
        "passwd",
        "private_key",
        "refresh_token",
        "secret",
        "secret_key",
        "token",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_auth_token",
    "_client_secret",
    "_private_key",
    "_password",
    "_secret",
    "_token",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class SecretFinding:
    """One secret-like match. ``line`` is 1-based within the scanned text."""

    rule: str
    line: int
    start: int
    end: int
    path: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"rule": self.rule, "path": self.path, "line": self.line}


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


SECRET_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        # A bare header counts: agents often emit a truncated key.
        name="private_key",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"(?:[\s\S]+?-----END(?: [A-Z0-9]+)* PRIVATE KEY-----)?"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*bearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token|refresh[_-]?token|auth[_-]?token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=!@#$%^&*-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="anthropic_api_key", pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_-]{20,255}\b")),
    _TextRule(name="openai_api_key", pattern=re.compile(r"\bsk-(?!ant-)[A-Za-z0-9_-]{20,255}\b")),
    _TextRule(name="stripe_live_key", pattern=re.compile(r"\b(?:sk|rk)_live_[A-Za-z0-9]{16,255}\b")),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(
        name="google_api_key",
        pattern=re.compile(r"\bAIza[0-9A-Za-z_\-]{35}(?![0-9A-Za-z_\-])"),
    ),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(
        name="github_fine_grained_token",
        pattern=re.compile(r"\bgithub_pat_[A-Za-z0-9_]{22,255}\b"),
    ),
    _TextRule(name="slack_token", pattern=re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,255}")),
    _TextRule(
        name="jwt",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b"),
    ),
)


def scan_for_secrets(text: str, *, path: str | None = None) -> tuple[SecretFinding, ...]:
    """Scan ``text`` for secret-like patterns in deterministic position order."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    findings: list[SecretFinding] = []
    for rule in SECRET_RULES:
        for match in rule.pattern.finditer(text):
            start, end = match.span(rule.sensitive_group or 0)
            findings.append(
                SecretFinding(
                    rule=rule.name,
                    line=text.count("\n", 0, start) + 1,
                    start=start,
                    end=end,
                    path=path,
                )
            )
    findings.sort(key=lambda item: (item.start, item.end, item.rule))
    return tuple(findings)


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    """Replace every secret-like span in ``text``."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    redacted = text
    for rule in SECRET_RULES:
        redacted = rule.pattern.sub(
            lambda match, rule=rule: _replace_sensitive_group(match, replacement, rule),
            redacted,
        )
    return redacted


def is_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in DEFAULT_SENSITIVE_KEY_DENYLIST:
        return True
    return any(normalized.endswith(suffix) for suffix in _SENSITIVE_KEY_SUFFIXES)


def redact_structure(value: object, *, replacement: str = REDACTED_VALUE) -> object:
    """Deep-redacted copy of a nested mapping/list structure."""

    return _redact(value, replacement, seen=set())


def _redact(value: object, replacement: str, *, seen: set[int]) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        if id(value) in seen:
            return replacement
        seen.add(id(value))
        try:
            out: dict[object, object] = {}
            for key in sorted(value, key=str):
                if isinstance(key, str) and is_sensitive_key(key) and value[key] not in (None, ""):
                    out[key] = replacement
                else:
                    out[key] = _redact(value[key], replacement, seen=seen)
            return out
        finally:
            seen.discard(id(value))
    if isinstance(value, (list, tuple)):
        if id(value) in seen:
            return replacement
        seen.add(id(value))
        try:
            items = [_redact(item, replacement, seen=seen) for item in value]
        finally:
            seen.discard(id(value))
        return items if isinstance(value, list) else tuple(items)
    return value


def _replace_sensitive_group(match: re.Match[str], replacement: str, rule: _TextRule) -> str:
    if rule.sensitive_group is None:
        return replacement
    full = match.group(0)
    start, end = match.span(rule.sensitive_group)
    offset_start = start - match.start(0)
    offset_end = end - match.start(0)
    return f"{full[:offset_start]}{replacement}{full[offset_end:]}"


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "SECRET_RULES",
    "SecretFinding",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
