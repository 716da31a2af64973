"""
fleet-orchestrator — plan model and schema validation

File: src/fleet_orchestrator/verification_plane/plans.py

Purpose
- Typed commit and release plans parsed from untrusted agent payloads.

Functional requirements
- Commit plans: ``{"commits": [{"message", "files"}], "push"}``; every group
  needs a non-empty message and a non-empty file list.
- Release plans: semver ``version`` (optional ``v`` prefix, prerelease/build
  suffix), ``tag_name`` (defaults to ``version``), ``title`` up to 200 chars,
  ``body`` up to 10000 chars, asset ``files`` and optional ``changelog`` path.
- Paths must be relative, normalized, free of ``..`` and outside ``.git``.
- Shell metacharacters in tag or title are rejected.
- Parsing never raises on bad input; it returns the list of problems.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Final

from fleet_orchestrator.constants import PLAN_SCHEMA_VERSION
from fleet_orchestrator.domain.models import TaskKind, utc_now_iso
from fleet_orchestrator.security.denylist import normalize_plan_path

MAX_RELEASE_TITLE_CHARS: Final[int] = 200
MAX_RELEASE_BODY_CHARS: Final[int] = 10_000
MAX_COMMIT_MESSAGE_CHARS: Final[int] = 10_000
MAX_FILES_PER_PLAN: Final[int] = 1_000

SEMVER_RE: Final[re.Pattern[str]] = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
_SHELL_METACHARS_RE = re.compile(r"[;&|$`<>(){}\\\"'!*?\[\]#~\n\r\x00]")
_TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/+-]*$")


@dataclass(frozen=True, slots=True)
class CommitGroup:
    message: str
    files: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {"message": self.message, "files": list(self.files)}


@dataclass(frozen=True, slots=True)
class CommitPlan:
    commits: tuple[CommitGroup, ...]
    push: bool = False
    schema_version: int = PLAN_SCHEMA_VERSION
    rationale: str | None = None

    kind: TaskKind = field(default=TaskKind.COMMIT, init=False)

    @property
    def files(self) -> tuple[str, ...]:
        ordered: dict[str, None] = {}
        for group in self.commits:
            for path in group.files:
                ordered.setdefault(path, None)
        return tuple(ordered)

    def with_commits(self, commits: Sequence[CommitGroup]) -> CommitPlan:
        return replace(self, commits=tuple(commits))

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "schema_version": self.schema_version,
            "commits": [group.to_dict() for group in self.commits],
            "push": self.push,
        }
        if self.rationale is not None:
            payload["rationale"] = self.rationale
        return payload


@dataclass(frozen=True, slots=True)
class ReleasePlan:
    version: str
    tag_name: str
    title: str | None = None
    body: str | None = None
    files: tuple[str, ...] = ()
    changelog: str | None = None
    schema_version: int = PLAN_SCHEMA_VERSION
    rationale: str | None = None

    kind: TaskKind = field(default=TaskKind.RELEASE, init=False)

    @property
    def referenced_paths(self) -> tuple[str, ...]:
        if self.changelog is None or self.changelog in self.files:
            return self.files
        return (*self.files, self.changelog)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "schema_version": self.schema_version,
            "version": self.version,
            "tag_name": self.tag_name,
            "files": list(self.files),
        }
        for key in ("title", "body", "changelog", "rationale"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


Plan = CommitPlan | ReleasePlan


def plan_paths(plan: Plan) -> tuple[str, ...]:
    """Every repository path a plan references."""

    if isinstance(plan, CommitPlan):
        return plan.files
    return plan.referenced_paths


@dataclass(frozen=True, slots=True)
class ProposedPlan:
    """Untrusted agent output for one repository, as captured during planning."""

    kind: TaskKind
    payload: Mapping[str, object]
    fingerprint: str
    prose: str = ""
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "payload": dict(self.payload),
            "fingerprint": self.fingerprint,
            "prose": self.prose,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> ProposedPlan:
        kind = payload.get("kind")
        body = payload.get("payload")
        fingerprint = payload.get("fingerprint")
        if not isinstance(kind, str) or not isinstance(body, Mapping):
            raise ValueError("archived plan requires 'kind' and 'payload'")
        if not isinstance(fingerprint, str) or not fingerprint:
            raise ValueError("archived plan requires a 'fingerprint'")
        prose = payload.get("prose")
        created_at = payload.get("created_at")
        return cls(
            kind=TaskKind(kind),
            payload=dict(body),
            fingerprint=fingerprint,
            prose=prose if isinstance(prose, str) else "",
            created_at=created_at if isinstance(created_at, str) else utc_now_iso(),
        )


@dataclass(frozen=True, slots=True)
class SchemaCheck:
    plan: Plan | None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    unsafe_paths: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors and self.plan is not None


def unsafe_path_reason(path: str) -> str | None:
    """Why ``path`` may not be staged, or ``None`` when it is a safe relative path."""

    if not path or not path.strip():
        return "empty path"
    if "\x00" in path or "\n" in path:
        return "control characters in path"
    raw = path.replace("\\", "/")
    if raw.startswith("/") or re.match(r"^[A-Za-z]:", raw):
        return "absolute path"
    parts = PurePosixPath(normalize_plan_path(raw)).parts
    if not parts:
        return "empty path"
    if ".." in parts:
        return "path traversal"
    if ".git" in parts:
        return "path inside .git"
    return None


def parse_plan(kind: TaskKind, payload: Mapping[str, object]) -> SchemaCheck:
    if kind is TaskKind.RELEASE:
        return parse_release_plan(payload)
    return parse_commit_plan(payload)


def parse_commit_plan(payload: Mapping[str, object]) -> SchemaCheck:
    errors: list[str] = []
    unsafe: list[str] = []
    schema_version, rationale = _common_fields(payload, errors)

    commits_raw = payload.get("commits")
    groups: list[CommitGroup] = []
    if not isinstance(commits_raw, list):
        errors.append("commits: must be a list")
    elif not commits_raw:
        errors.append("commits: must not be empty")
    else:
        for index, entry in enumerate(commits_raw):
            where = f"commits[{index}]"
            if not isinstance(entry, Mapping):
                errors.append(f"{where}: must be an object")
                continue
            message = entry.get("message")
            if not isinstance(message, str) or not message.strip():
                errors.append(f"{where}.message: must be a non-empty string")
                message = ""
            elif len(message) > MAX_COMMIT_MESSAGE_CHARS:
                errors.append(f"{where}.message: exceeds {MAX_COMMIT_MESSAGE_CHARS} characters")
            elif "\x00" in message:
                errors.append(f"{where}.message: contains NUL")
            files = _parse_paths(entry.get("files"), f"{where}.files", errors, unsafe)
            groups.append(CommitGroup(message=message.strip(), files=files))

    push = payload.get("push", False)
    if not isinstance(push, bool):
        errors.append("push: must be a boolean")
        push = False

    total = sum(len(group.files) for group in groups)
    if total > MAX_FILES_PER_PLAN:
        errors.append(f"commits: plan references {total} files (max {MAX_FILES_PER_PLAN})")

    if errors:
        return SchemaCheck(plan=None, errors=tuple(errors), unsafe_paths=tuple(unsafe))
    return SchemaCheck(
        plan=CommitPlan(
            commits=tuple(groups),
            push=push,
            schema_version=schema_version,
            rationale=rationale,
        )
    )


def parse_release_plan(payload: Mapping[str, object]) -> SchemaCheck:
    errors: list[str] = []
    unsafe: list[str] = []
    schema_version, rationale = _common_fields(payload, errors)

    version = payload.get("version")
    if not isinstance(version, str) or not version.strip():
        errors.append("version: is required")
        version = ""
    elif not SEMVER_RE.fullmatch(version.strip()):
        errors.append(f"version: {version!r} is not a semantic version")
    version = version.strip() if isinstance(version, str) else ""

    tag_name = payload.get("tag_name", version)
    if not isinstance(tag_name, str) or not tag_name.strip():
        errors.append("tag_name: must be a non-empty string")
        tag_name = ""
    elif _SHELL_METACHARS_RE.search(tag_name) or " " in tag_name:
        errors.append("tag_name: contains unsafe shell metacharacters")
    elif not _TAG_RE.fullmatch(tag_name) or ".." in tag_name or tag_name.endswith((".lock", "/")):
        errors.append(f"tag_name: {tag_name!r} is not a valid tag name")

    title = _optional_str(payload, "title", errors)
    if title is not None:
        if len(title) > MAX_RELEASE_TITLE_CHARS:
            errors.append(f"title: exceeds {MAX_RELEASE_TITLE_CHARS} characters")
        elif _SHELL_METACHARS_RE.search(title):
            errors.append("title: contains unsafe shell metacharacters")

    body = _optional_str(payload, "body", errors)
    if body is not None and len(body) > MAX_RELEASE_BODY_CHARS:
        errors.append(f"body: exceeds {MAX_RELEASE_BODY_CHARS} characters")

    files: tuple[str, ...] = ()
    if payload.get("files") is not None:
        files = _parse_paths(payload.get("files"), "files", errors, unsafe, allow_empty=True)

    changelog = _optional_str(payload, "changelog", errors)
    if changelog is not None:
        reason = unsafe_path_reason(changelog)
        if reason is not None:
            errors.append(f"changelog: {reason}: {changelog!r}")
            unsafe.append(changelog)
        else:
            changelog = normalize_plan_path(changelog)

    if errors:
        return SchemaCheck(plan=None, errors=tuple(errors), unsafe_paths=tuple(unsafe))
    return SchemaCheck(
        plan=ReleasePlan(
            version=version,
            tag_name=tag_name.strip(),
            title=title,
            body=body,
            files=files,
            changelog=changelog,
            schema_version=schema_version,
            rationale=rationale,
        )
    )


def _common_fields(payload: Mapping[str, object], errors: list[str]) -> tuple[int, str | None]:
    schema_version = payload.get("schema_version", PLAN_SCHEMA_VERSION)
    if isinstance(schema_version, bool) or not isinstance(schema_version, int):
        errors.append("schema_version: must be an integer")
        schema_version = PLAN_SCHEMA_VERSION
    elif schema_version != PLAN_SCHEMA_VERSION:
        errors.append(f"schema_version: unsupported version {schema_version}")
    rationale = _optional_str(payload, "rationale", errors)
    return schema_version, rationale


def _optional_str(payload: Mapping[str, object], key: str, errors: list[str]) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f"{key}: must be a string")
        return None
    return value


def _parse_paths(
    raw: object,
    where: str,
    errors: list[str],
    unsafe: list[str],
    *,
    allow_empty: bool = False,
) -> tuple[str, ...]:
    if not isinstance(raw, list):
        errors.append(f"{where}: must be a list of paths")
        return ()
    if not raw and not allow_empty:
        errors.append(f"{where}: must not be empty")
        return ()
    paths: dict[str, None] = {}
    for index, item in enumerate(raw):
        if not isinstance(item, str):
            errors.append(f"{where}[{index}]: must be a string")
            continue
        reason = unsafe_path_reason(item)
        if reason is not None:
            errors.append(f"{where}[{index}]: {reason}: {item!r}")
            unsafe.append(item)
            continue
        paths.setdefault(normalize_plan_path(item), None)
    return tuple(paths)


__all__ = [
    "MAX_RELEASE_BODY_CHARS",
    "MAX_RELEASE_TITLE_CHARS",
    "SEMVER_RE",
    "CommitGroup",
    "CommitPlan",
    "Plan",
    "ProposedPlan",
    "ReleasePlan",
    "SchemaCheck",
    "parse_commit_plan",
    "parse_plan",
    "parse_release_plan",
    "plan_paths",
    "unsafe_path_reason",
]
