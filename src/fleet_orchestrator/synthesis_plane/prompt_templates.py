"""
fleet-orchestrator — agent prompt templates

File: src/fleet_orchestrator/synthesis_plane/prompt_templates.py

Purpose
- Loads and renders the per-task prompt templates (``commit_plan.j2``,
  ``release_plan.j2``) with strict placeholders.

Functional requirements
- Rendering is deterministic for the same inputs and yields a prompt hash that
  is recorded with the proposed plan.
- Templates may only reference whitelisted variables; missing or unexpected
  variables are errors, never silently blank.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Environment, StrictUndefined, meta

from fleet_orchestrator.constants import PLAN_BEGIN_MARKER, PLAN_END_MARKER
from fleet_orchestrator.domain.models import TaskKind
from fleet_orchestrator.utils.hashing import sha256_text

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

_TEMPLATE_NAME_RE = re.compile(r"^[a-z0-9_]+\.j2$")
_VERSION_RE = re.compile(r"Template version:\s*(\S+)")

TEMPLATE_FOR_KIND: dict[TaskKind, str] = {
    TaskKind.COMMIT: "commit_plan.j2",
    TaskKind.RELEASE: "release_plan.j2",
}

ALLOWED_VARIABLES: dict[str, frozenset[str]] = {
    "commit_plan.j2": frozenset(
        {
            "repo_name",
            "branch",
            "status_summary",
            "recent_commits",
            "push_hint",
            "max_files",
            "begin_marker",
            "end_marker",
        }
    ),
    "release_plan.j2": frozenset(
        {
            "repo_name",
            "branch",
            "latest_tag",
            "recent_commits",
            "begin_marker",
            "end_marker",
        }
    ),
}


class PromptTemplateError(RuntimeError):
    """Base error for prompt template loading and rendering."""


class PromptTemplateNotFoundError(PromptTemplateError, FileNotFoundError):
    """Raised when a template file does not exist."""


class PromptTemplateVariableError(PromptTemplateError, ValueError):
    """Raised for missing/extra variables or whitelist violations."""


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    """Rendered prompt and deterministic hashes for the plan archive."""

    prompt: str
    prompt_hash: str
    template_name: str
    template_version: str
    template_hash: str


class PromptTemplateEngine:
    """Deterministic task prompt loader + renderer."""

    def __init__(self, *, template_root: Path | str | None = None) -> None:
        root = Path(template_root) if template_root is not None else default_template_root()
        resolved_root = root.resolve()
        if not resolved_root.is_dir():
            raise PromptTemplateNotFoundError(f"template root does not exist: {resolved_root}")
        self._template_root = resolved_root
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )

    @property
    def template_root(self) -> Path:
        return self._template_root

    def render(
        self,
        template_name: str,
        *,
        variables: Mapping[str, object],
        allowed_variables: Collection[str] | None = None,
    ) -> RenderedPrompt:
        if not _TEMPLATE_NAME_RE.fullmatch(template_name):
            raise PromptTemplateError(f"invalid template name: {template_name!r}")
        template_path = self._template_root / template_name
        if not template_path.is_file():
            raise PromptTemplateNotFoundError(
                f"template not found: {template_name!r} under {self._template_root}"
            )
        source = _normalize_newlines(template_path.read_text(encoding="utf-8"))

        allowed = set(
            allowed_variables
            if allowed_variables is not None
            else ALLOWED_VARIABLES.get(template_name, ())
        )
        declared = set(meta.find_undeclared_variables(self._environment.parse(source)))
        outside_whitelist = sorted(declared - allowed)
        if outside_whitelist:
            raise PromptTemplateVariableError(
                "template uses variables not allowed by whitelist: " + ", ".join(outside_whitelist)
            )
        unexpected = sorted(set(variables) - allowed)
        if unexpected:
            raise PromptTemplateVariableError(
                "unexpected variables were provided: " + ", ".join(unexpected)
            )
        missing = sorted(declared - set(variables))
        if missing:
            raise PromptTemplateVariableError(
                "missing required template variables: " + ", ".join(missing)
            )

        values = {key: _serialize_variable_value(value) for key, value in variables.items()}
        prompt = _normalize_newlines(self._environment.from_string(source).render(**values))
        version = _VERSION_RE.search(source)
        return RenderedPrompt(
            prompt=prompt,
            prompt_hash=sha256_text(prompt),
            template_name=template_name,
            template_version=version.group(1) if version else "unversioned",
            template_hash=sha256_text(source),
        )

    def render_task(
        self,
        kind: TaskKind,
        *,
        repo_name: str,
        branch: str,
        status_lines: Collection[str] = (),
        recent_commits: Collection[str] = (),
        latest_tag: str | None = None,
        push_requested: bool = False,
        max_files: int = 1000,
    ) -> RenderedPrompt:
        """Render the prompt for one work item kind from repository context."""

        template_name = TEMPLATE_FOR_KIND[kind]
        variables: dict[str, object] = {
            "repo_name": repo_name,
            "branch": branch,
            "recent_commits": _bullets(recent_commits, empty="(no commits yet)"),
            "begin_marker": PLAN_BEGIN_MARKER,
            "end_marker": PLAN_END_MARKER,
        }
        if kind is TaskKind.COMMIT:
            variables["status_summary"] = _bullets(status_lines, empty="(clean)")
            variables["push_hint"] = (
                "allowed; set \"push\": true if the commits should be pushed"
                if push_requested
                else "disabled; always set \"push\": false"
            )
            variables["max_files"] = max_files
        else:
            variables["latest_tag"] = latest_tag or "(none)"
        return self.render(template_name, variables=variables)


def default_template_root() -> Path:
    return Path(__file__).resolve().parent / "templates"


def _bullets(lines: Collection[str], *, empty: str) -> str:
    if not lines:
        return empty
    return "\n".join(f"  {line}" for line in lines)


def _serialize_variable_value(value: object) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    except TypeError:
        return str(value)


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


__all__ = [
    "ALLOWED_VARIABLES",
    "TEMPLATE_FOR_KIND",
    "PromptTemplateEngine",
    "PromptTemplateError",
    "PromptTemplateNotFoundError",
    "PromptTemplateVariableError",
    "RenderedPrompt",
    "default_template_root",
]
