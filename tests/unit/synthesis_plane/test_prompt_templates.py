"""
fleet-orchestrator — prompt template renderer unit tests

File: tests/unit/synthesis_plane/test_prompt_templates.py

Purpose
- Validate strict template variable controls, deterministic hashing and the
  bundled commit/release task prompts.

Functional requirements
- Offline only.

Non-functional requirements
- Deterministic output for equivalent inputs.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from fleet_orchestrator.constants import PLAN_BEGIN_MARKER, PLAN_END_MARKER
from fleet_orchestrator.domain.models import TaskKind
from fleet_orchestrator.synthesis_plane.prompt_templates import (
    ALLOWED_VARIABLES,
    TEMPLATE_FOR_KIND,
    PromptTemplateEngine,
    PromptTemplateError,
    PromptTemplateNotFoundError,
    PromptTemplateVariableError,
    default_template_root,
)

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    HYPOTHESIS_AVAILABLE = False
else:
    HYPOTHESIS_AVAILABLE = True


def _write_template(tmp_path: Path, text: str, name: str = "custom.j2") -> Path:
    root = tmp_path / "templates"
    root.mkdir(parents=True, exist_ok=True)
    (root / name).write_text(text, encoding="utf-8")
    return root


def test_missing_required_variables_raise_hard_error(tmp_path: Path) -> None:
    engine = PromptTemplateEngine(template_root=_write_template(tmp_path, "Hi {{ a }} {{ b }}"))

    with pytest.raises(PromptTemplateVariableError, match="missing required template variables: b"):
        engine.render("custom.j2", variables={"a": "x"}, allowed_variables={"a", "b"})


def test_variables_outside_whitelist_are_rejected(tmp_path: Path) -> None:
    engine = PromptTemplateEngine(template_root=_write_template(tmp_path, "{{ a }} {{ secret }}"))

    with pytest.raises(PromptTemplateVariableError, match="not allowed by whitelist: secret"):
        engine.render("custom.j2", variables={"a": "x", "secret": "y"}, allowed_variables={"a"})


def test_unexpected_variables_are_rejected(tmp_path: Path) -> None:
    engine = PromptTemplateEngine(template_root=_write_template(tmp_path, "{{ a }}"))

    with pytest.raises(PromptTemplateVariableError, match="unexpected variables were provided: b"):
        engine.render("custom.j2", variables={"a": "x", "b": "y"}, allowed_variables={"a"})


def test_render_hashes_and_version(tmp_path: Path) -> None:
    source = "{#- Template version: 7 -#}\r\nRepo {{ a }} has {{ n }} files\r\n"
    engine = PromptTemplateEngine(template_root=_write_template(tmp_path, source))

    rendered = engine.render("custom.j2", variables={"a": "demo", "n": 3}, allowed_variables={"a", "n"})

    assert rendered.prompt == "Repo demo has 3 files\n"
    assert rendered.prompt_hash == hashlib.sha256(rendered.prompt.encode("utf-8")).hexdigest()
    assert rendered.template_version == "7"
    assert rendered.template_hash == hashlib.sha256(source.replace("\r\n", "\n").encode()).hexdigest()


def test_template_names_and_roots_are_validated(tmp_path: Path) -> None:
    engine = PromptTemplateEngine(template_root=_write_template(tmp_path, "x"))

    with pytest.raises(PromptTemplateError, match="invalid template name"):
        engine.render("../escape.j2", variables={})
    with pytest.raises(PromptTemplateNotFoundError):
        engine.render("absent.j2", variables={})
    with pytest.raises(PromptTemplateNotFoundError):
        PromptTemplateEngine(template_root=tmp_path / "nowhere")


def test_bundled_templates_only_use_whitelisted_variables() -> None:
    root = default_template_root()

    assert set(TEMPLATE_FOR_KIND.values()) == set(ALLOWED_VARIABLES)
    for name in TEMPLATE_FOR_KIND.values():
        assert (root / name).is_file()


def test_commit_prompt_includes_repository_context() -> None:
    engine = PromptTemplateEngine()

    rendered = engine.render_task(
        TaskKind.COMMIT,
        repo_name="api",
        branch="main",
        status_lines=[" M src/app.py", "?? docs/new.md"],
        recent_commits=["fix: handle empty body"],
        push_requested=False,
        max_files=25,
    )

    assert rendered.template_name == "commit_plan.j2"
    assert rendered.template_version == "1"
    assert '"api" on branch "main"' in rendered.prompt
    assert "  ?? docs/new.md" in rendered.prompt
    assert "always set \"push\": false" in rendered.prompt
    assert "at most 25 paths" in rendered.prompt
    assert PLAN_BEGIN_MARKER in rendered.prompt
    assert PLAN_END_MARKER in rendered.prompt


def test_release_prompt_defaults_for_empty_history() -> None:
    rendered = PromptTemplateEngine().render_task(TaskKind.RELEASE, repo_name="cli", branch="trunk")

    assert rendered.template_name == "release_plan.j2"
    assert "(none)" in rendered.prompt
    assert "(no commits yet)" in rendered.prompt


if HYPOTHESIS_AVAILABLE:

    @given(
        status=st.lists(
            st.text(alphabet="abcdefghijklmnopqrstuvwxyz./ M?", min_size=1, max_size=20),
            max_size=5,
        ),
        push=st.booleans(),
    )
    @settings(max_examples=40, deadline=None)
    def test_commit_prompt_rendering_is_deterministic(status: list[str], push: bool) -> None:
        engine = PromptTemplateEngine()
        kwargs = {"repo_name": "r", "branch": "main", "status_lines": status, "push_requested": push}

        first = engine.render_task(TaskKind.COMMIT, **kwargs)  # type: ignore[arg-type]
        second = engine.render_task(TaskKind.COMMIT, **kwargs)  # type: ignore[arg-type]

        assert first == second

else:

    def test_commit_prompt_rendering_is_deterministic() -> None:
        pytest.skip("hypothesis is not installed")
