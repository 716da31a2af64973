"""Synthesis plane: agent session drivers and prompt templates."""

from fleet_orchestrator.synthesis_plane.prompt_templates import (
    PromptTemplateEngine,
    PromptTemplateError,
    RenderedPrompt,
)

__all__ = ["PromptTemplateEngine", "PromptTemplateError", "RenderedPrompt"]
