"""Extraction of the sentinel-delimited plan block from agent output.

The block must sit between ``<<<FLEET_PLAN_BEGIN>>>`` and
``<<<FLEET_PLAN_END>>>``, each alone on its line, and must decode to one JSON
object. Identical repeated blocks (terminal redraws) collapse to one; two
different blocks are ambiguous and rejected. Everything outside the markers is
prose kept for audit only.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum

from fleet_orchestrator.constants import PLAN_BEGIN_MARKER, PLAN_END_MARKER


class ExtractionError(StrEnum):
    NO_BLOCK = "no_block"
    UNTERMINATED = "unterminated_block"
    MULTIPLE_BLOCKS = "multiple_blocks"
    INVALID_JSON = "invalid_json"
    NOT_AN_OBJECT = "not_an_object"


@dataclass(frozen=True, slots=True)
class PlanExtraction:
    payload: dict[str, object] | None
    block: str | None
    prose: str
    error: ExtractionError | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.payload is not None


def extract_plan_block(output: str) -> PlanExtraction:
    """Find and decode the single plan block in ``output``."""

    blocks: list[str] = []
    prose_lines: list[str] = []
    current: list[str] | None = None

    for line in output.splitlines():
        marker = line.strip()
        if current is None:
            if marker == PLAN_BEGIN_MARKER:
                current = []
            else:
                prose_lines.append(line)
            continue
        if marker == PLAN_END_MARKER:
            blocks.append("\n".join(current).strip())
            current = None
        elif marker == PLAN_BEGIN_MARKER:
            # A restarted block supersedes the unterminated one.
            current = []
        else:
            current.append(line)

    prose = "\n".join(prose_lines).strip()
    if current is not None and not blocks:
        return PlanExtraction(None, None, prose, ExtractionError.UNTERMINATED)

    unique = list(dict.fromkeys(blocks))
    if not unique:
        return PlanExtraction(None, None, prose, ExtractionError.NO_BLOCK)
    if len(unique) > 1:
        return PlanExtraction(
            None,
            None,
            prose,
            ExtractionError.MULTIPLE_BLOCKS,
            detail=f"{len(unique)} distinct plan blocks",
        )

    block = unique[0]
    try:
        payload = json.loads(_strip_code_fence(block))
    except json.JSONDecodeError as exc:
        return PlanExtraction(None, block, prose, ExtractionError.INVALID_JSON, detail=str(exc))
    if not isinstance(payload, dict):
        return PlanExtraction(
            None,
            block,
            prose,
            ExtractionError.NOT_AN_OBJECT,
            detail=f"plan block decoded to {type(payload).__name__}",
        )
    return PlanExtraction(payload, block, prose)


def _strip_code_fence(block: str) -> str:
    lines = block.strip().splitlines()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].strip() == "```":
        return "\n".join(lines[1:-1])
    return block


def wrap_plan_block(payload: dict[str, object]) -> str:
    """Render ``payload`` as a marker-delimited block (used by the mock driver)."""

    return f"{PLAN_BEGIN_MARKER}\n{json.dumps(payload, indent=2, sort_keys=True)}\n{PLAN_END_MARKER}"


__all__ = ["ExtractionError", "PlanExtraction", "extract_plan_block", "wrap_plan_block"]
