"""
Step parser for text-mode tool calling.

Providers without native tool calling answer with a JSON step:

    {"type": "tool_call", "thought": "...", "tool": "<name>", "params": {...}}
    {"type": "final_answer", "thought": "...", "answer": "..."}

Models wrap these in markdown fences, put raw newlines inside strings, or
produce JSON that is slightly broken. Parsing tries, in order: plain JSON,
JSON with raw control characters escaped, then regex extraction. Text that
yields no step is treated as a final answer by the caller.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.MULTILINE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$", re.MULTILINE)
_QUOTED = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)
_TYPE_FINAL = re.compile(r'"type"\s*:\s*"final_answer"')
_TYPE_TOOL = re.compile(r'"type"\s*:\s*"tool_call"')
_ANSWER = re.compile(r'"answer"\s*:\s*"([\s\S]*)"[^"]*$')
_THOUGHT = re.compile(r'"thought"\s*:\s*"((?:[^"\\]|\\.)*)"')
_TOOL = re.compile(r'"tool"\s*:\s*"([^"]+)"')
_PARAMS = re.compile(r'"params"\s*:\s*(\{[\s\S]*?\})\s*[,}]')


class StepType(str, Enum):
    TOOL_CALL = "tool_call"
    FINAL_ANSWER = "final_answer"


@dataclass
class ParsedStep:
    """One step extracted from model text."""

    type: StepType
    thought: str = ""
    tool: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)
    answer: Optional[str] = None

    @property
    def is_tool_call(self) -> bool:
        return self.type == StepType.TOOL_CALL


def strip_fences(text: str) -> str:
    """Remove a surrounding ```json fence."""
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text, count=1)).strip()


def _escape_raw_controls(text: str) -> str:
    """Escape raw newlines and tabs inside JSON strings.

    Outside strings they are plain whitespace and left alone.
    """

    def escape(match: re.Match) -> str:
        return (
            match.group(0)
            .replace("\r\n", "\\n")
            .replace("\n", "\\n")
            .replace("\r", "\\n")
            .replace("\t", "\\t")
        )

    return _QUOTED.sub(escape, text)


def _try_json(text: str) -> Optional[dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract(parsed: dict[str, Any]) -> Optional[ParsedStep]:
    step_type = parsed.get("type")
    thought = parsed.get("thought") if isinstance(parsed.get("thought"), str) else ""

    if step_type == StepType.FINAL_ANSWER.value and isinstance(parsed.get("answer"), str):
        return ParsedStep(type=StepType.FINAL_ANSWER, thought=thought, answer=parsed["answer"])

    if step_type == StepType.TOOL_CALL.value and isinstance(parsed.get("tool"), str):
        params = parsed.get("params")
        return ParsedStep(
            type=StepType.TOOL_CALL,
            thought=thought,
            tool=parsed["tool"],
            params=params if isinstance(params, dict) else {},
        )

    return None


def _regex_fallback(cleaned: str) -> Optional[ParsedStep]:
    thought_match = _THOUGHT.search(cleaned)
    thought = thought_match.group(1) if thought_match else ""

    if _TYPE_FINAL.search(cleaned):
        answer_match = _ANSWER.search(cleaned)
        if answer_match:
            answer = answer_match.group(1).replace("\\n", "\n").replace('\\"', '"')
            return ParsedStep(type=StepType.FINAL_ANSWER, thought=thought, answer=answer)

    if _TYPE_TOOL.search(cleaned):
        tool_match = _TOOL.search(cleaned)
        if tool_match:
            params: dict[str, Any] = {}
            params_match = _PARAMS.search(cleaned)
            if params_match:
                params = _try_json(params_match.group(1)) or {}
            return ParsedStep(
                type=StepType.TOOL_CALL,
                thought=thought,
                tool=tool_match.group(1),
                params=params,
            )

    return None


def parse_step(text: str) -> Optional[ParsedStep]:
    """Extract a JSON step from model output.

    Args:
        text: Raw model text

    Returns:
        ParsedStep, or None when the text holds no recognizable step
    """
    if not text or not text.strip():
        return None

    cleaned = strip_fences(text)

    parsed = _try_json(cleaned)
    if parsed is not None:
        step = _extract(parsed)
        if step is not None:
            return step

    repaired_text = _escape_raw_controls(cleaned)
    repaired = _try_json(repaired_text)
    if repaired is not None:
        step = _extract(repaired)
        if step is not None:
            return step

    # Prose around the object
    start, end = repaired_text.find("{"), repaired_text.rfind("}")
    if 0 <= start < end:
        embedded = _try_json(repaired_text[start : end + 1])
        if embedded is not None:
            step = _extract(embedded)
            if step is not None:
                return step

    step = _regex_fallback(cleaned)
    if step is not None:
        logger.debug(f"Recovered {step.type.value} step with regex fallback")
    return step
