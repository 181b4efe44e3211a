"""Tool registry, scoping policies and input validation."""

from .policy import TOOL_PROFILES, ToolPolicy, ToolProfile, is_tool_allowed
from .registry import (
    TEXT_TOOL_PROTOCOL,
    RegisteredTool,
    ToolRegistry,
    build_text_tool_prompt,
    describe_for_prompt,
)
from .validation import build_input_model, validate_params

__all__ = [
    "TOOL_PROFILES",
    "TEXT_TOOL_PROTOCOL",
    "RegisteredTool",
    "ToolPolicy",
    "ToolProfile",
    "ToolRegistry",
    "build_input_model",
    "build_text_tool_prompt",
    "describe_for_prompt",
    "is_tool_allowed",
    "validate_params",
]
