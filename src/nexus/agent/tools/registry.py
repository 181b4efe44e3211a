"""
Tool Registry.

Provides the registry of capabilities the agent loop may invoke. Handles
registration, policy-based discovery, input validation and execution.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from ..domain.entities import SideEffectClass, ToolDefinition
from ..exceptions import ToolExecutionError, ToolValidationError
from .policy import ToolPolicy, is_tool_allowed
from .validation import build_input_model, validate_params

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Union[Awaitable[Any], Any]]


@dataclass
class RegisteredTool:
    """A tool definition with its handler and compiled input model."""

    definition: ToolDefinition
    handler: ToolHandler
    input_model: type[BaseModel]


class ToolRegistry:
    """Registry of named tools with declared side-effect classes.

    The side-effect class recorded at registration is authoritative:
    callers look it up with side_effect_of() and can never override it.

    Usage:
        registry = ToolRegistry()

        async def read_file(path: str) -> str:
            ...

        registry.register(
            name="read_file",
            description="Read a file from the workspace",
            input_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
            side_effect_class=SideEffectClass.READ_ONLY,
            handler=read_file,
        )

        tools = registry.resolve_tools(session.tool_scope)
        output = await registry.execute("read_file", {"path": "README.md"})

    Errors:
        - Unknown tool or schema violation: ToolValidationError
        - Handler exception or timeout: ToolExecutionError
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        side_effect_class: SideEffectClass,
        handler: ToolHandler,
        timeout_seconds: float = 30.0,
    ) -> ToolDefinition:
        """Register a tool. Replaces any tool with the same name.

        Args:
            name: Unique tool name
            description: Human-readable description shown to the model
            input_schema: JSON schema (type object) for the parameters
            side_effect_class: Declared risk tier
            handler: Callable receiving validated params as keyword arguments
            timeout_seconds: Maximum execution time

        Returns:
            The registered ToolDefinition
        """
        definition = ToolDefinition(
            name=name,
            description=description,
            parameters=input_schema,
            side_effect_class=SideEffectClass(side_effect_class),
            timeout_seconds=timeout_seconds,
        )
        return self.register_definition(definition, handler)

    def register_definition(
        self, definition: ToolDefinition, handler: ToolHandler
    ) -> ToolDefinition:
        """Register a prebuilt ToolDefinition."""
        model_name = "".join(part.title() for part in definition.name.split("_")) + "Input"
        input_model = build_input_model(definition.parameters, model_name)

        if definition.name in self._tools:
            logger.info(f"ToolRegistry: replacing '{definition.name}'")
        else:
            logger.info(
                f"ToolRegistry: registered '{definition.name}' "
                f"({definition.side_effect_class.value})"
            )

        self._tools[definition.name] = RegisteredTool(
            definition=definition,
            handler=handler,
            input_model=input_model,
        )
        return definition

    def unregister(self, name: str) -> bool:
        """Unregister a tool by name. Returns True if the tool existed."""
        existed = self._tools.pop(name, None) is not None
        if existed:
            logger.info(f"ToolRegistry: unregistered '{name}'")
        return existed

    def get(self, name: str) -> Optional[ToolDefinition]:
        """Get a tool definition by name."""
        entry = self._tools.get(name)
        return entry.definition if entry else None

    def list_names(self) -> list[str]:
        """Names of all registered tools, in registration order."""
        return list(self._tools)

    def side_effect_of(self, name: str) -> SideEffectClass:
        """Declared side-effect class of a tool.

        Raises:
            ToolValidationError: If the tool is not registered
        """
        return self._require(name).definition.side_effect_class

    def resolve_tools(
        self,
        scope: Optional[ToolPolicy] = None,
        exclude: Optional[set[str]] = None,
    ) -> list[ToolDefinition]:
        """Tool descriptors visible under a policy.

        Args:
            scope: Policy restricting the tool set (None allows all)
            exclude: Names to leave out regardless of policy

        Returns:
            List of tool definitions in registration order
        """
        excluded = exclude or set()
        return [
            entry.definition
            for name, entry in self._tools.items()
            if name not in excluded and is_tool_allowed(name, scope)
        ]

    def validate(self, name: str, params: Any) -> dict[str, Any]:
        """Validate parameters for a tool without executing it.

        Raises:
            ToolValidationError: Unknown tool or schema violation
        """
        entry = self._require(name)
        return validate_params(
            entry.input_model, params, name, schema=entry.definition.parameters
        )

    async def execute(self, tool_name: str, params: Any) -> Any:
        """Validate and execute a tool.

        Args:
            tool_name: Registered tool name
            params: Raw parameters

        Returns:
            The handler's output (string or JSON-serializable value)

        Raises:
            ToolValidationError: Unknown tool or schema violation
            ToolExecutionError: Handler raised or exceeded its timeout
        """
        entry = self._require(tool_name)
        validated = validate_params(
            entry.input_model, params, tool_name, schema=entry.definition.parameters
        )
        timeout = entry.definition.timeout_seconds

        try:
            result = entry.handler(**validated)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Tool '{tool_name}' timed out after {timeout}s")
            raise ToolExecutionError(
                f"Tool '{tool_name}' timed out after {timeout}s",
                tool_name=tool_name,
                cause=e,
            ) from e
        except ToolExecutionError:
            raise
        except Exception as e:
            logger.warning(f"Tool '{tool_name}' failed: {e}")
            raise ToolExecutionError(
                f"Tool '{tool_name}' failed: {e}",
                tool_name=tool_name,
                cause=e,
            ) from e

        logger.debug(f"Tool '{tool_name}' executed")
        return result

    def _require(self, name: str) -> RegisteredTool:
        entry = self._tools.get(name)
        if entry is None:
            raise ToolValidationError(f"Unknown tool: '{name}'", tool_name=name)
        return entry

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


# ============================================
# Prompt Rendering (text-mode tool calling)
# ============================================


TEXT_TOOL_PROTOCOL = """## How You Work

For each turn, respond with valid JSON in one of two formats.

To call a tool:
```json
{
  "type": "tool_call",
  "thought": "Brief reasoning about what you're doing and why",
  "tool": "<tool_name>",
  "params": { ... }
}
```

To give your final answer:
```json
{
  "type": "final_answer",
  "thought": "Brief summary of what you did",
  "answer": "Your response to the user"
}
```

Rules:
1. Call ONE tool per turn, then observe the result before deciding the next step
2. If a tool fails, try a different approach instead of repeating the same call
3. When the task is complete, return a final_answer
4. Respond with JSON only, no text outside the JSON object"""


def describe_for_prompt(tools: list[ToolDefinition]) -> str:
    """Render tool descriptors as a markdown list for a system prompt."""
    if not tools:
        return "No tools available."
    return "\n".join(tool.to_prompt_line() for tool in tools)


def build_text_tool_prompt(tools: list[ToolDefinition]) -> str:
    """Tool list plus the JSON step protocol, for adapters without native tools."""
    return f"## Available Tools\n\n{describe_for_prompt(tools)}\n\n{TEXT_TOOL_PROTOCOL}"
