"""
Tool Executor.

Handles execution of tool calls with error handling and result processing.
Tool failures never escape as exceptions: they are recorded on the
ToolCallRecord and fed back to the reasoning step as failed results.
"""

from __future__ import annotations

import logging

from ..domain.entities import ToolCallRecord
from ..exceptions import ToolError
from ..security.error_sanitizer import sanitize_error_message
from ..tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Executes tool calls with error handling.

    Usage:
        executor = ToolExecutor(tool_registry)

        record = await executor.execute(record)
        if record.succeeded:
            ...

    Architecture:
        - Delegates to ToolRegistry for validation and execution
        - Converts ToolValidationError / ToolExecutionError to a FAILED record
        - Sanitizes error text before it reaches the model or clients
    """

    def __init__(self, tool_registry: ToolRegistry):
        """Initialize the tool executor.

        Args:
            tool_registry: Registry for tool lookup and execution
        """
        self.tools = tool_registry

    async def execute(self, record: ToolCallRecord) -> ToolCallRecord:
        """Execute one tool call and record the outcome.

        Args:
            record: Tool call to execute (params already validated)

        Returns:
            The same record, EXECUTED or FAILED
        """
        logger.info(f"Executing tool: {record.tool_name}")

        try:
            output = await self.tools.execute(record.tool_name, record.input_params)
        except ToolError as e:
            logger.warning(f"Tool '{record.tool_name}' failed: {e.message}")
            record.mark_failed(sanitize_error_message(e.message))
            return record
        except Exception as e:
            logger.error(f"Unexpected error executing '{record.tool_name}': {e}")
            record.mark_failed(sanitize_error_message(str(e), "Tool error"))
            return record

        record.mark_executed(output)
        logger.debug(f"Tool {record.tool_name} executed")
        return record
