"""
Prompt Builder for the agent loop.

Encapsulates system prompt construction:
- Base prompt from configuration
- Delegation guidance for root sessions that can spawn sub-agents
- Sub-agent framing for delegated sessions
- Pinned facts that must stay visible across compactions
"""

from __future__ import annotations

import logging
from typing import Optional

from ..domain.entities import Session

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are an autonomous assistant that completes tasks by reasoning step by step and calling tools.

Rules:
1. Think before acting
2. If a tool fails, try a different approach instead of repeating the same call
3. When the task is complete, answer the user directly and concisely
4. Some tools require human approval; a denied or expired approval means do not retry that action"""

SUBAGENT_PROMPT = """You are a focused sub-agent working on one delegated task.
Complete the task with the tools you have, then give a concise final answer that
summarizes what you found or did. You cannot delegate further.

Task: {task}"""

DELEGATION_GUIDANCE = (
    "For complex, self-contained subtasks, use spawn_subagent to delegate to a "
    "focused sub-agent. Sub-agents report back a summary."
)


class PromptBuilder:
    """Manages system prompt construction for the agent.

    Usage:
        prompt_builder = PromptBuilder()

        system_prompt = prompt_builder.build(
            base_prompt=config.system_prompt,
            session=session,
            can_delegate=True,
        )
    """

    def build(
        self,
        base_prompt: str,
        session: Optional[Session] = None,
        can_delegate: bool = False,
    ) -> str:
        """Build the system prompt for one provider call.

        Args:
            base_prompt: Base system prompt template
            session: Session being served (sub-agent framing, pinned facts)
            can_delegate: Whether the delegate tool is offered

        Returns:
            Complete system prompt
        """
        sections = [base_prompt]

        if session is not None and not session.is_root:
            task = session.metadata.get("task", "")
            sections.append(SUBAGENT_PROMPT.format(task=task))
        elif can_delegate:
            sections.append(DELEGATION_GUIDANCE)

        if session is not None and session.pinned_facts:
            facts = "\n".join(f"- {fact}" for fact in session.pinned_facts)
            sections.append(f"Facts to keep in mind (verbatim):\n{facts}")

        return "\n\n".join(section for section in sections if section)
