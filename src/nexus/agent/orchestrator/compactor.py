"""
Session Compactor.

Keeps long sessions inside the context window. The older part of the turn
history is replaced by one summary turn; the most recent turns are kept
verbatim. Before summarizing, critical facts (file paths, error codes, IPs,
URLs, ports, user preferences) are pinned on the session, and every pinned
fact is re-appended verbatim to the summary turn so it survives any number
of compactions.

Summary turn layout:
    [COMPACTED SUMMARY]
    <summary>

    [CRITICAL FACTS]
    [PINNED] File path: /etc/nginx/nginx.conf
    [PINNED] Error: ERR_CONNECTION_REFUSED
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..domain.entities import Session, Turn, TurnRole
from ..exceptions import ProviderError

if TYPE_CHECKING:
    from ..providers.manager import ProviderManager

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "[COMPACTED SUMMARY]"
FACTS_HEADER = "[CRITICAL FACTS]"
PINNED_PREFIX = "[PINNED] "

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Return a concise summary preserving key "
    "facts, decisions, and outcomes. Copy file paths, error codes, identifiers and "
    "user preferences verbatim. Keep it under 500 words."
)

_UNIX_PATH = re.compile(r"(?<![\w:/])/[\w/\-.]+\.\w+")
_WINDOWS_PATH = re.compile(r"\b[A-Z]:\\[\w\\.\-]+", re.IGNORECASE)
_ERROR_CODE = re.compile(r"\b(ERR_\w+|E[A-Z]{3,}\b|E\d{4,}|error\s*code\s*[:=]\s*\S+)", re.IGNORECASE)
_ERRNO_NAME = re.compile(r"\bE(?:NOENT|ACCES|PERM|EXIST|CONNREFUSED|CONNRESET|TIMEDOUT|ADDRINUSE|NOTDIR|ISDIR)\b")
_IPV4 = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
_URL = re.compile(r"https?://[^\s)>\"']+", re.IGNORECASE)
_PORT = re.compile(r"(?:\bport\s+|(?<=[\w\]]):)(\d{2,5})\b", re.IGNORECASE)
_PREFERENCE = re.compile(r"\b(prefer|always|never|don't like|i want|i need|make sure)\b", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"[.!?\n]+")


@dataclass
class CompactionResult:
    """Outcome of one compaction.

    Attributes:
        summary: Summary text placed in the summary turn
        tokens_before: Estimated tokens before compaction
        tokens_after: Estimated tokens after compaction
        turns_compacted: Turns replaced by the summary turn
        facts_pinned: New facts pinned during this compaction
        used_fallback: True if the extractive summary was used
    """

    summary: str = ""
    tokens_before: int = 0
    tokens_after: int = 0
    turns_compacted: int = 0
    facts_pinned: int = 0
    used_fallback: bool = False

    @property
    def tokens_saved(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)

    def to_dict(self) -> dict:
        return {
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "tokens_saved": self.tokens_saved,
            "turns_compacted": self.turns_compacted,
            "facts_pinned": self.facts_pinned,
            "used_fallback": self.used_fallback,
        }


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Heuristic token count (about 4 characters per token)."""
    return math.ceil(len(text) / chars_per_token)


def extract_critical_facts(turns: list[Turn]) -> list[str]:
    """Scan turns for facts that must never be lost.

    Summary turns are skipped: their facts are already pinned.

    Returns:
        Facts in first-seen order, without the [PINNED] prefix
    """
    facts: dict[str, None] = {}

    def add(fact: str) -> None:
        facts.setdefault(fact, None)

    for turn in turns:
        if turn.role == TurnRole.SYSTEM:
            continue
        text = turn.content
        for tc in turn.tool_calls or ():
            text += "\n" + " ".join(str(v) for v in tc.input_params.values())

        for match in _UNIX_PATH.findall(text):
            add(f"File path: {match}")
        for match in _WINDOWS_PATH.findall(text):
            add(f"File path: {match.strip()}")
        for match in _ERROR_CODE.findall(text):
            if match.upper().startswith("E") and not match.upper().startswith("ERR_"):
                # Bare E-words: keep numeric codes and known errno names only
                if not (match[1:].isdigit() or _ERRNO_NAME.fullmatch(match)):
                    continue
            add(f"Error: {match}")
        for match in _IPV4.findall(text):
            add(f"IP: {match}")
        for match in _URL.findall(text):
            add(f"URL: {match}")
        for match in _PORT.findall(text):
            add(f"Port: {match}")

        if turn.role == TurnRole.USER and _PREFERENCE.search(text):
            for sentence in _SENTENCE_SPLIT.split(text):
                trimmed = sentence.strip()
                if _PREFERENCE.search(trimmed) and 10 < len(trimmed) < 300:
                    add(f"User preference: {trimmed}")

    return list(facts)


def _render_turn(turn: Turn) -> str:
    if turn.role == TurnRole.USER:
        return f"User: {turn.content}"
    if turn.role == TurnRole.ASSISTANT:
        calls = ", ".join(tc.tool_name for tc in turn.tool_calls or ())
        suffix = f" [called: {calls}]" if calls else ""
        return f"Assistant: {turn.content}{suffix}"
    if turn.role == TurnRole.TOOL_RESULT:
        label = "Tool error" if turn.is_error else "Tool result"
        return f"{label}: {turn.content}"
    return f"Earlier summary: {turn.content}"


def _has_history(turns: list[Turn]) -> bool:
    """True when turns hold more than a previous summary."""
    return bool(turns) and not (len(turns) == 1 and turns[0].role == TurnRole.SYSTEM)


def extractive_summary(turns: list[Turn], max_line_length: int = 200) -> str:
    """Deterministic summary: the first line of each turn, truncated."""
    lines = []
    for turn in turns:
        first_line = _render_turn(turn).strip().splitlines()[0] if turn.content else ""
        if not first_line:
            continue
        if len(first_line) > max_line_length:
            first_line = first_line[: max_line_length - 3] + "..."
        lines.append(f"- {first_line}")
    return "\n".join(lines)


def format_summary_turn(summary: str, pinned_facts: list[str]) -> str:
    """Render summary text plus every pinned fact."""
    content = f"{SUMMARY_HEADER}\n{summary.strip()}"
    if pinned_facts:
        facts = "\n".join(f"{PINNED_PREFIX}{fact}" for fact in pinned_facts)
        content += f"\n\n{FACTS_HEADER}\n{facts}"
    return content


class SessionCompactor:
    """Summarizes older turns so sessions stay within the context window.

    Usage:
        compactor = SessionCompactor(provider_manager, preserve_recent=10)

        if session.estimated_tokens() > threshold:
            result = await compactor.compact(session)
            print(f"Saved ~{result.tokens_saved} tokens")

    Guarantees:
        - The last preserve_recent turns are kept verbatim (extended back so
          the kept tail never starts with an orphaned tool result)
        - The kept tail opens with a user turn whenever the session has one
        - Every pinned fact appears verbatim in the summary turn
        - Provider failure falls back to an extractive summary
    """

    def __init__(
        self,
        provider_manager: ProviderManager,
        preserve_recent: int = 10,
        chars_per_token: int = 4,
        summary_max_tokens: int = 1000,
    ):
        """Initialize the compactor.

        Args:
            provider_manager: Provider chain used for summarization
            preserve_recent: Turns kept verbatim
            chars_per_token: Token estimation ratio
            summary_max_tokens: Max tokens for the summary response
        """
        self.provider_manager = provider_manager
        self.preserve_recent = preserve_recent
        self.chars_per_token = chars_per_token
        self.summary_max_tokens = summary_max_tokens

    def _split_index(self, turns: list[Turn]) -> int:
        """Index of the first preserved turn (0 means nothing to compact).

        Moves back to the nearest user turn when that still leaves something
        to summarize. Otherwise the split stays put and compact() carries the
        latest user turn into the tail.
        """
        if len(turns) <= self.preserve_recent:
            return 0
        start = len(turns) - self.preserve_recent
        # Keep tool results together with the assistant turn that requested them
        while start > 0 and turns[start].role == TurnRole.TOOL_RESULT:
            start -= 1

        for index in range(start, 0, -1):
            if turns[index].role == TurnRole.USER:
                if _has_history(turns[:index]):
                    return index
                break
        return start

    async def compact(self, session: Session) -> CompactionResult:
        """Replace the older segment of a session with a summary turn.

        Args:
            session: Session to compact (mutated in place)

        Returns:
            CompactionResult (turns_compacted == 0 when nothing was done)
        """
        tokens_before = session.estimated_tokens(self.chars_per_token)
        start = self._split_index(session.turns)
        older = session.turns[:start]

        carried: list[Turn] = []
        if start < len(session.turns) and session.turns[start].role != TurnRole.USER:
            for index in range(len(older) - 1, -1, -1):
                if older[index].role == TurnRole.USER:
                    carried.append(older.pop(index))
                    break

        if not _has_history(older):
            return CompactionResult(tokens_before=tokens_before, tokens_after=tokens_before)

        new_facts = 0
        for fact in extract_critical_facts(older):
            if session.pin_fact(fact):
                new_facts += 1

        used_fallback = False
        prompt = (
            "Summarize the following conversation history concisely, preserving key "
            "decisions, outcomes, and context. Focus on what was discussed and decided, "
            "not the back-and-forth.\n\n"
            + "\n\n".join(_render_turn(turn) for turn in older)
        )
        try:
            summary = await self.provider_manager.complete(
                prompt,
                system_prompt=SUMMARIZER_SYSTEM_PROMPT,
                session=session,
                max_tokens=self.summary_max_tokens,
            )
        except ProviderError as e:
            logger.warning(f"Compaction summary failed for {session.session_id}, using extractive summary: {e}")
            summary = ""

        if not summary.strip():
            summary = extractive_summary(older)
            used_fallback = True

        summary_turn = Turn(
            role=TurnRole.SYSTEM,
            content=format_summary_turn(summary, session.pinned_facts),
        )
        session.turns[:start] = [summary_turn, *carried]
        session.summary = summary
        session.touch()

        tokens_after = session.estimated_tokens(self.chars_per_token)
        logger.info(
            f"Compacted session {session.session_id}: {len(older)} turns, "
            f"~{tokens_before} -> ~{tokens_after} tokens, {new_facts} new facts pinned"
        )

        return CompactionResult(
            summary=summary,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            turns_compacted=len(older),
            facts_pinned=new_facts,
            used_fallback=used_fallback,
        )
