"""
Error message sanitization for outbound events and API responses.

Failure reasons leave the core through terminal events, WebSocket frames
and HTTP responses. Provider and tool errors can carry credentials, URLs
with secrets, file paths or stack traces, so every outbound error message
passes through sanitize_error_message() while the original is logged.

Usage:
    from src.nexus.agent.security.error_sanitizer import sanitize_error_message

    try:
        ...
    except Exception as e:
        logger.error(f"Tool failed: {e}")
        return {"error": sanitize_error_message(str(e), "Tool error")}
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional


@dataclass
class SanitizationResult:
    """Result of error message sanitization."""

    sanitized_message: str
    redaction_count: int

    @property
    def was_sanitized(self) -> bool:
        return self.redaction_count > 0


class ErrorSanitizer:
    """Removes secrets and internals from error messages.

    Attributes:
        patterns: List of (regex_pattern, replacement) tuples
        max_message_length: Maximum length of sanitized messages
    """

    # Order matters - more specific patterns first
    DEFAULT_PATTERNS: list[tuple[str, str]] = [
        # Connection strings
        (r'postgres(ql)?://[^\s]+', '[DATABASE_URL]'),
        (r'redis://[^\s]+', '[REDIS_URL]'),

        # Authentication tokens and keys
        (r'bearer\s+[A-Za-z0-9_\-\.]+', 'Bearer [REDACTED]'),
        (r'api[-_]?key[=:\s]+[^\s,;]+', 'api_key=[REDACTED]'),
        (r'access[-_]?token[=:\s]+[^\s,;]+', 'access_token=[REDACTED]'),
        (r'\bsk-(ant-)?[A-Za-z0-9_\-]{10,}', '[API_KEY]'),
        (r'password[=:\s]+[^\s,;]+', 'password=[REDACTED]'),
        (r'secret[=:\s]+[^\s,;]+', 'secret=[REDACTED]'),

        # Environment variables that hold credentials
        (r'\b(ANTHROPIC_API_KEY|OPENAI_API_KEY|JWT_SECRET|DATABASE_URL)\b', '[ENV_VAR]'),

        # Stack traces (Python)
        (r'Traceback \(most recent call last\):[\s\S]*?(?=\n\n|\n[A-Z]|\Z)', '[STACK_TRACE]'),
        (r'File "([^"]+)", line \d+', 'File "[REDACTED]", line [REDACTED]'),

        # JWT tokens
        (r'\beyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\b', '[JWT_REDACTED]'),

        # Private keys
        (r'-----BEGIN [A-Z ]+ PRIVATE KEY-----[\s\S]*?-----END [A-Z ]+ PRIVATE KEY-----', '[PRIVATE_KEY]'),
    ]

    def __init__(
        self,
        patterns: Optional[list[tuple[str, str]]] = None,
        max_message_length: int = 500,
    ):
        self.patterns = list(patterns or self.DEFAULT_PATTERNS)
        self.max_message_length = max_message_length
        self._compiled_patterns = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in self.patterns
        ]

    def sanitize(self, message: str, error_type: Optional[str] = None) -> SanitizationResult:
        """Sanitize an error message for safe client exposure.

        Args:
            message: Raw error message
            error_type: Optional error category used as a prefix

        Returns:
            SanitizationResult with sanitized message
        """
        if not message:
            return SanitizationResult("An error occurred", 0)

        sanitized = message
        redaction_count = 0

        for pattern, replacement in self._compiled_patterns:
            sanitized, count = pattern.subn(replacement, sanitized)
            redaction_count += count

        if len(sanitized) > self.max_message_length:
            sanitized = sanitized[: self.max_message_length] + "... [TRUNCATED]"

        if not sanitized.strip():
            sanitized = "An error occurred"

        if error_type and not sanitized.startswith(error_type):
            sanitized = f"{error_type}: {sanitized}"

        return SanitizationResult(sanitized, redaction_count)

    def is_safe(self, message: str) -> bool:
        """Check if a message contains nothing that would be redacted."""
        return not any(pattern.search(message) for pattern, _ in self._compiled_patterns)


_default_sanitizer: Optional[ErrorSanitizer] = None


def get_sanitizer() -> ErrorSanitizer:
    """Get the default error sanitizer instance."""
    global _default_sanitizer
    if _default_sanitizer is None:
        _default_sanitizer = ErrorSanitizer()
    return _default_sanitizer


def sanitize_error_message(message: str, error_type: Optional[str] = None) -> str:
    """Convenience function to sanitize error messages.

    Example:
        >>> sanitize_error_message("connect to postgresql://u:p@db/agent failed")
        'connect to [DATABASE_URL] failed'
    """
    return get_sanitizer().sanitize(message, error_type).sanitized_message
