"""Security helpers for the agent core."""

from .error_sanitizer import ErrorSanitizer, get_sanitizer, sanitize_error_message

__all__ = ["ErrorSanitizer", "get_sanitizer", "sanitize_error_message"]
