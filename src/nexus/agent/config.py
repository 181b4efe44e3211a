"""
Agent settings from the environment.

Values are read from environment variables (a .env file is loaded first
when present). Invalid values raise ConfigurationError at startup rather
than failing later inside a session.

Environment Variables:
    ANTHROPIC_API_KEY, ANTHROPIC_MODEL: Anthropic adapter
    OPENAI_API_KEY, OPENAI_MODEL, OPENAI_BASE_URL: OpenAI adapter
    OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_NATIVE_TOOLS: Ollama adapter
    PROVIDER_ORDER: Comma-separated fallback order (default: anthropic,openai,ollama)
    PROVIDER_COOLDOWN_SECONDS: Degraded cooldown (default: 30)
    PROVIDER_FAILURE_THRESHOLD: Consecutive failures before unavailable (default: 5)
    AGENT_MAX_TURNS, AGENT_MAX_TOKENS: Root session caps
    AGENT_MAX_TOOL_CALLS_PER_TURN: Calls per response (default: 10)
    SUBAGENT_MAX_TURNS, SUBAGENT_MAX_TOKENS, SUBAGENT_CONCURRENCY: Delegation limits
    APPROVAL_POLICY: destructive | always
    APPROVAL_TIMEOUT_SECONDS: Time before an approval expires (default: 300)
    APPROVAL_WEBHOOK_URLS: Comma-separated webhook endpoints
    APPROVAL_WEBHOOK_TOKEN: Bearer token for the webhooks
    COMPACTION_THRESHOLD_TOKENS, COMPACTION_PRESERVE_RECENT: Compaction tuning
    SESSION_IDLE_TIMEOUT_SECONDS: In-memory session eviction (default: 3600)
    DATABASE_URL: PostgreSQL DSN (in-memory store when unset)
    CORS_ORIGINS: Comma-separated allowed origins
    LOG_LEVEL: Root log level (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .orchestrator.agent import AgentConfig
from .orchestrator.approval_manager import ApprovalPolicy

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("anthropic", "openai", "ollama")


def _get_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _get_int(name: str, default: int, minimum: int = 1) -> int:
    raw = _get_str(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = _get_str(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = _get_str(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _get_list(name: str, default: Optional[list[str]] = None) -> list[str]:
    raw = _get_str(name)
    if raw is None:
        return list(default or [])
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class ProviderSettings:
    """One configured provider adapter."""

    name: str
    model: str
    api_key: str = ""
    base_url: Optional[str] = None
    timeout: float = 60.0
    native_tools: bool = False


@dataclass
class AgentSettings:
    """Runtime settings of the agent service."""

    providers: list[ProviderSettings] = field(default_factory=list)
    provider_cooldown_seconds: float = 30.0
    provider_failure_threshold: int = 5

    max_turns: int = 30
    max_tokens: int = 200_000
    max_tool_calls_per_turn: int = 10
    subagent_max_turns: int = 15
    subagent_max_tokens: int = 50_000
    subagent_concurrency: int = 2

    approval_policy: ApprovalPolicy = ApprovalPolicy.DESTRUCTIVE
    approval_timeout_seconds: float = 300.0
    approval_webhook_urls: list[str] = field(default_factory=list)
    approval_webhook_token: Optional[str] = None

    compaction_threshold_tokens: int = 100_000
    compaction_preserve_recent: int = 10
    session_idle_timeout_seconds: float = 3600.0

    database_url: Optional[str] = None
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> AgentSettings:
        """Read settings from environment variables.

        Args:
            load_env_file: Load a .env file first (existing variables win)

        Raises:
            ConfigurationError: Invalid value or unknown provider name
        """
        if load_env_file:
            load_dotenv(override=False)

        policy_raw = (_get_str("APPROVAL_POLICY", ApprovalPolicy.DESTRUCTIVE.value) or "").lower()
        try:
            approval_policy = ApprovalPolicy(policy_raw)
        except ValueError:
            raise ConfigurationError(
                f"APPROVAL_POLICY must be one of "
                f"{[p.value for p in ApprovalPolicy]}, got {policy_raw!r}"
            ) from None

        settings = cls(
            providers=cls._providers_from_env(),
            provider_cooldown_seconds=_get_float("PROVIDER_COOLDOWN_SECONDS", 30.0),
            provider_failure_threshold=_get_int("PROVIDER_FAILURE_THRESHOLD", 5),
            max_turns=_get_int("AGENT_MAX_TURNS", 30),
            max_tokens=_get_int("AGENT_MAX_TOKENS", 200_000),
            max_tool_calls_per_turn=_get_int("AGENT_MAX_TOOL_CALLS_PER_TURN", 10),
            subagent_max_turns=_get_int("SUBAGENT_MAX_TURNS", 15),
            subagent_max_tokens=_get_int("SUBAGENT_MAX_TOKENS", 50_000),
            subagent_concurrency=_get_int("SUBAGENT_CONCURRENCY", 2),
            approval_policy=approval_policy,
            approval_timeout_seconds=_get_float("APPROVAL_TIMEOUT_SECONDS", 300.0, minimum=1.0),
            approval_webhook_urls=_get_list("APPROVAL_WEBHOOK_URLS"),
            approval_webhook_token=_get_str("APPROVAL_WEBHOOK_TOKEN"),
            compaction_threshold_tokens=_get_int("COMPACTION_THRESHOLD_TOKENS", 100_000),
            compaction_preserve_recent=_get_int("COMPACTION_PRESERVE_RECENT", 10),
            session_idle_timeout_seconds=_get_float("SESSION_IDLE_TIMEOUT_SECONDS", 3600.0, minimum=1.0),
            database_url=_get_str("DATABASE_URL"),
            cors_origins=_get_list("CORS_ORIGINS", ["http://localhost:3000"]),
            log_level=(_get_str("LOG_LEVEL", "INFO") or "INFO").upper(),
        )

        if not settings.providers:
            logger.warning(
                "No LLM providers configured (set ANTHROPIC_API_KEY, OPENAI_API_KEY or OLLAMA_BASE_URL)"
            )
        return settings

    @staticmethod
    def _providers_from_env() -> list[ProviderSettings]:
        order = [name.lower() for name in _get_list("PROVIDER_ORDER", list(KNOWN_PROVIDERS))]
        unknown = [name for name in order if name not in KNOWN_PROVIDERS]
        if unknown:
            raise ConfigurationError(
                f"PROVIDER_ORDER contains unknown providers: {', '.join(unknown)}"
            )

        timeout = _get_float("PROVIDER_TIMEOUT_SECONDS", 60.0, minimum=1.0)
        providers: list[ProviderSettings] = []
        for name in dict.fromkeys(order):
            if name == "anthropic":
                api_key = _get_str("ANTHROPIC_API_KEY")
                if api_key:
                    providers.append(ProviderSettings(
                        name=name,
                        api_key=api_key,
                        model=_get_str("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929"),
                        timeout=timeout,
                        native_tools=True,
                    ))
            elif name == "openai":
                api_key = _get_str("OPENAI_API_KEY")
                if api_key:
                    providers.append(ProviderSettings(
                        name=name,
                        api_key=api_key,
                        model=_get_str("OPENAI_MODEL", "gpt-4o"),
                        base_url=_get_str("OPENAI_BASE_URL"),
                        timeout=timeout,
                        native_tools=True,
                    ))
            elif name == "ollama":
                base_url = _get_str("OLLAMA_BASE_URL")
                model = _get_str("OLLAMA_MODEL")
                if base_url or model:
                    providers.append(ProviderSettings(
                        name=name,
                        model=model or "qwen3:4b",
                        base_url=base_url,
                        timeout=timeout,
                        native_tools=_get_bool("OLLAMA_NATIVE_TOOLS", False),
                    ))
        return providers

    def to_agent_config(self, **overrides) -> AgentConfig:
        """Loop configuration derived from these settings."""
        values = dict(
            max_turns=self.max_turns,
            max_tokens=self.max_tokens,
            max_tool_calls_per_turn=self.max_tool_calls_per_turn,
            compaction_threshold_tokens=self.compaction_threshold_tokens,
            approval_policy=self.approval_policy,
            subagent_max_turns=self.subagent_max_turns,
            subagent_max_tokens=self.subagent_max_tokens,
        )
        values.update(overrides)
        return AgentConfig(**values)


_settings: Optional[AgentSettings] = None


def get_settings() -> AgentSettings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = AgentSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (tests)."""
    global _settings
    _settings = None
