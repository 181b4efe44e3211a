"""LLM provider adapters and the fallback manager."""

from .base import (
    BaseLLMProvider,
    LLMProviderConfig,
    LLMProviderError,
    classify_error,
    classify_message,
    classify_status,
)
from .anthropic import AnthropicProvider
from .openai import OpenAIProvider
from .ollama import OllamaProvider
from .manager import ProviderManager
from .pricing import MODEL_PRICING, estimate_cost, price_usage

__all__ = [
    "BaseLLMProvider",
    "LLMProviderError",
    "LLMProviderConfig",
    "AnthropicProvider",
    "OpenAIProvider",
    "OllamaProvider",
    "ProviderManager",
    "MODEL_PRICING",
    "classify_error",
    "classify_message",
    "classify_status",
    "estimate_cost",
    "price_usage",
]
