"""
adapters/ - 外部服务适配器
"""

from .llm_adapter import (
    AnthropicAdapter,
    GoogleAdapter,
    LLMAdapter,
    LLMMessage,
    LLMResponse,
    MistralAdapter,
    OpenAIAdapter,
    build_adapters,
)

__all__ = [
    "LLMAdapter", "LLMMessage", "LLMResponse",
    "OpenAIAdapter", "AnthropicAdapter", "GoogleAdapter", "MistralAdapter",
    "build_adapters",
]
