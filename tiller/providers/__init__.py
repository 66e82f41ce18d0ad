from tiller.providers.anthropic import AnthropicProvider
from tiller.providers.base import (
    Completion,
    ModelProvider,
    ProviderDelta,
    ProviderError,
    ScriptedProvider,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    complete_text,
)

__all__ = [
    "AnthropicProvider",
    "Completion",
    "ModelProvider",
    "ProviderDelta",
    "ProviderError",
    "ScriptedProvider",
    "TextDelta",
    "ThinkingDelta",
    "ToolCallDelta",
    "complete_text",
]
