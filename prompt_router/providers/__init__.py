"""Provider contract, registry and the LiteLLM reference backend."""

from prompt_router.providers.base import (
    BaseProvider,
    ChatEvent,
    ChatMessage,
    ChatOptions,
    ChatResult,
    ContentDelta,
    DoneEvent,
    ErrorEvent,
    Provider,
    UsageEvent,
)
from prompt_router.providers.litellm_provider import LiteLLMProvider
from prompt_router.providers.registry import ProviderRegistry

__all__ = [
    "BaseProvider",
    "ChatEvent",
    "ChatMessage",
    "ChatOptions",
    "ChatResult",
    "ContentDelta",
    "DoneEvent",
    "ErrorEvent",
    "LiteLLMProvider",
    "Provider",
    "ProviderRegistry",
    "UsageEvent",
]
