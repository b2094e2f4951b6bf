"""Provider contract consumed by the dispatcher.

Every backend implements Provider. A chat call is a finite, single-pass
async stream of typed events that ends with exactly one DoneEvent or
ErrorEvent:

    ContentDelta* UsageEvent? (DoneEvent | ErrorEvent)

Consumers either drive the stream to its terminal event or close it
explicitly (``aclose()``); a half-drained stream is never left behind.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import httpx
import structlog

from prompt_router.errors import ProviderError
from prompt_router.pricing import estimate_tokens

if TYPE_CHECKING:
    from prompt_router.profile import ProviderConfig

log = structlog.get_logger(__name__)

ChatRole = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    role: ChatRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatOptions:
    """Per-call generation options."""

    max_tokens: int | None = None
    temperature: float | None = None
    json: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


# ------------------------------------------------------------------ #
# Stream events
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ContentDelta:
    text: str
    type: Literal["content"] = "content"


@dataclass(frozen=True)
class UsageEvent:
    """Provider-reported token usage for the call."""

    input_tokens: int
    output_tokens: int
    cached_input_tokens: int = 0
    type: Literal["usage"] = "usage"


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure reported in-band by the provider."""

    message: str
    status_code: int | None = None
    type: Literal["error"] = "error"


@dataclass(frozen=True)
class DoneEvent:
    finish_reason: str = "stop"
    type: Literal["done"] = "done"


ChatEvent = ContentDelta | UsageEvent | ErrorEvent | DoneEvent


@dataclass(frozen=True)
class ChatResult:
    """Aggregated response from a fully drained stream."""

    content: str
    usage: UsageEvent | None = None
    finish_reason: str = "stop"


# ------------------------------------------------------------------ #
# Contract
# ------------------------------------------------------------------ #


class Provider(ABC):
    """Capability interface every model backend implements.

    Subclasses must implement id(), supports(), is_available() and chat().
    chat_complete() and estimate_tokens() have working defaults.
    """

    @abstractmethod
    def id(self) -> str:
        """Unique provider identifier, matching ProviderConfig.id."""

    @abstractmethod
    def supports(self, model: str) -> bool:
        """Whether this provider can serve ``model``."""

    def estimate_tokens(self, text: str) -> int:
        """Heuristic token count. Override with a real tokenizer if available."""
        return estimate_tokens(text)

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap liveness/credential probe. May raise; callers treat that as False."""

    @abstractmethod
    def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Stream a chat completion as typed events."""

    async def chat_complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> ChatResult:
        """Drain chat() into a single result.

        Raises:
            ProviderError: If the stream ends with an ErrorEvent or without
                any terminal event
        """
        parts: list[str] = []
        usage: UsageEvent | None = None

        async with aclosing(self.chat(model, messages, options)) as stream:
            async for event in stream:
                if isinstance(event, ContentDelta):
                    parts.append(event.text)
                elif isinstance(event, UsageEvent):
                    usage = event
                elif isinstance(event, ErrorEvent):
                    raise ProviderError(
                        event.message or "Chat completion failed",
                        self.id(),
                        model,
                        status_code=event.status_code,
                    )
                elif isinstance(event, DoneEvent):
                    return ChatResult(
                        content="".join(parts),
                        usage=usage,
                        finish_reason=event.finish_reason,
                    )

        raise ProviderError("Stream ended without a terminal event", self.id(), model)


class BaseProvider(Provider):
    """Provider backed by a ProviderConfig from the routing profile.

    Supplies id(), supports() and an HTTP reachability probe against the
    configured base URL. Subclasses only implement chat().
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        availability_timeout: float = 5.0,
    ) -> None:
        self.config = config
        self._availability_timeout = availability_timeout

    def id(self) -> str:
        return self.config.id

    def supports(self, model: str) -> bool:
        return self.config.get_model(model) is not None

    async def is_available(self) -> bool:
        """Probe the base URL. Any response below 500 counts as reachable."""
        try:
            async with httpx.AsyncClient(timeout=self._availability_timeout) as client:
                response = await client.get(self.config.base_url)
        except httpx.HTTPError as exc:
            log.debug(
                "provider.unreachable",
                provider_id=self.id(),
                base_url=self.config.base_url,
                error_type=type(exc).__name__,
            )
            return False

        reachable = response.status_code < 500
        if not reachable:
            log.debug(
                "provider.unhealthy",
                provider_id=self.id(),
                status_code=response.status_code,
            )
        return reachable
