"""LiteLLM-backed provider.

One adapter covers every configured provider kind: LiteLLM speaks the
OpenAI-compatible and Ollama wire protocols, so the profile's ``kind`` only
selects the LiteLLM model prefix. SDK exceptions are normalized to the
ProviderError family so the dispatcher can fall back on them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

import litellm
import structlog

from prompt_router.errors import AuthenticationError, ProviderError, RateLimitError
from prompt_router.providers.base import (
    BaseProvider,
    ChatEvent,
    ChatMessage,
    ChatOptions,
    ContentDelta,
    DoneEvent,
    UsageEvent,
)

if TYPE_CHECKING:
    from prompt_router.profile import ProviderConfig

log = structlog.get_logger(__name__)

# LiteLLM model prefix per provider kind
_MODEL_PREFIXES = {
    "openai-compat": "openai/",
    "ollama": "ollama/",
    "custom": "",
}


class LiteLLMProvider(BaseProvider):
    """Streams chat completions through ``litellm.acompletion``."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        api_key: str | None = None,
        availability_timeout: float = 5.0,
    ) -> None:
        super().__init__(config, availability_timeout=availability_timeout)
        self._api_key = api_key

    def litellm_model(self, model: str) -> str:
        return f"{_MODEL_PREFIXES[self.config.kind]}{model}"

    def _request_kwargs(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.litellm_model(model),
            "messages": [message.to_dict() for message in messages],
            "stream": True,
            "stream_options": {"include_usage": True},
            "api_base": self.config.base_url,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.json:
            kwargs["response_format"] = {"type": "json_object"}
        kwargs.update(options.extra)
        return kwargs

    def _normalize(self, exc: Exception, model: str) -> ProviderError:
        if isinstance(exc, litellm.exceptions.RateLimitError):
            return RateLimitError(self.id(), model)
        if isinstance(exc, litellm.exceptions.AuthenticationError):
            return AuthenticationError(self.id(), model)
        return ProviderError(
            f"LiteLLM call failed: {exc}",
            self.id(),
            model,
            status_code=getattr(exc, "status_code", None),
        )

    @staticmethod
    def _usage_event(usage: Any) -> UsageEvent:
        details = getattr(usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", None) or 0
        return UsageEvent(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            cached_input_tokens=cached,
        )

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Stream a completion.

        Raises:
            RateLimitError: Upstream rate limit
            AuthenticationError: Credentials rejected
            ProviderError: Any other LiteLLM failure
        """
        kwargs = self._request_kwargs(model, messages, options or ChatOptions())
        finish_reason = "stop"
        usage: UsageEvent | None = None

        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = self._usage_event(chunk_usage)

                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                text = getattr(choice.delta, "content", None)
                if text:
                    yield ContentDelta(text=text)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except Exception as exc:
            log.warning(
                "litellm_provider.call_failed",
                provider_id=self.id(),
                model=model,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise self._normalize(exc, model) from exc

        if usage is not None:
            yield usage
        yield DoneEvent(finish_reason=finish_reason)
