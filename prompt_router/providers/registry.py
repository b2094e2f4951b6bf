"""Provider registry - lookup of Provider implementations by id.

New backends are added by registering a Provider instance whose id()
matches a ProviderConfig.id in the routing profile. The registry is an
explicit object the host constructs and hands to the dispatcher.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import structlog

from prompt_router.providers.base import Provider

log = structlog.get_logger(__name__)


class ProviderRegistry:
    """Registry of Provider implementations keyed by provider id."""

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        """Register a provider.

        Raises:
            ValueError: If a provider with the same id is already registered
        """
        provider_id = provider.id()
        if provider_id in self._providers:
            raise ValueError(
                f"Provider '{provider_id}' is already registered. "
                "Unregister it first or use a different id."
            )
        self._providers[provider_id] = provider
        log.info(
            "provider_registry.registered",
            provider_id=provider_id,
            provider_type=type(provider).__name__,
        )

    def unregister(self, provider_id: str) -> None:
        if self._providers.pop(provider_id, None) is not None:
            log.info("provider_registry.unregistered", provider_id=provider_id)

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def ids(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[Provider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)
