"""
Shared test fixtures for pytest.

Provides common fakes and test data for all test modules:
- settings: Test environment configuration
- clock: Controllable UTC clock for the budget ledger
- storage, ledger: In-memory persisted budget ledger
- FakeProvider: Scriptable Provider implementation
- profile_data, profile: Sample routing profile (local + cloud providers)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from prompt_router.config import Environment, Settings, get_settings
from prompt_router.profile import RoutingProfile, load_profile
from prompt_router.providers.base import (
    ChatEvent,
    ChatMessage,
    ChatOptions,
    ContentDelta,
    DoneEvent,
    Provider,
    UsageEvent,
)
from prompt_router.providers.registry import ProviderRegistry
from prompt_router.routing.budget import BudgetLedger, InMemoryStorage


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Settings, clock, ledger
# ------------------------------------------------------------------ #


@pytest.fixture
def settings() -> Settings:
    return Settings(environment=Environment.TEST, availability_timeout_seconds=1.0)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    # Wednesday, mid-month, mid-day UTC
    return FixedClock(datetime(2025, 3, 12, 12, 0, tzinfo=UTC))


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def ledger(storage, settings, clock) -> BudgetLedger:
    return BudgetLedger(storage=storage, settings=settings, clock=clock)


class BlockingStorage(InMemoryStorage):
    """InMemoryStorage whose update() parks until ``unblock`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.unblock = asyncio.Event()

    async def update(self, key: str, value: Any) -> None:
        self.entered.set()
        await self.unblock.wait()
        await super().update(key, value)


# ------------------------------------------------------------------ #
# Providers
# ------------------------------------------------------------------ #


def default_events() -> list[Any]:
    return [
        ContentDelta("Hello"),
        ContentDelta(" world"),
        UsageEvent(input_tokens=12, output_tokens=4),
        DoneEvent(),
    ]


class FakeProvider(Provider):
    """Scriptable provider.

    ``events`` is replayed on every chat() call. Exception instances in the
    script are raised at that point; asyncio.Event instances are awaited,
    which lets tests park a stream mid-flight.
    """

    def __init__(
        self,
        provider_id: str,
        models: Iterable[str] = ("m1",),
        *,
        events: Sequence[Any] | None = None,
        available: bool | Exception = True,
    ) -> None:
        self.provider_id = provider_id
        self.models = set(models)
        self.events = list(events) if events is not None else default_events()
        self.available = available
        self.calls: list[tuple[str, list[ChatMessage]]] = []
        self.availability_checks = 0
        self.closed = 0

    def id(self) -> str:
        return self.provider_id

    def supports(self, model: str) -> bool:
        return model in self.models

    async def is_available(self) -> bool:
        self.availability_checks += 1
        if isinstance(self.available, Exception):
            raise self.available
        return self.available

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[ChatEvent]:
        self.calls.append((model, list(messages)))
        try:
            for item in self.events:
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, asyncio.Event):
                    await item.wait()
                    continue
                yield item
        finally:
            self.closed += 1


@pytest.fixture
def make_registry():
    def _make(*providers: Provider) -> ProviderRegistry:
        return ProviderRegistry(providers)

    return _make


# ------------------------------------------------------------------ #
# Profiles
# ------------------------------------------------------------------ #


@pytest.fixture
def profile_data() -> dict[str, Any]:
    """Local Ollama provider plus a priced cloud provider with three rules."""
    return {
        "mode": "auto",
        "providers": [
            {
                "id": "local",
                "kind": "ollama",
                "baseUrl": "http://localhost:11434",
                "models": [
                    {"name": "qwen2.5:7b", "context": 32768, "caps": ["code", "fast"]},
                ],
            },
            {
                "id": "cloud",
                "kind": "openai-compat",
                "baseUrl": "https://api.example.com/v1",
                "models": [
                    {
                        "name": "gpt-small",
                        "context": 128000,
                        "caps": ["fast", "code"],
                        "price": {"inputPerMTok": 0.15, "outputPerMTok": 0.6},
                    },
                    {
                        "name": "gpt-large",
                        "context": 200000,
                        "caps": ["quality", "reasoning", "long-context"],
                        "price": {"inputPerMTok": 2.5, "outputPerMTok": 10.0},
                    },
                ],
            },
        ],
        "routing": {
            "rules": [
                {
                    "id": "code",
                    "if": {"fileLangIn": ["python", "typescript"]},
                    "then": {"prefer": ["cloud:gpt-small", "local:qwen2.5:7b"], "priority": 1},
                },
                {
                    "id": "architecture",
                    "if": {"anyKeyword": ["architecture", "design"]},
                    "then": {"prefer": ["cloud:gpt-large"], "priority": 2},
                },
                {
                    "id": "private",
                    "if": {"privacyStrict": True},
                    "then": {"prefer": ["local:qwen2.5:7b"], "priority": 5},
                },
            ],
            "default": {"prefer": ["cloud:gpt-small", "local:qwen2.5:7b"]},
        },
    }


@pytest.fixture
def profile(profile_data) -> RoutingProfile:
    return load_profile(profile_data)


def simple_profile_data(**overrides: Any) -> dict[str, Any]:
    """Two providers, one model each, with a single keyword rule."""
    data: dict[str, Any] = {
        "providers": [
            {
                "id": "p1",
                "kind": "openai-compat",
                "baseUrl": "https://p1.example.com/v1",
                "models": [
                    {"name": "m1", "price": {"inputPerMTok": 1.0, "outputPerMTok": 2.0}},
                ],
            },
            {
                "id": "p2",
                "kind": "openai-compat",
                "baseUrl": "https://p2.example.com/v1",
                "models": [
                    {"name": "m2", "price": {"inputPerMTok": 1.0, "outputPerMTok": 2.0}},
                ],
            },
        ],
        "routing": {
            "rules": [
                {"id": "test-rule", "if": {"anyKeyword": ["test"]}, "then": {"prefer": ["p1:m1"]}},
            ],
            "default": {"prefer": ["p1:m1", "p2:m2"]},
        },
    }
    data.update(overrides)
    return data
