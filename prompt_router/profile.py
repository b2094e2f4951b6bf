"""Routing profile data model and load-time validation.

A RoutingProfile is the immutable snapshot the engine routes against: the
provider catalog with model prices, the ordered routing rules, the mandatory
default action, and optional budget and privacy policy. The host's config
loader parses YAML/JSON into a mapping and hands it to load_profile(), which
either returns a frozen profile or raises ConfigError. Nothing here is
re-validated during routing.

Field names follow the external config format (camelCase, ``if``/``then``)
through pydantic aliases; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Literal

import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from prompt_router.errors import ConfigError

log = structlog.get_logger(__name__)

LOCAL_PROVIDER_KINDS = frozenset({"ollama"})


class RoutingMode(StrEnum):
    """Routing bias applied on top of rule scores."""

    AUTO = "auto"
    SPEED = "speed"
    QUALITY = "quality"
    CHEAP = "cheap"
    LOCAL_ONLY = "local-only"
    OFFLINE = "offline"
    PRIVACY_STRICT = "privacy-strict"


# Modes that force every request onto local providers
PRIVATE_MODES = frozenset({RoutingMode.LOCAL_ONLY, RoutingMode.PRIVACY_STRICT})


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


def split_candidate_token(token: str) -> tuple[str, str]:
    """Split a ``providerId:modelName`` token on its first colon.

    Model names may themselves contain colons (``ollama:qwen2.5:7b``).
    """
    provider_id, _, model_name = token.partition(":")
    return provider_id, model_name


# ------------------------------------------------------------------ #
# Providers & models
# ------------------------------------------------------------------ #


class ModelPrice(_Frozen):
    """USD price per million tokens."""

    input_per_mtok: float = Field(
        ge=0,
        validation_alias=AliasChoices("inputPerMTok", "inputPerMillionTokens", "input_per_mtok"),
        serialization_alias="inputPerMTok",
    )
    output_per_mtok: float = Field(
        ge=0,
        validation_alias=AliasChoices("outputPerMTok", "outputPerMillionTokens", "output_per_mtok"),
        serialization_alias="outputPerMTok",
    )
    cached_input_per_mtok: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("cachedInputPerMTok", "cached_input_per_mtok"),
        serialization_alias="cachedInputPerMTok",
    )

    @property
    def blended_per_mtok(self) -> float:
        """Average of input and output price, used for cheap-mode ranking."""
        return (self.input_per_mtok + self.output_per_mtok) / 2.0


class ModelSpec(_Frozen):
    """A model advertised by a provider."""

    name: str = Field(min_length=1)
    context: int | None = Field(default=None, gt=0, description="Context window in tokens")
    caps: tuple[str, ...] = ()
    price: ModelPrice | None = None

    def has_cap(self, capability: str) -> bool:
        return capability in self.caps


class ProviderConfig(_Frozen):
    """A configured backend and the models it serves."""

    id: str = Field(min_length=1)
    kind: Literal["openai-compat", "ollama", "custom"]
    base_url: str = Field(min_length=1, alias="baseUrl")
    local_only: bool | None = Field(default=None, alias="localOnly")
    models: tuple[ModelSpec, ...] = Field(min_length=1)

    @property
    def is_local(self) -> bool:
        """True when requests to this provider never leave the machine."""
        if self.local_only is not None:
            return self.local_only
        return self.kind in LOCAL_PROVIDER_KINDS

    def get_model(self, name: str) -> ModelSpec | None:
        for model in self.models:
            if model.name == name:
                return model
        return None


# ------------------------------------------------------------------ #
# Rules
# ------------------------------------------------------------------ #


class RulePredicate(_Frozen):
    """The ``if`` bundle of a rule. Absent fields always match."""

    any_keyword: tuple[str, ...] | None = Field(default=None, alias="anyKeyword")
    all_keywords: tuple[str, ...] | None = Field(default=None, alias="allKeywords")
    file_lang_in: tuple[str, ...] | None = Field(default=None, alias="fileLangIn")
    file_path_matches: tuple[str, ...] | None = Field(default=None, alias="filePathMatches")
    min_context_kb: float | None = Field(default=None, ge=0, alias="minContextKB")
    max_context_kb: float | None = Field(default=None, ge=0, alias="maxContextKB")
    privacy_strict: bool | None = Field(default=None, alias="privacyStrict")
    mode: tuple[RoutingMode, ...] | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> RulePredicate:
        if (
            self.min_context_kb is not None
            and self.max_context_kb is not None
            and self.min_context_kb > self.max_context_kb
        ):
            raise ValueError("minContextKB cannot be greater than maxContextKB")
        return self


class RuleAction(_Frozen):
    """The ``then`` action of a rule, also the shape of the profile default."""

    prefer: tuple[str, ...] = Field(min_length=1)
    target: Literal["chat", "completion"] = "chat"
    priority: int = 0

    @field_validator("prefer")
    @classmethod
    def _check_tokens(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for token in value:
            provider_id, model_name = split_candidate_token(token)
            if not provider_id or not model_name:
                raise ValueError(
                    f"prefer items must be in format 'providerId:modelName', got {token!r}"
                )
        return value


class RoutingRule(_Frozen):
    id: str = Field(min_length=1)
    when: RulePredicate = Field(default_factory=RulePredicate, alias="if")
    then: RuleAction


class RoutingSection(_Frozen):
    rules: tuple[RoutingRule, ...] = ()
    default: RuleAction


# ------------------------------------------------------------------ #
# Budget & privacy policy
# ------------------------------------------------------------------ #


class BudgetConfig(_Frozen):
    """Spending limits in USD."""

    daily_usd: float | None = Field(default=None, ge=0, alias="dailyUSD")
    monthly_usd: float | None = Field(default=None, ge=0, alias="monthlyUSD")
    hard_stop: bool = Field(default=False, alias="hardStop")
    warning_threshold: float = Field(default=80.0, ge=0, le=100, alias="warningThreshold")


class PrivacyConfig(_Frozen):
    redact_paths: tuple[str, ...] = Field(default=(), alias="redactPaths")
    strip_file_content_over_kb: float | None = Field(
        default=None, gt=0, alias="stripFileContentOverKB"
    )
    allow_external: bool = Field(default=True, alias="allowExternal")


# ------------------------------------------------------------------ #
# Profile
# ------------------------------------------------------------------ #


class RoutingProfile(_Frozen):
    """Immutable routing snapshot. Swap it, never mutate it."""

    mode: RoutingMode = RoutingMode.AUTO
    budget: BudgetConfig | None = None
    privacy: PrivacyConfig | None = None
    providers: tuple[ProviderConfig, ...] = Field(min_length=1)
    routing: RoutingSection

    @model_validator(mode="after")
    def _check_references(self) -> RoutingProfile:
        seen: set[str] = set()
        for provider in self.providers:
            if provider.id in seen:
                raise ValueError(f"duplicate provider id {provider.id!r}")
            seen.add(provider.id)

        rule_ids: set[str] = set()
        for rule in self.routing.rules:
            if rule.id in rule_ids:
                raise ValueError(f"duplicate rule id {rule.id!r}")
            rule_ids.add(rule.id)

        if not any(self.resolve(token) for token in self.routing.default.prefer):
            raise ValueError(
                "routing.default.prefer must reference at least one configured provider model"
            )
        return self

    @property
    def rules(self) -> tuple[RoutingRule, ...]:
        return self.routing.rules

    @property
    def default(self) -> RuleAction:
        return self.routing.default

    def get_provider(self, provider_id: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def resolve(self, token: str) -> tuple[ProviderConfig, ModelSpec] | None:
        """Resolve a ``providerId:modelName`` token against the catalog."""
        provider_id, model_name = split_candidate_token(token)
        provider = self.get_provider(provider_id)
        if provider is None:
            return None
        model = provider.get_model(model_name)
        if model is None:
            return None
        return provider, model

    def available_models(self) -> list[tuple[ProviderConfig, ModelSpec]]:
        """Every catalog model, in provider then model declaration order."""
        return [(provider, model) for provider in self.providers for model in provider.models]

    def models_by_cap(self, capability: str) -> list[tuple[ProviderConfig, ModelSpec]]:
        return [
            (provider, model)
            for provider, model in self.available_models()
            if model.has_cap(capability)
        ]


def load_profile(data: Mapping[str, Any]) -> RoutingProfile:
    """Validate an already-parsed profile mapping.

    Args:
        data: Profile mapping as produced by the host's YAML/JSON loader

    Returns:
        Frozen RoutingProfile

    Raises:
        ConfigError: If the mapping is not a valid profile
    """
    if not isinstance(data, Mapping):
        raise ConfigError("Profile must be a mapping")

    try:
        profile = RoutingProfile.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        path = ".".join(str(part) for part in first["loc"]) or None
        log.error(
            "profile.invalid",
            error_count=exc.error_count(),
            path=path,
            reason=first["msg"],
        )
        raise ConfigError(f"Invalid routing profile: {first['msg']}", path=path) from exc

    log.info(
        "profile.loaded",
        mode=profile.mode.value,
        providers=[provider.id for provider in profile.providers],
        rule_count=len(profile.rules),
    )
    return profile
