"""
Router configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
Routing profiles themselves come from the host's config loader; these
settings only tune how the engine evaluates them.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class BudgetScope(StrEnum):
    """How a hard-stop budget violation affects the remaining candidates."""

    PER_REQUEST = "per_request"  # Reject the whole request
    PER_CANDIDATE = "per_candidate"  # Skip only the candidate, try cheaper ones


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False

    # ------------------------------------------------------------------ #
    # Logging
    # ------------------------------------------------------------------ #
    log_level: str = Field(
        default="INFO",
        description="Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=False,
        description="Emit JSON logs instead of the human-readable console format",
    )

    # ------------------------------------------------------------------ #
    # Rule scoring
    # ------------------------------------------------------------------ #
    rule_base_score: float = Field(
        default=1.0,
        description="Score every candidate from a matching rule starts with",
    )
    priority_weight: float = Field(
        default=10.0,
        ge=0,
        description="Multiplier applied to a rule's integer priority",
    )

    # ------------------------------------------------------------------ #
    # Dispatch & Budget
    # ------------------------------------------------------------------ #
    max_output_tokens: int = Field(
        default=150,
        ge=1,
        description="Assumed output tokens when estimating cost before a call",
    )
    budget_scope: BudgetScope = Field(
        default=BudgetScope.PER_REQUEST,
        description=(
            "per_request rejects the request once the hard stop would be exceeded; "
            "per_candidate skips that candidate and keeps trying cheaper ones"
        ),
    )
    cost_precision: int = Field(
        default=8,
        ge=6,
        le=12,
        description="Decimal places costs are rounded to before entering the ledger",
    )
    require_available: bool = Field(
        default=True,
        description="Probe provider availability before dispatching to it",
    )
    availability_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for provider liveness probes",
    )
    budget_storage_key: str = Field(
        default="prompt_router.budget",
        description="Key under which the transaction log is persisted",
    )
    transaction_retention_days: int = Field(
        default=90,
        ge=1,
        description="Default age limit used by BudgetLedger.cleanup_old_transactions",
    )

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Hosts that need different settings per router should construct
    Settings() explicitly and pass it to the dispatcher and ledger.
    """
    return Settings()
