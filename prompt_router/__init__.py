"""prompt-router - rule-based model routing with budget enforcement and fallback.

The engine ranks provider/model candidates for a prompt, gates them on
privacy, availability and budget, and streams the reply from the first
candidate that succeeds.
"""

from prompt_router.errors import (
    AllCandidatesExhaustedError,
    BudgetExceededError,
    ConfigError,
    NoMatchingCandidateError,
    PrivacyViolationError,
    ProviderError,
    RouterError,
    StreamInterruptedError,
)
from prompt_router.profile import RoutingMode, RoutingProfile, load_profile
from prompt_router.routing import (
    BudgetLedger,
    Candidate,
    DispatchResult,
    FallbackDispatcher,
    RoutingRequest,
    rank,
)

__version__ = "0.1.0"

__all__ = [
    "AllCandidatesExhaustedError",
    "BudgetExceededError",
    "BudgetLedger",
    "Candidate",
    "ConfigError",
    "DispatchResult",
    "FallbackDispatcher",
    "NoMatchingCandidateError",
    "PrivacyViolationError",
    "ProviderError",
    "RouterError",
    "RoutingMode",
    "RoutingProfile",
    "RoutingRequest",
    "StreamInterruptedError",
    "load_profile",
    "rank",
]
