"""Error taxonomy for routing and budget enforcement.

ProviderError is the only recoverable kind: the dispatcher catches it,
logs it against the candidate, and moves on. Every other error propagates
straight to the caller because the request cannot succeed under the
current configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prompt_router.routing.rules import Candidate


class RouterError(Exception):
    """Base exception for all routing failures."""

    kind = "router_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "message": self.message}


class ConfigError(RouterError):
    """Malformed profile, provider or rule. Raised at load time only."""

    kind = "config_error"

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class NoMatchingCandidateError(RouterError):
    """Ranking produced nothing that can be dispatched."""

    kind = "no_matching_candidate"


class PrivacyViolationError(RouterError):
    """Privacy-strict request with no local-only candidate."""

    kind = "privacy_violation"


class BudgetExceededError(RouterError):
    """Hard-stop budget reached before any network call was made."""

    kind = "budget_exceeded"

    def __init__(self, message: str, estimated_cost: float = 0.0) -> None:
        super().__init__(message)
        self.estimated_cost = estimated_cost


class ProviderError(RouterError):
    """Per-candidate transport, auth or rate-limit failure."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str,
        model: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Upstream rate limit exceeded."""

    kind = "rate_limited"

    def __init__(self, provider: str, model: str | None = None) -> None:
        super().__init__(
            f"Rate limit exceeded for {provider}:{model}",
            provider,
            model,
            status_code=429,
        )


class AuthenticationError(ProviderError):
    """Provider rejected the configured credentials."""

    kind = "authentication_failed"

    def __init__(self, provider: str, model: str | None = None) -> None:
        super().__init__(
            f"Authentication failed for {provider}",
            provider,
            model,
            status_code=401,
        )


class StreamInterruptedError(RouterError):
    """Provider failed after partial content was already delivered.

    Not retried, because a second candidate would duplicate output the
    caller has already seen.
    """

    kind = "stream_interrupted"

    def __init__(
        self,
        message: str,
        candidate: Candidate,
        partial_content: str,
    ) -> None:
        super().__init__(message)
        self.candidate = candidate
        self.partial_content = partial_content


class AllCandidatesExhaustedError(RouterError):
    """Every ranked candidate was rejected or failed."""

    kind = "all_candidates_exhausted"

    def __init__(self, rejections: list[tuple[Candidate, str]]) -> None:
        summary = "; ".join(f"{c.key}: {reason}" for c, reason in rejections)
        super().__init__(f"All candidates exhausted ({summary})")
        self.rejections = rejections

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["rejections"] = [
            {"candidate": candidate.key, "reason": reason}
            for candidate, reason in self.rejections
        ]
        return data
