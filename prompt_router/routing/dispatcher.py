"""Fallback dispatcher - drives one request across ranked candidates.

For each candidate, in rank order, the dispatcher applies three gates and
then streams the provider's reply to the caller:

1. Privacy: privacy-strict requests only go to local providers.
2. Availability: provider registered, model supported, probe succeeds.
3. Budget: the estimated cost is reserved in the ledger.

A failure before any content moves on to the next candidate. A failure
after content has reached the caller is not retried; the partial usage is
recorded and StreamInterruptedError is raised. Every successful dispatch
records exactly one Transaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Coroutine, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, TypeVar

import structlog

from prompt_router.config import BudgetScope, Settings, get_settings
from prompt_router.errors import (
    AllCandidatesExhaustedError,
    BudgetExceededError,
    NoMatchingCandidateError,
    PrivacyViolationError,
    ProviderError,
    StreamInterruptedError,
)
from prompt_router.pricing import cost, estimate_tokens
from prompt_router.providers.base import (
    ChatMessage,
    ChatOptions,
    ContentDelta,
    DoneEvent,
    ErrorEvent,
    UsageEvent,
)
from prompt_router.routing.budget import BudgetLedger, Reservation, Transaction
from prompt_router.routing.rules import Candidate, RoutingRequest, apply_privacy, rank

if TYPE_CHECKING:
    from prompt_router.profile import BudgetConfig, ModelSpec, RoutingProfile
    from prompt_router.providers.base import Provider
    from prompt_router.providers.registry import ProviderRegistry

log = structlog.get_logger(__name__)
_T = TypeVar("_T")

AttemptOutcome = Literal["rejected", "failed", "succeeded", "interrupted", "cancelled"]


@dataclass(frozen=True)
class Attempt:
    """What happened to one candidate during a dispatch."""

    candidate: Candidate
    outcome: AttemptOutcome
    reason: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    """Final event of a dispatch stream."""

    content: str
    candidate: Candidate
    transaction: Transaction
    usage: UsageEvent | None = None
    finish_reason: str = "stop"
    usage_estimated: bool = False
    attempts: tuple[Attempt, ...] = ()
    warnings: tuple[str, ...] = ()
    type: Literal["result"] = "result"

    @property
    def provider_id(self) -> str:
        return self.candidate.provider_id

    @property
    def model(self) -> str:
        return self.candidate.model_name

    @property
    def cost(self) -> float:
        return self.transaction.cost


DispatchEvent = ContentDelta | DispatchResult


@dataclass(frozen=True)
class CandidateReport:
    candidate: Candidate
    estimated_cost: float
    is_local: bool
    available: bool | None = None
    rejection: str | None = None


@dataclass(frozen=True)
class SimulationReport:
    """Dry-run outcome: who would be called, and why the others would not."""

    request: RoutingRequest
    candidates: tuple[CandidateReport, ...]
    selected: Candidate | None = None
    error: str | None = None


@dataclass
class _Settlement:
    input_tokens: int
    output_tokens: int
    cost: float
    estimated: bool


@dataclass
class _StreamState:
    parts: list[str] = field(default_factory=list)
    usage: UsageEvent | None = None

    @property
    def content(self) -> str:
        return "".join(self.parts)


class FallbackDispatcher:
    """Routes requests over ranked candidates with budget and privacy gates.

    The dispatcher holds one profile reference. Each call captures it once,
    so reload_profile() never affects a request already in flight.
    """

    def __init__(
        self,
        profile: RoutingProfile,
        registry: ProviderRegistry,
        ledger: BudgetLedger,
        settings: Settings | None = None,
        budget_scope: BudgetScope | None = None,
    ) -> None:
        self._profile = profile
        self._registry = registry
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._budget_scope = budget_scope or self._settings.budget_scope
        self._ledger_writes: set[asyncio.Task] = set()

    @property
    def profile(self) -> RoutingProfile:
        return self._profile

    @property
    def budget_scope(self) -> BudgetScope:
        return self._budget_scope

    def reload_profile(self, profile: RoutingProfile) -> None:
        self._profile = profile
        log.info(
            "dispatcher.profile_reloaded",
            providers=[provider.id for provider in profile.providers],
            rule_count=len(profile.rules),
        )

    # ---- helpers ---------------------------------------------------- #

    async def _is_available(self, provider: Provider) -> bool:
        try:
            return bool(
                await asyncio.wait_for(
                    provider.is_available(),
                    timeout=self._settings.availability_timeout_seconds,
                )
            )
        except Exception as exc:
            log.warning(
                "dispatcher.availability_probe_failed",
                provider_id=provider.id(),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def _availability_rejection(
        self, candidate: Candidate, model: ModelSpec
    ) -> tuple[str | None, bool | None]:
        """Reason the candidate fails the availability gate, plus the probe result."""
        provider = self._registry.get(candidate.provider_id)
        if provider is None:
            return "provider not registered", None
        if not provider.supports(model.name):
            return "model not supported by provider", None
        if not self._settings.require_available:
            return None, None
        available = await self._is_available(provider)
        if not available:
            return "provider unavailable", False
        return None, True

    def _estimate(self, model: ModelSpec, input_tokens: int) -> float:
        return cost(
            model.price,
            input_tokens,
            self._settings.max_output_tokens,
            precision=self._settings.cost_precision,
        )

    @staticmethod
    def _check_privacy(
        profile: RoutingProfile, request: RoutingRequest, candidates: list[Candidate]
    ) -> None:
        if not request.privacy_strict:
            return
        if any(_is_local(profile, candidate) for candidate in candidates):
            return
        log.warning(
            "dispatcher.privacy_violation",
            candidates=[candidate.key for candidate in candidates],
        )
        raise PrivacyViolationError(
            "Privacy-strict request has no local provider among its candidates"
        )

    def _prepare(
        self, request: RoutingRequest
    ) -> tuple[RoutingProfile, RoutingRequest, list[Candidate]]:
        profile = self._profile
        request = apply_privacy(profile, request)
        candidates = rank(profile, request, self._settings)
        log.info(
            "dispatcher.ranked",
            candidates=[candidate.key for candidate in candidates],
            privacy_strict=request.privacy_strict,
        )
        if not candidates:
            raise NoMatchingCandidateError("Routing produced no candidates")
        return profile, request, candidates

    # ---- dispatch --------------------------------------------------- #

    async def stream(
        self,
        request: RoutingRequest,
        messages: Sequence[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[DispatchEvent]:
        """Dispatch a request, yielding ContentDelta events then one DispatchResult.

        Close the stream with ``aclose()`` (or ``contextlib.aclosing``) to
        cancel early; delivered tokens are still recorded.

        Args:
            request: Routing request. Privacy preprocessing is applied here.
            messages: Conversation to send. Defaults to the (preprocessed)
                prompt as a single user message.
            options: Generation options passed to the provider

        Raises:
            PrivacyViolationError: Privacy-strict request without a local candidate
            NoMatchingCandidateError: No candidate has a registered provider
            BudgetExceededError: Hard stop hit with per-request budget scope
            StreamInterruptedError: Provider failed after content was delivered
            AllCandidatesExhaustedError: Every candidate was rejected or failed
        """
        profile, request, candidates = self._prepare(request)
        self._check_privacy(profile, request, candidates)
        if not any(candidate.provider_id in self._registry for candidate in candidates):
            log.warning(
                "dispatcher.no_registered_provider",
                candidates=[candidate.key for candidate in candidates],
            )
            raise NoMatchingCandidateError("No ranked candidate has a registered provider")

        if messages is None:
            messages = [ChatMessage(role="user", content=request.prompt)]
        messages = list(messages)
        budget = request.budget or profile.budget

        attempts: list[Attempt] = []
        rejections: list[tuple[Candidate, str]] = []

        def reject(candidate: Candidate, reason: str, outcome: AttemptOutcome = "rejected") -> None:
            attempts.append(Attempt(candidate, outcome, reason))
            rejections.append((candidate, reason))
            log.info(
                "dispatcher.candidate_rejected",
                candidate=candidate.key,
                rule_id=candidate.rule_id,
                outcome=outcome,
                reason=reason,
            )

        for candidate in candidates:
            provider_config, model = profile.resolve(candidate.key)

            if request.privacy_strict and not provider_config.is_local:
                reject(candidate, "privacy: provider is not local")
                continue

            reason, _ = await self._availability_rejection(candidate, model)
            if reason is not None:
                reject(candidate, reason)
                continue
            provider = self._registry.get(candidate.provider_id)

            input_tokens = sum(provider.estimate_tokens(m.content) for m in messages)
            estimated_cost = self._estimate(model, input_tokens)
            try:
                reservation = await self._ledger.reserve(estimated_cost, budget)
            except BudgetExceededError as exc:
                if self._budget_scope is BudgetScope.PER_REQUEST:
                    log.warning(
                        "dispatcher.budget_exceeded",
                        candidate=candidate.key,
                        estimated_cost=estimated_cost,
                        reason=exc.message,
                    )
                    raise
                reject(candidate, f"budget: {exc.message}")
                continue

            log.info(
                "dispatcher.attempt_started",
                candidate=candidate.key,
                rule_id=candidate.rule_id,
                score=candidate.score,
                estimated_cost=estimated_cost,
            )

            state = _StreamState()
            error: ProviderError | None = None
            finish_reason = "stop"
            try:
                async with aclosing(provider.chat(model.name, messages, options)) as chat:
                    async for event in chat:
                        if isinstance(event, ContentDelta):
                            if event.text:
                                state.parts.append(event.text)
                                yield event
                        elif isinstance(event, UsageEvent):
                            state.usage = event
                        elif isinstance(event, ErrorEvent):
                            error = ProviderError(
                                event.message or "Provider reported an error",
                                candidate.provider_id,
                                model.name,
                                status_code=event.status_code,
                            )
                            break
                        elif isinstance(event, DoneEvent):
                            finish_reason = event.finish_reason
                            break
                    else:
                        error = ProviderError(
                            "Stream ended without a terminal event",
                            candidate.provider_id,
                            model.name,
                        )
            except ProviderError as exc:
                error = exc
            except (asyncio.CancelledError, GeneratorExit):
                attempts.append(Attempt(candidate, "cancelled", "cancelled by caller"))
                log.info(
                    "dispatcher.cancelled",
                    candidate=candidate.key,
                    delivered_chars=len(state.content),
                )
                if state.parts:
                    await self._settle(reservation, candidate, model, input_tokens, state)
                else:
                    await self._ledger_write(self._ledger.release(reservation))
                raise
            except Exception as exc:
                error = ProviderError(
                    str(exc) or type(exc).__name__,
                    candidate.provider_id,
                    model.name,
                )

            if error is None:
                transaction, settlement = await self._settle(
                    reservation, candidate, model, input_tokens, state
                )
                attempts.append(Attempt(candidate, "succeeded"))
                warnings = tuple(await self._ledger.get_budget_warnings(budget)) if budget else ()
                for warning in warnings:
                    log.warning("dispatcher.budget_warning", warning=warning)
                log.info(
                    "dispatcher.succeeded",
                    candidate=candidate.key,
                    rule_id=candidate.rule_id,
                    cost=transaction.cost,
                    input_tokens=settlement.input_tokens,
                    output_tokens=settlement.output_tokens,
                    attempts=len(attempts),
                )
                yield DispatchResult(
                    content=state.content,
                    candidate=candidate,
                    transaction=transaction,
                    usage=state.usage,
                    finish_reason=finish_reason,
                    usage_estimated=settlement.estimated,
                    attempts=tuple(attempts),
                    warnings=warnings,
                )
                return

            if state.parts:
                await self._settle(reservation, candidate, model, input_tokens, state)
                attempts.append(Attempt(candidate, "interrupted", error.message))
                log.error(
                    "dispatcher.stream_interrupted",
                    candidate=candidate.key,
                    error=error.message,
                    status_code=error.status_code,
                    delivered_chars=len(state.content),
                )
                raise StreamInterruptedError(
                    f"{candidate.key} failed after partial output: {error.message}",
                    candidate,
                    state.content,
                ) from error

            await self._ledger_write(self._ledger.release(reservation))
            log.warning(
                "dispatcher.attempt_failed",
                candidate=candidate.key,
                error_kind=error.kind,
                error=error.message,
                status_code=error.status_code,
            )
            reject(candidate, f"{error.kind}: {error.message}", outcome="failed")

        log.error(
            "dispatcher.exhausted",
            rejections=[(candidate.key, reason) for candidate, reason in rejections],
        )
        raise AllCandidatesExhaustedError(rejections)

    async def _ledger_write(self, write: Coroutine[Any, Any, _T]) -> _T:
        """Run a ledger commit or release so caller cancellation cannot interrupt it.

        The write keeps running as its own task when the awaiting stream is
        cancelled. A reservation is always either committed or released.
        """
        task = asyncio.ensure_future(write)
        self._ledger_writes.add(task)
        task.add_done_callback(self._ledger_write_done)
        return await asyncio.shield(task)

    def _ledger_write_done(self, task: asyncio.Task) -> None:
        self._ledger_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("dispatcher.ledger_write_failed", error=str(task.exception()))

    async def _settle(
        self,
        reservation: Reservation,
        candidate: Candidate,
        model: ModelSpec,
        input_tokens: int,
        state: _StreamState,
    ) -> tuple[Transaction, _Settlement]:
        """Commit actual (or, lacking provider usage, estimated) cost for an attempt."""
        usage = state.usage
        if usage is not None:
            settlement = _Settlement(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=cost(
                    model.price,
                    usage.input_tokens,
                    usage.output_tokens,
                    usage.cached_input_tokens,
                    precision=self._settings.cost_precision,
                ),
                estimated=False,
            )
        else:
            output_tokens = estimate_tokens(state.content)
            settlement = _Settlement(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost(
                    model.price,
                    input_tokens,
                    output_tokens,
                    precision=self._settings.cost_precision,
                ),
                estimated=True,
            )
            log.info(
                "dispatcher.usage_estimated",
                candidate=candidate.key,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        transaction = await self._ledger_write(
            self._ledger.commit(
                reservation,
                provider=candidate.provider_id,
                model=candidate.model_name,
                cost=settlement.cost,
                input_tokens=settlement.input_tokens,
                output_tokens=settlement.output_tokens,
                target=candidate.target,
            )
        )
        return transaction, settlement

    async def dispatch(
        self,
        request: RoutingRequest,
        messages: Sequence[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> DispatchResult:
        """Run stream() to completion and return its DispatchResult."""
        async with aclosing(self.stream(request, messages, options)) as events:
            async for event in events:
                if isinstance(event, DispatchResult):
                    return event
        raise RuntimeError("Dispatch stream ended without a result")

    # ---- dry run ---------------------------------------------------- #

    async def simulate(self, request: RoutingRequest) -> SimulationReport:
        """Report what dispatch() would do without calling chat or recording spend."""
        profile, request, candidates = self._prepare(request)
        budget: BudgetConfig | None = request.budget or profile.budget

        error: str | None = None
        try:
            self._check_privacy(profile, request, candidates)
        except PrivacyViolationError as exc:
            error = f"{exc.kind}: {exc.message}"

        reports: list[CandidateReport] = []
        selected: Candidate | None = None
        for candidate in candidates:
            provider_config, model = profile.resolve(candidate.key)
            provider = self._registry.get(candidate.provider_id)
            text_tokens = (
                provider.estimate_tokens(request.prompt)
                if provider is not None
                else estimate_tokens(request.prompt)
            )
            estimated_cost = self._estimate(model, text_tokens)

            available: bool | None = None
            if request.privacy_strict and not provider_config.is_local:
                rejection: str | None = "privacy: provider is not local"
            else:
                rejection, available = await self._availability_rejection(candidate, model)

            if rejection is None and budget is not None:
                check = await self._ledger.check_budget(estimated_cost, budget)
                if not check.allowed:
                    rejection = f"budget: {check.reason}"
                    if (
                        self._budget_scope is BudgetScope.PER_REQUEST
                        and selected is None
                        and error is None
                    ):
                        error = f"{BudgetExceededError.kind}: {check.reason}"

            if rejection is None and selected is None and error is None:
                selected = candidate

            reports.append(
                CandidateReport(
                    candidate=candidate,
                    estimated_cost=estimated_cost,
                    is_local=provider_config.is_local,
                    available=available,
                    rejection=rejection,
                )
            )

        if selected is None and error is None:
            error = f"{AllCandidatesExhaustedError.kind}: no candidate passes every gate"

        log.info(
            "dispatcher.simulated",
            selected=selected.key if selected else None,
            error=error,
            candidates=len(reports),
        )
        return SimulationReport(
            request=request,
            candidates=tuple(reports),
            selected=selected,
            error=error,
        )


def _is_local(profile: RoutingProfile, candidate: Candidate) -> bool:
    provider = profile.get_provider(candidate.provider_id)
    return provider is not None and provider.is_local
