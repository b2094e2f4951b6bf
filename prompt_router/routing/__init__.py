"""Routing engine - rule ranking, budget ledger and fallback dispatch.

Usage:
    from prompt_router.routing import BudgetLedger, FallbackDispatcher, RoutingRequest

    ledger = BudgetLedger(storage)
    dispatcher = FallbackDispatcher(profile, registry, ledger)
    result = await dispatcher.dispatch(RoutingRequest(prompt="refactor this"))
"""

from prompt_router.routing.budget import (
    BudgetCheck,
    BudgetLedger,
    BudgetUsage,
    InMemoryStorage,
    Reservation,
    Storage,
    Transaction,
)
from prompt_router.routing.dispatcher import (
    Attempt,
    CandidateReport,
    DispatchResult,
    FallbackDispatcher,
    SimulationReport,
)
from prompt_router.routing.rules import Candidate, RoutingRequest, apply_privacy, rank

__all__ = [
    "Attempt",
    "BudgetCheck",
    "BudgetLedger",
    "BudgetUsage",
    "Candidate",
    "CandidateReport",
    "DispatchResult",
    "FallbackDispatcher",
    "InMemoryStorage",
    "Reservation",
    "RoutingRequest",
    "SimulationReport",
    "Storage",
    "Transaction",
    "apply_privacy",
    "rank",
]
