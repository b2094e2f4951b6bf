"""Budget ledger - transaction log, spend aggregation and hard-stop checks.

The ledger is an append-only log of Transactions persisted through a small
async Storage collaborator. Daily, weekly and monthly spend are always
derived from the log and the current UTC time, never stored.

Concurrent requests go through a reserve/commit/release protocol guarded by
a single asyncio.Lock:

    reservation = await ledger.reserve(estimated_cost, budget)
    ...call the provider...
    await ledger.commit(reservation, provider=..., cost=actual, ...)
    # or, if nothing was produced:
    await ledger.release(reservation)

reserve() admits an estimate only if committed spend plus outstanding
reservations plus the estimate stays within the hard limit, so spend can
overshoot a limit by at most one reservation's estimate error.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import math
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import structlog

from prompt_router.config import Settings, get_settings
from prompt_router.errors import BudgetExceededError
from prompt_router.profile import BudgetConfig

log = structlog.get_logger(__name__)

UsageListener = Callable[["BudgetUsage"], Awaitable[None] | None]


class Storage(Protocol):
    """Key/value persistence owned by the host (e.g. editor global state)."""

    async def get(self, key: str) -> Any: ...

    async def update(self, key: str, value: Any) -> None: ...


class InMemoryStorage:
    """Process-local Storage. Values are deep-copied in and out."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(dict(initial or {}))

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def update(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)


# ------------------------------------------------------------------ #
# Records
# ------------------------------------------------------------------ #


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class Transaction:
    """One billed provider call. Immutable once appended."""

    provider: str
    model: str
    cost: float
    input_tokens: int
    output_tokens: int
    target: str
    timestamp: datetime

    def __post_init__(self) -> None:
        if self.cost < 0:
            raise ValueError("cost cannot be negative")
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))

    def to_record(self) -> dict[str, Any]:
        """Persisted camelCase form."""
        return {
            "provider": self.provider,
            "model": self.model,
            "cost": self.cost,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "target": self.target,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Transaction:
        return cls(
            provider=str(record["provider"]),
            model=str(record["model"]),
            cost=float(record["cost"]),
            input_tokens=int(record.get("inputTokens", 0)),
            output_tokens=int(record.get("outputTokens", 0)),
            target=str(record.get("target", "chat")),
            timestamp=datetime.fromisoformat(str(record["timestamp"])),
        )


@dataclass(frozen=True)
class BudgetUsage:
    """Spend in USD for the UTC day, ISO week and calendar month containing ``as_of``."""

    daily_spent: float
    weekly_spent: float
    monthly_spent: float
    transaction_count: int
    as_of: datetime


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class Reservation:
    """Outstanding estimate held between reserve() and commit()/release()."""

    estimated_cost: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


def _coerce_config(config: BudgetConfig | Mapping[str, Any]) -> BudgetConfig:
    if isinstance(config, BudgetConfig):
        return config
    return BudgetConfig.model_validate(config)


def evaluate_budget(
    daily_spent: float,
    monthly_spent: float,
    estimated_cost: float,
    config: BudgetConfig,
) -> BudgetCheck:
    """Hard-stop decision for spending ``estimated_cost`` on top of current spend."""
    if not config.hard_stop:
        return BudgetCheck(allowed=True)

    if config.daily_usd is not None and daily_spent + estimated_cost > config.daily_usd:
        return BudgetCheck(
            allowed=False,
            reason=(
                f"Daily budget exceeded: ${daily_spent:.4f} spent + ${estimated_cost:.4f} "
                f"estimated > ${config.daily_usd:.2f} limit"
            ),
        )
    if config.monthly_usd is not None and monthly_spent + estimated_cost > config.monthly_usd:
        return BudgetCheck(
            allowed=False,
            reason=(
                f"Monthly budget exceeded: ${monthly_spent:.4f} spent + ${estimated_cost:.4f} "
                f"estimated > ${config.monthly_usd:.2f} limit"
            ),
        )
    return BudgetCheck(allowed=True)


# ------------------------------------------------------------------ #
# Ledger
# ------------------------------------------------------------------ #


class BudgetLedger:
    """Append-only spend log with hard-stop checks and usage listeners.

    Construct one per host session and pass it to the dispatcher. Tests
    inject an InMemoryStorage and a fixed clock.
    """

    def __init__(
        self,
        storage: Storage | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._storage = storage if storage is not None else InMemoryStorage()
        self._key = self._settings.budget_storage_key
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()
        self._transactions: list[Transaction] | None = None
        self._pending: dict[str, Reservation] = {}
        self._listeners: list[UsageListener] = []

    # ---- persistence ------------------------------------------------ #

    async def _load(self) -> list[Transaction]:
        """Load the log on first use. Caller holds the lock."""
        if self._transactions is not None:
            return self._transactions

        raw = await self._storage.get(self._key)
        transactions = []
        for record in raw or []:
            try:
                transactions.append(Transaction.from_record(record))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning(
                    "budget_ledger.record_skipped",
                    error=str(exc),
                    record=record,
                )
        self._transactions = transactions
        log.debug("budget_ledger.loaded", transaction_count=len(transactions))
        return transactions

    async def _persist(self, transactions: list[Transaction]) -> None:
        await self._storage.update(self._key, [t.to_record() for t in transactions])

    async def _append(
        self,
        provider: str,
        model: str,
        cost: float,
        input_tokens: int,
        output_tokens: int,
        target: str,
    ) -> Transaction:
        """Append and persist one transaction. Caller holds the lock."""
        transactions = await self._load()
        transaction = Transaction(
            provider=provider,
            model=model,
            cost=cost,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            target=target,
            timestamp=self._clock(),
        )
        transactions.append(transaction)
        try:
            await self._persist(transactions)
        except BaseException:
            # Includes cancellation.
            transactions.pop()
            raise

        log.info(
            "budget_ledger.transaction_recorded",
            provider=provider,
            model=model,
            cost=cost,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            target=target,
        )
        return transaction

    # ---- aggregation ------------------------------------------------ #

    def _usage(self, transactions: list[Transaction]) -> BudgetUsage:
        now = _as_utc(self._clock())
        today = now.date()
        week = now.isocalendar()[:2]

        daily: list[float] = []
        weekly: list[float] = []
        monthly: list[float] = []
        for transaction in transactions:
            stamp = transaction.timestamp
            if stamp.year == now.year and stamp.month == now.month:
                monthly.append(transaction.cost)
            if stamp.isocalendar()[:2] == week:
                weekly.append(transaction.cost)
            if stamp.date() == today:
                daily.append(transaction.cost)

        return BudgetUsage(
            daily_spent=math.fsum(daily),
            weekly_spent=math.fsum(weekly),
            monthly_spent=math.fsum(monthly),
            transaction_count=len(transactions),
            as_of=now,
        )

    async def _notify(self) -> None:
        if not self._listeners:
            return
        usage = await self.get_budget_usage()
        for listener in list(self._listeners):
            try:
                result = listener(usage)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("budget_ledger.listener_failed", listener=repr(listener))

    # ---- public API ------------------------------------------------- #

    def add_listener(self, listener: UsageListener) -> Callable[[], None]:
        """Subscribe to usage changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def record_transaction(
        self,
        provider: str,
        model: str,
        cost: float,
        input_tokens: int,
        output_tokens: int,
        target: str = "chat",
    ) -> Transaction:
        """Append one transaction, persist the log and notify listeners.

        Raises:
            ValueError: If cost or a token count is negative
        """
        async with self._lock:
            transaction = await self._append(
                provider, model, cost, input_tokens, output_tokens, target
            )
        await self._notify()
        return transaction

    async def get_transactions(self) -> list[Transaction]:
        async with self._lock:
            return list(await self._load())

    async def get_budget_usage(self) -> BudgetUsage:
        async with self._lock:
            return self._usage(await self._load())

    async def check_budget(
        self,
        estimated_cost: float,
        config: BudgetConfig | Mapping[str, Any],
    ) -> BudgetCheck:
        """Whether ``estimated_cost`` fits the hard limits in ``config``.

        Only committed transactions count. Use reserve() to also account
        for in-flight requests.
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")
        usage = await self.get_budget_usage()
        return evaluate_budget(
            usage.daily_spent, usage.monthly_spent, estimated_cost, _coerce_config(config)
        )

    async def get_budget_warnings(self, config: BudgetConfig | Mapping[str, Any]) -> list[str]:
        """Warnings for limits whose usage is at or above the warning threshold."""
        config = _coerce_config(config)
        usage = await self.get_budget_usage()
        threshold = config.warning_threshold

        warnings = []
        for label, spent, limit in (
            ("Daily", usage.daily_spent, config.daily_usd),
            ("Monthly", usage.monthly_spent, config.monthly_usd),
        ):
            if not limit:
                continue
            percent = spent / limit * 100
            if percent >= threshold:
                warnings.append(
                    f"{label} budget at {percent:.0f}% (${spent:.2f} of ${limit:.2f})"
                )
        return warnings

    async def reserve(
        self,
        estimated_cost: float,
        config: BudgetConfig | Mapping[str, Any] | None = None,
    ) -> Reservation:
        """Hold ``estimated_cost`` against the budget until commit or release.

        Raises:
            BudgetExceededError: If hard stop is on and committed plus
                reserved spend plus the estimate exceeds a limit
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")

        async with self._lock:
            if config is not None:
                usage = self._usage(await self._load())
                pending = math.fsum(r.estimated_cost for r in self._pending.values())
                check = evaluate_budget(
                    usage.daily_spent + pending,
                    usage.monthly_spent + pending,
                    estimated_cost,
                    _coerce_config(config),
                )
                if not check.allowed:
                    log.warning(
                        "budget_ledger.reservation_denied",
                        estimated_cost=estimated_cost,
                        pending=pending,
                        reason=check.reason,
                    )
                    raise BudgetExceededError(check.reason or "Budget exceeded", estimated_cost)

            reservation = Reservation(estimated_cost=estimated_cost)
            self._pending[reservation.id] = reservation

        log.debug(
            "budget_ledger.reserved",
            reservation_id=reservation.id,
            estimated_cost=estimated_cost,
        )
        return reservation

    async def commit(
        self,
        reservation: Reservation,
        *,
        provider: str,
        model: str,
        cost: float,
        input_tokens: int,
        output_tokens: int,
        target: str = "chat",
    ) -> Transaction:
        """Replace a reservation with the actual transaction."""
        async with self._lock:
            if self._pending.pop(reservation.id, None) is None:
                log.warning("budget_ledger.unknown_reservation", reservation_id=reservation.id)
            transaction = await self._append(
                provider, model, cost, input_tokens, output_tokens, target
            )
        await self._notify()
        return transaction

    async def release(self, reservation: Reservation) -> None:
        async with self._lock:
            self._pending.pop(reservation.id, None)
        log.debug("budget_ledger.released", reservation_id=reservation.id)

    @property
    def pending_reservations(self) -> int:
        return len(self._pending)

    # ---- reporting -------------------------------------------------- #

    async def get_spending_stats(self) -> dict[str, Any]:
        """Totals and per-provider, per-model and per-day breakdowns of the whole log."""
        transactions = await self.get_transactions()
        total = math.fsum(t.cost for t in transactions)
        count = len(transactions)

        by_provider: dict[str, dict[str, Any]] = {}
        by_model: dict[str, dict[str, Any]] = {}
        by_day: dict[str, dict[str, Any]] = {}
        for transaction in transactions:
            for groups, name, key in (
                (by_provider, "provider", transaction.provider),
                (by_model, "model", transaction.model),
                (by_day, "date", transaction.timestamp.date().isoformat()),
            ):
                entry = groups.setdefault(key, {name: key, "cost": 0.0, "count": 0})
                entry["cost"] += transaction.cost
                entry["count"] += 1

        return {
            "total_spent": total,
            "transaction_count": count,
            "average_per_transaction": total / count if count else 0.0,
            "top_providers": sorted(by_provider.values(), key=lambda e: e["cost"], reverse=True),
            "top_models": sorted(by_model.values(), key=lambda e: e["cost"], reverse=True),
            "daily_trend": sorted(by_day.values(), key=lambda e: e["date"]),
        }

    async def cleanup_old_transactions(self, keep_days: int | None = None) -> int:
        """Drop transactions older than ``keep_days``. Returns the number removed."""
        if keep_days is None:
            keep_days = self._settings.transaction_retention_days
        if keep_days < 0:
            raise ValueError("keep_days cannot be negative")

        cutoff = _as_utc(self._clock()) - timedelta(days=keep_days)
        async with self._lock:
            transactions = await self._load()
            kept = [t for t in transactions if t.timestamp >= cutoff]
            removed = len(transactions) - len(kept)
            if removed:
                await self._persist(kept)
                self._transactions = kept

        log.info("budget_ledger.cleanup", removed=removed, keep_days=keep_days)
        if removed:
            await self._notify()
        return removed

    async def export_transactions(self) -> dict[str, Any]:
        """Export the log oldest-first with a summary, in the persisted record format."""
        transactions = sorted(await self.get_transactions(), key=lambda t: t.timestamp)
        return {
            "transactions": [t.to_record() for t in transactions],
            "summary": {
                "totalCost": math.fsum(t.cost for t in transactions),
                "totalTransactions": len(transactions),
                "dateRange": {
                    "from": transactions[0].timestamp.isoformat() if transactions else "",
                    "to": transactions[-1].timestamp.isoformat() if transactions else "",
                },
            },
        }
