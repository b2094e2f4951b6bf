"""Token estimation and cost arithmetic.

Token counts here are a length heuristic, good enough to compare candidates
and to gate budgets before a call. They are not a tokenizer: the ledger
records provider-reported usage whenever a provider reports it, and falls
back to these estimates only when it does not.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prompt_router.profile import ModelPrice, ModelSpec

CHARS_PER_TOKEN = 4
TOKENS_PER_WORD = 1.3
DEFAULT_OUTPUT_TOKENS = 150
DEFAULT_PRECISION = 8


@dataclass(frozen=True)
class CostEstimate:
    """Cost breakdown for one model and one prompt."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = "USD"


def estimate_tokens(text: str) -> int:
    """Approximate token count for ``text``.

    Takes the larger of a character-based (4 chars/token) and a word-based
    (1.3 tokens/word) estimate so short, word-dense prompts are not
    undercounted.
    """
    if not text:
        return 0
    char_estimate = math.ceil(len(text) / CHARS_PER_TOKEN)
    word_estimate = math.ceil(len(text.split()) * TOKENS_PER_WORD)
    return max(char_estimate, word_estimate)


def _split_cost(
    price: ModelPrice,
    input_tokens: int,
    output_tokens: int,
    cached_input_tokens: int,
) -> tuple[float, float]:
    cached = min(max(cached_input_tokens, 0), input_tokens)
    if price.cached_input_per_mtok is None:
        cached = 0

    input_cost = (input_tokens - cached) / 1_000_000 * price.input_per_mtok
    if cached:
        input_cost += cached / 1_000_000 * price.cached_input_per_mtok
    output_cost = output_tokens / 1_000_000 * price.output_per_mtok
    return input_cost, output_cost


def cost(
    price: ModelPrice | None,
    input_tokens: int,
    output_tokens: int,
    cached_input_tokens: int = 0,
    precision: int = DEFAULT_PRECISION,
) -> float:
    """USD cost of a call, rounded to ``precision`` decimal places.

    A model without a price is free (local models usually are).

    Raises:
        ValueError: If a token count is negative
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts cannot be negative")
    if price is None:
        return 0.0

    input_cost, output_cost = _split_cost(price, input_tokens, output_tokens, cached_input_tokens)
    return round(input_cost + output_cost, precision)


def estimate_cost(
    prompt: str,
    model: ModelSpec,
    provider_id: str,
    expected_output_tokens: int = DEFAULT_OUTPUT_TOKENS,
    precision: int = DEFAULT_PRECISION,
) -> CostEstimate:
    """Estimate what sending ``prompt`` to ``model`` would cost."""
    input_tokens = estimate_tokens(prompt)
    if model.price is None:
        return CostEstimate(
            provider=provider_id,
            model=model.name,
            input_tokens=input_tokens,
            output_tokens=expected_output_tokens,
            input_cost=0.0,
            output_cost=0.0,
            total_cost=0.0,
        )

    input_cost, output_cost = _split_cost(model.price, input_tokens, expected_output_tokens, 0)
    return CostEstimate(
        provider=provider_id,
        model=model.name,
        input_tokens=input_tokens,
        output_tokens=expected_output_tokens,
        input_cost=round(input_cost, precision),
        output_cost=round(output_cost, precision),
        total_cost=round(input_cost + output_cost, precision),
    )


def compare_costs(
    prompt: str,
    models: list[tuple[str, ModelSpec]],
    expected_output_tokens: int = DEFAULT_OUTPUT_TOKENS,
) -> list[CostEstimate]:
    """Estimate ``prompt`` against several (provider_id, model) pairs, cheapest first.

    The sort is stable, so equally priced models keep their input order.
    """
    estimates = [
        estimate_cost(prompt, model, provider_id, expected_output_tokens)
        for provider_id, model in models
    ]
    return sorted(estimates, key=lambda estimate: estimate.total_cost)


def cheapest(
    prompt: str,
    models: list[tuple[str, ModelSpec]],
    expected_output_tokens: int = DEFAULT_OUTPUT_TOKENS,
) -> CostEstimate | None:
    """Return the lowest estimate, or None when ``models`` is empty."""
    estimates = compare_costs(prompt, models, expected_output_tokens)
    return estimates[0] if estimates else None
