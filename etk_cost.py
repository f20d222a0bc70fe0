# etk_cost.py
from __future__ import annotations

from typing import Callable, NamedTuple

import tiktoken  # type: ignore

from etk_config import RateBudget

CHARS_PER_TOKEN = 4

TokenCounter = Callable[[str], int]


class Cost(NamedTuple):
    tokens: int
    slots: int


def char_tokens(text: str) -> int:
    """Coarse estimate: 4 characters ~ 1 token."""
    return len(text or "") // CHARS_PER_TOKEN


def tiktoken_counter(model: str) -> TokenCounter:
    """Token counter backed by tiktoken; unknown models use o200k_base."""
    try:
        enc = tiktoken.encoding_for_model(model)
    except KeyError:
        enc = tiktoken.get_encoding("o200k_base")

    def count(text: str) -> int:
        return len(enc.encode(text or "", disallowed_special=()))

    return count


def make_counter(kind: str, model: str) -> TokenCounter:
    if kind == "tiktoken":
        return tiktoken_counter(model)
    return char_tokens


class CostEstimator:
    """Maps request text to (tokens, slots) against one RateBudget."""

    def __init__(self, budget: RateBudget, count_tokens: TokenCounter = char_tokens):
        self.budget = budget
        self.count_tokens = count_tokens

    def slots_for(self, tokens: int) -> int:
        # ceil(tokens / slot_tokens) in integers
        b = self.budget
        return max(1, -(-tokens * b.window_requests // b.max_tokens))

    def estimate(self, text: str) -> Cost:
        tokens = self.count_tokens(text)
        return Cost(tokens, self.slots_for(tokens))

    def exceeds_ceiling(self, cost: Cost) -> bool:
        return cost.tokens > self.budget.max_tokens

    def delay_for(self, cost: Cost) -> float:
        """Seconds to wait after launching a request of this cost."""
        return self.budget.slot_seconds * cost.slots
