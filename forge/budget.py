"""
Token budget for context packages.

Token counts are estimated locally (no tokenizer or API call) and split into
fixed category shares. Must-read files get a per-file allocation by tier;
history and patterns are cut to their share, most relevant items first.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, TypeVar

from .discovery import Priority
from .extractors import Convention
from .learning import HistoricalContext

DEFAULT_TOTAL_TOKENS = 60_000

# Tokens below which low-tier files are left out entirely
LOW_TIER_MIN_REMAINING = 500
LOW_TIER_FILE_CAP = 1_000
HIGH_TIER_SHARE = 0.8
MEDIUM_TIER_SHARE = 0.8

_ALNUM_RE = re.compile(r"[A-Za-z0-9]")
_SPACE_RE = re.compile(r"\s")

T = TypeVar("T")


class BudgetCategory(str, Enum):
    SYSTEM_PROMPT = "system_prompt"
    TASK_DESCRIPTION = "task_description"
    MUST_READ = "must_read"
    RELATED_EXAMPLES = "related_examples"
    PATTERNS = "patterns"
    HISTORY = "history"
    OUTPUT_BUFFER = "output_buffer"


CATEGORY_SHARES: dict[BudgetCategory, float] = {
    BudgetCategory.SYSTEM_PROMPT: 0.033,
    BudgetCategory.TASK_DESCRIPTION: 0.05,
    BudgetCategory.MUST_READ: 0.667,
    BudgetCategory.RELATED_EXAMPLES: 0.133,
    BudgetCategory.PATTERNS: 0.033,
    BudgetCategory.HISTORY: 0.033,
    BudgetCategory.OUTPUT_BUFFER: 0.05,
}


def estimate_tokens(text: str) -> int:
    """Conservative token estimate for prose.

    Letters and digits count four to a token, whitespace six, and any other
    symbol two.
    """
    if not text:
        return 0
    alnum = len(_ALNUM_RE.findall(text))
    space = len(_SPACE_RE.findall(text))
    symbols = len(text) - alnum - space
    return math.ceil(alnum / 4) + math.ceil(space / 6) + math.ceil(symbols / 2)


def _item_tokens(item: Any) -> int:
    return estimate_tokens(json.dumps(asdict(item), default=str))


@dataclass
class ContextBudget:
    """Per-category token allocation for one package."""

    total_tokens: int = DEFAULT_TOTAL_TOKENS
    allocation: dict[BudgetCategory, int] = field(init=False)
    used: dict[BudgetCategory, int] = field(init=False)

    def __post_init__(self) -> None:
        if self.total_tokens <= 0:
            raise ValueError("total_tokens must be positive")
        self.allocation = {c: int(self.total_tokens * share) for c, share in CATEGORY_SHARES.items()}
        self.used = {c: 0 for c in BudgetCategory}

    def remaining(self, category: BudgetCategory) -> int:
        return self.allocation[category] - self.used[category]

    def use(self, category: BudgetCategory, tokens: int) -> bool:
        """Spend ``tokens``; on overflow the category is exhausted and False is returned."""
        if tokens <= self.remaining(category):
            self.used[category] += tokens
            return True
        self.used[category] = self.allocation[category]
        return False

    def allocate_files(self, files: Sequence[tuple[str, Priority, int]]) -> dict[str, int]:
        """Tokens granted to each ``(path, tier, estimated_tokens)`` file.

        High-tier files split 80% of the must-read share evenly. Medium-tier
        files split 80% of what is left. Low-tier files get at most 1000 tokens
        each, and only when more than 500 tokens remain.
        """
        budget = self.remaining(BudgetCategory.MUST_READ)
        high = [f for f in files if f[1] == Priority.HIGH]
        medium = [f for f in files if f[1] == Priority.MEDIUM]
        low = [f for f in files if f[1] == Priority.LOW]
        granted: dict[str, int] = {}
        left = budget

        high_budget = int(budget * HIGH_TIER_SHARE)
        per_high = high_budget // max(len(high), 1)
        high_used = 0
        for path, _, tokens in high:
            amount = max(0, min(tokens, per_high, high_budget - high_used))
            granted[path] = amount
            high_used += amount
            left -= amount

        if medium and left > 0:
            per_medium = int(left * MEDIUM_TIER_SHARE) // len(medium)
            for path, _, tokens in medium:
                amount = min(tokens, per_medium)
                granted[path] = amount
                left -= amount
        else:
            granted.update((path, 0) for path, _, _ in medium)

        if low and left > LOW_TIER_MIN_REMAINING:
            per_low = left // len(low)
            for path, _, tokens in low:
                amount = min(tokens, per_low, LOW_TIER_FILE_CAP)
                granted[path] = amount
                left -= amount
        else:
            granted.update((path, 0) for path, _, _ in low)

        self.use(BudgetCategory.MUST_READ, budget - left)
        return granted

    def fit(self, category: BudgetCategory, items: Sequence[T]) -> tuple[T, ...]:
        """Longest prefix of ``items`` that fits the category's remaining share."""
        kept: list[T] = []
        for item in items:
            tokens = _item_tokens(item)
            if tokens > self.remaining(category):
                break
            self.use(category, tokens)
            kept.append(item)
        return tuple(kept)

    def fit_history(self, history: HistoricalContext) -> HistoricalContext:
        return replace(
            history,
            previous_attempts=self.fit(BudgetCategory.HISTORY, history.previous_attempts),
            related_decisions=self.fit(BudgetCategory.HISTORY, history.related_decisions),
            pattern_history=self.fit(BudgetCategory.HISTORY, history.pattern_history),
            co_modification_patterns=self.fit(BudgetCategory.HISTORY, history.co_modification_patterns),
        )

    def fit_patterns(self, patterns: Sequence[Convention]) -> tuple[Convention, ...]:
        return self.fit(BudgetCategory.PATTERNS, patterns)
