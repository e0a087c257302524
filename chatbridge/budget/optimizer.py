"""Fit outgoing messages into a model's token budget.

Selection is priority-based but the result is always returned in
chronological order. System messages are taken first. Everything else
is ranked (recent > carries tool calls > user > assistant, minus a
size penalty) and included greedily; a message that would overflow is
cut at a word boundary to the remaining headroom, or dropped when not
even one word fits.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace

from chatbridge.budget.estimator import TokenEstimator
from chatbridge.errors import BudgetExhausted
from chatbridge.wire.models import ToolSpec, WireMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenBudget:
    max_context_tokens: int
    max_output_tokens: int
    reserve_tokens: int


MODEL_BUDGETS: dict[str, TokenBudget] = {
    "gpt-4": TokenBudget(8192, 4096, 500),
    "gpt-4-32k": TokenBudget(32768, 4096, 1000),
    "gpt-4-turbo": TokenBudget(128000, 4096, 1000),
    "gpt-4o": TokenBudget(128000, 16384, 1000),
    "gpt-4o-mini": TokenBudget(128000, 16384, 1000),
    "gpt-3.5-turbo": TokenBudget(16385, 4096, 500),
    "claude-3-opus": TokenBudget(200000, 4096, 1000),
    "claude-3-sonnet": TokenBudget(200000, 4096, 1000),
    "claude-3-haiku": TokenBudget(200000, 4096, 1000),
    "llama3": TokenBudget(8192, 2048, 256),
    "llama3.1": TokenBudget(131072, 4096, 1000),
    "mistral": TokenBudget(32768, 4096, 500),
    "qwen2.5": TokenBudget(32768, 8192, 500),
    "deepseek-r1": TokenBudget(65536, 8192, 1000),
}

DEFAULT_BUDGET = TokenBudget(128000, 4096, 1000)


def lookup_budget(model: str | None) -> TokenBudget:
    """Exact name, then the longest known name contained in it, then the default."""
    if not model:
        return DEFAULT_BUDGET
    if model in MODEL_BUDGETS:
        return MODEL_BUDGETS[model]
    for name in sorted(MODEL_BUDGETS, key=len, reverse=True):
        if name in model:
            return MODEL_BUDGETS[name]
    return DEFAULT_BUDGET


def token_limit(model: str | None) -> int:
    return lookup_budget(model).max_context_tokens


@dataclass(frozen=True)
class OptimizerConfig:
    """Ranking and truncation knobs. All heuristic."""

    recent_window: int = 5
    system_priority: float = 100.0
    recent_base_priority: float = 60.0
    recent_step: float = 5.0
    tool_call_priority: float = 40.0
    user_priority: float = 30.0
    assistant_priority: float = 20.0
    size_penalty_per_token: float = 0.01
    truncation_ratio: float = 0.9
    truncation_marker: str = "\n[... truncated]"


@dataclass
class OptimizationResult:
    messages: list[WireMessage]
    estimated_tokens: int
    available_tokens: int
    dropped: int = 0
    truncated: int = 0
    tool_tokens: int = 0


class BudgetOptimizer:
    """Selects the subset of messages that fits a request's token budget."""

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        config: OptimizerConfig | None = None,
    ) -> None:
        self.estimator = estimator or TokenEstimator()
        self.config = config or OptimizerConfig()

    def available_tokens(
        self,
        max_output_tokens: int,
        tools: list[ToolSpec] | None = None,
        model: str | None = None,
    ) -> int:
        budget = lookup_budget(model)
        limit = min(max_output_tokens, budget.max_context_tokens)
        return limit - budget.reserve_tokens - self.estimator.estimate_tools(tools)

    def priority(self, index: int, message: WireMessage, total: int, cost: int) -> float:
        cfg = self.config
        first_recent = total - cfg.recent_window
        if message.role == "system":
            score = cfg.system_priority
        elif index >= first_recent:
            score = cfg.recent_base_priority + cfg.recent_step * (index - first_recent)
        elif message.tool_calls:
            score = cfg.tool_call_priority
        elif message.role == "user":
            score = cfg.user_priority
        else:
            score = cfg.assistant_priority
        return score - cfg.size_penalty_per_token * cost

    def truncate(self, message: WireMessage, headroom: int) -> WireMessage | None:
        """Cut ``message`` at a word boundary so it fits ``headroom`` tokens."""
        if not message.content or headroom <= 0:
            return None
        words = message.content.split()
        if not words:
            return None

        marker = self.config.truncation_marker
        target = math.floor(headroom * self.config.truncation_ratio)
        fixed = self.estimator.estimate_message(replace(message, content=marker))

        # Largest word prefix that still fits; estimate is monotonic in length
        lo, hi = 0, len(words)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if fixed + self.estimator.estimate_text(" ".join(words[:mid])) <= target:
                lo = mid
            else:
                hi = mid - 1
        if lo == 0:
            return None

        truncated = replace(message, content=" ".join(words[:lo]) + marker)
        if self.estimator.estimate_message(truncated) > headroom:
            return None
        return truncated

    def select(
        self,
        messages: list[WireMessage],
        max_output_tokens: int,
        tools: list[ToolSpec] | None = None,
        model: str | None = None,
    ) -> OptimizationResult:
        """Pick and trim messages to fit; raises BudgetExhausted if nothing can."""
        tool_tokens = self.estimator.estimate_tools(tools)
        available = self.available_tokens(max_output_tokens, tools, model)
        if available <= 0:
            raise BudgetExhausted(
                f"No room for messages: max_tokens={max_output_tokens}, "
                f"tool_tokens={tool_tokens}, model={model}"
            )

        total = len(messages)
        costs = [self.estimator.estimate_message(m) for m in messages]
        selected: dict[int, WireMessage] = {}
        used = 0
        dropped = 0
        truncated = 0

        for i, message in enumerate(messages):
            if message.role != "system":
                continue
            if used + costs[i] <= available:
                selected[i] = message
                used += costs[i]
            else:
                dropped += 1

        ranked = sorted(
            (i for i, m in enumerate(messages) if m.role != "system"),
            key=lambda i: (self.priority(i, messages[i], total, costs[i]), i),
            reverse=True,
        )
        for i in ranked:
            if used + costs[i] <= available:
                selected[i] = messages[i]
                used += costs[i]
                continue
            cut = self.truncate(messages[i], available - used)
            if cut is None:
                dropped += 1
                continue
            selected[i] = cut
            used += self.estimator.estimate_message(cut)
            truncated += 1

        if dropped or truncated:
            logger.info(
                "Token budget: kept %d/%d messages (%d truncated, %d dropped), "
                "%d/%d tokens",
                len(selected), total, truncated, dropped, used, available,
            )

        return OptimizationResult(
            messages=[selected[i] for i in sorted(selected)],
            estimated_tokens=used,
            available_tokens=available,
            dropped=dropped,
            truncated=truncated,
            tool_tokens=tool_tokens,
        )
