"""History compression via summarization.

When the curated history crosses ``threshold`` of the model's context
limit, everything before a content-weighted cut point is replaced by a
model-written summary plus a fixed acknowledgment, and the tail after
the cut is kept untouched. The cut always lands on the start of a user
turn so no exchange is split.

Summarization failures are raised as CompressionError. History is only
replaced after a summary was obtained.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

from chatbridge.budget.optimizer import token_limit
from chatbridge.content.schemas import (
    CompressionResult,
    GenerationResponse,
    Role,
    Text,
    Turn,
    is_tool_result_turn,
)
from chatbridge.conversation.history import ConversationHistory
from chatbridge.errors import CompressionError, ValidationError

logger = logging.getLogger(__name__)

COMPRESSION_TOKEN_THRESHOLD = 0.7
COMPRESSION_PRESERVE_THRESHOLD = 0.3

SUMMARY_ACKNOWLEDGMENT = "Got it. Thanks for the additional context!"

COMPRESSION_SYSTEM_PROMPT = """\
You are the component that compresses a long conversation into a compact
state snapshot. The conversation so far will be replaced by your output,
so anything you leave out is lost to the assistant for good.

Output ONLY the snapshot, in this exact structure:

## Goal
[The user's overall objective in 1-2 sentences]

## Key Knowledge
- [Facts, constraints, preferences and conventions established so far]

## Progress
### Done
- [x] [Completed steps]
### In Progress
- [ ] [Current step]

## Tool Activity
- [Tools called, with the arguments and outcomes that still matter]

## Critical Context
- [Exact file paths, identifiers, error messages, URLs and numbers]

## Next Steps
1. [Ordered list of what should happen next]

Be dense and precise. Prefer exact values over paraphrase.
"""


class TokenCounter(Protocol):
    async def count_tokens(self, model: str, contents: list[Turn]) -> int | None: ...


class SummaryGenerator(Protocol):
    async def generate_summary(
        self, model: str, contents: list[Turn], system_instruction: str
    ) -> GenerationResponse: ...


def find_index_after_fraction(history: list[Turn], fraction: float) -> int:
    """First index where the cumulative serialized length reaches ``fraction`` of the total.

    Returns a value in ``[0, len(history)]``.
    """
    if fraction <= 0 or fraction >= 1:
        raise ValidationError("Fraction must be between 0 and 1")

    lengths = [len(turn.model_dump_json()) for turn in history]
    target = sum(lengths) * fraction

    so_far = 0
    for i, length in enumerate(lengths):
        so_far += length
        if so_far >= target:
            return i
    return len(lengths)


def advance_to_user_turn(history: list[Turn], index: int) -> int:
    """Skip model turns and tool results so ``index`` starts a user exchange."""
    while index < len(history) and (
        history[index].role == Role.MODEL or is_tool_result_turn(history[index])
    ):
        index += 1
    return index


class ConversationCompressor:
    """Decides when to compress a history and performs the replacement."""

    def __init__(
        self,
        history: ConversationHistory,
        counter: TokenCounter,
        generator: SummaryGenerator,
    ) -> None:
        self._history = history
        self._counter = counter
        self._generator = generator

    async def try_compress(
        self,
        model: str,
        force: bool = False,
        threshold: float = COMPRESSION_TOKEN_THRESHOLD,
        preserve_fraction: float = COMPRESSION_PRESERVE_THRESHOLD,
    ) -> CompressionResult | None:
        """Compress if needed (or forced). Returns None when nothing was done."""
        curated = self._history.get_history(curated=True)
        if not curated:
            return None

        original_tokens = await self._counter.count_tokens(model, curated)
        if original_tokens is None:
            logger.warning("Could not determine token count for model %s.", model)
            return None

        limit = token_limit(model)
        if not force and original_tokens < threshold * limit:
            return None

        start_time = time.monotonic()
        cut = find_index_after_fraction(curated, 1 - preserve_fraction)
        cut = advance_to_user_turn(curated, cut)

        to_compress = curated[:cut]
        to_keep = curated[cut:]
        if not to_compress:
            logger.info("Nothing before the preserved tail; skipping compression")
            return None

        summary = await self._summarize(model, to_compress)

        self._history.set_history(
            [
                Turn(role=Role.USER, fragments=[Text(text=summary)]),
                Turn(role=Role.MODEL, fragments=[Text(text=SUMMARY_ACKNOWLEDGMENT)]),
                *to_keep,
            ]
        )

        new_tokens = await self._counter.count_tokens(model, self._history.get_history())
        if new_tokens is None:
            logger.warning("Could not determine compressed history token count.")
            return None

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compressed history: %d turns -> 2 + %d kept, %d -> %d tokens (%d ms)",
            len(curated), len(to_keep), original_tokens, new_tokens, duration_ms,
        )
        return CompressionResult(
            original_token_count=original_tokens,
            new_token_count=new_tokens,
        )

    async def _summarize(self, model: str, turns: list[Turn]) -> str:
        try:
            response = await self._generator.generate_summary(
                model, turns, COMPRESSION_SYSTEM_PROMPT
            )
        except Exception as e:
            raise CompressionError(f"Failed to generate compression summary: {e}") from e

        text = response.turn.text.strip()
        if not text:
            raise CompressionError("Failed to generate compression summary: empty response")
        return text
