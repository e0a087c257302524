"""Token optimization command.

Reports conversation statistics, clears history, or compresses it on
demand. Works against any generator that keeps its own history; the
output is plain text meant for a terminal or a chat reply.
"""

from __future__ import annotations

import logging
import shlex
from collections import Counter
from dataclasses import dataclass

from chatbridge.api.generator import ConversationCapable
from chatbridge.budget.optimizer import token_limit
from chatbridge.conversation.compression import (
    COMPRESSION_PRESERVE_THRESHOLD,
    COMPRESSION_TOKEN_THRESHOLD,
)
from chatbridge.conversation.history import ConversationHistory
from chatbridge.errors import CompressionError, ValidationError

logger = logging.getLogger(__name__)

WARNING_RATIO = 0.7
CRITICAL_RATIO = 0.9

HELP_TEXT = """\
Token Optimization Commands:
  stats          Show conversation statistics
  force          Force compression
  clear          Clear conversation history
  threshold=N    Set compression threshold (0-1)
  preserve=N     Set preservation threshold (0-1)
  verbose        Show detailed information

Example usage:
  stats
  force verbose
  threshold=0.6 preserve=0.4"""

_FLAGS = ("stats", "force", "clear", "verbose")
_FRACTIONS = ("threshold", "preserve")


@dataclass
class OptimizeTokensOptions:
    stats: bool = False
    force: bool = False
    clear: bool = False
    verbose: bool = False
    threshold: float | None = None
    preserve: float | None = None

    @property
    def compress(self) -> bool:
        return self.force or self.threshold is not None or self.preserve is not None

    @property
    def is_empty(self) -> bool:
        return not (self.stats or self.clear or self.verbose or self.compress)


def _parse_fraction(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}") from None
    if not 0 < value < 1:
        raise ValidationError(f"{name} must be between 0 and 1, got {value}")
    return value


def parse_command(text: str) -> OptimizeTokensOptions:
    """Parse ``"stats force threshold=0.6"`` (``--flag`` and ``--name value`` also accepted)."""
    options = OptimizeTokensOptions()
    tokens = shlex.split(text or "")
    i = 0
    while i < len(tokens):
        token = tokens[i].lstrip("-").lower()
        i += 1
        name, sep, raw = token.partition("=")
        if name in _FLAGS and not sep:
            setattr(options, name, True)
        elif name in _FRACTIONS:
            if not sep:
                if i >= len(tokens):
                    raise ValidationError(f"{name} requires a value")
                raw = tokens[i]
                i += 1
            setattr(options, name, _parse_fraction(name, raw))
        else:
            raise ValidationError(f"Unknown option: {tokens[i - 1]!r}")
    return options


async def _stats(
    generator: ConversationCapable,
    history: ConversationHistory,
    model: str,
    verbose: bool,
) -> list[str]:
    raw = history.get_history()
    curated = history.get_history(curated=True)
    lines = [
        "Conversation Statistics:",
        f"   Total messages: {len(raw)}",
        f"   Curated messages: {len(curated)}",
    ]

    if raw:
        try:
            current = await generator.count_tokens(model, raw) or 0
            limit = token_limit(model)
            lines += [
                f"   Current tokens: {current:,}",
                f"   Token limit: {limit:,}",
                f"   Usage: {current / limit * 100:.1f}%",
            ]
            if current > limit * CRITICAL_RATIO:
                lines.append("   Status: Critical - Compression highly recommended")
            elif current > limit * WARNING_RATIO:
                lines.append("   Status: Warning - Consider compression")
            else:
                lines.append("   Status: Good - Within normal limits")

            if verbose and len(curated) != len(raw):
                curated_tokens = await generator.count_tokens(model, curated) or 0
                lines += [
                    "",
                    "Curation Impact:",
                    f"   Curated tokens: {curated_tokens:,}",
                    f"   Tokens saved by curation: {current - curated_tokens:,}",
                ]
        except Exception as e:
            logger.warning("Token count failed for stats: %s", e)
            lines.append("   Token count: Unable to calculate")
            if verbose:
                lines.append(f"   Error: {e}")

        if verbose:
            lines += ["", "Message Breakdown:"]
            for role, count in Counter(t.role for t in raw if t.role).items():
                lines.append(f"   {role}: {count} messages")

    return lines


async def optimize_tokens(
    generator: object,
    model: str,
    options: OptimizeTokensOptions,
    history: ConversationHistory | None = None,
) -> str:
    """Run the command and return its report."""
    if not isinstance(generator, ConversationCapable):
        return "Conversation management not available for this generator type."

    history = history if history is not None else generator.history

    if options.clear:
        history.clear_history()
        return "Conversation history cleared."

    if options.is_empty:
        return HELP_TEXT

    lines: list[str] = []
    if options.stats or options.verbose:
        lines += await _stats(generator, history, model, options.verbose)

    if options.compress:
        if lines:
            lines.append("")
        lines.append("Attempting conversation compression...")
        try:
            result = await generator.compressor_for(history).try_compress(
                model,
                force=options.force,
                threshold=options.threshold or COMPRESSION_TOKEN_THRESHOLD,
                preserve_fraction=options.preserve or COMPRESSION_PRESERVE_THRESHOLD,
            )
        except CompressionError as e:
            logger.warning("Requested compression failed: %s", e)
            result = None

        if result:
            saved = result.original_token_count - result.new_token_count
            percent = saved / result.original_token_count * 100 if result.original_token_count else 0.0
            lines += [
                "Compression successful!",
                f"   Original tokens: {result.original_token_count:,}",
                f"   New tokens: {result.new_token_count:,}",
                f"   Saved: {saved:,} tokens ({percent:.1f}%)",
            ]
            if options.verbose:
                lines.append("")
                lines += await _stats(generator, history, model, True)
        elif options.force:
            lines.append("No compression needed or compression failed.")
        else:
            lines += [
                "Conversation is within acceptable token limits.",
                "   Use force to compress anyway.",
            ]

    return "\n".join(lines)
