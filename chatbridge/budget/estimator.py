"""Heuristic token estimation with optional calibration from API usage.

Not a tokenizer. The per-string formula is

    ceil(chars / 4) + ceil(words * 0.1) + ceil(special_chars * 0.3)

which is crude but stable across backends. calibrate() nudges a global
scale toward what the backend actually reports in ``usage.prompt_tokens``.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

from chatbridge.wire.models import ToolSpec, WireMessage

_SPECIAL = re.compile(r"[^\w\s]")

MESSAGE_OVERHEAD = 4  # role framing per message
TOOL_CALLS_BASE_OVERHEAD = 3
TOOL_CALL_OVERHEAD = 5
TOOL_SPEC_OVERHEAD = 10


class TokenEstimator:
    """Estimates token counts for text, wire messages and tool specs.

    Starts uncalibrated (scale 1.0). Each calibrate() call is an EMA step
    with alpha=0.1, so roughly ten samples move it two thirds of the way.
    """

    def __init__(self) -> None:
        self._scale: float = 1.0
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def scale(self) -> float:
        return self._scale

    def estimate_text(self, text: str | None) -> int:
        if not text:
            return 0
        chars = len(text)
        words = len(text.split())
        special = len(_SPECIAL.findall(text))
        raw = math.ceil(chars / 4) + math.ceil(words * 0.1) + math.ceil(special * 0.3)
        return math.ceil(raw * self._scale)

    def estimate_message(self, message: WireMessage) -> int:
        tokens = MESSAGE_OVERHEAD + self.estimate_text(message.content)
        if message.tool_calls:
            tokens += TOOL_CALLS_BASE_OVERHEAD
            for call in message.tool_calls:
                tokens += TOOL_CALL_OVERHEAD
                tokens += self.estimate_text(call.name)
                tokens += self.estimate_text(call.arguments_text)
        return tokens

    def estimate_messages(self, messages: list[WireMessage]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def estimate_tool(self, tool: ToolSpec) -> int:
        schema = json.dumps(tool.parameters_schema) if tool.parameters_schema else ""
        return (
            TOOL_SPEC_OVERHEAD
            + self.estimate_text(tool.name)
            + self.estimate_text(tool.description)
            + self.estimate_text(schema)
        )

    def estimate_tools(self, tools: list[ToolSpec] | None) -> int:
        return sum(self.estimate_tool(t) for t in tools or [])

    def calibrate(self, estimated_tokens: int, actual_tokens: int) -> None:
        """Move the scale toward actual/estimated. EMA with alpha=0.1."""
        if estimated_tokens <= 0 or actual_tokens <= 0:
            return
        observed = self._scale * actual_tokens / estimated_tokens
        self._scale = 0.1 * observed + 0.9 * self._scale
        self._samples += 1

    def to_dict(self) -> dict[str, Any]:
        return {"scale": round(self._scale, 4), "samples": self._samples}
