"""Translation between canonical turns and chat-completions messages."""

from __future__ import annotations

import json
import logging
from typing import Any

from chatbridge.content.schemas import (
    FinishReason,
    GenerationResponse,
    Role,
    Text,
    ToolCall,
    ToolGroup,
    ToolResult,
    Turn,
    UsageMetadata,
)
from chatbridge.wire.models import ToolSpec, WireMessage, WireToolCall

logger = logging.getLogger(__name__)

UNKNOWN_FUNCTION = "unknown_function"

# Reasoning models (deepseek-r1, qwq, ...) prefix answers with <think>...</think>
REASONING_CLOSE_MARKER = "</think>"


def _render_tool_result(fragment: ToolResult) -> str:
    try:
        value = json.dumps(fragment.value, ensure_ascii=False)
    except (TypeError, ValueError):
        value = str(fragment.value)
    return f"Tool result ({fragment.id}): {value}"


def to_wire(
    turns: list[Turn], system_instruction: str | None = None
) -> list[WireMessage]:
    """Convert canonical turns into wire messages, system instruction first."""
    messages: list[WireMessage] = []
    if system_instruction and system_instruction.strip():
        messages.append(WireMessage(role="system", content=system_instruction.strip()))

    for turn in turns:
        role = "user" if turn.role == Role.USER else "assistant"
        lines: list[str] = []
        tool_calls: list[WireToolCall] = []
        for position, fragment in enumerate(turn.fragments):
            if isinstance(fragment, Text):
                lines.append(fragment.text)
            elif isinstance(fragment, ToolResult):
                lines.append(_render_tool_result(fragment))
            elif isinstance(fragment, ToolCall):
                tool_calls.append(
                    WireToolCall(
                        id=fragment.id or f"call_{position}",
                        name=fragment.name,
                        arguments_text=json.dumps(fragment.arguments),
                    )
                )

        text = "\n".join(lines)
        if text.strip():
            messages.append(WireMessage(role=role, content=text, tool_calls=tool_calls))
        elif tool_calls:
            messages.append(WireMessage(role=role, content=None, tool_calls=tool_calls))

    return messages


def parse_arguments(arguments_text: str | None) -> dict[str, Any]:
    """Best-effort JSON parse of tool-call arguments. Never raises."""
    if not arguments_text:
        return {}
    try:
        parsed = json.loads(arguments_text)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Unparseable tool arguments: %.200s", arguments_text)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def strip_reasoning(text: str) -> str:
    """Drop a private reasoning segment that ends with the closing marker."""
    if REASONING_CLOSE_MARKER not in text:
        return text
    return text.rsplit(REASONING_CLOSE_MARKER, 1)[1].lstrip()


def tool_call_fragment(call: WireToolCall, position: int) -> ToolCall:
    return ToolCall(
        name=call.name or UNKNOWN_FUNCTION,
        arguments=parse_arguments(call.arguments_text),
        id=call.id or f"call_{position}",
    )


def from_wire(choice: dict[str, Any]) -> Turn:
    """Convert one complete (non-streamed) response choice into a model turn."""
    message = choice.get("message") or {}
    fragments: list[Any] = []

    content = message.get("content")
    if isinstance(content, str):
        text = strip_reasoning(content)
        if text:
            fragments.append(Text(text=text))

    for position, raw_call in enumerate(message.get("tool_calls") or []):
        fragments.append(tool_call_fragment(WireToolCall.from_dict(raw_call), position))

    return Turn(role=Role.MODEL, fragments=fragments)


def map_finish_reason(reason: str | None) -> FinishReason | None:
    if reason is None:
        return None
    if reason == "stop":
        return FinishReason.STOP
    if reason == "length":
        return FinishReason.MAX_TOKENS
    return FinishReason.OTHER


def response_from_wire(body: dict[str, Any]) -> GenerationResponse:
    """Convert a full chat-completions response body."""
    choices = body.get("choices") or []
    if not choices:
        raise ValueError("No choices in chat completion response")
    choice = choices[0]

    usage = None
    raw_usage = body.get("usage")
    if raw_usage:
        usage = UsageMetadata(
            prompt_token_count=raw_usage.get("prompt_tokens", 0),
            candidates_token_count=raw_usage.get("completion_tokens", 0),
            total_token_count=raw_usage.get("total_tokens", 0),
        )

    return GenerationResponse(
        turn=from_wire(choice),
        finish_reason=map_finish_reason(choice.get("finish_reason")),
        usage=usage,
        model_version=body.get("model"),
    )


def to_wire_tools(tool_groups: list[ToolGroup] | None) -> list[ToolSpec]:
    """Flatten function groups into one list of wire tool specs."""
    specs: list[ToolSpec] = []
    for group in tool_groups or []:
        for declaration in group.function_declarations:
            specs.append(
                ToolSpec(
                    name=declaration.name,
                    description=declaration.description,
                    parameters_schema=declaration.parameters,
                )
            )
    return specs
