"""Streaming decoder for chat-completions SSE bodies.

The body is newline-delimited ``data: <json>`` records terminated by
``data: [DONE]``. Decoding is a fold over the raw chunks: each step takes
a ``StreamState`` and returns the next one plus anything ready to emit.

- Text deltas are emitted immediately.
- Tool-call deltas are accumulated by their per-response ``index`` and
  only emitted, all together, when the stream finishes.
- Malformed records are skipped; they never abort the stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from chatbridge.content.schemas import GenerationResponse, Role, Text, Turn
from chatbridge.errors import DecodeError
from chatbridge.wire.models import WireToolCall
from chatbridge.wire.translator import map_finish_reason, tool_call_fragment

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamState:
    """Decoder state threaded through every step."""

    buffer: str = ""
    calls: Mapping[int, WireToolCall] = field(default_factory=dict)
    model: str | None = None
    finish_reason: str | None = None
    done: bool = False


def feed(state: StreamState, chunk: str) -> tuple[StreamState, list[str]]:
    """Append a raw chunk and split off every complete line.

    A chunk may end in the middle of a record; the tail stays buffered.
    """
    lines = (state.buffer + chunk).split("\n")
    rest = lines.pop()
    return replace(state, buffer=rest), lines


def parse_line(line: str) -> dict[str, Any] | str | None:
    """Return the JSON payload, the DONE sentinel, or None for non-data lines.

    Raises DecodeError for a data line whose JSON is malformed.
    """
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    data = stripped[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return DONE_SENTINEL
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Malformed stream record: {data[:200]}") from e
    if not isinstance(payload, dict):
        raise DecodeError(f"Unexpected stream record: {data[:200]}")
    return payload


def merge_tool_call_delta(
    calls: Mapping[int, WireToolCall], delta: dict[str, Any]
) -> dict[int, WireToolCall]:
    """Merge one tool-call delta into the calls accumulated so far.

    Keyed by ``index``, not id: the id usually only arrives with the first
    delta. The first non-empty name wins; argument text is appended; a
    later id replaces an earlier one. Arguments sent as an object instead
    of a JSON fragment are encoded.

    Raises DecodeError for a delta of the wrong shape.
    """
    if not isinstance(delta, dict):
        raise DecodeError(f"Tool call delta is not an object: {delta!r}")
    index = delta.get("index", 0)
    function = delta.get("function") or {}
    if not isinstance(index, int) or not isinstance(function, dict):
        raise DecodeError(f"Malformed tool call delta: {delta!r}")

    arguments = function.get("arguments") or ""
    if isinstance(arguments, (dict, list)):
        arguments = json.dumps(arguments)
    name = function.get("name")
    call_id = delta.get("id")
    if not isinstance(arguments, str) or not isinstance(name, (str, type(None))):
        raise DecodeError(f"Malformed tool call function: {function!r}")
    if not isinstance(call_id, (str, type(None))):
        raise DecodeError(f"Malformed tool call id: {call_id!r}")

    current = calls.get(index, WireToolCall())
    name = current.name or name or None
    arguments_text = (current.arguments_text or "") + arguments
    call_id = call_id or current.id

    merged = dict(calls)
    merged[index] = WireToolCall(id=call_id, name=name, arguments_text=arguments_text)
    return merged


def apply_chunk(
    state: StreamState, payload: dict[str, Any]
) -> tuple[StreamState, GenerationResponse | None]:
    """Fold one decoded record into the state; returns a text response if any.

    Raises DecodeError for a record of the wrong shape. The state is left
    untouched in that case, so the whole record is skipped.
    """
    model = payload.get("model")
    model = model if isinstance(model, str) and model else state.model
    choices = payload.get("choices") or []
    if not isinstance(choices, list):
        raise DecodeError(f"Malformed choices: {choices!r}")
    if not choices:
        return replace(state, model=model), None

    choice = choices[0]
    if not isinstance(choice, dict):
        raise DecodeError(f"Malformed choice: {choice!r}")
    delta = choice.get("delta") or {}
    if not isinstance(delta, dict):
        raise DecodeError(f"Malformed delta: {delta!r}")
    tool_deltas = delta.get("tool_calls") or []
    content = delta.get("content")
    reason = choice.get("finish_reason")
    if not isinstance(tool_deltas, list):
        raise DecodeError(f"Malformed tool calls: {tool_deltas!r}")
    if not isinstance(content, (str, type(None))) or not isinstance(reason, (str, type(None))):
        raise DecodeError(f"Malformed delta: {delta!r}")
    finish_reason = reason or state.finish_reason

    calls: Mapping[int, WireToolCall] = state.calls
    for tool_delta in tool_deltas:
        calls = merge_tool_call_delta(calls, tool_delta)

    new_state = replace(state, calls=calls, model=model, finish_reason=finish_reason)

    if not content:
        return new_state, None

    response = GenerationResponse(
        turn=Turn(role=Role.MODEL, fragments=[Text(text=content)]),
        finish_reason=map_finish_reason(reason),
        model_version=model,
    )
    return new_state, response


def finalize(state: StreamState) -> GenerationResponse | None:
    """Emit every accumulated call that acquired a name, or None."""
    completed = [
        (index, call)
        for index, call in sorted(state.calls.items())
        if call.name
    ]
    if not completed:
        return None
    fragments = [tool_call_fragment(call, index) for index, call in completed]
    return GenerationResponse(
        turn=Turn(role=Role.MODEL, fragments=fragments),
        finish_reason=map_finish_reason(state.finish_reason),
        model_version=state.model,
    )


def _step_lines(
    state: StreamState, lines: list[str]
) -> tuple[StreamState, list[GenerationResponse]]:
    out: list[GenerationResponse] = []
    for line in lines:
        try:
            payload = parse_line(line)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                return replace(state, done=True), out
            state, response = apply_chunk(state, payload)
        except DecodeError as e:
            logger.debug("Skipping stream record: %s", e)
            continue
        if response is not None:
            out.append(response)
    return state, out


async def decode_stream(
    chunks: AsyncIterable[bytes | str],
) -> AsyncGenerator[GenerationResponse, None]:
    """Decode a raw SSE body into canonical responses.

    The upstream iterator is closed on every exit path, including when the
    consumer stops iterating early.
    """
    state = StreamState()
    # Incremental so a multi-byte character split across reads survives
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        async for raw in chunks:
            chunk = decoder.decode(raw) if isinstance(raw, bytes) else raw

            state, lines = feed(state, chunk)
            state, responses = _step_lines(state, lines)
            for response in responses:
                yield response
            if state.done:
                break

        if not state.done and state.buffer:
            state, responses = _step_lines(replace(state, buffer=""), [state.buffer])
            for response in responses:
                yield response

        final = finalize(state)
        if final is not None:
            yield final
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
