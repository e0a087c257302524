"""Chat-completions wire protocol: message shapes, translation, streaming."""

from chatbridge.wire.models import ToolSpec, WireMessage, WireToolCall
from chatbridge.wire.streaming import StreamState, decode_stream
from chatbridge.wire.translator import (
    UNKNOWN_FUNCTION,
    from_wire,
    response_from_wire,
    to_wire,
    to_wire_tools,
)

__all__ = [
    "StreamState",
    "ToolSpec",
    "UNKNOWN_FUNCTION",
    "WireMessage",
    "WireToolCall",
    "decode_stream",
    "from_wire",
    "response_from_wire",
    "to_wire",
    "to_wire_tools",
]
