"""Chat-completions wire shapes.

Kept as plain dataclasses: they only exist between translation and the
HTTP body, and the streaming accumulator builds them field by field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class WireToolCall:
    """A function call as the wire sees it.

    Every field is optional because streamed deltas deliver them piecemeal.
    """

    id: str | None = None
    name: str | None = None
    arguments_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name or "",
                "arguments": self.arguments_text or "",
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WireToolCall:
        function = data.get("function") or {}
        return cls(
            id=data.get("id"),
            name=function.get("name"),
            arguments_text=function.get("arguments"),
        )


@dataclass
class WireMessage:
    """A single chat message. ``content`` is None only for tool-call-only messages."""

    role: str  # "system", "user" or "assistant"
    content: str | None
    tool_calls: list[WireToolCall] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return data


@dataclass
class ToolSpec:
    """A flattened function declaration for the ``tools`` request field."""

    name: str
    description: str | None = None
    parameters_schema: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        function: dict[str, Any] = {"name": self.name}
        if self.description:
            function["description"] = self.description
        if self.parameters_schema is not None:
            function["parameters"] = self.parameters_schema
        return {"type": "function", "function": function}
