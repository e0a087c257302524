"""Canonical chat content: role-tagged turns made of ordered fragments.

These models are the data contract shared by the translator, the budget
optimizer, the streaming decoder and the conversation store. Role values
are deliberately plain strings here; the conversation store rejects
anything other than ``user``/``model`` at ingestion.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class Role(StrEnum):
    USER = "user"
    MODEL = "model"


class FinishReason(StrEnum):
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    OTHER = "OTHER"


class Text(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCall(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None


class ToolResult(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    id: str
    value: Any = None


class Thought(BaseModel):
    """Hidden reasoning marker. Never sent to the backend."""

    type: Literal["thought"] = "thought"
    thought: bool = True
    text: str = ""


Fragment = Annotated[
    Union[Text, ToolCall, ToolResult, Thought], Field(discriminator="type")
]


class Turn(BaseModel):
    """One conversation entry."""

    role: str
    fragments: list[Fragment] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(role=Role.USER, fragments=[Text(text=text)])

    @classmethod
    def model(cls, text: str) -> Turn:
        return cls(role=Role.MODEL, fragments=[Text(text=text)])

    @property
    def text(self) -> str:
        """Newline-joined text of all Text fragments."""
        return "\n".join(f.text for f in self.fragments if isinstance(f, Text))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [f for f in self.fragments if isinstance(f, ToolCall)]


class FunctionDeclaration(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class ToolGroup(BaseModel):
    """A group of callable functions offered to the model."""

    function_declarations: list[FunctionDeclaration] = Field(default_factory=list)


class UsageMetadata(BaseModel):
    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0


class GenerationResponse(BaseModel):
    """Canonical form of one complete response or one streamed piece of it."""

    turn: Turn
    finish_reason: FinishReason | None = None
    usage: UsageMetadata | None = None
    model_version: str | None = None

    @property
    def text(self) -> str:
        return self.turn.text


class CompressionResult(BaseModel):
    original_token_count: int
    new_token_count: int


# Everything a caller may pass where contents are expected
ContentInput = Union[str, Text, ToolCall, ToolResult, Thought, Turn, list[Any]]

_FRAGMENT_TYPES = (Text, ToolCall, ToolResult, Thought)


def _as_fragment(item: Any) -> Any:
    if isinstance(item, str):
        return Text(text=item)
    if isinstance(item, _FRAGMENT_TYPES):
        return item
    raise TypeError(f"Unsupported content item: {type(item).__name__}")


def normalize_contents(contents: ContentInput) -> list[Turn]:
    """Turn any supported content shape into a list of turns.

    Strings and loose fragments become a single user turn.
    """
    if isinstance(contents, Turn):
        return [contents]
    if isinstance(contents, str) or isinstance(contents, _FRAGMENT_TYPES):
        return [Turn(role=Role.USER, fragments=[_as_fragment(contents)])]
    if isinstance(contents, list):
        if not contents:
            return []
        if all(isinstance(item, Turn) for item in contents):
            return list(contents)
        if any(isinstance(item, Turn) for item in contents):
            raise TypeError("Cannot mix turns and fragments in one content list")
        return [Turn(role=Role.USER, fragments=[_as_fragment(i) for i in contents])]
    raise TypeError(f"Unsupported contents type: {type(contents).__name__}")


def extract_text(contents: ContentInput | None) -> str | None:
    """Newline-joined text of any content shape, or None when there is none."""
    if contents is None:
        return None
    if isinstance(contents, str):
        return contents or None
    text = "\n".join(
        turn.text for turn in normalize_contents(contents) if turn.text
    )
    return text or None


def is_tool_result_turn(turn: Turn | None) -> bool:
    """A user turn that only answers tool calls."""
    return bool(
        turn is not None
        and turn.role == Role.USER
        and turn.fragments
        and all(isinstance(f, ToolResult) for f in turn.fragments)
    )
