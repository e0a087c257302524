"""Canonical content model shared by every chatbridge component."""

from chatbridge.content.schemas import (
    CompressionResult,
    ContentInput,
    FinishReason,
    Fragment,
    FunctionDeclaration,
    GenerationResponse,
    Role,
    Text,
    Thought,
    ToolCall,
    ToolGroup,
    ToolResult,
    Turn,
    UsageMetadata,
    extract_text,
    is_tool_result_turn,
    normalize_contents,
)

__all__ = [
    "CompressionResult",
    "ContentInput",
    "FinishReason",
    "Fragment",
    "FunctionDeclaration",
    "GenerationResponse",
    "Role",
    "Text",
    "Thought",
    "ToolCall",
    "ToolGroup",
    "ToolResult",
    "Turn",
    "UsageMetadata",
    "extract_text",
    "is_tool_result_turn",
    "normalize_contents",
]
