"""Conversation state: history store, curation and compression."""

from chatbridge.conversation.compression import (
    COMPRESSION_PRESERVE_THRESHOLD,
    COMPRESSION_TOKEN_THRESHOLD,
    SUMMARY_ACKNOWLEDGMENT,
    ConversationCompressor,
    find_index_after_fraction,
)
from chatbridge.conversation.history import (
    ConversationHistory,
    extract_curated_history,
)

__all__ = [
    "COMPRESSION_PRESERVE_THRESHOLD",
    "COMPRESSION_TOKEN_THRESHOLD",
    "SUMMARY_ACKNOWLEDGMENT",
    "ConversationCompressor",
    "ConversationHistory",
    "extract_curated_history",
    "find_index_after_fraction",
]
