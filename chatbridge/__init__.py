"""OpenAI-compatible protocol adapter with conversation state management."""

__version__ = "0.1.0"
