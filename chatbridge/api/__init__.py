"""Generator façade, retry policy, commands and REST surface."""

from chatbridge.api.commands import OptimizeTokensOptions, optimize_tokens, parse_command
from chatbridge.api.generator import (
    ContentGenerator,
    ConversationCapable,
    GeneratorConfig,
    OpenAICompatibleGenerator,
)
from chatbridge.api.retry import RetryPolicy

__all__ = [
    "ContentGenerator",
    "ConversationCapable",
    "GeneratorConfig",
    "OpenAICompatibleGenerator",
    "OptimizeTokensOptions",
    "RetryPolicy",
    "optimize_tokens",
    "parse_command",
]
