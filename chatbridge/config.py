"""Settings via pydantic-settings with CHATBRIDGE_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars other OpenAI-compatible tooling uses (OPENAI_API_KEY,
OLLAMA_BASE_URL, ...), so one .env file serves both.
"""

from enum import StrEnum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthType(StrEnum):
    USE_OLLAMA = "ollama"
    USE_OPENAI = "openai"
    USE_CUSTOM_OPENAI_COMPATIBLE = "custom-openai-compatible"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATBRIDGE_", env_file=".env")

    auth_type: AuthType = AuthType.USE_OLLAMA
    model: str = ""
    debug: bool = False
    proxy: str | None = None
    log_level: str = "info"

    # Provider credentials, read through unprefixed aliases
    ollama_base_url: str = Field("http://localhost:11434", validation_alias="OLLAMA_BASE_URL")
    ollama_api_key: str = Field("", validation_alias="OLLAMA_API_KEY")
    openai_base_url: str = Field("https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    custom_llm_base_url: str = Field("", validation_alias="CUSTOM_LLM_BASE_URL")
    custom_llm_api_key: str = Field("", validation_alias="CUSTOM_LLM_API_KEY")

    # Static headers merged into every request
    extra_headers: dict[str, str] = Field(default_factory=dict)

    # Sampling defaults when a request doesn't set them
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9

    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Conversation compression
    compression_enabled: bool = True
    compression_threshold: float = 0.7
    compression_preserve: float = 0.3

    telemetry_enabled: bool = True

    # REST runtime
    host: str = "0.0.0.0"
    port: int = 8000
    max_sessions: int = 100

    @model_validator(mode="after")
    def _validate_fractions(self) -> "Settings":
        for name in ("compression_threshold", "compression_preserve"):
            value = getattr(self, name)
            if not 0 < value < 1:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        return self

    @property
    def resolved_model(self) -> str:
        if self.model:
            return self.model
        if self.auth_type == AuthType.USE_OLLAMA:
            return "deepseek-r1:latest"
        if self.auth_type == AuthType.USE_OPENAI:
            return "gpt-4"
        return ""

    @property
    def resolved_base_url(self) -> str:
        if self.auth_type == AuthType.USE_OLLAMA:
            return self.ollama_base_url
        if self.auth_type == AuthType.USE_OPENAI:
            return self.openai_base_url
        return self.custom_llm_base_url

    @property
    def resolved_api_key(self) -> str:
        if self.auth_type == AuthType.USE_OLLAMA:
            return self.ollama_api_key
        if self.auth_type == AuthType.USE_OPENAI:
            return self.openai_api_key
        return self.custom_llm_api_key


def validate_auth_method(settings: Settings) -> str | None:
    """Return a human-readable problem with the selected auth method, or None."""
    if settings.auth_type == AuthType.USE_OLLAMA:
        # Ollama usually runs locally without a key
        return None

    if settings.auth_type == AuthType.USE_OPENAI:
        if not settings.openai_api_key:
            return (
                "OPENAI_API_KEY environment variable not found. "
                "Add that to your environment and try again!"
            )
        return None

    if settings.auth_type == AuthType.USE_CUSTOM_OPENAI_COMPATIBLE:
        if not settings.custom_llm_api_key:
            return (
                "CUSTOM_LLM_API_KEY environment variable not found. "
                "Add that to your environment and try again!"
            )
        if not settings.custom_llm_base_url:
            return (
                "CUSTOM_LLM_BASE_URL environment variable not found. "
                "Add that to your environment and try again!"
            )
        return None

    return "Invalid auth method selected."
