"""Tests for Settings, provider resolution and auth validation."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from chatbridge.api.generator import GeneratorConfig
from chatbridge.config import AuthType, Settings, validate_auth_method


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "OPENAI_API_KEY", "OPENAI_BASE_URL", "OLLAMA_BASE_URL", "OLLAMA_API_KEY",
        "CUSTOM_LLM_API_KEY", "CUSTOM_LLM_BASE_URL", "CHATBRIDGE_AUTH_TYPE",
        "CHATBRIDGE_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        s = Settings(_env_file=None)
        assert s.auth_type == AuthType.USE_OLLAMA
        assert s.resolved_base_url == "http://localhost:11434"
        assert s.resolved_model == "deepseek-r1:latest"
        assert s.max_tokens == 4096
        assert s.temperature == 0.7
        assert s.top_p == 0.9
        assert s.compression_threshold == 0.7
        assert s.compression_preserve == 0.3

    def test_unprefixed_provider_env(self, clean_env):
        clean_env.setenv("CHATBRIDGE_AUTH_TYPE", "openai")
        clean_env.setenv("OPENAI_API_KEY", "sk-env")
        s = Settings(_env_file=None)
        assert s.resolved_api_key == "sk-env"
        assert s.resolved_base_url == "https://api.openai.com/v1"
        assert s.resolved_model == "gpt-4"

    def test_custom_backend(self, clean_env):
        clean_env.setenv("CHATBRIDGE_AUTH_TYPE", "custom-openai-compatible")
        clean_env.setenv("CUSTOM_LLM_BASE_URL", "http://vllm:8000/v1")
        clean_env.setenv("CUSTOM_LLM_API_KEY", "k")
        clean_env.setenv("CHATBRIDGE_MODEL", "qwen2.5-coder")
        s = Settings(_env_file=None)
        assert s.resolved_base_url == "http://vllm:8000/v1"
        assert s.resolved_model == "qwen2.5-coder"

    @pytest.mark.parametrize("field", ["compression_threshold", "compression_preserve"])
    @pytest.mark.parametrize("value", [0, 1, 1.5])
    def test_fraction_validation(self, clean_env, field, value):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, **{field: value})

    def test_generator_config_from_settings(self, clean_env):
        clean_env.setenv("CHATBRIDGE_AUTH_TYPE", "openai")
        clean_env.setenv("OPENAI_API_KEY", "sk-env")
        s = Settings(_env_file=None, extra_headers={"x-org": "1"}, temperature=0.2)
        config = GeneratorConfig.from_settings(s)
        assert config.base_url == "https://api.openai.com/v1"
        assert config.api_key == "sk-env"
        assert config.model == "gpt-4"
        assert config.headers == {"x-org": "1"}
        assert config.temperature == 0.2

    def test_ollama_without_key_sends_no_auth(self, clean_env):
        config = GeneratorConfig.from_settings(Settings(_env_file=None))
        assert config.api_key is None


class TestValidateAuthMethod:
    def test_ollama_needs_nothing(self, clean_env):
        assert validate_auth_method(Settings(_env_file=None)) is None

    def test_openai_needs_key(self, clean_env):
        s = Settings(_env_file=None, auth_type=AuthType.USE_OPENAI)
        assert "OPENAI_API_KEY" in validate_auth_method(s)

    def test_custom_needs_key_and_url(self, clean_env):
        s = Settings(_env_file=None, auth_type=AuthType.USE_CUSTOM_OPENAI_COMPATIBLE)
        assert "CUSTOM_LLM_API_KEY" in validate_auth_method(s)

        clean_env.setenv("CUSTOM_LLM_API_KEY", "k")
        s = Settings(_env_file=None, auth_type=AuthType.USE_CUSTOM_OPENAI_COMPATIBLE)
        assert "CUSTOM_LLM_BASE_URL" in validate_auth_method(s)

        clean_env.setenv("CUSTOM_LLM_BASE_URL", "http://x")
        s = Settings(_env_file=None, auth_type=AuthType.USE_CUSTOM_OPENAI_COMPATIBLE)
        assert validate_auth_method(s) is None
