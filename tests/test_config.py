"""
Unit tests for configuration loading and validation.
"""
import pytest

from toolgate.config import (
    PLACEHOLDER_API_KEY,
    PLACEHOLDER_BASE_URL,
    PLACEHOLDER_REFERER,
    Config,
)
from toolgate.errors import ConfigurationError


class TestDerivedValues:
    def test_chat_url_and_trailing_slash(self):
        config = Config(backend_llm_base_url="https://api.example.com/")
        assert config.backend_base_url == "https://api.example.com"
        assert config.chat_completions_url == "https://api.example.com/v1/chat/completions"

    def test_custom_chat_path(self):
        config = Config(backend_llm_base_url="https://api.example.com", backend_llm_chat_path="chat")
        assert config.chat_completions_url == "https://api.example.com/chat"

    def test_ollama_mode_uses_ollama_values(self):
        config = Config(
            backend_mode="OLLAMA",
            backend_llm_base_url="https://openai.example.com",
            ollama_base_url="http://localhost:11434",
            ollama_api_key="ollama-key",
        )
        assert config.is_ollama_mode
        assert config.native_ollama
        assert config.backend_base_url == "http://localhost:11434"
        assert config.backend_api_key == "ollama-key"

    def test_placeholders_count_as_unset(self):
        config = Config(
            backend_llm_base_url=PLACEHOLDER_BASE_URL,
            backend_llm_api_key=PLACEHOLDER_API_KEY,
            http_referer=PLACEHOLDER_REFERER,
        )
        assert config.backend_base_url is None
        assert config.backend_api_key is None
        assert config.referer is None
        assert config.chat_completions_url is None

    def test_idle_timeout_in_seconds(self):
        assert Config(connection_timeout=2500).idle_timeout == 2.5

    def test_defaults(self):
        config = Config()
        assert config.proxy_port == 3000
        assert config.max_buffer_size == 1024 * 1024
        assert config.ollama_default_context_length == 32768
        assert config.max_tool_iterations == 5


class TestValidation:
    """Tests for Config.validate_settings."""

    def test_valid(self):
        config = Config(backend_llm_base_url="https://api.example.com", backend_llm_api_key="k")
        assert config.validate_settings() is config

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError, match="BACKEND_MODE"):
            Config(backend_mode="vllm", backend_llm_base_url="https://x").validate_settings()

    def test_missing_url(self):
        with pytest.raises(ConfigurationError, match="BACKEND_LLM_BASE_URL must be set"):
            Config(backend_llm_base_url=None).validate_settings()

    def test_placeholder_url(self):
        with pytest.raises(ConfigurationError, match="placeholder"):
            Config(backend_llm_base_url=PLACEHOLDER_BASE_URL).validate_settings()

    def test_placeholder_key(self):
        with pytest.raises(ConfigurationError, match="BACKEND_LLM_API_KEY"):
            Config(
                backend_llm_base_url="https://api.example.com", backend_llm_api_key=PLACEHOLDER_API_KEY
            ).validate_settings()

    def test_invalid_url(self):
        with pytest.raises(ConfigurationError, match="Invalid URL"):
            Config(backend_llm_base_url="not a url").validate_settings()

    def test_ollama_mode_requires_ollama_url(self):
        with pytest.raises(ConfigurationError, match="OLLAMA_BASE_URL"):
            Config(backend_mode="ollama", ollama_base_url=None).validate_settings()


class TestLoading:
    def test_environment(self, monkeypatch):
        monkeypatch.setenv("BACKEND_LLM_BASE_URL", "https://env.example.com")
        monkeypatch.setenv("MAX_TOOL_ITERATIONS", "7")
        config = Config()
        assert config.backend_base_url == "https://env.example.com"
        assert config.max_tool_iterations == 7

    def test_yaml_with_env_reference(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TOOLGATE_TEST_KEY", "from-env")
        path = tmp_path / "config.yaml"
        path.write_text(
            "backend_llm_base_url: https://yaml.example.com\n"
            "backend_llm_api_key: ${TOOLGATE_TEST_KEY}\n"
            "enable_tool_reinjection: true\n",
            encoding="utf-8",
        )
        config = Config.from_yaml(path)
        assert config.backend_base_url == "https://yaml.example.com"
        assert config.backend_api_key == "from-env"
        assert config.enable_tool_reinjection is True

    def test_missing_yaml_falls_back_to_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROXY_PORT", "8080")
        config = Config.from_yaml(tmp_path / "absent.yaml")
        assert config.proxy_port == 8080

    def test_load_uses_toolgate_config(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("debug_mode: true\n", encoding="utf-8")
        monkeypatch.setenv("TOOLGATE_CONFIG", str(path))
        monkeypatch.chdir(tmp_path)
        assert Config.load().debug_mode is True

    def test_unknown_keys_ignored_and_env_case_insensitive(self, tmp_path, monkeypatch):
        monkeypatch.setenv("proxy_host", "127.0.0.1")
        path = tmp_path / "config.yaml"
        path.write_text("backend_llm_base_url: https://yaml.example.com\nlegacy_dashboard: true\n", encoding="utf-8")
        config = Config.from_yaml(path)
        assert config.proxy_host == "127.0.0.1"
        assert not hasattr(config, "legacy_dashboard")
