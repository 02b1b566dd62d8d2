"""
Gateway configuration.

Values come from environment variables (a ``.env`` file is loaded first) and,
optionally, from a YAML file whose string values may reference environment
variables as ``${VAR}``. Explicit YAML values win over the environment.
"""
import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PLACEHOLDER_BASE_URL = "YOUR_BACKEND_LLM_BASE_URL_HERE"
PLACEHOLDER_API_KEY = "YOUR_BACKEND_LLM_API_KEY_HERE"
PLACEHOLDER_REFERER = "YOUR_APP_URL_HERE"
PLACEHOLDER_TITLE = "YOUR_APP_NAME_HERE"
PLACEHOLDER_OLLAMA_URL = "YOUR_OLLAMA_BASE_URL_HERE"

DEFAULT_CHAT_PATH = "/v1/chat/completions"
BACKEND_MODES = ("openai", "ollama")


class Config(BaseSettings):
    # Upstream selection
    backend_mode: str = "openai"
    backend_llm_base_url: Optional[str] = None
    backend_llm_chat_path: Optional[str] = None
    backend_llm_api_key: Optional[str] = None
    ollama_base_url: Optional[str] = None
    ollama_api_key: Optional[str] = None
    ollama_default_context_length: int = Field(default=32768, ge=1)

    # Listener
    proxy_host: str = "0.0.0.0"
    proxy_port: int = Field(default=3000, ge=1, le=65535)
    proxy_auth_tokens_file: Optional[str] = None

    # Streaming bounds
    max_buffer_size: int = Field(default=1024 * 1024, ge=1)
    # milliseconds
    connection_timeout: int = Field(default=120000, ge=1)

    # Optional attribution headers (OpenRouter and friends)
    http_referer: Optional[str] = None
    x_title: Optional[str] = None

    debug_mode: bool = False

    # Tool handling
    enable_tool_reinjection: bool = False
    tool_reinjection_token_count: int = Field(default=3000, ge=1)
    tool_reinjection_message_count: int = Field(default=10, ge=1)
    tool_reinjection_type: str = "full"
    max_tool_iterations: int = Field(default=5, ge=1)

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @classmethod
    def _expand_env_refs(cls, obj):
        """Recursively replace `${VAR}` with os.getenv('VAR')."""
        if isinstance(obj, dict):
            return {k: cls._expand_env_refs(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [cls._expand_env_refs(v) for v in obj]
        if isinstance(obj, str):
            # Only expand if it is exactly ${VAR}
            m = re.fullmatch(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}", obj)
            if m:
                return os.getenv(m.group(1), "")
        return obj

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load the YAML file (if any) on top of the environment."""
        if path.exists():
            with path.open("r", encoding="utf-8") as fp:
                data = yaml.safe_load(fp) or {}
            cleaned = cls._expand_env_refs(data)
            return cls(**cleaned)
        return cls()

    @classmethod
    def load(cls) -> "Config":
        load_dotenv()
        return cls.from_yaml(Path(os.getenv("TOOLGATE_CONFIG", "config.yaml")))

    # ---------------------------------------------------------
    # Derived values
    # ---------------------------------------------------------
    @property
    def mode(self) -> str:
        return (self.backend_mode or "openai").lower()

    @property
    def is_ollama_mode(self) -> bool:
        return self.mode == "ollama"

    @property
    def backend_base_url(self) -> Optional[str]:
        url = self.ollama_base_url if self.is_ollama_mode else self.backend_llm_base_url
        if not url or url in (PLACEHOLDER_BASE_URL, PLACEHOLDER_OLLAMA_URL):
            return None
        return url.rstrip("/")

    @property
    def backend_api_key(self) -> Optional[str]:
        key = self.ollama_api_key if self.is_ollama_mode else self.backend_llm_api_key
        if not key or key == PLACEHOLDER_API_KEY:
            return None
        return key

    @property
    def chat_completions_url(self) -> Optional[str]:
        base = self.backend_base_url
        if base is None:
            return None
        path = self.backend_llm_chat_path or DEFAULT_CHAT_PATH
        if not path.startswith("/"):
            path = "/" + path
        return base + path

    @property
    def ollama_api_url(self) -> Optional[str]:
        return self.backend_base_url

    @property
    def native_ollama(self) -> bool:
        """True when /api/show and /api/tags can be forwarded to a real Ollama server."""
        return (
            self.is_ollama_mode
            and bool(self.ollama_base_url)
            and self.ollama_base_url != PLACEHOLDER_OLLAMA_URL
        )

    @property
    def idle_timeout(self) -> float:
        return self.connection_timeout / 1000

    @property
    def referer(self) -> Optional[str]:
        if self.http_referer and self.http_referer != PLACEHOLDER_REFERER:
            return self.http_referer
        return None

    @property
    def title(self) -> Optional[str]:
        if self.x_title and self.x_title != PLACEHOLDER_TITLE:
            return self.x_title
        return None

    # ---------------------------------------------------------
    # Validation
    # ---------------------------------------------------------
    def validate_settings(self) -> "Config":
        if self.mode not in BACKEND_MODES:
            raise ConfigurationError(
                f"BACKEND_MODE must be either 'openai' or 'ollama'. Current value: '{self.backend_mode}'"
            )

        if self.is_ollama_mode:
            url_name, url, key_name, key = (
                "OLLAMA_BASE_URL", self.ollama_base_url, "OLLAMA_API_KEY", self.ollama_api_key,
            )
            placeholder_url = PLACEHOLDER_OLLAMA_URL
        else:
            url_name, url, key_name, key = (
                "BACKEND_LLM_BASE_URL", self.backend_llm_base_url,
                "BACKEND_LLM_API_KEY", self.backend_llm_api_key,
            )
            placeholder_url = PLACEHOLDER_BASE_URL

        if not url:
            raise ConfigurationError(
                f"{url_name} must be set when BACKEND_MODE is '{self.mode}'."
            )
        if url == placeholder_url:
            raise ConfigurationError(
                f"Please replace the placeholder value for {url_name} ('{placeholder_url}')."
            )
        if key and key == PLACEHOLDER_API_KEY:
            raise ConfigurationError(
                f"Please replace the placeholder value for {key_name} ('{PLACEHOLDER_API_KEY}') or remove it entirely."
            )

        chat_url = self.chat_completions_url
        parsed = urlparse(chat_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"Invalid URL constructed from {url_name} ('{url}') and chat path "
                f"('{self.backend_llm_chat_path or DEFAULT_CHAT_PATH}')."
            )

        if not self.is_ollama_mode and "openrouter" in url:
            if not self.referer:
                logger.warning("HTTP_REFERER is not set or is a placeholder. While optional, it's recommended for OpenRouter.")
            if not self.title:
                logger.warning("X_TITLE is not set or is a placeholder. While optional, it's recommended for OpenRouter.")

        if self.tool_reinjection_type not in ("full", "reminder"):
            logger.warning(
                "Unknown TOOL_REINJECTION_TYPE '%s', the name-only reminder will be used.",
                self.tool_reinjection_type,
            )

        logger.info("Configuration loaded and validated successfully.")
        logger.debug("Backend Mode: %s", self.mode.upper())
        logger.debug("Backend Base URL: %s", self.backend_base_url)
        logger.debug("Chat Completions Endpoint: %s", chat_url)
        logger.debug("API Key: %s", "[CONFIGURED]" if self.backend_api_key else "[NOT SET]")
        logger.debug("Ollama Default Context Length: %s", self.ollama_default_context_length)
        logger.debug("Max Stream Buffer Size: %s bytes", self.max_buffer_size)
        logger.debug("Stream Connection Timeout: %s seconds", self.idle_timeout)
        return self
