"""Configuration management with pydantic-settings for chatengine.

- Automatic .env file loading with proper precedence
- Validation with clear error messages
- SecretStr for credentials
- Frozen config (thread-safe, immutable after load)

Per-backend-instance options live in ``BackendOptions``; process-wide defaults
live in ``EngineConfig`` and seed those options through
``BackendOptions.from_config``.
"""

import logging
import math
from functools import lru_cache
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("chatengine.config")

__all__ = [
    "DEFAULT_API_BASE",
    "DEFAULT_WEB_API_PREFIX",
    "TOKEN_RESERVE",
    "BackendOptions",
    "EngineConfig",
    "get_config",
    "reset_config",
]

DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_WEB_API_PREFIX = "https://ai.fakeopen.com/api/"

# Safety margin subtracted from max_tokens before windowing (only when
# max_tokens >= TOKEN_RESERVE).
TOKEN_RESERVE = 256

class EngineConfig(BaseSettings):
    """Process-wide configuration for chatengine.

    Loads from (in order of precedence):
    1. Environment variables (highest priority)
    2. .env file in the working directory
    3. Default values (lowest priority)

    Attributes:
        openai_api_key: Bearer credential for the completion API
        openai_api_base: Base URL of the completion API
        web_api_prefix: Base URL of the web conversation API
        web_access_token: Bearer access token for the web conversation API
        chat_model: Default model for the chat-completion backend
        prompt_model: Default model for the prompt-completion backend
        temperature: Sampling temperature
        top_p: Nucleus sampling mass
        max_tokens: Context ceiling override (None = model's known ceiling)
        frequency_penalty: Frequency penalty sent with each request
        presence_penalty: Presence penalty sent with each request
        system_message: System message template (None = backend default)
        max_retry_attempts: Attempts before a retryable failure becomes fatal
        backoff_base: Exponential backoff multiplier
        initial_backoff_seconds: Seed delay for exponential backoff
        request_timeout: Read timeout for streaming requests in seconds
        availability_ttl_seconds: Freshness window of the model availability cache
        token_reserve: Safety margin subtracted before windowing
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    openai_api_key: SecretStr | None = Field(
        default=None, description="Bearer credential for the completion API"
    )

    openai_api_base: str = Field(
        default=DEFAULT_API_BASE, description="Base URL of the completion API"
    )

    web_api_prefix: str = Field(
        default=DEFAULT_WEB_API_PREFIX,
        description="Base URL of the web conversation API (trailing slash required)",
    )

    web_access_token: SecretStr | None = Field(
        default=None, description="Access token for the web conversation API"
    )

    chat_model: str = Field(default="gpt-3.5-turbo")

    prompt_model: str = Field(default="text-davinci-003")

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    top_p: float = Field(default=1.0, ge=0.0, le=1.0)

    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Context ceiling override. None uses the model's known ceiling.",
    )

    frequency_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)

    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)

    system_message: str | None = Field(
        default=None,
        description="System message template; supports {knowledge_cutoff}, {current_date}, {running_model}",
    )

    max_retry_attempts: int = Field(default=10, ge=1, le=50)

    backoff_base: float = Field(default=2.0, ge=1.0, le=10.0)

    initial_backoff_seconds: float = Field(default=1.0, gt=0.0, le=60.0)

    request_timeout: float = Field(default=60.0, ge=1.0, le=600.0)

    availability_ttl_seconds: float = Field(default=600.0, ge=0.0)

    token_reserve: int = Field(default=TOKEN_RESERVE, ge=0)

    @field_validator("web_api_prefix")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        """Paths are appended directly to the prefix."""
        return v if v.endswith("/") else v + "/"


class BackendOptions(BaseModel):
    """Configuration surface of a single backend instance.

    ``max_tokens`` of ``None`` or ``math.inf`` means "unbounded" and is mapped
    to the model's known ceiling by the backend. A ``model`` of ``None`` is
    filled in by the backend from its own config field (``chat_model`` or
    ``prompt_model``).
    """

    model_config = ConfigDict(frozen=True)

    api_key: SecretStr = Field(default=SecretStr(""))
    model: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    max_tokens: float | None = Field(default=None, gt=0)
    frequency_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    system_message: str | None = None

    @field_validator("max_tokens")
    @classmethod
    def unbounded_to_none(cls, v: float | None) -> float | None:
        """Map the explicit unbounded sentinel onto None."""
        if v is not None and math.isinf(v):
            return None
        return v

    @classmethod
    def from_config(
        cls, config: EngineConfig, model: str | None = None, **overrides
    ) -> "BackendOptions":
        """Build options from the process-wide configuration.

        Args:
            config: Loaded EngineConfig
            model: Model identifier (default: left for the backend to choose)
            **overrides: Explicit per-instance values

        Returns:
            BackendOptions with config defaults applied under the overrides
        """
        values = {
            "api_key": config.openai_api_key or SecretStr(""),
            "model": model,
            "temperature": config.temperature,
            "top_p": config.top_p,
            "max_tokens": config.max_tokens,
            "frequency_penalty": config.frequency_penalty,
            "presence_penalty": config.presence_penalty,
            "system_message": config.system_message,
        }
        values.update(overrides)
        return cls(**values)

    def request_parameters(self) -> dict:
        """Sampling parameters copied verbatim into every request body."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Returns:
        EngineConfig singleton instance.

    Raises:
        ValidationError: If configuration values are invalid.

    Example:
        >>> config = get_config()
        >>> config.max_retry_attempts
        10
        >>> config is get_config()
        True
    """
    return EngineConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing.

    Warning:
        Only use in test code. Production code should not reset config.
    """
    get_config.cache_clear()
