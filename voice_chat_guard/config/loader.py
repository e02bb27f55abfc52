"""
Configuration management and loading.

Handles application settings from YAML files and environment variables.
The resulting AppConfig is immutable and passed explicitly to every
component that needs it.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from voice_chat_guard.storage.models import ModelConfig, Tier


DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class ConfigurationError(ValueError):
    """Raised when configuration is missing or invalid."""
    def __init__(self, message: str, missing_key: Optional[str] = None):
        super().__init__(message)
        self.missing_key = missing_key


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    free_user_daily_limit: int = 5
    free_user_model: str = "openai/gpt-3.5-turbo"
    premium_user_model: str = "openai/gpt-4"
    max_context_tokens: int = 4000
    # 7 seconds keeps a turn under the voice platform's 8 second window
    response_timeout_ms: int = 7000
    max_retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 2000
    session_timeout_minutes: int = 30
    hard_expiry_minutes: int = 120
    max_session_messages: int = 20
    max_stored_messages: int = 50
    free_history_messages: int = 10
    premium_history_messages: int = 20
    free_max_response_tokens: int = 500
    premium_max_response_tokens: int = 1000
    temperature: float = 0.7
    top_p: float = 0.9

    def __post_init__(self):
        """Validate configuration values."""
        if not self.api_key or not self.api_key.strip():
            raise ConfigurationError("api_key is required and cannot be empty", "api_key")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"base_url must be an http(s) URL, got: {self.base_url}", "base_url")

        positive = (
            "free_user_daily_limit", "max_context_tokens", "response_timeout_ms",
            "base_delay_ms", "max_delay_ms", "session_timeout_minutes",
            "hard_expiry_minutes", "max_session_messages", "max_stored_messages",
            "free_history_messages", "premium_history_messages",
            "free_max_response_tokens", "premium_max_response_tokens",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0", name)
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative", "max_retries")
        if self.max_delay_ms < self.base_delay_ms:
            raise ConfigurationError("max_delay_ms must be >= base_delay_ms", "max_delay_ms")
        if self.hard_expiry_minutes <= self.session_timeout_minutes:
            raise ConfigurationError(
                "hard_expiry_minutes must be longer than session_timeout_minutes",
                "hard_expiry_minutes",
            )

    def model_config(self, tier: Tier) -> ModelConfig:
        """Resolve model parameters for a subscription tier."""
        if tier == Tier.PREMIUM:
            return ModelConfig(
                model=self.premium_user_model,
                max_response_tokens=self.premium_max_response_tokens,
                temperature=self.temperature,
                top_p=self.top_p,
            )
        return ModelConfig(
            model=self.free_user_model,
            max_response_tokens=self.free_max_response_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
        )

    def history_limit(self, tier: Tier) -> int:
        """Maximum number of history messages sent to the model for a tier."""
        if tier == Tier.PREMIUM:
            return self.premium_history_messages
        return self.free_history_messages

    def summary(self) -> Dict[str, Any]:
        """Configuration summary safe for logging (no secrets)."""
        return {
            "base_url": self.base_url,
            "free_user_daily_limit": self.free_user_daily_limit,
            "free_user_model": self.free_user_model,
            "premium_user_model": self.premium_user_model,
            "max_context_tokens": self.max_context_tokens,
            "response_timeout_ms": self.response_timeout_ms,
            "has_api_key": bool(self.api_key),
        }


_FIELD_TYPES = {f.name: f.type for f in fields(AppConfig)}

# Environment variable -> AppConfig field
ENV_VARS = {
    "OPENROUTER_API_KEY": "api_key",
    "OPENROUTER_BASE_URL": "base_url",
    "FREE_USER_DAILY_LIMIT": "free_user_daily_limit",
    "FREE_USER_MODEL": "free_user_model",
    "PREMIUM_USER_MODEL": "premium_user_model",
    "MAX_CONTEXT_TOKENS": "max_context_tokens",
    "RESPONSE_TIMEOUT_MS": "response_timeout_ms",
}


def load_app_config(path: str) -> AppConfig:
    """Load and validate application configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys and
    values of the wrong type are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_FIELD_TYPES)
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    if 'api_key' not in raw_config:
        raise ConfigurationError("Missing required 'api_key'", "api_key")

    values = {key: _coerce(key, value) for key, value in raw_config.items()}
    return AppConfig(**values)


def load_app_config_from_env(environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load configuration from environment variables with defaults.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Validated AppConfig object

    Raises:
        ConfigurationError: If the API key is missing or a number is malformed
    """
    env = os.environ if environ is None else environ

    if not env.get("OPENROUTER_API_KEY"):
        raise ConfigurationError(
            "Required environment variable OPENROUTER_API_KEY is not set",
            "OPENROUTER_API_KEY",
        )

    values: Dict[str, Any] = {}
    for env_key, field_name in ENV_VARS.items():
        raw = env.get(env_key)
        if not raw:
            continue
        if _FIELD_TYPES[field_name] is int:
            try:
                values[field_name] = int(raw, 10)
            except ValueError:
                raise ConfigurationError(
                    f"Environment variable {env_key} must be a valid number, got: {raw}",
                    env_key,
                )
        else:
            values[field_name] = raw

    return AppConfig(**values)


def _coerce(key: str, value: Any) -> Any:
    """Check a YAML value against the declared field type."""
    expected = _FIELD_TYPES[key]
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"'{key}' must be an integer", key)
        return value
    if expected is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"'{key}' must be a number", key)
        return float(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"'{key}' must be a string", key)
    return value
