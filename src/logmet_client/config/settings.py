"""Configuration settings using Pydantic for validation."""

import os
import re
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ('CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG')


class ProducerConfig(BaseModel):
    """Logmet Lumberjack endpoint and producer tuning."""
    endpoint: str = Field(default="logs.opvis.bluemix.net", description="Logmet ingestion host")
    port: int = Field(default=9091, description="Logmet ingestion port")
    tenant_id: str = Field(default="", description="Bluemix space id or Logmet supertenant id")
    token: str = Field(default="", description="Logmet token (API key)")
    is_super_tenant: bool = Field(default=False, description="Authenticate as a supertenant")

    buffer_size: int = Field(default=50, description="Maximum number of pending records")
    max_unacked: int = Field(default=100, description="Maximum number of unacknowledged records")
    max_frame_size: int = Field(default=16000, description="Data frames of this size or larger are dropped")
    inactivity_timeout_seconds: float = Field(default=30.0, description="Silence before the connection is re-created")
    terminate_poll_interval_seconds: float = Field(default=0.3, description="Flush poll interval on terminate")

    client_id: Optional[str] = Field(default=None, description="Identification frame value")
    ca_file: Optional[str] = Field(default=None, description="CA bundle used to verify the server")
    verify_tls: bool = Field(default=True, description="Verify the server certificate")

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('buffer_size', 'max_unacked', 'max_frame_size')
    @classmethod
    def validate_positive_int(cls, v):
        if v < 1:
            raise ValueError("Value must be a positive integer")
        return v

    @field_validator('inactivity_timeout_seconds', 'terminate_poll_interval_seconds')
    @classmethod
    def validate_positive_float(cls, v):
        if v <= 0:
            raise ValueError("Interval must be positive")
        return v


class ConsumerConfig(BaseModel):
    """Logmet query endpoint configuration."""
    endpoint: str = Field(default="logmet.ng.bluemix.net", description="Logmet query host")
    scheme: str = Field(default="https", description="URL scheme for queries")
    request_timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")

    @field_validator('scheme')
    @classmethod
    def validate_scheme(cls, v):
        if v not in ('http', 'https'):
            raise ValueError("Scheme must be 'http' or 'https'")
        return v


class RetryConfig(BaseModel):
    """Reconnect backoff, and retry policy for queries."""
    initial_backoff_seconds: float = Field(default=2.0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=15 * 60.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=False, description="Add jitter to backoff")
    max_attempts: int = Field(default=1, description="Query attempts before giving up")

    @field_validator('initial_backoff_seconds')
    @classmethod
    def validate_initial_backoff(cls, v):
        if v <= 0:
            raise ValueError("Initial backoff must be positive")
        return v

    @field_validator('backoff_multiplier')
    @classmethod
    def validate_multiplier(cls, v):
        if v < 1:
            raise ValueError("Backoff multiplier must be at least 1")
        return v

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @model_validator(mode='after')
    def validate_backoff_range(self):
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            raise ValueError("max_backoff_seconds must not be lower than initial_backoff_seconds")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="WARNING", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stderr", description="Log output destination")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ('json', 'text'):
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class LogmetSettings(BaseSettings):
    """Top-level settings for the Logmet client."""

    service_name: str = Field(default="logmet-client", description="Service name")

    producer: ProducerConfig = Field(default_factory=ProducerConfig)
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="LOGMET_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)

            var_name = var_expr.strip()
            value = os.getenv(var_name)
            if value is None:
                raise ValueError(f"Required environment variable '{var_name}' is not set")
            return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> LogmetSettings:
    """
    Load settings from a YAML config file and environment variables.

    The config file supports environment variable substitution using
    ${VAR_NAME} syntax. Without a config file, settings come from
    ``LOGMET_*`` environment variables (e.g. ``LOGMET_PRODUCER__TOKEN``).

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return LogmetSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return LogmetSettings()
