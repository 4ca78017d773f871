"""Configuration utility for the integration gateway.

This module provides centralized configuration management with:
- Environment variables as the only source
- Type-safe access to configuration values
- Named getters for every setting the gateway reads
"""

import os
from typing import Any


def parse_config_value(value: str) -> str | bool | int | float:
    if value.lower() == "true":
        return True
    elif value.lower() == "false":
        return False
    else:
        # Try to parse as a number
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                # Return as string
                return value


def get_config_value(key: str, default: Any = None) -> Any:
    """Get a configuration value from environment variables.

    Args:
        key: Configuration key name (e.g., "CONTROL_DATABASE_URL")
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    env_value = os.environ.get(key)
    if env_value is not None:
        return parse_config_value(env_value)

    return default


def get_config_value_str(key: str) -> str | None:
    """
    Get a configuration value from environment variables. But sometimes you just want a string.
    """
    return os.environ.get(key)


def require_config_value(key: str) -> str:
    value = os.environ.get(key)
    if value is None or value == "":
        raise ValueError(f"Environment variable {key} is required")
    return value


def get_config_list(key: str, default: list[str] | None = None) -> list[str]:
    """Get a comma-separated configuration value as a list of trimmed, non-empty strings."""
    raw = os.environ.get(key)
    if raw is None:
        return list(default or [])
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_gateway_environment() -> str:
    """Get gateway environment from env var."""
    return get_config_value_str("GATEWAY_ENVIRONMENT") or "local"


def get_control_database_url() -> str:
    """Get control database connection URL.

    Returns:
        PostgreSQL connection string from CONTROL_DATABASE_URL config

    Raises:
        ValueError: If CONTROL_DATABASE_URL is not configured
    """
    url = get_config_value_str("CONTROL_DATABASE_URL")
    if url:
        return url

    raise ValueError(
        "Control database URL not found. Please provide CONTROL_DATABASE_URL environment variable"
    )


def get_redis_endpoint() -> str:
    return get_config_value_str("REDIS_PRIMARY_ENDPOINT") or "localhost:6379"


def get_store_backend() -> str:
    """Backend for durable gateway records: postgres, redis or memory."""
    return (get_config_value_str("GATEWAY_STORE_BACKEND") or "postgres").lower()


def get_status_cache_backend() -> str:
    """Backend for status cache entries: redis, postgres or memory."""
    return (get_config_value_str("STATUS_CACHE_BACKEND") or "redis").lower()


def get_credential_encryption_keys() -> list[str]:
    """Fernet keys for the credential cipher. The first key encrypts, all keys decrypt."""
    return get_config_list("CREDENTIAL_ENCRYPTION_KEYS")


def get_app_base_url() -> str:
    """Base URL of the web app, used for OAuth callbacks and post-install redirects."""
    configured = get_config_value_str("APP_BASE_URL")
    if configured:
        return configured.rstrip("/")

    from src.utils.env import default_app_base_url

    return default_app_base_url()


def get_slack_signing_secret() -> str | None:
    return get_config_value_str("SLACK_SIGNING_SECRET")


def get_oauth_http_timeout() -> float:
    """Timeout in seconds for OAuth token endpoint calls."""
    return float(get_config_value("OAUTH_HTTP_TIMEOUT_SECONDS", 15))


def get_status_probe_timeout() -> float:
    """Per-source timeout in seconds for status probes."""
    return float(get_config_value("STATUS_PROBE_TIMEOUT_SECONDS", 5))


def get_status_cache_ttl() -> float:
    return float(get_config_value("STATUS_CACHE_TTL_SECONDS", 30))


def get_status_cache_failure_ttl() -> float:
    """TTL for failed probes. Always shorter than the success TTL so errors are re-checked sooner."""
    failure_ttl = float(get_config_value("STATUS_CACHE_FAILURE_TTL_SECONDS", 10))
    return min(failure_ttl, get_status_cache_ttl())


def get_status_connection_sources() -> list[str]:
    """Source types whose status comes from the connection state store rather than a live probe."""
    return get_config_list("STATUS_CONNECTION_SOURCES", ["google-workspace-mcp"])


def get_connection_state_max_idle_hours() -> float:
    return float(get_config_value("CONNECTION_STATE_MAX_IDLE_HOURS", 24))


def get_slack_lookup_timeout() -> float:
    """Timeout in seconds for Slack user/channel metadata lookups during normalization."""
    return float(get_config_value("SLACK_LOOKUP_TIMEOUT_SECONDS", 3))


def get_webhook_validation_disabled() -> bool:
    """Allow disabling webhook signature validation for development/testing."""
    return (get_config_value_str("DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION") or "").lower() in (
        "true",
        "1",
        "yes",
    )


def get_scheduler_enabled() -> bool:
    return get_config_value("RUN_SCHEDULER", False) in (True, 1)
