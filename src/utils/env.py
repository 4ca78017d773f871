"""Environment switching utilities for the integration gateway.

This module provides utilities for environment-aware configuration:
- Env enum for type-safe environment values
- current_env() to get the current environment
- switch_env() to select values based on environment
"""

from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from src.utils.config import get_gateway_environment

T = TypeVar("T")


class Env(str, Enum):
    """Gateway deployment environment."""

    LOCAL = "local"
    STAGING = "staging"
    PRODUCTION = "production"


def current_env() -> Env:
    """Get the current gateway environment.

    Returns:
        Current environment from GATEWAY_ENVIRONMENT env var

    Raises:
        ValueError: If GATEWAY_ENVIRONMENT contains an unexpected value
    """
    env_str = get_gateway_environment()

    try:
        return Env(env_str)
    except ValueError:
        raise ValueError(f"Unexpected environment: {env_str}")


def switch_env(envs: dict[Env, T | Callable[[], T]], env: Env | None = None) -> T:
    """Switch on environment to return environment-specific values.

    Args:
        envs: Dictionary mapping environments to values or callables that return values
        env: Optional environment to use (defaults to current_env())

    Example:
        >>> from src.utils.env import Env, switch_env
        >>> base_url = switch_env({
        ...     Env.LOCAL: "http://localhost:3000",
        ...     Env.STAGING: "https://staging.example.com",
        ...     Env.PRODUCTION: "https://app.example.com",
        ... })
    """
    if env is None:
        env = current_env()

    value = envs[env]

    if callable(value):
        return value()
    return value


def default_app_base_url(env: Env | None = None) -> str:
    """Base URL used when APP_BASE_URL is not set. Only local has a usable default."""

    def _missing() -> str:
        raise ValueError("APP_BASE_URL environment variable is required outside local")

    return switch_env(
        {
            Env.LOCAL: "http://localhost:3000",
            Env.STAGING: _missing,
            Env.PRODUCTION: _missing,
        },
        env,
    )
