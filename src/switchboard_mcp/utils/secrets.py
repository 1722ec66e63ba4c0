"""
Secret management utilities for the Switchboard MCP agent.

API keys are read from environment variables, with .env files loaded
for local development.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Paths to check for .env files, in order of precedence
ENV_PATHS = [
    Path.cwd() / ".env",
    Path.cwd() / ".secrets.env",
    Path.home() / ".switchboard_mcp" / ".env",
]

_PROVIDER_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
}

_dotenv_loaded = False


def _load_env_files() -> None:
    global _dotenv_loaded
    if _dotenv_loaded:
        return
    _dotenv_loaded = True
    for env_path in ENV_PATHS:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)
            break


def get_secret(key: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret from environment variables with fallback.

    Args:
        key: The environment variable name containing the secret
        default: Default value if the secret is not found

    Returns:
        The secret value or default if not found
    """
    _load_env_files()
    return os.environ.get(key, default)


def get_api_key(provider: str) -> Optional[str]:
    """
    Get API key for a completion provider.

    Raises:
        ValueError: If the provider is not supported
    """
    env_key = _PROVIDER_KEYS.get(provider.lower())
    if env_key is None:
        raise ValueError(f"Unknown provider: {provider}")
    return get_secret(env_key)
