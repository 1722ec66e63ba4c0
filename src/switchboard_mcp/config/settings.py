"""
Settings models for the Switchboard MCP agent.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class RequestTimeoutSettings(BaseModel):
    """
    Timeout policy applied to every outbound request.

    A request fails once ``request_timeout_seconds`` pass without a response.
    When ``reset_timeout_on_progress`` is set, each progress notification
    restarts that window, but the total time spent on one request never
    exceeds ``max_total_timeout_seconds``.
    """

    request_timeout_seconds: float = 10.0
    reset_timeout_on_progress: bool = True
    max_total_timeout_seconds: float = 60.0

    model_config = {"frozen": True}

    @field_validator("request_timeout_seconds", "max_total_timeout_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @model_validator(mode="after")
    def _total_covers_single(self) -> "RequestTimeoutSettings":
        if self.max_total_timeout_seconds < self.request_timeout_seconds:
            raise ValueError(
                "max_total_timeout_seconds must be >= request_timeout_seconds"
            )
        return self


class ClientCapabilitySettings(BaseModel):
    """Capabilities advertised to the server during the handshake."""

    sampling: bool = False
    roots: bool = False

    model_config = {"frozen": True}


class ServerSettings(BaseModel):
    """Settings for reaching one MCP server. Replace, don't edit."""

    transport: Literal["sse", "streamable-http"] = "streamable-http"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    auth_token: Optional[str] = None
    capabilities: Optional[ClientCapabilitySettings] = None
    enable_server_logs: bool = True
    timeouts: Optional[RequestTimeoutSettings] = None
    sse_read_timeout_seconds: float = 300.0

    model_config = {"frozen": True}

    @field_validator("url")
    @classmethod
    def _url_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"URL must be http(s): {value}")
        return value

    def request_headers(self) -> Dict[str, str]:
        """Headers sent with every transport request."""
        headers = dict(self.headers)
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers


class MCPSettings(BaseModel):
    """Settings for MCP configuration."""

    servers: Dict[str, ServerSettings] = Field(default_factory=dict)


class CompletionSettings(BaseModel):
    """Settings for the completion service driving the tool loop."""

    provider: Literal["anthropic"] = "anthropic"
    api_key: Optional[str] = None
    api_base: str = "https://api.anthropic.com/v1"
    model: str = "claude-3-5-sonnet-latest"
    max_tokens: int = 1000
    max_iterations: int = Field(default=5, ge=1, le=25)
    system_prompt: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _api_key_from_environment(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("api_key") is None:
            from switchboard_mcp.utils.secrets import get_api_key

            api_key = get_api_key(data.get("provider", "anthropic"))
            if api_key:
                data = {**data, "api_key": api_key}
        return data


class LoggingSettings(BaseModel):
    """Settings for logging configuration."""

    level: str = "info"
    file_path: Optional[str] = None


class Settings(BaseModel):
    """Root settings object for the Switchboard MCP agent."""

    mcp: MCPSettings = Field(default_factory=MCPSettings)
    timeouts: RequestTimeoutSettings = Field(default_factory=RequestTimeoutSettings)
    completion: CompletionSettings = Field(default_factory=CompletionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def default_timeouts() -> RequestTimeoutSettings:
    """
    Return a fresh default timeout policy.
    """
    return RequestTimeoutSettings()


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load and validate the configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.
            If None, look for 'switchboard_mcp.config.yaml' in the current directory.

    Returns:
        Settings: Validated configuration object.
    """
    if config_path is None:
        config_path = os.path.join(os.getcwd(), "switchboard_mcp.config.yaml")

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    secrets_path = Path(config_path).with_suffix(".secrets.yaml")
    if secrets_path.exists():
        with open(secrets_path, "r") as f:
            secrets_data = yaml.safe_load(f) or {}
        _merge_dicts(config_data, secrets_data)

    env_config = _load_from_env()
    if env_config:
        _merge_dicts(config_data, env_config)

    return Settings.model_validate(config_data)


def _load_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    ``SWITCHBOARD_<SECTION>_<KEY>`` sets ``section.key``; the key part may
    itself contain underscores (``SWITCHBOARD_TIMEOUTS_REQUEST_TIMEOUT_SECONDS``).
    """
    config: Dict[str, Any] = {}

    _set_nested_dict(config, ["completion", "api_key"], os.environ.get("ANTHROPIC_API_KEY"))
    _set_nested_dict(config, ["completion", "api_base"], os.environ.get("ANTHROPIC_API_BASE"))
    _set_nested_dict(config, ["completion", "model"], os.environ.get("ANTHROPIC_MODEL"))

    _set_nested_dict(config, ["logging", "level"], os.environ.get("LOG_LEVEL"))
    _set_nested_dict(config, ["logging", "file_path"], os.environ.get("LOG_FILE"))

    for key, value in os.environ.items():
        if key.startswith("SWITCHBOARD_"):
            section, _, name = key[len("SWITCHBOARD_"):].lower().partition("_")
            if section and name:
                _set_nested_dict(config, [section, name], value)

    return config


def _set_nested_dict(d: Dict[str, Any], path: List[str], value: Any) -> None:
    """
    Set a value in a nested dictionary based on a path.
    """
    if value is None or value == "":
        return

    if len(path) == 1:
        d[path[0]] = value
        return

    if path[0] not in d or not isinstance(d[path[0]], dict):
        d[path[0]] = {}

    _set_nested_dict(d[path[0]], path[1:], value)


def _merge_dicts(target: Dict, source: Dict) -> None:
    """
    Recursively merge source dictionary into target dictionary.
    Values in source will override values in target.
    """
    for key, value in source.items():
        if key in target and isinstance(target[key], dict) and isinstance(value, dict):
            _merge_dicts(target[key], value)
        else:
            target[key] = value
