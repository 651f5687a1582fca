"""
ContextBridge Configuration - Configuration loading and validation.

This module provides the Config class for managing ContextBridge configuration
from global (~/.contextbridge/config.yaml), local (.contextbridge/config.yaml)
and explicitly named sources.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class ProviderConfig(BaseModel):
    """Configuration for a reasoning backend provider."""

    api_key: Optional[str] = None
    api_base: Optional[str] = None
    default_model: Optional[str] = None
    enabled: bool = True


class AgentConfig(BaseModel):
    """Configuration for the reasoning backend request."""

    model: str = "claude-3-haiku-20240307"
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: int = 120


class SessionConfig(BaseModel):
    """Timeouts and dispatch policy for a tool session."""

    invocation_timeout: float = Field(default=30.0, gt=0)
    handshake_timeout: float = Field(default=10.0, gt=0)
    close_grace: float = Field(default=5.0, ge=0)
    deadline: Optional[float] = Field(default=None, gt=0)
    concurrent: bool = False
    max_result_chars: Optional[int] = Field(default=None, gt=0)


class ServerConfig(BaseModel):
    """How to start the tool provider process."""

    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class ToolPlan(BaseModel):
    """One tool to invoke during a session."""

    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


def _default_plan() -> List[ToolPlan]:
    return [ToolPlan(tool="calculate", arguments={"expression": "15 + 25"})]


class ContextBridgeConfig(BaseModel):
    """Complete ContextBridge configuration schema."""

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    plan: List[ToolPlan] = Field(default_factory=_default_plan)


class Config:
    """
    ContextBridge configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.contextbridge/config.yaml
    - Local: .contextbridge/config.yaml (nearest parent directory)
    - Explicit: a file passed with ``--config``

    Later sources override earlier ones.

    Example:
        >>> config = Config.load()
        >>> config.merged.session.invocation_timeout
        30.0
        >>> config.get_api_key("anthropic")
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".contextbridge"
    LOCAL_CONFIG_DIR = Path(".contextbridge")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[ContextBridgeConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            path: Optional explicit config file, layered over the local one.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(cls._find_local_config())

        if path is not None:
            if not Path(path).exists():
                raise ConfigError(f"Config file not found: {path}")
            local_config = cls._deep_merge(local_config, cls._load_yaml(Path(path)))

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> ContextBridgeConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = ContextBridgeConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def override(self, section: str, **values: Any) -> None:
        """Apply command-line overrides on top of the loaded files."""
        values = {k: v for k, v in values.items() if v is not None}
        if not values:
            return
        self._local_config = self._deep_merge(self._local_config, {section: values})
        self._merged = None  # Reset cache

    def set_plan(self, plan: List[Dict[str, Any]]) -> None:
        """Replace the configured tool plan."""
        self._local_config = {**self._local_config, "plan": plan}
        self._merged = None

    def get_provider_config(self, provider_name: str) -> Optional[ProviderConfig]:
        """Get configuration for a specific provider."""
        return self.merged.providers.get(provider_name)

    def get_api_key(self, provider_name: str) -> Optional[str]:
        """
        Get API key for a provider.

        Checks config first, then environment variables.
        """
        provider = self.get_provider_config(provider_name)
        if provider and provider.api_key:
            return provider.api_key

        env_var_map = {
            "anthropic": "ANTHROPIC_API_KEY",
            "openai": "OPENAI_API_KEY",
            "openrouter": "OPENROUTER_API_KEY",
        }

        env_var = env_var_map.get(provider_name)
        if env_var:
            return os.environ.get(env_var)

        return None

    @staticmethod
    def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
