"""
ContextBridge Provider Base - Reasoning backend abstraction.

This module defines the interface every LLM provider implements,
``complete(system_prompt, user_query)``, and a factory for creating
provider instances from a model name.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from contextbridge.validation.config import Config, ConfigError

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when the reasoning backend is unreachable or rejects a request."""


@dataclass
class ProviderResponse:
    """Response from an LLM provider."""

    content: str
    model: str
    provider: str
    token_usage: int = 0
    finish_reason: str = "stop"
    metadata: Dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """
    Abstract base class for LLM providers.

    Subclasses implement ``_complete``; ``complete`` wraps every failure
    in :class:`BackendError`.

    Example:
        >>> class EchoProvider(Provider):
        ...     provider_name = "echo"
        ...     def _complete(self, system_prompt, user_query, **kwargs):
        ...         return ProviderResponse(user_query, self.model, "echo")
    """

    requires_api_key = True

    def __init__(self, model: str, config: Config):
        """
        Initialize the provider.

        Args:
            model: The model identifier.
            config: ContextBridge configuration.
        """
        self.model = model
        self.config = config

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    def get_api_key(self) -> Optional[str]:
        """Get the API key for this provider."""
        return self.config.get_api_key(self.provider_name)

    def require_credentials(self) -> None:
        """
        Startup precondition: fail before any work if the API key is missing.

        Raises:
            ConfigError: If the provider needs a key and none is configured.
        """
        if self.requires_api_key and not self.get_api_key():
            raise ConfigError(
                f"{self.provider_name} API key not configured. "
                f"Set it in config.yaml or the environment."
            )

    def complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        """
        Send one request to the backend.

        Args:
            system_prompt: System context built from tool evidence.
            user_query: The user's question, verbatim.
            **kwargs: Additional provider-specific parameters.

        Returns:
            ProviderResponse with the completion.

        Raises:
            BackendError: On any failure talking to the backend.
        """
        try:
            return self._complete(system_prompt, user_query, **kwargs)
        except BackendError:
            raise
        except Exception as exc:
            raise BackendError(f"{self.provider_name} request failed: {exc}") from exc

    @abstractmethod
    def _complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        pass

    def _option(self, kwargs: Dict[str, Any], name: str) -> Any:
        return kwargs.get(name, getattr(self.config.merged.agent, name))


class AnthropicProvider(Provider):
    """Anthropic API provider implementation."""

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        """Generate completion using Anthropic API."""
        try:
            import anthropic
        except ImportError:
            raise BackendError(
                "anthropic package required. Install with: pip install contextbridge[anthropic]"
            )

        client = anthropic.Anthropic(
            api_key=self.get_api_key(),
            timeout=self.config.merged.agent.timeout,
        )

        response = client.messages.create(
            model=self.model,
            max_tokens=self._option(kwargs, "max_tokens"),
            temperature=self._option(kwargs, "temperature"),
            system=system_prompt,
            messages=[{"role": "user", "content": user_query}],
        )

        text = "".join(getattr(block, "text", "") for block in response.content)
        return ProviderResponse(
            content=text,
            model=response.model,
            provider=self.provider_name,
            token_usage=response.usage.input_tokens + response.usage.output_tokens,
            finish_reason=response.stop_reason or "stop",
        )


class OpenAIProvider(Provider):
    """OpenAI API provider implementation."""

    @property
    def provider_name(self) -> str:
        return "openai"

    def _complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        """Generate completion using OpenAI API."""
        try:
            import openai
        except ImportError:
            raise BackendError("openai package required. Install with: pip install contextbridge[openai]")

        client = openai.OpenAI(api_key=self.get_api_key(), timeout=self.config.merged.agent.timeout)

        response = client.chat.completions.create(
            model=self.model,
            messages=_chat_messages(system_prompt, user_query),
            max_tokens=self._option(kwargs, "max_tokens"),
            temperature=self._option(kwargs, "temperature"),
        )

        choice = response.choices[0]
        return ProviderResponse(
            content=choice.message.content or "",
            model=response.model,
            provider=self.provider_name,
            token_usage=response.usage.total_tokens if response.usage else 0,
            finish_reason=choice.finish_reason or "stop",
        )


class OllamaProvider(Provider):
    """Ollama local provider implementation."""

    requires_api_key = False

    @property
    def provider_name(self) -> str:
        return "ollama"

    def _complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        """Generate completion using Ollama."""
        import httpx

        provider_config = self.config.get_provider_config("ollama")
        base_url = (provider_config and provider_config.api_base) or "http://localhost:11434"

        response = httpx.post(
            f"{base_url}/api/chat",
            json={
                "model": self.model,
                "messages": _chat_messages(system_prompt, user_query),
                "stream": False,
            },
            timeout=self.config.merged.agent.timeout,
        )
        response.raise_for_status()
        data = response.json()

        return ProviderResponse(
            content=data["message"]["content"],
            model=data.get("model", self.model),
            provider=self.provider_name,
            token_usage=data.get("eval_count", 0),
            finish_reason="stop",
        )


class OpenRouterProvider(Provider):
    """OpenRouter - OpenAI-compatible chat completions over httpx."""

    _base_url = "https://openrouter.ai/api/v1"

    @property
    def provider_name(self) -> str:
        return "openrouter"

    def _complete(self, system_prompt: str, user_query: str, **kwargs) -> ProviderResponse:
        import httpx

        provider_config = self.config.get_provider_config(self.provider_name)
        base_url = (provider_config and provider_config.api_base) or self._base_url

        response = httpx.post(
            f"{base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.get_api_key()}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": _chat_messages(system_prompt, user_query),
                "max_tokens": self._option(kwargs, "max_tokens"),
                "temperature": self._option(kwargs, "temperature"),
            },
            timeout=self.config.merged.agent.timeout,
        )
        response.raise_for_status()
        data = response.json()

        choice = data["choices"][0]
        usage = data.get("usage", {})

        return ProviderResponse(
            content=choice["message"]["content"],
            model=data.get("model", self.model),
            provider=self.provider_name,
            token_usage=usage.get("total_tokens", 0),
            finish_reason=choice.get("finish_reason", "stop"),
        )


def _chat_messages(system_prompt: str, user_query: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_query},
    ]


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[Provider]] = {
        "anthropic": AnthropicProvider,
        "openai": OpenAIProvider,
        "ollama": OllamaProvider,
        "openrouter": OpenRouterProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[Provider]) -> None:
        """Register a new provider."""
        cls._providers[name] = provider_class

    @classmethod
    def create(cls, model: str, config: Config) -> Provider:
        """
        Create a provider instance for the given model.

        Args:
            model: Model identifier (e.g., "anthropic/claude-3-haiku-20240307"
                or "claude-3-haiku-20240307").
            config: ContextBridge configuration.

        Returns:
            Provider instance.

        Raises:
            ConfigError: If the provider is not recognized.
        """
        provider_name, _, model_name = model.partition("/")
        if not model_name or provider_name not in cls._providers:
            provider_name = cls._infer_provider(model)
            model_name = model

        if provider_name not in cls._providers:
            raise ConfigError(f"Unknown provider: {provider_name}")

        logger.debug("Using %s provider for model %s", provider_name, model_name)
        return cls._providers[provider_name](model=model_name, config=config)

    @classmethod
    def _infer_provider(cls, model: str) -> str:
        """Infer the provider from the model name."""
        model_lower = model.lower()

        if model_lower.startswith("claude"):
            return "anthropic"
        if model_lower.startswith(("gpt", "o1", "o3")):
            return "openai"
        if model_lower.startswith(("llama", "mistral", "phi", "qwen")):
            return "ollama"
        return "openrouter"

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
