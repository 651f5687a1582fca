"""
ContextBridge providers module.

This module provides abstractions for the reasoning backends.
"""

from contextbridge.providers.base import BackendError, Provider, ProviderFactory, ProviderResponse

__all__ = ["BackendError", "Provider", "ProviderFactory", "ProviderResponse"]
