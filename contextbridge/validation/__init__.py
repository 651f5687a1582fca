"""
ContextBridge validation module.

This module provides configuration validation and tool argument checks.
"""

from contextbridge.validation.arguments import Invalid, Valid, validate_arguments
from contextbridge.validation.config import Config, ConfigError

__all__ = ["Config", "ConfigError", "Invalid", "Valid", "validate_arguments"]
