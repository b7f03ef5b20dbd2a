"""Configuration module."""

from xsettle.config.config import Settings, ENV_KEYS, env_bool
from xsettle.config.config_validator import (
    ConfigValidator,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
    validate_and_log,
)

__all__ = [
    "Settings",
    "ENV_KEYS",
    "env_bool",
    "ConfigValidator",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    "validate_and_log",
]
