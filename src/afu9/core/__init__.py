"""Core utilities shared across the control plane."""

from afu9.core.errors import (
    Afu9Error,
    ConfigurationError,
    EvidenceError,
    ExitCode,
    InvalidEnvironmentError,
    ProviderError,
    ValidationError,
    main_with_error_handling,
)

__all__ = [
    "Afu9Error",
    "ConfigurationError",
    "EvidenceError",
    "ExitCode",
    "InvalidEnvironmentError",
    "ProviderError",
    "ValidationError",
    "main_with_error_handling",
]
