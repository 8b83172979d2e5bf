"""
Unified error handling for the AFU-9 control plane.

Decision paths (policy evaluation, playbook steps, lifecycle steps) report
failures as data carrying a stable machine-readable code. The exceptions
below are raised at boundaries: parsing untrusted input, talking to external
adapters, and CLI commands.

Exit Codes:
- 0: Success
- 1: Warning (advisory, operation succeeded with warnings)
- 2: Blocked (operation blocked or denied, e.g. RED verdict, policy denial)
- 10: Configuration error
- 11: Provider error (external service failure)
- 12: Validation error
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    WARNING = 1
    BLOCKED = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


class Afu9Error(Exception):
    """Base exception for AFU-9 errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    code: str = "INTERNAL_ERROR"
    show_traceback: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code


class ConfigurationError(Afu9Error):
    """Raised for missing or malformed configuration (lawbook, settings)."""

    exit_code = ExitCode.CONFIG_ERROR
    code = "CONFIGURATION_ERROR"


class ProviderError(Afu9Error):
    """Raised when an external provider/service fails."""

    exit_code = ExitCode.PROVIDER_ERROR
    code = "PROVIDER_ERROR"


class ValidationError(Afu9Error):
    """Raised for validation failures of untrusted input."""

    exit_code = ExitCode.VALIDATION_ERROR
    code = "VALIDATION_ERROR"


class EvidenceError(ValidationError):
    """Evidence is absent or malformed. Never retried."""

    code = "INVALID_EVIDENCE"


class InvalidEnvironmentError(ValidationError):
    """An environment token could not be normalized."""

    code = "INVALID_ENVIRONMENT"


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Exit codes:
        - Afu9Error subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except Afu9Error as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        code=e.code,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator
