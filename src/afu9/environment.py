"""
Deployment environment normalization.

Every environment token that crosses a component boundary is canonicalized
before it is compared: ``prod`` and ``production`` are the same environment,
``stage`` and ``staging`` are the same environment. Unknown tokens raise
instead of passing through.
"""

from __future__ import annotations

from enum import StrEnum

from afu9.core.errors import InvalidEnvironmentError


class DeployEnvironment(StrEnum):
    production = "production"
    staging = "staging"
    development = "development"


_ALIASES: dict[str, DeployEnvironment] = {
    "prod": DeployEnvironment.production,
    "production": DeployEnvironment.production,
    "stage": DeployEnvironment.staging,
    "staging": DeployEnvironment.staging,
    "dev": DeployEnvironment.development,
    "development": DeployEnvironment.development,
}


def normalize_environment(value: object) -> DeployEnvironment:
    """Return the canonical environment for ``value``.

    Raises:
        InvalidEnvironmentError: when ``value`` is empty, not a string or unknown.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidEnvironmentError(
            f"Environment must be a non-empty string, got {value!r}",
            details={"env": value},
        )
    token = value.strip().lower()
    try:
        return _ALIASES[token]
    except KeyError:
        raise InvalidEnvironmentError(
            f"Unknown environment '{value}' (expected one of: {', '.join(sorted(_ALIASES))})",
            details={"env": value},
        ) from None


def try_normalize_environment(value: object) -> DeployEnvironment | None:
    """Like :func:`normalize_environment` but returns None for missing or unknown tokens."""
    if value is None:
        return None
    try:
        return normalize_environment(value)
    except InvalidEnvironmentError:
        return None


def is_valid_environment(value: object) -> bool:
    return try_normalize_environment(value) is not None
