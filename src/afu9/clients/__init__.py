"""HTTP clients for external collaborators."""

from afu9.clients.base import (
    BaseHTTPClient,
    HTTPClientError,
    PermanentHTTPError,
    RetryableHTTPError,
)
from afu9.clients.github import GitHubAPIError, GitHubClient, PullRequestRef, parse_pr_url

__all__ = [
    "BaseHTTPClient",
    "GitHubAPIError",
    "GitHubClient",
    "HTTPClientError",
    "PermanentHTTPError",
    "PullRequestRef",
    "RetryableHTTPError",
    "parse_pr_url",
]
