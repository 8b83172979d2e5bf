from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from circuitbreaker import CircuitBreakerError

from afu9.clients.base import BaseHTTPClient, HTTPClientError
from afu9.core.errors import ProviderError

_PR_URL_PATTERN = re.compile(r"github\.com/([^/]+)/([^/]+)/pull/(\d+)")


class GitHubAPIError(ProviderError):
    """A GitHub API call failed after retries."""

    code = "GITHUB_API_ERROR"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def api_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}/pulls/{self.number}"


def parse_pr_url(pr_url: str | None) -> PullRequestRef | None:
    """Extract owner/repo/number from a GitHub pull request URL."""
    if not pr_url:
        return None
    match = _PR_URL_PATTERN.search(pr_url)
    if not match:
        return None
    return PullRequestRef(owner=match.group(1), repo=match.group(2), number=int(match.group(3)))


class GitHubClient(BaseHTTPClient):
    """GitHub REST client for the PR, review, check-run and deployment calls of the loop."""

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
        )
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = "2022-11-28"
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            return await self._request(method, path, **kwargs)
        except HTTPClientError as exc:
            raise GitHubAPIError(str(exc), status_code=exc.status_code) from exc
        except CircuitBreakerError as exc:
            raise GitHubAPIError(f"GitHub circuit open: {exc}") from exc

    async def get_pull_request(self, pr: PullRequestRef) -> dict[str, Any]:
        return await self._call("GET", pr.api_path)

    async def merge_pull_request(
        self,
        pr: PullRequestRef,
        *,
        merge_method: str = "squash",
        sha: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"merge_method": merge_method}
        if sha:
            body["sha"] = sha
        return await self._call("PUT", f"{pr.api_path}/merge", json=body)

    async def list_reviews(self, pr: PullRequestRef) -> list[dict[str, Any]]:
        return await self._call("GET", f"{pr.api_path}/reviews", params={"per_page": 100})

    async def list_check_runs(self, owner: str, repo: str, ref: str) -> list[dict[str, Any]]:
        payload = await self._call(
            "GET", f"/repos/{owner}/{repo}/commits/{ref}/check-runs", params={"per_page": 100}
        )
        return list(payload.get("check_runs", []))

    async def list_deployments(self, owner: str, repo: str, sha: str) -> list[dict[str, Any]]:
        return await self._call("GET", f"/repos/{owner}/{repo}/deployments", params={"sha": sha})

    async def list_deployment_statuses(
        self, owner: str, repo: str, deployment_id: int | str
    ) -> list[dict[str, Any]]:
        return await self._call(
            "GET", f"/repos/{owner}/{repo}/deployments/{deployment_id}/statuses"
        )
