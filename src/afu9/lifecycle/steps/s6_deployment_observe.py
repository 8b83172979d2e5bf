from __future__ import annotations

from typing import Any

from afu9.clients.github import GitHubAPIError, GitHubClient, parse_pr_url
from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.state_machine import BlockerCode, IssueState, LoopStep
from afu9.lifecycle.steps.base import LoopStores, StepExecutor
from afu9.verification.models import DeploymentObservation

PENDING_DEPLOYMENT_STATUS = "pending"


def _latest_state(statuses: list[dict[str, Any]]) -> str:
    # GitHub lists deployment statuses newest first.
    if not statuses:
        return PENDING_DEPLOYMENT_STATUS
    return str(statuses[0].get("state") or PENDING_DEPLOYMENT_STATUS)


class DeploymentObserveStep(StepExecutor):
    """S6: record GitHub deployments of the merge commit. Never changes status."""

    step = LoopStep.S6_DEPLOYMENT_OBSERVE
    label = "S6"
    expected_states = (IssueState.DONE.value,)
    event_type = TimelineEventType.DEPLOYMENT_OBSERVED

    def __init__(self, github: GitHubClient) -> None:
        self.github = github

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        if not issue.pr_url or not issue.pr_url.strip():
            return self.blocked(
                issue, BlockerCode.NO_PR_LINKED, "Cannot execute S6: Issue has no PR URL"
            )
        pr = parse_pr_url(issue.pr_url)
        if pr is None:
            return self.blocked(
                issue,
                BlockerCode.NO_PR_LINKED,
                f"Cannot execute S6: Invalid PR URL format: {issue.pr_url}",
            )

        try:
            pull = await self.github.get_pull_request(pr)
        except GitHubAPIError as exc:
            return self.blocked(issue, BlockerCode.GITHUB_API_ERROR, f"Failed to fetch PR: {exc}")

        merge_sha = pull.get("merge_commit_sha") or issue.merge_sha
        if not pull.get("merged") or not merge_sha:
            return self.blocked(issue, BlockerCode.PR_NOT_MERGED, "PR is not merged yet")

        if context.dry_run:
            return await self.advance(
                stores,
                context,
                issue,
                f"S6 dry-run: would observe deployments for {merge_sha}",
                details={"dryRun": True, "sha": merge_sha},
            )

        try:
            deployments = await self.github.list_deployments(pr.owner, pr.repo, merge_sha)
            observations = []
            for deployment in deployments:
                statuses = await self.github.list_deployment_statuses(
                    pr.owner, pr.repo, deployment["id"]
                )
                observations.append(
                    DeploymentObservation(
                        deployment_id=deployment["id"],
                        environment=str(deployment.get("environment") or "unknown"),
                        sha=str(deployment.get("sha") or ""),
                        status=_latest_state(statuses),
                        is_authentic=deployment.get("sha") == merge_sha,
                    )
                )
        except GitHubAPIError as exc:
            return self.blocked(
                issue, BlockerCode.GITHUB_API_ERROR, f"Failed to list deployments: {exc}"
            )

        recorded = 0
        for observation in observations:
            if await stores.observations.record(issue.id, observation):
                recorded += 1

        message = (
            f"Observed {len(observations)} deployment(s)"
            if observations
            else "S6 complete: No deployments found"
        )
        return await self.advance(
            stores,
            context,
            issue,
            message,
            details={
                "sha": merge_sha,
                "deploymentsFound": len(observations),
                "newObservations": recorded,
            },
        )
