from __future__ import annotations

from afu9.clients.github import GitHubAPIError, GitHubClient, parse_pr_url
from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.review_gate import fetch_review_gate
from afu9.lifecycle.state_machine import BlockerCode, IssueState, LoopStep
from afu9.lifecycle.steps.base import LoopStores, StepExecutor


class ReviewGateStep(StepExecutor):
    """S4: the linked PR must be approved with green checks before REVIEW_READY.

    Dry-run validates the local preconditions only and does not call GitHub.
    """

    step = LoopStep.S4_REVIEW
    label = "S4"
    expected_states = (IssueState.IMPLEMENTING_PREP.value,)
    event_type = TimelineEventType.REVIEW_READY

    def __init__(self, github: GitHubClient) -> None:
        self.github = github

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        if not issue.github_url:
            return self.blocked(issue, BlockerCode.NO_GITHUB_LINK, "S4 requires GitHub issue link")
        if not issue.pr_url or not issue.pr_url.strip():
            return self.blocked(
                issue, BlockerCode.NO_PR_LINKED, "S4 requires PR to be linked to issue"
            )
        pr = parse_pr_url(issue.pr_url)
        if pr is None:
            return self.blocked(
                issue,
                BlockerCode.NO_PR_LINKED,
                f"S4 requires valid PR URL format, got: {issue.pr_url}",
            )

        if context.dry_run:
            return await self.advance(
                stores, context, issue, "S4 validation passed (dry-run)", details={"dryRun": True}
            )

        try:
            pull = await self.github.get_pull_request(pr)
            gate = await fetch_review_gate(self.github, pr, pull["head"]["sha"])
        except GitHubAPIError as exc:
            return self.blocked(
                issue, BlockerCode.GITHUB_API_ERROR, f"Failed to evaluate review gate: {exc}"
            )

        if gate.blocker_code is not None:
            return self.blocked(issue, gate.blocker_code, gate.message, details=gate.to_dict())

        return await self.advance(
            stores,
            context,
            issue,
            f"S4 completed: Gate decision PASS (review: {gate.review_status}, "
            f"checks: {gate.checks_status}), transitioned to REVIEW_READY",
            state_after=IssueState.REVIEW_READY,
            details=gate.to_dict(),
        )
