from __future__ import annotations

from afu9.clients.github import GitHubAPIError, GitHubClient, parse_pr_url
from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.review_gate import fetch_review_gate
from afu9.lifecycle.state_machine import BlockerCode, IssueState, LoopStep
from afu9.lifecycle.steps.base import LoopStores, StepExecutor

MERGE_METHOD = "squash"


class MergeStep(StepExecutor):
    """S5: merge the linked PR once the review gate passes.

    An already merged PR is an idempotent success. Dry-run evaluates the gate
    but does not merge.
    """

    step = LoopStep.S5_MERGE
    label = "S5"
    expected_states = (IssueState.REVIEW_READY.value,)
    event_type = TimelineEventType.MERGED

    def __init__(self, github: GitHubClient, *, merge_method: str = MERGE_METHOD) -> None:
        self.github = github
        self.merge_method = merge_method

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        if not issue.pr_url or not issue.pr_url.strip():
            return self.blocked(
                issue, BlockerCode.NO_PR_LINKED, "Cannot execute S5: No PR linked to issue"
            )
        pr = parse_pr_url(issue.pr_url)
        if pr is None:
            return self.blocked(
                issue,
                BlockerCode.NO_PR_LINKED,
                f"Cannot execute S5: Invalid PR URL format: {issue.pr_url}",
            )

        try:
            pull = await self.github.get_pull_request(pr)
        except GitHubAPIError as exc:
            return self.blocked(issue, BlockerCode.PR_NOT_FOUND, f"Failed to fetch PR: {exc}")

        if pull.get("merged"):
            merge_sha = pull.get("merge_commit_sha")
            return await self.advance(
                stores,
                context,
                issue,
                "PR already merged (idempotent success)",
                state_after=IssueState.DONE,
                fields={"merge_sha": merge_sha},
                details={"idempotent": True, "mergeSha": merge_sha, "prUrl": issue.pr_url},
            )

        if pull.get("state") == "closed":
            return self.blocked(
                issue, BlockerCode.PR_CLOSED, "Cannot execute S5: PR is closed without merge"
            )

        try:
            gate = await fetch_review_gate(self.github, pr, pull["head"]["sha"])
        except GitHubAPIError as exc:
            return self.blocked(
                issue, BlockerCode.GITHUB_API_ERROR, f"Failed to evaluate review gate: {exc}"
            )
        if not gate.passed:
            return self.blocked(
                issue,
                gate.blocker_code or BlockerCode.GATE_DECISION_FAILED,
                gate.message or "S5 gate decision failed - merge blocked",
                details=gate.to_dict(),
            )

        if context.dry_run:
            return await self.advance(
                stores,
                context,
                issue,
                f"S5 dry-run: would merge PR #{pr.number}",
                state_after=IssueState.DONE,
                details={"dryRun": True, "gateDecision": gate.to_dict()},
            )

        try:
            merged = await self.github.merge_pull_request(pr, merge_method=self.merge_method)
        except GitHubAPIError as exc:
            conflict = exc.status_code == 409 or "conflict" in str(exc).lower()
            return self.blocked(
                issue,
                BlockerCode.MERGE_CONFLICT if conflict else BlockerCode.MERGE_FAILED,
                f"Merge failed: {exc}",
            )

        merge_sha = merged.get("sha")
        return await self.advance(
            stores,
            context,
            issue,
            f"S5 completed: PR merged successfully (SHA: {merge_sha})",
            state_after=IssueState.DONE,
            fields={"merge_sha": merge_sha},
            details={
                "mergeSha": merge_sha,
                "mergeMethod": self.merge_method,
                "prUrl": issue.pr_url,
                "gateDecision": gate.to_dict(),
            },
        )
