from __future__ import annotations

from afu9.core.clock import utcnow
from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.state_machine import BlockerCode, IssueState, LoopStep
from afu9.lifecycle.steps.base import LoopStores, StepExecutor


class PickIssueStep(StepExecutor):
    """S1: claim a CREATED issue for the acting user. Status does not change."""

    step = LoopStep.S1_PICK_ISSUE
    label = "S1"
    expected_states = (IssueState.CREATED.value,)
    event_type = TimelineEventType.ISSUE_PICKED

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        if not issue.github_url or not issue.github_url.strip():
            return self.blocked(
                issue, BlockerCode.NO_GITHUB_LINK, "Cannot execute S1: Issue has no GitHub link"
            )

        if issue.assignee == context.actor and issue.picked_at is not None:
            return await self.advance(
                stores, context, issue, f"S1 complete: issue already picked by {context.actor}"
            )

        return await self.advance(
            stores,
            context,
            issue,
            f"S1 complete: issue picked by {context.actor}",
            fields={"assignee": context.actor, "picked_at": utcnow()},
        )
