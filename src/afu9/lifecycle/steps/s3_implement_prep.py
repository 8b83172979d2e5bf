from __future__ import annotations

from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.state_machine import BlockerCode, IssueState, LoopStep
from afu9.lifecycle.steps.base import LoopStores, StepExecutor


class ImplementPrepStep(StepExecutor):
    """S3: SPEC_READY to IMPLEMENTING_PREP."""

    step = LoopStep.S3_IMPLEMENT_PREP
    label = "S3"
    expected_states = (IssueState.SPEC_READY.value,)
    event_type = TimelineEventType.IMPLEMENT_PREP_READY

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        if not issue.github_url or not issue.github_url.strip():
            return self.blocked(
                issue, BlockerCode.NO_GITHUB_LINK, "Cannot execute S3: Issue has no GitHub link"
            )
        return await self.advance(
            stores,
            context,
            issue,
            "S3 complete: implementation prep started",
            state_after=IssueState.IMPLEMENTING_PREP,
        )
