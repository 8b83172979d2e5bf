from __future__ import annotations

from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.state_machine import (
    BlockerCode,
    IssueState,
    LoopStep,
    check_draft_gate,
    draft_from_issue,
)
from afu9.lifecycle.steps.base import LoopStores, StepExecutor


class SpecReadyStep(StepExecutor):
    """S2: a committed, valid draft moves the issue to SPEC_READY."""

    step = LoopStep.S2_SPEC_READY
    label = "S2"
    expected_states = (IssueState.CREATED.value, "DRAFT_READY", "VERSION_COMMITTED")
    event_type = TimelineEventType.SPEC_READY

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        if not issue.github_url or not issue.github_url.strip():
            return self.blocked(
                issue, BlockerCode.NO_GITHUB_LINK, "Cannot execute S2: Issue has no GitHub link"
            )

        draft = draft_from_issue(issue)
        if draft is None:
            return self.blocked(
                issue, BlockerCode.NO_DRAFT, "S2 (Spec Ready) requires a draft to be created"
            )

        gate = check_draft_gate(issue, draft)
        if gate.blocker_code is not None:
            return self.blocked(issue, gate.blocker_code, gate.blocker_message or "")

        return await self.advance(
            stores,
            context,
            issue,
            "S2 complete: specification ready",
            state_after=IssueState.SPEC_READY,
            details={"draftId": draft.id},
        )
