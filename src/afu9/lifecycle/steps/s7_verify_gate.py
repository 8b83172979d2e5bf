from __future__ import annotations

from afu9.domain.models import Issue
from afu9.lifecycle.models import StepExecutionContext, StepExecutionResult, TimelineEventType
from afu9.lifecycle.state_machine import (
    BlockerCode,
    IssueState,
    LoopStep,
    verdict_to_issue_state,
)
from afu9.lifecycle.steps.base import LoopStores, StepExecutor
from afu9.verification.models import VerificationEvidence
from afu9.verification.verdict import evaluate_verdict


class VerifyGateStep(StepExecutor):
    """S7: evaluate the recorded deployments; GREEN verifies, RED holds."""

    step = LoopStep.S7_VERIFY_GATE
    label = "S7"
    expected_states = (IssueState.DONE.value,)
    event_type = TimelineEventType.VERIFICATION_COMPLETED

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        observations = await stores.observations.list_for_issue(issue.id)
        if not observations:
            return self.blocked(
                issue,
                BlockerCode.NO_DEPLOYMENT_OBSERVATIONS,
                "Cannot execute S7: No deployment observations recorded",
            )

        verdict = evaluate_verdict(
            VerificationEvidence(deployment_observations=tuple(observations))
        )
        target = verdict_to_issue_state(verdict.verdict)
        return await self.advance(
            stores,
            context,
            issue,
            f"S7 completed: verdict {verdict.verdict}, issue moved to {target}",
            state_after=target,
            details=verdict.to_dict(),
        )
