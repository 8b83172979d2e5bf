"""
Shared step executor plumbing.

``StepExecutor.execute`` loads the issue, checks the expected state, runs the
step body and records exactly one timeline event for the invocation, whether
the step succeeded, blocked or raised.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, ClassVar, Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.domain.models import Issue, TimelineEvent
from afu9.lifecycle.models import (
    StepExecutionContext,
    StepExecutionResult,
    TimelineEventType,
)
from afu9.lifecycle.repository import (
    DeploymentObservationRepository,
    IssueRepository,
    TimelineRepository,
)
from afu9.lifecycle.state_machine import (
    BlockerCode,
    IssueState,
    LoopStep,
    is_valid_transition,
    parse_issue_state,
)

logger = structlog.get_logger()


@dataclass
class LoopStores:
    issues: IssueRepository
    timeline: TimelineRepository
    observations: DeploymentObservationRepository

    @classmethod
    def for_session(cls, session: AsyncSession) -> LoopStores:
        return cls(
            issues=IssueRepository(session),
            timeline=TimelineRepository(session),
            observations=DeploymentObservationRepository(session),
        )


class StepExecutor:
    """Base class for S1..S7.

    Subclasses set ``step``, ``label``, ``expected_states`` and
    ``event_type`` and implement ``run``. ``run`` only reads through
    ``stores`` and writes issue fields when not in dry-run mode.
    """

    step: ClassVar[LoopStep]
    label: ClassVar[str]
    expected_states: ClassVar[tuple[str, ...]]
    event_type: ClassVar[TimelineEventType]

    async def execute(
        self, stores: LoopStores, context: StepExecutionContext
    ) -> StepExecutionResult:
        started = time.monotonic()
        issue = await stores.issues.get(context.issue_id)
        if issue is None:
            raise LookupError(f"Issue not found: {context.issue_id}")

        log = logger.bind(
            step=self.step.value,
            issue_id=issue.id,
            run_id=context.run_id,
            request_id=context.request_id,
            mode=context.mode.value,
        )
        log.info("loop_step_started", state=issue.status)

        try:
            if issue.status not in self.expected_states:
                expected = " or ".join(self.expected_states)
                result = self.blocked(
                    issue,
                    BlockerCode.INVARIANT_VIOLATION,
                    f"Cannot execute {self.label}: Issue is in state {issue.status}, "
                    f"expected {expected}",
                )
            else:
                result = await self.run(stores, context, issue)
        except Exception as exc:
            await self._record(stores, context, issue, None, error=str(exc))
            log.error("loop_step_failed", exc_info=True)
            raise

        result = replace(result, duration_ms=int((time.monotonic() - started) * 1000))
        await self._record(stores, context, issue, result)

        if result.blocked:
            log.warning(
                "loop_step_blocked",
                blocker_code=result.blocker_code.value if result.blocker_code else None,
                message=result.message,
            )
        else:
            log.info(
                "loop_step_completed",
                state_before=result.state_before,
                state_after=result.state_after,
                fields_changed=result.fields_changed,
                duration_ms=result.duration_ms,
            )
        return result

    async def run(
        self, stores: LoopStores, context: StepExecutionContext, issue: Issue
    ) -> StepExecutionResult:
        raise NotImplementedError

    def blocked(
        self,
        issue: Issue,
        code: BlockerCode,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> StepExecutionResult:
        return replace(
            StepExecutionResult.block(issue.status, code, message), details=dict(details or {})
        )

    async def advance(
        self,
        stores: LoopStores,
        context: StepExecutionContext,
        issue: Issue,
        message: str,
        *,
        state_after: IssueState | None = None,
        fields: Mapping[str, Any] | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> StepExecutionResult:
        """Apply the step's owned field updates and build the success result.

        In dry-run mode nothing is written and the result describes the
        fields that would change.
        """
        updates = dict(fields or {})
        if state_after is not None:
            before = parse_issue_state(issue.status)
            if before is not None and not is_valid_transition(before, state_after):
                return self.blocked(
                    issue,
                    BlockerCode.INVARIANT_VIOLATION,
                    f"Invalid transition {issue.status} -> {state_after}",
                )
            updates["status"] = state_after.value

        if context.dry_run:
            changed = [name for name, value in updates.items() if getattr(issue, name) != value]
        elif updates:
            changed = await stores.issues.update_fields(issue.id, **updates)
        else:
            changed = []

        return StepExecutionResult(
            success=True,
            blocked=False,
            state_before=issue.status,
            state_after=state_after.value if state_after is not None else issue.status,
            message=message,
            fields_changed=changed,
            details=dict(details or {}),
        )

    async def _record(
        self,
        stores: LoopStores,
        context: StepExecutionContext,
        issue: Issue,
        result: StepExecutionResult | None,
        *,
        error: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "requestId": context.request_id,
            "actor": context.actor,
            "mode": context.mode.value,
        }
        if result is None:
            event_type = TimelineEventType.STEP_FAILED
            payload["error"] = error
            state_after = issue.status
        else:
            event_type = TimelineEventType.STEP_BLOCKED if result.blocked else self.event_type
            payload.update(result.to_dict())
            state_after = result.state_after

        await stores.timeline.record(
            TimelineEvent(
                issue_id=issue.id,
                run_id=context.run_id,
                event_type=event_type.value,
                step=self.step.value,
                state_before=issue.status,
                state_after=state_after,
                blocked=bool(result and result.blocked),
                blocker_code=(
                    result.blocker_code.value if result and result.blocker_code else None
                ),
                payload=payload,
            )
        )
