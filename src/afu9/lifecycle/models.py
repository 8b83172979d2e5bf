from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping

from afu9.lifecycle.state_machine import BlockerCode


class ExecutionMode(StrEnum):
    EXECUTE = "execute"
    DRY_RUN = "dryRun"


@dataclass(frozen=True)
class StepExecutionContext:
    issue_id: str
    run_id: str
    request_id: str
    actor: str
    mode: ExecutionMode = ExecutionMode.EXECUTE

    @property
    def dry_run(self) -> bool:
        return self.mode is ExecutionMode.DRY_RUN


@dataclass(frozen=True)
class StepExecutionResult:
    """Uniform outcome of a lifecycle step.

    ``fields_changed`` is always present; an empty list means the step ran and
    changed nothing.
    """

    success: bool
    blocked: bool
    state_before: str
    state_after: str
    message: str
    fields_changed: list[str] = field(default_factory=list)
    blocker_code: BlockerCode | None = None
    blocker_message: str | None = None
    duration_ms: int = 0
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def block(
        cls,
        state: str,
        code: BlockerCode,
        message: str,
        *,
        duration_ms: int = 0,
    ) -> StepExecutionResult:
        return cls(
            success=False,
            blocked=True,
            state_before=state,
            state_after=state,
            message=message,
            fields_changed=[],
            blocker_code=code,
            blocker_message=message,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "blocked": self.blocked,
            "stateBefore": self.state_before,
            "stateAfter": self.state_after,
            "fieldsChanged": list(self.fields_changed),
            "message": self.message,
            "durationMs": self.duration_ms,
        }
        if self.blocker_code is not None:
            data["blockerCode"] = self.blocker_code.value
            data["blockerMessage"] = self.blocker_message
        if self.details:
            data["details"] = dict(self.details)
        return data


class TimelineEventType(StrEnum):
    ISSUE_PICKED = "issue_picked"
    SPEC_READY = "spec_ready"
    IMPLEMENT_PREP_READY = "implement_prep_ready"
    REVIEW_READY = "review_ready"
    MERGED = "merged"
    DEPLOYMENT_OBSERVED = "deployment_observed"
    VERIFICATION_COMPLETED = "verification_completed"
    STEP_BLOCKED = "loop_step_blocked"
    STEP_FAILED = "loop_step_failed"
