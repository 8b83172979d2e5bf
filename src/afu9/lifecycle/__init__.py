"""Issue lifecycle: state machine, step executors and the loop executor."""

from afu9.lifecycle.executor import LoopExecutor, LoopRunOutcome
from afu9.lifecycle.models import (
    ExecutionMode,
    StepExecutionContext,
    StepExecutionResult,
    TimelineEventType,
)
from afu9.lifecycle.state_machine import (
    BlockerCode,
    DraftData,
    IssueState,
    LoopStep,
    StepResolution,
    get_blocker_description,
    is_valid_transition,
    resolve_next_step,
    verdict_to_issue_state,
)

__all__ = [
    "BlockerCode",
    "DraftData",
    "ExecutionMode",
    "IssueState",
    "LoopExecutor",
    "LoopRunOutcome",
    "LoopStep",
    "StepExecutionContext",
    "StepExecutionResult",
    "StepResolution",
    "TimelineEventType",
    "get_blocker_description",
    "is_valid_transition",
    "resolve_next_step",
    "verdict_to_issue_state",
]
