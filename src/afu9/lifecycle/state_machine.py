"""
Issue lifecycle state machine.

An issue moves forward through a fixed set of states, one loop step at a
time. ``resolve_next_step`` is a pure function of the issue's projected
state; it never reads the event log.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from afu9.domain.models import Issue
from afu9.verification.models import Verdict


class IssueState(StrEnum):
    CREATED = "CREATED"
    SPEC_READY = "SPEC_READY"
    IMPLEMENTING_PREP = "IMPLEMENTING_PREP"
    REVIEW_READY = "REVIEW_READY"
    DONE = "DONE"
    VERIFIED = "VERIFIED"
    HOLD = "HOLD"

    @property
    def is_terminal(self) -> bool:
        return self in (IssueState.VERIFIED, IssueState.HOLD)


class LoopStep(StrEnum):
    S1_PICK_ISSUE = "S1_PICK_ISSUE"
    S2_SPEC_READY = "S2_SPEC_READY"
    S3_IMPLEMENT_PREP = "S3_IMPLEMENT_PREP"
    S4_REVIEW = "S4_REVIEW"
    S5_MERGE = "S5_MERGE"
    S6_DEPLOYMENT_OBSERVE = "S6_DEPLOYMENT_OBSERVE"
    S7_VERIFY_GATE = "S7_VERIFY_GATE"


class BlockerCode(StrEnum):
    NO_GITHUB_LINK = "NO_GITHUB_LINK"
    NO_DRAFT = "NO_DRAFT"
    NO_COMMITTED_DRAFT = "NO_COMMITTED_DRAFT"
    DRAFT_INVALID = "DRAFT_INVALID"
    LOCKED = "LOCKED"
    UNKNOWN_STATE = "UNKNOWN_STATE"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    NO_REVIEW_APPROVAL = "NO_REVIEW_APPROVAL"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    CHECKS_PENDING = "CHECKS_PENDING"
    CHECKS_FAILED = "CHECKS_FAILED"
    NO_CHECKS_FOUND = "NO_CHECKS_FOUND"
    GATE_DECISION_FAILED = "GATE_DECISION_FAILED"
    NO_PR_LINKED = "NO_PR_LINKED"
    PR_NOT_FOUND = "PR_NOT_FOUND"
    PR_ALREADY_MERGED = "PR_ALREADY_MERGED"
    PR_CLOSED = "PR_CLOSED"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    MERGE_FAILED = "MERGE_FAILED"
    PR_NOT_MERGED = "PR_NOT_MERGED"
    GITHUB_API_ERROR = "GITHUB_API_ERROR"
    NO_EVIDENCE = "NO_EVIDENCE"
    INVALID_EVIDENCE = "INVALID_EVIDENCE"
    NO_DEPLOYMENT_OBSERVATIONS = "NO_DEPLOYMENT_OBSERVATIONS"


_COMMITTED_HANDOFF_STATES = frozenset({"SYNCED", "SYNCHRONIZED"})

_TRANSITIONS: dict[IssueState, frozenset[IssueState]] = {
    IssueState.CREATED: frozenset({IssueState.SPEC_READY, IssueState.HOLD}),
    IssueState.SPEC_READY: frozenset({IssueState.IMPLEMENTING_PREP, IssueState.HOLD}),
    IssueState.IMPLEMENTING_PREP: frozenset({IssueState.REVIEW_READY, IssueState.HOLD}),
    IssueState.REVIEW_READY: frozenset({IssueState.DONE, IssueState.HOLD}),
    IssueState.DONE: frozenset({IssueState.VERIFIED, IssueState.HOLD}),
    IssueState.VERIFIED: frozenset(),
    IssueState.HOLD: frozenset(),
}

_BLOCKER_DESCRIPTIONS: dict[BlockerCode, str] = {
    BlockerCode.NO_GITHUB_LINK: "Issue must be linked to a GitHub issue before proceeding",
    BlockerCode.NO_DRAFT: "A specification draft must be created before proceeding",
    BlockerCode.NO_COMMITTED_DRAFT: "Draft must be committed and versioned before proceeding",
    BlockerCode.DRAFT_INVALID: "Draft validation failed, must be corrected before proceeding",
    BlockerCode.LOCKED: "Issue is locked by another process",
    BlockerCode.UNKNOWN_STATE: "Issue is in an unknown or invalid state",
    BlockerCode.INVARIANT_VIOLATION: "State machine invariant violated",
    BlockerCode.NO_REVIEW_APPROVAL: "Pull request has no approving review",
    BlockerCode.CHANGES_REQUESTED: "A reviewer requested changes on the pull request",
    BlockerCode.CHECKS_PENDING: "Pull request checks are still running",
    BlockerCode.CHECKS_FAILED: "One or more pull request checks failed",
    BlockerCode.NO_CHECKS_FOUND: "No checks were reported for the pull request head",
    BlockerCode.GATE_DECISION_FAILED: "Review gate decision failed",
    BlockerCode.NO_PR_LINKED: "Issue has no linked pull request",
    BlockerCode.PR_NOT_FOUND: "Linked pull request could not be found",
    BlockerCode.PR_ALREADY_MERGED: "Pull request is already merged",
    BlockerCode.PR_CLOSED: "Pull request was closed without merge",
    BlockerCode.MERGE_CONFLICT: "Pull request has merge conflicts",
    BlockerCode.MERGE_FAILED: "Merging the pull request failed",
    BlockerCode.PR_NOT_MERGED: "Pull request is not merged yet",
    BlockerCode.GITHUB_API_ERROR: "GitHub API call failed",
    BlockerCode.NO_EVIDENCE: "No verification evidence is available",
    BlockerCode.INVALID_EVIDENCE: "Verification evidence is malformed",
    BlockerCode.NO_DEPLOYMENT_OBSERVATIONS: "No deployments have been observed for the merge",
}


@dataclass(frozen=True)
class DraftData:
    id: str
    last_validation_status: str | None = None


@dataclass(frozen=True)
class StepResolution:
    step: LoopStep | None
    blocked: bool = False
    blocker_code: BlockerCode | None = None
    blocker_message: str | None = None

    @classmethod
    def blocked_by(cls, code: BlockerCode, message: str) -> StepResolution:
        return cls(step=None, blocked=True, blocker_code=code, blocker_message=message)


def parse_issue_state(value: str | None) -> IssueState | None:
    try:
        return IssueState(value)
    except ValueError:
        return None


def draft_from_issue(issue: Issue) -> DraftData | None:
    if not issue.current_draft_id:
        return None
    return DraftData(
        id=issue.current_draft_id, last_validation_status=issue.draft_validation_status
    )


def check_draft_gate(issue: Issue, draft: DraftData | None) -> StepResolution:
    """S2 precondition: the draft is committed and has not failed validation."""
    committed = issue.handoff_state in _COMMITTED_HANDOFF_STATES or (
        draft is not None and draft.last_validation_status == "valid"
    )
    if not committed:
        return StepResolution.blocked_by(
            BlockerCode.NO_COMMITTED_DRAFT,
            "S2 (Spec Ready) requires draft to be committed and validated",
        )
    if draft is not None and draft.last_validation_status == "invalid":
        return StepResolution.blocked_by(
            BlockerCode.DRAFT_INVALID, "Draft validation failed, cannot proceed to S2"
        )
    return StepResolution(step=LoopStep.S2_SPEC_READY)


def resolve_next_step(
    issue: Issue,
    draft: DraftData | None = None,
    *,
    has_deployment_observations: bool = False,
) -> StepResolution:
    """Decide which loop step runs next for ``issue``, or why none can."""
    if not issue.status:
        return StepResolution.blocked_by(
            BlockerCode.UNKNOWN_STATE, "Issue status is missing or invalid"
        )

    state = parse_issue_state(issue.status)
    if state is None:
        if issue.status in ("DRAFT_READY", "VERSION_COMMITTED"):
            if not issue.current_draft_id and draft is None:
                return StepResolution.blocked_by(
                    BlockerCode.NO_DRAFT, "S2 (Spec Ready) requires a draft to be created"
                )
            return check_draft_gate(issue, draft)
        return StepResolution.blocked_by(
            BlockerCode.UNKNOWN_STATE, f"Unknown issue status: {issue.status}"
        )

    if state.is_terminal:
        return StepResolution(step=None, blocker_message=f"Issue is in terminal state: {state}")

    if state is IssueState.CREATED:
        if not issue.github_url or not issue.github_url.strip():
            return StepResolution.blocked_by(
                BlockerCode.NO_GITHUB_LINK, "S1 (Pick Issue) requires GitHub issue link"
            )
        if issue.current_draft_id or draft is not None:
            return check_draft_gate(issue, draft)
        return StepResolution(step=LoopStep.S1_PICK_ISSUE)

    if state is IssueState.SPEC_READY:
        return StepResolution(step=LoopStep.S3_IMPLEMENT_PREP)
    if state is IssueState.IMPLEMENTING_PREP:
        return StepResolution(step=LoopStep.S4_REVIEW)
    if state is IssueState.REVIEW_READY:
        return StepResolution(step=LoopStep.S5_MERGE)

    # DONE: observe deployments first, then gate on the verdict.
    if has_deployment_observations:
        return StepResolution(step=LoopStep.S7_VERIFY_GATE)
    return StepResolution(step=LoopStep.S6_DEPLOYMENT_OBSERVE)


def is_valid_transition(from_state: IssueState, to_state: IssueState) -> bool:
    if from_state == to_state:
        return False
    return to_state in _TRANSITIONS.get(from_state, frozenset())


def get_blocker_description(code: BlockerCode) -> str:
    return _BLOCKER_DESCRIPTIONS.get(code, "Unknown blocker")


def verdict_to_issue_state(verdict: Verdict) -> IssueState:
    return IssueState.VERIFIED if verdict == Verdict.GREEN else IssueState.HOLD
