"""
Review and checks gate for a pull request.

Both halves must pass. Reviews are reduced to each reviewer's latest
decision; check runs must all be completed with a passing conclusion.
An empty check list fails closed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Iterable, Mapping

from afu9.clients.github import GitHubClient, PullRequestRef
from afu9.lifecycle.state_machine import BlockerCode

PASSING_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})

_DECISIVE_REVIEW_STATES = frozenset({"APPROVED", "CHANGES_REQUESTED", "DISMISSED"})


class ReviewStatus(StrEnum):
    APPROVED = "APPROVED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    NOT_APPROVED = "NOT_APPROVED"


class ChecksStatus(StrEnum):
    PASSED = "PASSED"
    PENDING = "PENDING"
    FAILED = "FAILED"
    MISSING = "MISSING"


@dataclass(frozen=True)
class GateDecision:
    passed: bool
    review_status: ReviewStatus
    checks_status: ChecksStatus
    blocker_code: BlockerCode | None = None
    message: str = ""
    failed_checks: tuple[str, ...] = ()
    pending_checks: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": "PASS" if self.passed else "FAIL",
            "reviewStatus": self.review_status.value,
            "checksStatus": self.checks_status.value,
            "blockReason": self.blocker_code.value if self.blocker_code else None,
            "message": self.message,
            "failedChecks": list(self.failed_checks),
            "pendingChecks": list(self.pending_checks),
        }


def latest_reviews_by_user(reviews: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    """Map reviewer login to the state of their most recent decisive review.

    GitHub returns reviews oldest first; COMMENTED and PENDING reviews never
    override an earlier decision.
    """
    latest: dict[str, str] = {}
    for review in reviews:
        state = str(review.get("state", "")).upper()
        if state not in _DECISIVE_REVIEW_STATES:
            continue
        login = (review.get("user") or {}).get("login") or "unknown"
        latest[login] = state
    return latest


def review_status(reviews: Iterable[Mapping[str, Any]]) -> ReviewStatus:
    states = set(latest_reviews_by_user(reviews).values())
    if "CHANGES_REQUESTED" in states:
        return ReviewStatus.CHANGES_REQUESTED
    if "APPROVED" in states:
        return ReviewStatus.APPROVED
    return ReviewStatus.NOT_APPROVED


def evaluate_review_gate(
    reviews: Iterable[Mapping[str, Any]],
    check_runs: Iterable[Mapping[str, Any]],
) -> GateDecision:
    review = review_status(reviews)
    runs = list(check_runs)

    pending = tuple(
        str(run.get("name", "unnamed")) for run in runs if run.get("status") != "completed"
    )
    failed = tuple(
        str(run.get("name", "unnamed"))
        for run in runs
        if run.get("status") == "completed" and run.get("conclusion") not in PASSING_CONCLUSIONS
    )
    if not runs:
        checks = ChecksStatus.MISSING
    elif pending:
        checks = ChecksStatus.PENDING
    elif failed:
        checks = ChecksStatus.FAILED
    else:
        checks = ChecksStatus.PASSED

    def _fail(code: BlockerCode, message: str) -> GateDecision:
        return GateDecision(
            passed=False,
            review_status=review,
            checks_status=checks,
            blocker_code=code,
            message=message,
            failed_checks=failed,
            pending_checks=pending,
        )

    if review is ReviewStatus.CHANGES_REQUESTED:
        return _fail(BlockerCode.CHANGES_REQUESTED, "PR review requested changes")
    if review is ReviewStatus.NOT_APPROVED:
        return _fail(BlockerCode.NO_REVIEW_APPROVAL, "PR review not approved")
    if checks is ChecksStatus.MISSING:
        return _fail(BlockerCode.NO_CHECKS_FOUND, "No checks found for PR head (fail-closed)")
    if checks is ChecksStatus.PENDING:
        return _fail(BlockerCode.CHECKS_PENDING, f"Checks still running: {', '.join(pending)}")
    if checks is ChecksStatus.FAILED:
        return _fail(BlockerCode.CHECKS_FAILED, f"Checks failed: {', '.join(failed)}")

    return GateDecision(
        passed=True,
        review_status=review,
        checks_status=checks,
        message="Review approved and all checks passed",
    )


async def fetch_review_gate(
    github: GitHubClient, pr: PullRequestRef, head_sha: str
) -> GateDecision:
    """Load reviews and check runs for ``pr`` and evaluate the gate.

    Raises:
        GitHubAPIError: when either lookup fails.
    """
    reviews = await github.list_reviews(pr)
    check_runs = await github.list_check_runs(pr.owner, pr.repo, head_sha)
    return evaluate_review_gate(reviews, check_runs)
