"""Tests for the PR review and checks gate."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from afu9.clients.github import GitHubClient, PullRequestRef
from afu9.lifecycle.review_gate import (
    ChecksStatus,
    ReviewStatus,
    evaluate_review_gate,
    fetch_review_gate,
    latest_reviews_by_user,
)
from afu9.lifecycle.state_machine import BlockerCode


def review(login, state):
    return {"user": {"login": login}, "state": state}


def check(name, status="completed", conclusion="success"):
    return {"name": name, "status": status, "conclusion": conclusion}


APPROVED = [review("alice", "APPROVED")]
GREEN = [check("build"), check("lint", conclusion="neutral"), check("docs", conclusion="skipped")]


class TestLatestReviews:
    def test_latest_decisive_review_wins(self):
        reviews = [
            review("alice", "CHANGES_REQUESTED"),
            review("alice", "COMMENTED"),
            review("alice", "APPROVED"),
            review("bob", "APPROVED"),
            review("bob", "DISMISSED"),
        ]

        assert latest_reviews_by_user(reviews) == {"alice": "APPROVED", "bob": "DISMISSED"}

    def test_comment_does_not_override_changes_requested(self):
        reviews = [review("alice", "CHANGES_REQUESTED"), review("alice", "COMMENTED")]

        assert latest_reviews_by_user(reviews) == {"alice": "CHANGES_REQUESTED"}


class TestEvaluateReviewGate:
    def test_passes(self):
        decision = evaluate_review_gate(APPROVED, GREEN)

        assert decision.passed
        assert decision.review_status is ReviewStatus.APPROVED
        assert decision.checks_status is ChecksStatus.PASSED
        assert decision.to_dict()["verdict"] == "PASS"

    def test_changes_requested_blocks_even_with_approval(self):
        decision = evaluate_review_gate(
            APPROVED + [review("bob", "CHANGES_REQUESTED")], GREEN
        )

        assert decision.blocker_code is BlockerCode.CHANGES_REQUESTED
        assert decision.message == "PR review requested changes"

    def test_no_approval(self):
        decision = evaluate_review_gate([review("alice", "COMMENTED")], GREEN)

        assert decision.blocker_code is BlockerCode.NO_REVIEW_APPROVAL

    def test_no_checks_fails_closed(self):
        decision = evaluate_review_gate(APPROVED, [])

        assert not decision.passed
        assert decision.checks_status is ChecksStatus.MISSING
        assert decision.blocker_code is BlockerCode.NO_CHECKS_FOUND

    def test_pending_checks(self):
        decision = evaluate_review_gate(
            APPROVED, [check("build"), check("e2e", status="in_progress", conclusion=None)]
        )

        assert decision.blocker_code is BlockerCode.CHECKS_PENDING
        assert decision.message == "Checks still running: e2e"
        assert decision.pending_checks == ("e2e",)

    def test_failed_checks(self):
        decision = evaluate_review_gate(
            APPROVED, [check("build", conclusion="failure"), check("lint", conclusion="timed_out")]
        )

        assert decision.blocker_code is BlockerCode.CHECKS_FAILED
        assert decision.message == "Checks failed: build, lint"
        assert decision.to_dict()["failedChecks"] == ["build", "lint"]

    def test_review_is_reported_before_checks(self):
        decision = evaluate_review_gate([], [check("build", conclusion="failure")])

        assert decision.blocker_code is BlockerCode.NO_REVIEW_APPROVAL
        assert decision.checks_status is ChecksStatus.FAILED


@pytest.mark.asyncio
async def test_fetch_review_gate_uses_head_sha():
    github = MagicMock(spec=GitHubClient)
    github.list_reviews = AsyncMock(return_value=APPROVED)
    github.list_check_runs = AsyncMock(return_value=GREEN)
    pr = PullRequestRef(owner="acme", repo="api", number=7)

    decision = await fetch_review_gate(github, pr, "headsha")

    assert decision.passed
    github.list_reviews.assert_awaited_once_with(pr)
    github.list_check_runs.assert_awaited_once_with("acme", "api", "headsha")
